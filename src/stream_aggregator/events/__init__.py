"""Canonical event model: normalization, filtering, aggregation and dispatch."""
