"""Shared infrastructure: exceptions, logging, clocks, retry and timeouts."""
