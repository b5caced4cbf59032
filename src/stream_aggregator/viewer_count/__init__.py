"""Viewer-count polling and observer fan-out."""
