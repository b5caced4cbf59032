"""Platform connections: adapter construction, stream detection and lifecycle."""
