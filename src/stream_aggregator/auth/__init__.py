"""Twitch authentication lifecycle: token store, refresh, and error taxonomy."""
