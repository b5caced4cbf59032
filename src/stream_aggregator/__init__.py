"""Stream Aggregator: multi-platform live-stream event core.

Connects to Twitch, YouTube and TikTok, normalizes their chat and
monetization events into one canonical model and dispatches them on an
in-process event bus.
"""

__version__ = "0.1.0"
