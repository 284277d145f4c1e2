"""Configuration, config reloading, deduplication, output logging and retries for a Twitch EventSub webhook bridge."""

__version__ = "0.3.0"