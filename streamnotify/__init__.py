"""Twitch stream-online notification service for guild bots."""

__version__ = "0.1.0"
