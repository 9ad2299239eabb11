"""Automates watching Twitch streams for drops: follows raids and claims rewards."""

__version__ = "1.0.0"
