"""Presence Relay — now-playing state from a media player to Discord Rich Presence."""

__version__ = "0.3.0"
