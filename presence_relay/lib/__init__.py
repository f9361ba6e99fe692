"""Shared plumbing for the relay and producer services."""
