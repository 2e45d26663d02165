"""Civic data sync service: resumable, rate-limited syncs of congressional data."""

__version__ = "1.0.0"
