"""DarkCode sync core: sheet ingestion, reconciliation and session trust."""

__version__ = "0.1.0"
