"""Stock-rating ingestion, deduplication and integrity maintenance."""

__version__ = "1.0.0"
