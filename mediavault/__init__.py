"""mediavault — chunked upload ingestion and storage reconciliation."""

__version__ = "0.1.0"
