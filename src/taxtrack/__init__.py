"""Bank transaction ingestion and categorization for UK sole-trader bookkeeping."""

__version__ = "0.1.0"
