"""hookrelay: webhook ingestion and durable job-retry pipeline."""

__version__ = "0.1.0"
