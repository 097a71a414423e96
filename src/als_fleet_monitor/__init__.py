"""ALS Fleet Monitor: live device-state ingestion for water-treatment units."""

__version__ = "0.3.0"
