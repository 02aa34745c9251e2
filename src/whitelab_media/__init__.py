"""Media ingestion queue, worker and page cache for the White Lab site."""
