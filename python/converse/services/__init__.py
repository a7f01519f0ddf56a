"""Service layer: message lifecycle, chunk sequencing, ingestion, conversations."""
