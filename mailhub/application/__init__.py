"""Application layer: repository ports and services."""
