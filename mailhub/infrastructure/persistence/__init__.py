"""Persistence: record mapping and repository implementations."""
