"""Shared: telemetry and utilities."""
