"""Shared utilities (datetime, generators, retry)."""
