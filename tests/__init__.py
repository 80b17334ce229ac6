"""mailhub tests."""
