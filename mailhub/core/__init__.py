"""Core: configuration, lifespan, composition, exception handlers."""
