"""Infrastructure: backend adapters, persistence, cache, messaging."""
