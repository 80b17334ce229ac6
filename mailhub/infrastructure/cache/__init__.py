"""Redis key builders."""
