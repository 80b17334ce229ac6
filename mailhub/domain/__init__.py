"""Domain layer: entities, enums, exceptions."""
