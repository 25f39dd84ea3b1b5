"""Episode Forge: generate, review and persist serialized-novel episodes."""

__version__ = "0.1.0"
