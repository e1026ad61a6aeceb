"""Night Watch coordination core: locks, claims, state derivation, and durable state."""

__version__ = "0.1.0"
