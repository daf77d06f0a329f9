"""folio — element resolution and portfolio synchronization core."""

__version__ = "0.4.0"
