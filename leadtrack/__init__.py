"""Lead lifecycle and accountability backend."""

__version__ = "0.1.0"
