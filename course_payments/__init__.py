"""Payment reconciliation and order lifecycle service for course sales."""

__version__ = "1.0.0"
