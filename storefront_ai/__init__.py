"""AI shopping assistant for a computer hardware storefront."""

__version__ = "0.1.0"
