"""Task, card and milestone lifecycle with rule-driven automation."""

__version__ = "1.0.0"
