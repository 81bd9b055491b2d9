"""Knee-osteoarthritis X-ray classification client."""

__version__ = "0.1.0"
