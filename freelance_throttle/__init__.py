"""Rate limiting and cache layer for the freelance marketplace API."""

__version__ = "0.1.0"
