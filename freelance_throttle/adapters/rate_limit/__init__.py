"""Rate limiting adapters.

This package keeps the counting algorithm independent of where counters
live: the shared backend when it is reachable, process memory otherwise.
"""
