"""Core module - shared infrastructure.

Holds the cross-cutting pieces used by the value resolver, the API and the
Temporal worker: structured logging and metrics.
"""

__version__ = "1.0.0"
