"""
Shift Bidding Core

Cyclic schedule metrics and a concurrency-safe favorites ranking and
claim lifecycle for organizations that rotate employees through
repeating multi-week shift templates.
"""

__version__ = "1.0.0"
__author__ = "Shift Bidding Team"
