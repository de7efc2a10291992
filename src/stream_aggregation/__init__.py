"""
Stream Aggregation - polling and aggregation engine for social content streams.

This package polls news feeds, image searches and status searches on
independent timers, normalizes their responses into a common item model, and
keeps a bounded, deduplicated and filtered window of items for a consumer.
"""

__version__ = "0.1.0"
