"""
Exceptions raised by stream aggregation components.

Transport and parse failures are never raised; they surface as status codes
and empty item lists. Only misconfiguration is reported as an exception.
"""

from typing import Optional

from stream_aggregation.models.enums import SourceType


class StreamAggregationError(Exception):
    """Base exception for stream aggregation errors."""


class ConfigurationError(StreamAggregationError):
    """Raised when a source cannot be polled with the given settings."""

    def __init__(self, message: str, source_type: Optional[SourceType] = None):
        super().__init__(message)
        self.source_type = source_type
