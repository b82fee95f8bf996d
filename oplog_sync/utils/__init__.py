"""
Utility functions shared across oplog-sync.
"""

from .bson_convert import bson_safe
from .logging import CorrelationContext, JSONFormatter, configure_logging

__all__ = ["bson_safe", "CorrelationContext", "JSONFormatter", "configure_logging"]
