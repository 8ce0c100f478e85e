"""
Shared utilities for the GtoA pipeline infrastructure.

Components:
- logging_config: Centralized logging system with category-specific loggers
- exceptions: Stage-tagged error taxonomy
- resources: Memory estimates and psutil-based availability checks
"""

from .logging_config import (
    GtoALogger,
    get_light_logger,
    get_data_logger,
)
from .exceptions import (
    GtoAError,
    ConfigurationError,
    GeometryError,
    DimensionMismatchError,
    ResourceExhaustionError,
    CheckpointError,
)

__all__ = [
    'GtoALogger',
    'get_light_logger',
    'get_data_logger',
    'GtoAError',
    'ConfigurationError',
    'GeometryError',
    'DimensionMismatchError',
    'ResourceExhaustionError',
    'CheckpointError',
]
