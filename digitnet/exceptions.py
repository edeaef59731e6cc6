"""
exceptions.py
~~~~~~~~~~~~~

Exception types raised by the digitnet package.
"""

from typing import Any, Dict, Optional


class DigitNetError(Exception):
    """Base exception for all digitnet errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class DatasetFormatError(DigitNetError):
    """Raised when an IDX label or image file is malformed."""
    pass


class ModelError(DigitNetError):
    """Raised when model persistence fails."""
    pass


class ModelDeserializationError(ModelError):
    """Raised when persisted model bytes are corrupt or incompatible."""
    pass


class ModelIOError(ModelError):
    """Raised when the filesystem or model database fails."""
    pass


class ContractViolation(DigitNetError):
    """
    Raised when a network is used against its construction contract
    (empty layer list, mismatched vector sizes). Not meant to be caught.
    """
    pass


class TrainingError(DigitNetError):
    """Raised when a worker fails during parallel batch training."""
    pass


class ConfigError(DigitNetError):
    """Raised when training configuration values are invalid."""
    pass
