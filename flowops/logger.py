"""
Logger injection helpers for the FlowOps simulator.

Simulation components accept any ``LoggerInterface`` so tests can capture
what they report without touching the global logging configuration.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any


class LoggerInterface(ABC):
    """Abstract logger interface for dependency injection."""

    @abstractmethod
    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message."""
        pass

    @abstractmethod
    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message."""
        pass

    @abstractmethod
    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message."""
        pass

    @abstractmethod
    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message."""
        pass

    @abstractmethod
    def exception(self, message: str, **kwargs: Any) -> None:
        """Log error message with the active traceback."""
        pass


class StandardLogger(LoggerInterface):
    """Standard logger implementation using Python's logging module."""

    def __init__(self, logger_name: str = "flowops"):
        self.logger = logging.getLogger(logger_name)

    def info(self, message: str, **kwargs: Any) -> None:
        self.logger.info(message, extra=kwargs if kwargs else None)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.logger.warning(message, extra=kwargs if kwargs else None)

    def error(self, message: str, **kwargs: Any) -> None:
        self.logger.error(message, extra=kwargs if kwargs else None)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, extra=kwargs if kwargs else None)

    def exception(self, message: str, **kwargs: Any) -> None:
        self.logger.exception(message, extra=kwargs if kwargs else None)
