"""Logging utilities for evoprompt."""

from evoprompt.logging.logger import Logger, LoggerProtocol, LogLevel, StdOutLogger, Tee

__all__ = [
    "Logger",
    "LogLevel",
    "LoggerProtocol",
    "StdOutLogger",
    "Tee",
]
