"""Minimal pluggable logger used by the scheduler, promoter and orchestrator."""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Protocol, Sequence, runtime_checkable


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def parse(cls, value: "LogLevel | str | int") -> "LogLevel":
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).upper()]
        except KeyError as exc:
            raise ValueError(f"unknown log level {value!r}") from exc


@runtime_checkable
class LoggerProtocol(Protocol):
    def log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:  # pragma: no cover - interface definition only
        ...


class StdOutLogger:
    """
    Forwards messages to the standard ``logging`` module.

    Messages below ``min_level`` are dropped before they reach ``logging`` so
    the threshold works even when the host application configures handlers
    at a lower level.
    """

    def __init__(self, min_level: LogLevel | str = LogLevel.WARNING, name: str = "evoprompt") -> None:
        self.min_level = LogLevel.parse(min_level)
        self._logger = logging.getLogger(name)

    def log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        if level < self.min_level:
            return
        self._logger.log(int(level), message)


class Logger(StdOutLogger):
    """StdOutLogger that also attaches a stream handler if none is configured."""

    def __init__(self, min_level: LogLevel | str = LogLevel.INFO, name: str = "evoprompt") -> None:
        super().__init__(min_level, name)
        if not self._logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            self._logger.addHandler(handler)
        self._logger.setLevel(int(self.min_level))


class Tee:
    """Fan a message out to several loggers."""

    def __init__(self, loggers: Sequence[LoggerProtocol]) -> None:
        self.loggers = list(loggers)

    def log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        for logger in self.loggers:
            logger.log(message, level)
