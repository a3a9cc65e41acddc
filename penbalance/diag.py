"""Diagnostic output: debug messages and fatal errors."""

from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass, field
from typing import NoReturn, TextIO

_MAX_MESSAGE = 4095
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class PenError(Exception):
    """A fatal condition reported through :meth:`Diag.error`."""


def _render(msg: str, args: tuple) -> str:
    text = msg % args if args else msg
    return text[:_MAX_MESSAGE]


def _default_logger() -> logging.Logger:
    return logging.getLogger("pen")


@dataclass
class Diag:
    """Debug and error reporting.

    In the foreground, messages go to ``stream`` (standard error by default);
    otherwise debug messages go to ``logger``.
    """

    level: int = 0
    foreground: bool = True
    stream: TextIO | None = None
    logger: logging.Logger = field(default_factory=_default_logger)

    def _out(self) -> TextIO:
        return self.stream if self.stream is not None else sys.stderr

    def enabled(self, level: int) -> bool:
        """Return True when messages of ``level`` should be emitted."""
        return self.level >= level

    def debug(self, msg: str, *args) -> None:
        """Emit a debug message, formatted printf-style with ``args``."""
        text = _render(msg, args)
        if self.foreground:
            stamp = time.strftime(_TIME_FORMAT, time.localtime())
            print(f"{stamp}: {text}", file=self._out())
        else:
            self.logger.debug(text)

    def error(self, msg: str, *args) -> NoReturn:
        """Report a fatal error and raise :class:`PenError`."""
        text = _render(msg, args)
        print(text, file=self._out())
        if not self.foreground:
            self.logger.error(text)
        raise PenError(text)