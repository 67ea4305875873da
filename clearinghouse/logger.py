"""
Clearing House Logging
======================

Console logging for the clearing house, rendered with `rich`.

Exchange modules only call `logging.getLogger(__name__)`. The handler lives on
the `clearinghouse` package logger and is attached once, when a state manager
is built (`ClearingHouseStateManager.create` / `from_config`) or when
`get_logger()` is first called. The root logger is left to the host
application, and records still propagate to it.

Settings come from `.env` (see `clearinghouse.constants`):
    LOG_LEVEL, LOG_FORMAT, LOG_DATE_FORMAT, LOG_CONSOLE_HIGHLIGHTING

Usage:
    >>> from clearinghouse.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Initialized market=0")
"""

import logging
import re
import sys
import threading
import time
from typing import Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_CONSOLE_HIGHLIGHTING,
)


PACKAGE_LOGGER = "clearinghouse"

CLEARINGHOUSE_THEME = Theme(
    {
        "clearinghouse.amount":          "bold cyan",
        "clearinghouse.direction_long":  "bold green",
        "clearinghouse.direction_short": "bold red",
        "clearinghouse.error_kind":      "bold red",
        "clearinghouse.level_critical":  "bold red reverse",
        "clearinghouse.level_debug":     "bold dim",
        "clearinghouse.level_error":     "bold red",
        "clearinghouse.level_info":      "bold green",
        "clearinghouse.level_warning":   "bold yellow",
        "clearinghouse.logger_name":     "magenta",
        "clearinghouse.market":          "bold blue",
        "clearinghouse.op":              "bold white",
        "clearinghouse.tag":             "bold magenta",
        "clearinghouse.timestamp":       "bold cyan",
        "clearinghouse.user":            "cyan",
    }
)

# A named field such as "(levelname)s" that is missing its leading '%'
_BARE_FIELD_RE = re.compile(r"(?<!%)\([A-Za-z_]\w*\)[A-Za-z]")
_STRFTIME_DIRECTIVE_RE = re.compile(r"%[EO]?[-_0^#]*[A-Za-z]")
_DATE_LITERAL_RE = re.compile(r"[0-9 \t:\-/.,TZ+]*")


def _report(message: str) -> None:
    """Setup problems go to stderr; the logging system is not up yet."""
    stamp = time.strftime(str(LOG_DATE_FORMAT.default()))
    print(f"{stamp} - {PACKAGE_LOGGER}.logger - {message}", file=sys.stderr)


class LogManager:
    """
    Process-wide owner of the clearing house log handler.

    A double-checked-locking singleton: however many state managers are
    built, the package logger gets exactly one handler.
    """

    _instance: Optional["LogManager"] = None
    _lock: threading.Lock = threading.Lock()

    def __new__(cls) -> "LogManager":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._handler = None
                    cls._instance = instance
        return cls._instance

    @staticmethod
    def validate_log_format(log_format: str) -> str:
        """
        Return `log_format` if it formats a record cleanly, else the default.

        Catches fields written without their '%' as well as anything
        `logging.Formatter` itself rejects.
        """
        default = str(LOG_FORMAT.default())
        if not log_format:
            return default
        log_format = str(log_format)
        try:
            if _BARE_FIELD_RE.search(log_format):
                raise ValueError("Malformed format specifier.")
            record = logging.LogRecord(
                name=PACKAGE_LOGGER, level=logging.INFO, pathname="", lineno=0,
                msg="check", args=(), exc_info=None,
            )
            logging.Formatter(fmt=log_format, validate=True).format(record)
        except (ValueError, KeyError, TypeError) as e:
            _report(f"Validation Error: {e}. Using default.")
            return default
        return log_format

    @staticmethod
    def validate_date_format(date_format: str) -> str:
        """
        Return `date_format` if it is strftime directives plus date
        punctuation, else the default.
        """
        default = str(LOG_DATE_FORMAT.default())
        if not date_format:
            return default
        date_format = str(date_format)
        directives = _STRFTIME_DIRECTIVE_RE.findall(date_format.replace("%%", ""))
        literals = _STRFTIME_DIRECTIVE_RE.sub("", date_format.replace("%%", ""))
        if not directives or not _DATE_LITERAL_RE.fullmatch(literals):
            _report("Invalid date format. Using default.")
            return default
        return date_format

    def _build_handler(self, level: int, highlighting: bool) -> logging.Handler:
        formatter = TerminalSafeFormatter(
            fmt=self.validate_log_format(LOG_FORMAT),
            datefmt=self.validate_date_format(LOG_DATE_FORMAT) + " UTC",
        )
        formatter.converter = time.gmtime

        if highlighting:
            handler = RichHandler(
                console=Console(theme=CLEARINGHOUSE_THEME, highlight=False),
                highlighter=ClearingHouseLogHighlighter(),
                keywords=[],
                rich_tracebacks=True,
                show_path=False,
                show_time=False,
                show_level=False,
                markup=False,
            )
        else:
            handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(formatter)
        return handler

    def configure(self, log_level: Optional[str] = None, highlighting: Optional[bool] = None) -> logging.Logger:
        """
        Attach the console handler to the package logger.

        Idempotent: later calls return the package logger unchanged.

        Args:
            log_level: level name, defaults to LOG_LEVEL
            highlighting: rich console output, defaults to LOG_CONSOLE_HIGHLIGHTING
        """
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        with self._lock:
            if self._handler is not None:
                return package_logger

            level = getattr(logging, str(log_level or LOG_LEVEL).upper(), None)
            if not isinstance(level, int):
                _report(f"Unknown log level {log_level or LOG_LEVEL!r}. Using INFO.")
                level = logging.INFO
            if highlighting is None:
                highlighting = bool(LOG_CONSOLE_HIGHLIGHTING)

            self._handler = self._build_handler(level, highlighting)
            package_logger.setLevel(level)
            package_logger.addHandler(self._handler)
        return package_logger

    @property
    def handler(self) -> Optional[logging.Handler]:
        return self._handler

    @property
    def is_configured(self) -> bool:
        return self._handler is not None


class TerminalSafeFormatter(logging.Formatter):
    """
    Strips ANSI escapes and control characters from formatted records.

    Market names, user ids and error messages carry caller-supplied text,
    which must not be able to drive the terminal (CWE-117).
    """

    # ANSI CSI / two-byte escapes, then C0 controls except tab and newline
    _unsafe_re = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b[@-Z\\-_]|[\x00-\x08\x0B-\x1F\x7F]"
    )

    @classmethod
    def sanitize(cls, text: str) -> str:
        return cls._unsafe_re.sub("", text) if text else text

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class ClearingHouseLogHighlighter(RegexHighlighter):
    """
    Colors levels, `market=` / `user=` / `op=` fields, directions and amounts.

    Double-quoted text (market names and other caller-supplied strings) stays
    plain so it cannot pass itself off as a protocol field.
    """

    base_style = "clearinghouse."
    highlights = [
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"(?P<level_warning>\bWARNING\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<market>\bmarket=\d+)",
        r"(?P<user>\buser=\S+)",
        r"(?P<op>\bop=[A-Z_]+)",
        r"(?P<direction_long>\bLONG\b)",
        r"(?P<direction_short>\bSHORT\b)",
        r"(?P<amount>(?<![\w.])-?\d{4,}\b)",
        r"(?P<error_kind>\b[A-Z][a-zA-Z]+(?:Error|Limit|TooSmall|TooLarge)\b)",
        r"(?P<tag>\[.*?\])",
        r"(?P<timestamp>^(.*?)UTC)",
    ]

    _quoted_re = re.compile(r'"[^"]*"')

    def highlight(self, text) -> None:
        super().highlight(text)
        quoted = [m.span() for m in self._quoted_re.finditer(text.plain)]
        if quoted and text.spans:
            text.spans = [
                span for span in text.spans
                if not any(span.start < end and span.end > start for start, end in quoted)
            ]


def configure(log_level: Optional[str] = None, highlighting: Optional[bool] = None) -> logging.Logger:
    """Attach the clearing house console handler (once) and return the package logger."""
    return LogManager().configure(log_level, highlighting)


def get_logger(name: str) -> logging.Logger:
    """Logger for `name`, with the package handler in place."""
    LogManager().configure()
    return logging.getLogger(name)
