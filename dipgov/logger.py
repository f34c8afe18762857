"""
DIP Governance Logging System
=============================

A unified, thread-safe logging utility for the governance engine. This module
integrates with the standard Python `logging` library and the `rich` library
to provide structured, safe, and visually distinct logging outputs.

Usage:
    >>> from dipgov.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Scheduler started")
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_MAX_FILE_SIZE,
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_FILE_OUTPUT,
)


# Define log file location relative to the project root
PROJECT_ROOT = Path(__file__).parent.parent
LOG_FILE_PATH = PROJECT_ROOT / "logs" / "governance.log"


def _fallback(setting: str, default: str, reason: str) -> str:
    # Logging isn't configured yet, so report straight to stderr
    print(
        f"{time.strftime('%Y-%m-%d %H:%M:%S')} - dipgov.logger - "
        f"{setting} rejected ({reason}); using {default!r}",
        file=sys.stderr,
    )
    return default


class LogManager:
    """
    Process-wide owner of the governance log configuration.

    The API path and the finalization scheduler may both import the engine
    in one process; whichever gets there first configures the root logger
    and every later get_logger() call reuses it.
    """

    _instance: Optional["LogManager"] = None
    _lock: threading.Lock = threading.Lock()


    def __new__(cls) -> "LogManager":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance


    def __init__(self) -> None:
        if self._initialized:
            return
        self._configured = False
        self._initialized = True


    @staticmethod
    def validate_log_format(log_format: str) -> str:
        """
        Check LOG_FORMAT from .env before it reaches a handler.

        A typo such as ``(levelname)s`` without the leading ``%`` would
        otherwise print literally on every scheduler line.

        Returns:
            The format unchanged, or the built-in default.
        """
        default = str(LOG_FORMAT.default())
        if not log_format:
            return default

        log_format = str(log_format)
        placeholder = r"\([a-zA-Z_][a-zA-Z0-9_]*\)[a-zA-Z]"

        for match in re.finditer(placeholder, log_format):
            if match.start() == 0 or log_format[match.start() - 1] != "%":
                return _fallback("LOG_FORMAT", default, "placeholder without '%'")

        sample = logging.LogRecord(
            name="dipgov", level=logging.INFO, pathname="", lineno=0,
            msg="DIP-1 ACTIVE → PASSED", args=(), exc_info=None,
        )
        try:
            rendered = logging.Formatter(fmt=log_format).format(sample)
        except (ValueError, KeyError, TypeError) as e:
            return _fallback("LOG_FORMAT", default, str(e))
        if re.search(placeholder, rendered):
            return _fallback("LOG_FORMAT", default, "unrendered placeholder")
        return log_format


    @staticmethod
    def validate_date_format(date_format: str) -> str:
        """
        Check LOG_DATE_FORMAT: strftime directives plus digits, spaces and
        separators only. " UTC" is appended by configure().
        """
        default = str(LOG_DATE_FORMAT.default())
        if not date_format:
            return default

        date_format = str(date_format)
        directive = r"%(?:[EO])?(?:[-_0^#])*(?:[A-DF-HIM-NPR-VW-Za-hj-lm-npr-uw-z])"
        pattern = re.compile(
            rf"^(?=.*{directive})(?:%%|{directive}|[0-9 \t:\-\/\.,TZ+])+$"
        )
        if not pattern.match(date_format):
            return _fallback("LOG_DATE_FORMAT", default, "not a strftime pattern")
        return date_format


    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: Optional[bool] = None,
    ) -> None:
        """
        Install the governance handlers on the root logger (once).

        Level, format and file output default to the LOG_* settings in
        .env. The file handler writes to logs/governance.log unless
        *log_file* is given.
        """
        with self._lock:
            if self._configured:
                return

            level_str = log_level or LOG_LEVEL
            numeric_level = getattr(logging, str(level_str).upper(), logging.INFO)

            root_logger = logging.getLogger()
            root_logger.setLevel(numeric_level)

            # Webhook sink traffic is noisy at INFO
            for lib in ["httpx", "httpcore", "aiosqlite"]:
                logging.getLogger(lib).setLevel(logging.WARNING)

            root_logger.handlers.clear()

            log_format = self.validate_log_format(LOG_FORMAT)
            date_format = self.validate_date_format(LOG_DATE_FORMAT)

            # UTC for consistency across scheduler hosts
            formatter = TerminalSafeFormatter(fmt=log_format, datefmt=date_format + " UTC")
            formatter.converter = time.gmtime

            if console_output:
                if LOG_CONSOLE_HIGHLIGHTING:
                    governance_theme = Theme(
                        {
                            "dipgov.amount":          "cyan",
                            "dipgov.arrow":           "bold yellow",
                            "dipgov.code":            "bold magenta",
                            "dipgov.level_critical":  "bold red reverse",
                            "dipgov.level_debug":     "bold dim",
                            "dipgov.level_error":     "bold red",
                            "dipgov.level_info":      "bold green",
                            "dipgov.level_warning":   "bold yellow",
                            "dipgov.logger_name":     "magenta",
                            "dipgov.status_bad":      "bold red",
                            "dipgov.status_good":     "bold green",
                            "dipgov.status_pending":  "bold yellow",
                            "dipgov.timestamp":       "bold cyan",
                        }
                    )

                    console = Console(theme=governance_theme, highlight=False)

                    rich_handler = RichHandler(
                        console=console,
                        highlighter=GovernanceLogHighlighter(),
                        keywords=[],
                        rich_tracebacks=True,
                        omit_repeated_times=False,
                        show_path=False,
                        show_time=False,
                        show_level=False,
                        markup=False,
                    )
                    rich_handler.setLevel(numeric_level)
                    rich_handler.setFormatter(formatter)
                    root_logger.addHandler(rich_handler)
                else:
                    console_handler = logging.StreamHandler(sys.stdout)
                    console_handler.setLevel(numeric_level)
                    console_handler.setFormatter(formatter)
                    root_logger.addHandler(console_handler)

            if file_output is None:
                file_output = bool(LOG_FILE_OUTPUT)

            if file_output:
                log_file_path = log_file or LOG_FILE_PATH
                log_file_path.parent.mkdir(parents=True, exist_ok=True)

                file_handler = logging.handlers.RotatingFileHandler(
                    filename=str(log_file_path),
                    maxBytes=LOG_MAX_FILE_SIZE,
                    backupCount=LOG_BACKUP_COUNT,
                    encoding="utf-8",
                )
                file_handler.setLevel(numeric_level)
                file_handler.setFormatter(formatter)
                root_logger.addHandler(file_handler)

            self._configured = True


    def get_logger(self, name: str) -> logging.Logger:
        if not self._configured:
            self.configure()
        return logging.getLogger(name)


    @property
    def is_configured(self) -> bool:
        return self._configured


class TerminalSafeFormatter(logging.Formatter):
    """
    A formatter class that sanitizes log output.

    Proposal titles, voter identities and veto reasons are caller-supplied
    text, so ANSI escape sequences and non-printable control characters are
    stripped before a record reaches a terminal or file (CWE-117).
    """

    # Matches ANSI CSI sequences (colors, cursor moves) and single ESC chars
    _ansi_escape_re = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"
        r"|\x1b[@-Z\\-_]"
    )
    # Matches control chars (0x00-0x1F) excluding Tab and Newline
    _control_chars_re = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
    _carriage_return_re = re.compile(r"\r")


    @classmethod
    def sanitize(cls, text: str) -> str:
        """Strip escapes so a crafted title or veto reason can't rewrite the terminal."""
        if not text:
            return text
        text = cls._ansi_escape_re.sub("", text)
        text = cls._carriage_return_re.sub("", text)
        text = cls._control_chars_re.sub("", text)
        return text


    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class GovernanceLogHighlighter(RegexHighlighter):
    """Rich highlighter for proposal codes, lifecycle statuses and amounts."""

    base_style = "dipgov."
    highlights = [
        r"(?P<arrow>(\-\->)|(<--)|(→))",
        r"(?P<code>\b[A-Z]{2,8}-\d+\b)",
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<level_warning>\bWARNING\b)",
        r"(?P<status_good>\b(PASSED|EXECUTED)\b)",
        r"(?P<status_bad>\b(REJECTED|QUORUM_NOT_MET|VETOED|EXPIRED|CANCELLED)\b)",
        r"(?P<status_pending>\b(ACTIVE|TIMELOCK|PENDING)\b)",
        r"(?P<amount>\b\d+(\.\d+)?\b(?= tokens))",
        r"(?P<timestamp>^(.*?)UTC)",
    ]


_manager = LogManager()

def get_logger(name: str) -> logging.Logger:
    """Module logger, e.g. ``get_logger(__name__)`` in every dipgov module."""
    return _manager.get_logger(name)

# Configure on import so the first engine log line is already formatted
_manager.configure()
