"""
Logging setup for the VPS agent.

Importing this module configures the root logger once:

  [2026-02-21 14:05:33.421]  [SESSION ]  [INFO    ]  vps-agent.session     » State: connecting → awaiting_registration
  [2026-02-21 14:05:33.600]  [DISPATCH]  [ERROR   ]  vps-agent.dispatcher  » Command r7 (deploy) failed: exit code 2

The badge is derived from the second segment of the logger name. Every
record passes through SecretRedactor, so a registered secret never reaches
stdout or the journal, even when it appears in a command line or an error.
"""
import logging
import sys
from datetime import datetime, timezone
from typing import Optional, Set

from .config import settings

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35;1m",
}

# logger name segment → (badge, color)
_COMPONENTS = {
    "session": ("SESSION", "\033[94m"),
    "transport": ("WIRE", "\033[94m"),
    "dispatcher": ("DISPATCH", "\033[93m"),
    "handlers": ("HANDLER", "\033[95m"),
    "collector": ("METRICS", "\033[96m"),
    "identity": ("CONFIG", "\033[92m"),
}
_DEFAULT_COMPONENT = ("AGENT", "\033[97m")

REDACTED = "********"


def _component(name: str):
    parts = name.split(".")
    if len(parts) < 2 or parts[0] != "vps-agent":
        return _DEFAULT_COMPONENT
    return _COMPONENTS.get(parts[1], _DEFAULT_COMPONENT)


class SecretRedactor(logging.Filter):
    """Replaces registered secret values in the rendered message."""

    def __init__(self):
        super().__init__()
        self._secrets: Set[str] = set()

    def add(self, secret: str) -> None:
        if secret:
            self._secrets.add(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self._secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class VpsAgentFormatter(logging.Formatter):
    """Coloured single-line formatter for interactive runs."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        badge, color = _component(record.name)
        level = record.levelname

        msg = record.getMessage()
        if record.exc_info:
            msg = msg + "\n" + self.formatException(record.exc_info)

        return (
            f"{_DIM}[{ts}]{_RESET}  "
            f"{color}{_BOLD}[{badge:<8}]{_RESET}  "
            f"{_LEVEL_COLORS.get(level, '')}{_BOLD}[{level:<8}]{_RESET}  "
            f"{_DIM}{record.name}{_RESET}  » {msg}"
        )


class PlainFormatter(logging.Formatter):
    """Same layout without ANSI codes, for journald and log files."""

    def format(self, record: logging.LogRecord) -> str:
        badge, _ = _component(record.name)
        line = (
            f"[{self.formatTime(record, '%Y-%m-%d %H:%M:%S')}]  [{badge:<8}]  "
            f"[{record.levelname:<8}]  {record.name}  » {record.getMessage()}"
        )
        if record.exc_info:
            line = line + "\n" + self.formatException(record.exc_info)
        return line


redactor = SecretRedactor()


def redact_secret(secret: str) -> None:
    """Register a value that must never appear in log output."""
    redactor.add(secret)


def setup_logging(level: Optional[str] = None, environment: Optional[str] = None) -> logging.Logger:
    """
    Install one stdout handler on the root logger.
    Development gets colours; ENVIRONMENT=production gets plain lines.
    """
    root = logging.getLogger()
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(redactor)
    if (environment or settings.ENVIRONMENT) == "production":
        handler.setFormatter(PlainFormatter())
    else:
        handler.setFormatter(VpsAgentFormatter())

    root.addHandler(handler)
    root.setLevel(level or settings.LOG_LEVEL)

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    return root


logger = setup_logging()
