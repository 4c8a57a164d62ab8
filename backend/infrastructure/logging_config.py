"""
Logging setup for the enrichment pipeline.

One stdout handler on the root logger, emitting JSON lines in production
and readable text in development. Provider credentials are scrubbed from
every record before formatting. Job context passed through ``extra=``
(job id, worker, keyword, ...) is carried into both output formats.
"""

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

# (pattern, replacement) pairs for values that must never reach a log line
_CREDENTIAL_RULES = [
    # SE Ranking "Authorization: Token <key>", also when logged as a headers dict
    (re.compile(r"""(Authorization['"]?\s*[:=]\s*['"]?(?:Token|Bearer)\s+)[^\s'"]+""", re.IGNORECASE), r"\1[REDACTED]"),
    # apikey=..., api_key: ..., "api_key": "..."
    (re.compile(r"""(api[_-]?key['"]?\s*[:=]\s*['"]?)[^\s&'",}]+""", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"""((?:password|secret)['"]?\s*[:=]\s*['"]?)[^\s&'",}]+""", re.IGNORECASE), r"\1[REDACTED]"),
    # Redis URLs with inline passwords
    (re.compile(r"(redis(?:s)?://[^:/@\s]*:)[^@\s]+(@)"), r"\1[REDACTED]\2"),
]

# Attributes set through ``extra=`` that describe the unit of work
JOB_CONTEXT_FIELDS = ("job_id", "worker_id", "owner_id", "keyword", "country_code", "duration_ms")

# Third-party loggers held above the pipeline's own level
_LIBRARY_LEVELS = {
    "sqlalchemy.engine": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


def redact_credentials(text: str) -> str:
    for pattern, replacement in _CREDENTIAL_RULES:
        text = pattern.sub(replacement, text)
    return text


def _job_context(record: logging.LogRecord) -> dict[str, Any]:
    return {key: getattr(record, key) for key in JOB_CONTEXT_FIELDS if hasattr(record, key)}


class CredentialRedactionFilter(logging.Filter):
    """
    Render the message once and scrub credentials from it.

    Merging ``args`` into ``msg`` up front means positional and mapping
    arguments are both covered, and formatters see the final text.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            # Mismatched args; the formatter reports it through Handler.handleError
            return True
        record.msg = redact_credentials(message)
        record.args = None
        return True


class JobContextFormatter(logging.Formatter):
    """Plain text with job context appended as ``key=value`` pairs."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _job_context(record)
        if not context:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in context.items())
        head, sep, tail = line.partition("\n")
        return f"{head} [{pairs}]{sep}{tail}"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, stamped with the record's creation time."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_job_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception_type"] = record.exc_info[0].__name__
            entry["exception"] = redact_credentials(self.formatException(record.exc_info))
        # Values in extra= may be UUIDs, datetimes or enums
        return json.dumps(entry, default=str)


def build_handler(json_output: bool = False, stream: TextIO | None = None) -> logging.Handler:
    """Stream handler with the pipeline formatter and credential scrubbing attached."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else JobContextFormatter())
    handler.addFilter(CredentialRedactionFilter())
    return handler


def setup_logging(json_output: bool = False, level: str = "INFO") -> None:
    """
    Replace the root logger's handlers with the pipeline handler.

    Args:
        json_output: JSON lines (production) instead of text (development)
        level: Root log level name; unknown names fall back to INFO
    """
    root = logging.getLogger()
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(build_handler(json_output))

    for name, library_level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)
