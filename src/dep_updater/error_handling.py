"""
Error taxonomy and centralized error reporting for dep-updater.

The resolution core raises the typed exceptions below. Failures that are
handled locally (a missing tag list, an undecodable npm password, a broken
manifest) are reported through the ErrorHandler, whose logger redacts
registry credentials before anything reaches stderr.
"""

import logging
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit


class UpdaterError(Exception):
    """Base class for all dep-updater errors."""


class FetchError(UpdaterError):
    """
    A registry or forge request failed (non-2xx status or network failure).

    ``retryable`` tells transient failures (timeouts, transport errors, 429
    and 5xx responses) apart from permanent ones such as 401 or 404. When it
    is not given it is derived from ``status``.
    """

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status: Optional[int] = None,
        dependency: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        self.url = url
        self.status = status
        self.dependency = dependency
        self._retryable = retryable
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return is_retryable_status(self.status)

    @classmethod
    def from_status(cls, status: int, url: str, dependency: Optional[str] = None):
        """Build the error for an unexpected HTTP status."""
        suffix = f" for {dependency}" if dependency else ""
        return cls(
            f"Received HTTP {status} from {sanitize_url(url)}{suffix}",
            url=url,
            status=status,
            dependency=dependency,
        )


def is_retryable_status(status: Optional[int]) -> bool:
    """429 and 5xx are transient; other statuses, or none at all, are not."""
    if status is None:
        return False
    return status == 429 or 500 <= status <= 599


class ParseError(UpdaterError, ValueError):
    """A manifest could not be read or parsed."""

    def __init__(self, message: str, file_path: Optional[str] = None):
        self.file_path = file_path
        super().__init__(message)


class ConfigError(UpdaterError, ValueError):
    """Invalid configuration value, e.g. a malformed cooldown or pinned range."""


class NoopResult(UpdaterError):
    """
    Resolution intentionally produced no update.

    Raised inside an adapter for wildcard or OR-chain ranges, pseudo-versions
    and unreachable major lookups. Adapters convert it into "no update"; it never
    reaches the user as a failure.
    """


class ErrorLevel(Enum):
    DEBUG = logging.DEBUG
    WARNING = logging.WARNING
    ERROR = logging.ERROR


class ErrorCategory(Enum):
    PARSING = "parsing"
    NETWORK = "network"
    CREDENTIAL = "credential"


@dataclass
class ErrorContext:
    """One reported failure: where it happened, what it concerned and a hint."""

    level: ErrorLevel
    category: ErrorCategory
    message: str
    source: str
    details: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[Exception] = None
    hint: Optional[str] = None


# .npmrc auth keys, Authorization headers and bearer/basic credentials
CREDENTIAL_PATTERNS = [
    (re.compile(r"(:?_authToken\s*[=:]\s*)\S+"), r"\1[REDACTED]"),
    (re.compile(r"(:?_auth\s*[=:]\s*)\S+"), r"\1[REDACTED]"),
    (re.compile(r"(:?_password\s*[=:]\s*)\S+"), r"\1[REDACTED]"),
    (re.compile(r"(Authorization:\s*)\S+(\s+\S+)?", re.I), r"\1[REDACTED]"),
    (re.compile(r"\b(Bearer|Basic|token)\s+[\w\-+=/.]{8,}", re.I), r"\1 [REDACTED]"),
    (re.compile(r"(https?://)[^/@\s]+@"), r"\1[REDACTED]@"),
]

REDACTED_KEYS = ("token", "password", "auth", "secret")


def sanitize_message(message: str) -> str:
    """Redact registry credentials that may appear in a message."""
    for pattern, replacement in CREDENTIAL_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


def sanitize_url(url: str) -> str:
    """Drop the userinfo part of a registry URL."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "[REDACTED_URL]"
    if "@" not in parts.netloc:
        return url
    return parts._replace(netloc=parts.netloc.rsplit("@", 1)[1]).geturl()


class RedactingLogger:
    """stderr logger that redacts credentials from messages and details."""

    def __init__(self, name: str, level: int = logging.WARNING):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        # stdout carries the report and the JSON document
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter("%(name)s %(levelname)s %(message)s"))
            self.logger.addHandler(handler)

    def log_error_context(self, context: ErrorContext) -> None:
        parts = [f"[{context.category.value}] {context.source}: {sanitize_message(context.message)}"]
        details = {
            key: "[REDACTED]" if any(word in key.lower() for word in REDACTED_KEYS) else value
            for key, value in context.details.items()
        }
        if details:
            parts.append(" ".join(f"{key}={value}" for key, value in details.items()))
        if context.exception is not None:
            parts.append(f"exception={type(context.exception).__name__}")
        if context.hint:
            parts.append(f"hint: {context.hint}")
        self.logger.log(context.level.value, " | ".join(parts))


class ErrorHandler:
    """Route locally handled failures to the redacting logger."""

    def __init__(self, logger_name: str = "dep_updater", log_level: int = logging.WARNING):
        self.logger = RedactingLogger(logger_name, log_level)

    def report(
        self,
        level: ErrorLevel,
        category: ErrorCategory,
        message: str,
        module: str,
        function: str,
        details: Optional[Dict[str, Any]] = None,
        exception: Optional[Exception] = None,
        hint: Optional[str] = None,
    ) -> ErrorContext:
        """
        Log one failure.

        Args:
            level: Severity; handled lookups use DEBUG
            category: What the failure concerned
            message: Human readable description
            module: Reporting module
            function: Reporting function
            details: Extra key/value pairs, credential-like keys are redacted
            exception: Exception that caused the failure
            hint: Suggested fix shown next to the message

        Returns:
            ErrorContext: The logged context
        """
        context = ErrorContext(
            level=level,
            category=category,
            message=message,
            source=f"{module}.{function}",
            details=details or {},
            exception=exception,
            hint=hint,
        )
        self.logger.log_error_context(context)
        return context


_global_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    global _global_error_handler
    if _global_error_handler is None:
        _global_error_handler = ErrorHandler()
    return _global_error_handler


def setup_error_handling(
    log_level: int = logging.WARNING, logger_name: str = "dep_updater"
) -> ErrorHandler:
    """Replace the global handler, e.g. to lower the level for ``--verbose``."""
    global _global_error_handler
    _global_error_handler = ErrorHandler(logger_name, log_level)
    return _global_error_handler


def log_parsing_error(
    message: str,
    module: str,
    function: str,
    file_path: Optional[str] = None,
    exception: Optional[Exception] = None,
) -> ErrorContext:
    """Report a manifest that could not be parsed."""
    details = {"file": Path(file_path).name} if file_path else {}
    return get_error_handler().report(
        ErrorLevel.ERROR,
        ErrorCategory.PARSING,
        message,
        module,
        function,
        details=details,
        exception=exception,
        hint="Check the manifest syntax",
    )


def log_network_error(
    message: str,
    module: str,
    function: str,
    url: Optional[str] = None,
    status_code: Optional[int] = None,
    exception: Optional[Exception] = None,
    level: ErrorLevel = ErrorLevel.ERROR,
) -> ErrorContext:
    """
    Report a registry or forge request that failed.

    Failures the caller recovers from (a fallback to ``go list``, a missing
    tag list) are reported at DEBUG so they only show with ``--verbose``.
    """
    details: Dict[str, Any] = {}
    if url is not None:
        details["url"] = sanitize_url(url)
    if status_code is not None:
        details["status"] = status_code
    if isinstance(exception, FetchError):
        details["retryable"] = exception.retryable

    hint = None
    if status_code in (401, 403):
        hint = "Set a registry token in .npmrc or a forge token in the environment"
    elif status_code == 429:
        hint = "Rate limited; retry later or authenticate to raise the limit"

    return get_error_handler().report(
        level,
        ErrorCategory.NETWORK,
        message,
        module,
        function,
        details=details,
        exception=exception,
        hint=hint,
    )


def log_credential_error(
    message: str,
    module: str,
    function: str,
    exception: Optional[Exception] = None,
) -> ErrorContext:
    """Report a credential entry that could not be used."""
    return get_error_handler().report(
        ErrorLevel.WARNING,
        ErrorCategory.CREDENTIAL,
        message,
        module,
        function,
        exception=exception,
        hint="Check the auth entries in your .npmrc",
    )
