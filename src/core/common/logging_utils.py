"""
Logging utilities for the application.

This module provides utilities for logging, including:
- Redaction of bearer tokens, signed assertions and key material
- Test/production environment tagging
- Structured loggers for per-turn events
"""

import contextlib
import logging
import os
import re
import sys
from typing import Literal

import structlog


def _is_running_under_pytest() -> bool:
    """Detect if we're running under pytest.

    Returns:
        True if running under pytest, False otherwise
    """
    return "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST") is not None


def _get_environment_tag() -> str:
    """Get the environment tag for logging.

    Returns:
        'test' if running under pytest, 'prod' otherwise
    """
    return "test" if _is_running_under_pytest() else "prod"


class EnvironmentTaggingFilter(logging.Filter):
    """Logging filter that adds environment tags to log records."""

    def __init__(self) -> None:
        super().__init__()
        self._env_tag = _get_environment_tag()

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        record.env_tag = self._env_tag
        return True


class EnvironmentTaggingFormatter(logging.Formatter):
    """Logging formatter that includes environment tags."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        style: Literal["%", "{", "$"] = "%",
    ) -> None:
        if fmt is None:
            fmt = "%(asctime)s [%(levelname)-8s] [%(env_tag)s] %(name)s:%(lineno)d %(message)s"
        super().__init__(fmt, datefmt, style=style)

    def format(self, record: logging.LogRecord) -> str:
        # Records emitted before the filter was installed lack the tag.
        if not hasattr(record, "env_tag"):
            record.env_tag = _get_environment_tag()
        return super().format(record)


# Regular expressions for redacting sensitive information
BEARER_TOKEN_PATTERN = re.compile(r"Bearer\s+([a-zA-Z0-9._~+/-]+=*)")
# Google OAuth access tokens
GOOGLE_ACCESS_TOKEN_PATTERN = re.compile(r"\bya29\.[A-Za-z0-9._-]{10,}")
# Three base64url segments starting with an encoded JSON header
JWT_PATTERN = re.compile(r"\beyJ[A-Za-z0-9_-]{5,}\.[A-Za-z0-9_-]{5,}\.[A-Za-z0-9_-]+")
PRIVATE_KEY_PATTERN = re.compile(
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
    re.DOTALL,
)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger.

    Args:
        name: Optional logger name

    Returns:
        A structured logger
    """
    return structlog.get_logger(name)  # type: ignore


def redact(value: str, mask: str = "***") -> str:
    """Redact a sensitive value.

    Args:
        value: The value to redact
        mask: The mask to use

    Returns:
        The redacted value
    """
    if not value:
        return value

    # Keep first and last character
    if len(value) > 6:
        return f"{value[0:2]}{mask}{value[-2:]}"
    else:
        return mask


def redact_text(text: str, mask: str = "***") -> str:
    """Mask every bearer token, access token, assertion and key in ``text``."""
    if not text:
        return text
    text = PRIVATE_KEY_PATTERN.sub(mask, text)
    text = BEARER_TOKEN_PATTERN.sub(f"Bearer {mask}", text)
    text = JWT_PATTERN.sub(mask, text)
    return GOOGLE_ACCESS_TOKEN_PATTERN.sub(mask, text)


class ApiKeyRedactionFilter(logging.Filter):
    """Logging filter that redacts tokens and known secrets from log records.

    This filter will sanitize `record.msg` and `record.args` (if they are
    strings or containers of strings) replacing any secret occurrences with
    a mask.
    """

    def __init__(
        self, secrets: list[str] | set[str] | None = None, mask: str = "***"
    ) -> None:
        super().__init__()
        self.mask = mask
        keys = {k for k in (secrets or []) if k}
        self.patterns: list[re.Pattern] = []
        if keys:
            # Prefer longer matches
            escaped = sorted((re.escape(k) for k in keys), key=len, reverse=True)
            self.patterns.append(re.compile("|".join(escaped)))

    def _sanitize(self, obj: object) -> object:
        """Recursively sanitize strings inside common containers."""
        if isinstance(obj, str):
            s = redact_text(obj, self.mask)
            for pat in self.patterns:
                s = pat.sub(self.mask, s)
            return s
        if isinstance(obj, dict):
            return {k: self._sanitize(v) for k, v in obj.items()}
        if isinstance(obj, list | tuple):
            sanitized = [self._sanitize(v) for v in obj]
            return type(obj)(sanitized)
        return obj

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            if isinstance(record.msg, str):
                record.msg = self._sanitize(record.msg)  # type: ignore[assignment]

            if record.args:
                if isinstance(record.args, dict):
                    record.args = self._sanitize(record.args)  # type: ignore[assignment]
                elif isinstance(record.args, tuple):
                    record.args = tuple(self._sanitize(a) for a in record.args)

            for attr in ("message", "exc_text", "stack_info"):
                val = getattr(record, attr, None)
                if isinstance(val, str):
                    with contextlib.suppress(Exception):
                        setattr(record, attr, self._sanitize(val))
        except Exception:
            # Never let logging filtering raise
            return True
        return True


def install_environment_tagging() -> None:
    """Install environment tagging filter on the root logger and its handlers."""
    root = logging.getLogger()
    filter_instance = EnvironmentTaggingFilter()
    root.addFilter(filter_instance)

    for handler in list(root.handlers):
        handler.addFilter(filter_instance)
        if isinstance(handler.formatter, logging.Formatter) and not isinstance(
            handler.formatter, EnvironmentTaggingFormatter
        ):
            handler.setFormatter(
                EnvironmentTaggingFormatter(
                    fmt=handler.formatter._fmt, datefmt=handler.formatter.datefmt
                )
            )


def configure_logging_with_environment_tagging(
    level: int = logging.INFO,
    log_format: str | None = None,
    log_file: str | None = None,
) -> None:
    """Configure logging with environment tagging.

    Args:
        level: Logging level
        log_format: Optional log format string
        log_file: Optional log file path
    """
    if log_format is None:
        log_format = "%(asctime)s [%(levelname)-8s] [%(env_tag)s] %(name)s:%(lineno)d %(message)s"

    formatter = EnvironmentTaggingFormatter(fmt=log_format)

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    install_environment_tagging()
    configure_structlog()


def configure_structlog() -> None:
    """Route structlog events through the standard logging handlers.

    Turn events then share the root handlers, the environment tag and the
    redaction filters with every other log record.
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(
                key_order=["event"], drop_missing=True
            ),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def install_token_redaction_filter(
    secrets: list[str] | set[str] | None = None, mask: str = "***"
) -> ApiKeyRedactionFilter:
    """Install the redaction filter on the root logger and its handlers.

    Safe to call multiple times; each call adds one filter instance.
    """
    root = logging.getLogger()
    filter_instance = ApiKeyRedactionFilter(secrets or [], mask=mask)
    root.addFilter(filter_instance)
    # Records from child loggers bypass root filters, handlers do not.
    for handler in list(root.handlers):
        handler.addFilter(filter_instance)
    return filter_instance
