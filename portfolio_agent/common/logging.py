from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlsplit, urlunsplit

URL_TOKEN_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
SECRET_ASSIGNMENT_RE = re.compile(
    r"(?i)((?:api[-_]?key|app[-_]?secret|private[-_]?key|authorization)\s*[:=]\s*)([^\s,;\"'&]+)"
)
SECRET_QUERY_RE = re.compile(r"(?i)([?&](?:api[-_]?key|token)=)([^&#\s]+)")
BASIC_AUTH_RE = re.compile(r"(?i)(basic\s+)([A-Za-z0-9+/=]{8,})")
SECRET_FIELD_NAMES = {"api_key", "app_secret", "private_key", "authorization", "privy_app_secret"}


def _sanitize_url_token(token: str) -> str:
    candidate = token
    trailing = ""
    while candidate and candidate[-1] in ".,);]}":
        trailing = candidate[-1] + trailing
        candidate = candidate[:-1]

    parsed = urlsplit(candidate)
    if parsed.scheme.lower() in {"http", "https"} and parsed.netloc:
        # userinfo and query strings may carry credentials
        host = parsed.hostname or ""
        if parsed.port:
            host = f"{host}:{parsed.port}"
        candidate = urlunsplit((parsed.scheme, host, parsed.path, "", ""))
    return f"{candidate}{trailing}"


def sanitize_text(value: str) -> str:
    masked = URL_TOKEN_RE.sub(lambda match: _sanitize_url_token(match.group(0)), value)
    masked = SECRET_QUERY_RE.sub(r"\1***", masked)
    masked = SECRET_ASSIGNMENT_RE.sub(r"\1***", masked)
    masked = BASIC_AUTH_RE.sub(r"\1***", masked)
    return masked


def sanitize_value(value: Any, *, key: str | None = None) -> Any:
    if key is not None and key.lower() in SECRET_FIELD_NAMES and value:
        return "***"
    if isinstance(value, str):
        return sanitize_text(value)
    if isinstance(value, dict):
        return {child_key: sanitize_value(child, key=str(child_key)) for child_key, child in value.items()}
    if isinstance(value, list):
        return [sanitize_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(sanitize_value(item) for item in value)
    return value


def log_event(
    logger: logging.Logger,
    *,
    level: str,
    event: str,
    message: str,
    **fields: Any,
) -> None:
    extra = {"event": sanitize_value(event)}
    extra.update({key: sanitize_value(value, key=key) for key, value in fields.items()})
    safe_message = sanitize_text(message)

    if level == "debug":
        logger.debug(safe_message, extra=extra)
        return
    if level == "info":
        logger.info(safe_message, extra=extra)
        return
    if level == "warning":
        logger.warning(safe_message, extra=extra)
        return
    if level == "error":
        logger.error(safe_message, extra=extra)
        return
    if level == "critical":
        logger.critical(safe_message, extra=extra)
        return
    if level == "exception":
        logger.exception(safe_message, extra=extra)
        return

    logger.log(logging.INFO, safe_message, extra=extra)


T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T]],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    **fields: Any,
) -> T | None:
    """Await ``action()`` for a best-effort side effect.

    Failures are logged under ``event`` and turn into ``None``. Cancellation
    is a ``BaseException`` and passes through untouched.
    """
    try:
        return await action()
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            error_type=type(error).__name__,
            **fields,
        )
        return None
