"""Error taxonomy for the ingestion pipeline."""

from __future__ import annotations

ERROR_TYPES = (
    "rate_limit",
    "server_error",
    "auth_error",
    "not_found",
    "http_error",
    "timeout",
    "parse_error",
    "network_error",
    "graphql_error",
    "unknown",
)

MESSAGE_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("timeout", ("timeout",)),
    ("rate_limit", ("rate limit", "too many")),
    ("parse_error", ("parse", "json")),
    ("network_error", ("network", "fetch")),
    ("graphql_error", ("graphql",)),
)


def classify_error(message: str | None, status_code: int | None = None) -> str:
    """Bucket a failure into one of ``ERROR_TYPES``.

    A status code wins over the message; text matching only applies when no
    code is given or the code is not an error code.
    """
    if status_code:
        if status_code == 429:
            return "rate_limit"
        if status_code >= 500:
            return "server_error"
        if status_code in (401, 403):
            return "auth_error"
        if status_code == 404:
            return "not_found"
        if status_code >= 400:
            return "http_error"
    lowered = (message or "").lower()
    for error_type, phrases in MESSAGE_PATTERNS:
        if any(phrase in lowered for phrase in phrases):
            return error_type
    return "unknown"


class MenuwatchError(RuntimeError):
    pass


class NormalizationError(MenuwatchError):
    """Raw identity fields could not be folded into a canonical key."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class MaterializationError(MenuwatchError):
    """The current inventory upsert failed after the snapshot was logged."""

    def __init__(self, message: str, *, snapshot_id: int) -> None:
        super().__init__(message)
        self.snapshot_id = snapshot_id


class ScrapeFailure(MenuwatchError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = classify_error(message, status_code)


class ConflictError(MenuwatchError):
    """Two writers collided on the same unique key."""


class EntryNotFoundError(MenuwatchError, LookupError):
    pass
