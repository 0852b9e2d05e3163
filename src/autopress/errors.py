from __future__ import annotations

from typing import Any

CONFIGURATION = "configuration"
EXHAUSTION = "exhaustion"
TRANSIENT = "transient"
CONFLICT = "conflict"
DATA = "data"
NOT_FOUND = "not_found"


class PipelineError(Exception):
    """Failure carrying a machine-readable code plus a human-readable message.

    ``str(exc)`` is the code so callers can compare against it the same way
    they compare ``ValueError("not_found")`` style errors elsewhere.
    """

    kind = DATA

    def __init__(
        self,
        code: str,
        message: str | None = None,
        *,
        kind: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(code)
        self.code = code
        self.message = message or code.replace("_", " ")
        if kind:
            self.kind = kind
        self.context = dict(context or {})

    def __str__(self) -> str:
        return self.code

    def describe(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message, "kind": self.kind}
        if self.context:
            payload["context"] = self.context
        return payload


class ConfigurationError(PipelineError):
    kind = CONFIGURATION


class ExhaustionError(PipelineError):
    kind = EXHAUSTION


class TransientError(PipelineError):
    kind = TRANSIENT


class DataError(PipelineError):
    kind = DATA


class NotFoundError(PipelineError):
    kind = NOT_FOUND


class FetchError(PipelineError):
    """Content fetch failure.

    Codes: ``fetch_failed`` (network error or retries exhausted),
    ``invalid_url``, ``unsupported_content_type``, ``empty_response``, ``json_error``.
    """

    def __init__(
        self,
        code: str,
        message: str | None = None,
        *,
        url: str | None = None,
        status: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        kind = TRANSIENT if code == "fetch_failed" else DATA
        merged = dict(context or {})
        if url:
            merged.setdefault("url", url)
        if status is not None:
            merged.setdefault("status", status)
        super().__init__(code, message, kind=kind, context=merged)
        self.url = url
        self.status = status
