from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class IdentigraphError(Exception):
    """Base typed error for identigraph.

    Goals:
    - Stable `code` for programmatic handling by callers.
    - Human-readable `message` for UI surfaces.
    - Optional `meta` payload for debugging (safe-to-expose only).
    """

    def __init__(
        self,
        *,
        code: str,
        message: str,
        status_code: int = 500,
        meta: dict[str, Any] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = int(status_code)
        self.meta = dict(meta or {})

    def to_public_dict(self, *, request_id: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "detail": self.message,
            "code": self.code,
        }
        if request_id:
            payload["request_id"] = request_id
        if self.meta:
            payload["meta"] = self.meta
        return payload


class NotFoundError(IdentigraphError):
    def __init__(self, *, message: str = "Not found", code: str = "resource.not_found", meta: dict[str, Any] | None = None):
        super().__init__(code=code, message=message, status_code=404, meta=meta)


class ConflictError(IdentigraphError):
    def __init__(
        self,
        *,
        message: str = "Conflict",
        code: str = "request.conflict",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=409, meta=meta)


class ValidationError(IdentigraphError):
    def __init__(
        self,
        *,
        message: str = "Validation error",
        code: str = "request.validation_error",
        meta: dict[str, Any] | None = None,
        status_code: int = 422,
    ):
        super().__init__(code=code, message=message, status_code=status_code, meta=meta)


class UpstreamError(IdentigraphError):
    def __init__(
        self,
        *,
        message: str = "Upstream service error",
        code: str = "upstream.error",
        meta: dict[str, Any] | None = None,
        status_code: int = 502,
    ):
        super().__init__(code=code, message=message, status_code=status_code, meta=meta)
