from __future__ import annotations

from typing import Any, Dict, Optional

from .schemas.openai import ErrorBody, ErrorResponse


def error_type_for_status(status: int) -> str:
    t = "server_error"
    if status == 400:
        t = "invalid_request_error"
    elif status == 401:
        t = "authentication_error"
    elif status == 403:
        t = "permission_error"
    elif status == 404:
        t = "not_found_error"
    elif status == 429:
        t = "rate_limit_error"
    elif 400 < status < 500:
        t = "invalid_request_error"
    return t


def error_envelope(status: int, message: str, error_type: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    body = ErrorBody(message=message, type=error_type or error_type_for_status(status), code=status, **extra)
    return ErrorResponse(error=body).model_dump(exclude_none=True)


class ProxyError(Exception):
    """Failure that maps onto a single caller-visible JSON error envelope."""

    status_code: int = 500
    error_type: str = "server_error"

    def __init__(self, message: str, status_code: Optional[int] = None, error_type: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type

    def extra(self) -> Dict[str, Any]:
        return {}

    def to_envelope(self) -> Dict[str, Any]:
        return error_envelope(self.status_code, self.message, self.error_type, **self.extra())


class InvalidRequest(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


class UpstreamRejected(ProxyError):
    """Upstream answered with a 4xx/5xx status; that status is propagated."""

    def __init__(
        self,
        status_code: int,
        body: Any,
        requested_model: Optional[str] = None,
        resolved_model: Optional[str] = None,
    ) -> None:
        super().__init__(
            _upstream_message(body, status_code),
            status_code=status_code,
            error_type=error_type_for_status(status_code),
        )
        self.body = body
        self.requested_model = requested_model
        self.resolved_model = resolved_model

    def extra(self) -> Dict[str, Any]:
        return {
            "upstream_body": self.body,
            "debug": {
                "requested_model": self.requested_model,
                "resolved_model": self.resolved_model,
            },
        }


class UpstreamUnreachable(ProxyError):
    status_code = 500
    error_type = "server_error"


class StreamTransportFailure(ProxyError):
    """Upstream read failed after the caller already received stream headers."""

    status_code = 500
    error_type = "server_error"


def _upstream_message(body: Any, status_code: int) -> str:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        for key in ("message", "detail"):
            if body.get(key):
                return str(body[key])
    if isinstance(body, str) and body.strip():
        return body.strip()
    return f"Upstream returned HTTP {status_code}"
