import traceback
from typing import Any, Dict, List, Optional

from docker.errors import APIError
from pydantic import ValidationError

STATUS_KINDS: Dict[int, str] = {
    400: "BadRequest",
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    409: "Conflict",
    500: "InternalServerError",
}


class HttpError(Exception):
    """An error that maps onto an HTTP status and the JSON error envelope."""

    status = 500

    def __init__(self, message: str, details: Any = None, status: Optional[int] = None):
        super().__init__(message)
        if status is not None:
            self.status = status
        self.message = message
        self.details = details

    @property
    def kind(self) -> str:
        return STATUS_KINDS.get(self.status, "Error")

    def to_envelope(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.kind, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.status}, {self.message!r})"


class BadRequest(HttpError):
    status = 400

    def __init__(self, message: str = "Bad request", details: Any = None):
        super().__init__(message, details)


class Unauthorized(HttpError):
    status = 401

    def __init__(self, message: str = "Unauthorized", details: Any = None):
        super().__init__(message, details)


class Forbidden(HttpError):
    status = 403

    def __init__(self, message: str = "Forbidden", details: Any = None):
        super().__init__(message, details)


class NotFound(HttpError):
    status = 404

    def __init__(self, message: str = "Resource not found", details: Any = None):
        super().__init__(message, details)


class Conflict(HttpError):
    status = 409

    def __init__(self, message: str = "Conflict", details: Any = None):
        super().__init__(message, details)


class InternalServerError(HttpError):
    status = 500

    def __init__(self, message: str = "Internal server error", details: Any = None):
        super().__init__(message, details)


def from_code(status: Optional[int], message: Optional[str] = None, details: Any = None) -> HttpError:
    """Pass a status reported elsewhere (usually the container engine) through verbatim."""
    code = int(status) if status else 500
    if code < 400 or code > 599:
        code = 500
    return HttpError(message or "An error occurred", details, status=code)


def translate_docker_error(e: APIError) -> HttpError:
    message = e.explanation if isinstance(e.explanation, str) and e.explanation else str(e)
    return from_code(e.status_code, message)


class Success:
    __slots__ = ("payload", "status")

    def __init__(self, payload: Any = None, status: int = 200):
        self.payload = payload
        self.status = status

    def to_envelope(self) -> Dict[str, Any]:
        return {"success": True, "data": self.payload}

    def __repr__(self) -> str:
        return f"Success({self.status}, {self.payload!r})"


def ok(payload: Any = None) -> Success:
    return Success(payload, 200)


def created(payload: Any = None) -> Success:
    return Success(payload, 201)


def accepted(payload: Any = None) -> Success:
    return Success(payload, 202)


def no_content(payload: Any = None) -> Success:
    return Success(payload, 204)


def format_validation_error(e: ValidationError) -> List[Dict[str, Any]]:
    out = []
    for err in e.errors():
        out.append({
            "field": ".".join(str(p) for p in err.get("loc", ())),
            "message": err.get("msg"),
            "type": err.get("type"),
        })
    return out


def unclassified_envelope(e: BaseException, include_diagnostics: bool = False) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": False,
        "error": "InternalServerError",
        "message": str(e) or "An unexpected error occurred",
    }
    if include_diagnostics:
        body["details"] = {
            "exception": type(e).__name__,
            "stack": traceback.format_exception(type(e), e, e.__traceback__),
        }
    return body
