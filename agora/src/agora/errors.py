from __future__ import annotations

from typing import Any, List


class AgoraError(Exception):
    """Base error carrying the wire code and HTTP status for a failure."""

    code = "internal"
    status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_api_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class Unauthorized(AgoraError):
    code = "unauthorized"
    status = 401


class Forbidden(AgoraError):
    code = "forbidden"
    status = 403


class NotFound(AgoraError):
    code = "not_found"
    status = 404


class BadRequest(AgoraError):
    code = "invalid_request"
    status = 400


class Conflict(AgoraError):
    code = "conflict"
    status = 409


class InvalidPluginData(BadRequest):
    code = "invalid_plugin_data"

    def __init__(self, errors: List[str], message: str = "Invalid plugin data") -> None:
        super().__init__(message)
        self.errors = list(errors)

    def to_api_dict(self) -> dict[str, Any]:
        body = super().to_api_dict()
        body["errors"] = self.errors
        return body
