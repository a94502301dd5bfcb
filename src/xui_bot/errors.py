from __future__ import annotations


class XuiBotError(RuntimeError):
    """Base error; carries enough context to render without another lookup."""

    kind = "error"

    def __init__(self, message: str, *, server_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.server_id = server_id

    def __str__(self) -> str:
        if self.server_id:
            return f"[{self.server_id}] {self.message}"
        return self.message


class ConfigError(XuiBotError):
    kind = "config"


class AuthError(XuiBotError):
    kind = "auth"


class ApiError(XuiBotError):
    kind = "api"

    def __init__(self, message: str, *, server_id: str | None = None, status: int | None = None) -> None:
        super().__init__(message, server_id=server_id)
        self.status = status


class NotFoundError(XuiBotError):
    kind = "not_found"


class NetworkError(XuiBotError):
    kind = "network"


class StoreError(XuiBotError):
    kind = "store"
