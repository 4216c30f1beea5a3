from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class MegatoolError(Exception):
    """Base class for errors reported to the operator as ``Error: ...``."""


class UserError(MegatoolError):
    """Raised for bad arguments, unknown servers, or ambiguous selections."""


class NotFoundError(MegatoolError):
    """Raised when a binary, client config path, or registry entry is missing."""


class ConfigError(MegatoolError):
    """Raised when the registry or a client config file is not valid JSON.

    Attributes:
        path: The file that failed to parse, if applicable.
    """

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        super().__init__(message)


class StorageError(MegatoolError):
    """Raised when a state or config file cannot be read or written.

    Attributes:
        path: The file involved.
    """

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        super().__init__(message)


class UnsupportedClientError(UserError):
    """Raised when an MCP client identifier is not one the installer knows."""

    def __init__(self, client: str, reason: str | None = None) -> None:
        self.client = client
        msg = f"Unsupported client type: {client}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class ProcessError(MegatoolError):
    """Raised when signalling a process fails.

    Attributes:
        pid: The target process id.
        kind: One of ``not_found``, ``permission_denied``, ``other_io``.
    """

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    OTHER_IO = "other_io"

    def __init__(self, pid: int, kind: str, message: str) -> None:
        self.pid = pid
        self.kind = kind
        super().__init__(message)
