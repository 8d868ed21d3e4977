"""
Typed failures reported by the cache layer.

Every fetcher failure the manager surfaces is one of NetworkFailure,
HttpStatusFailure or ParseFailure. FetchAborted is raised to a caller
that aborted its own wait.
"""
from typing import Any, Dict, Optional


class FetchFailure(Exception):
    """Base class for upstream fetch failures."""

    def __init__(
        self,
        message: str,
        resource_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.resource_key = resource_key
        self.context = context or {}

    def __str__(self) -> str:
        if self.resource_key:
            return f"{self.message} (key={self.resource_key})"
        return self.message


class NetworkFailure(FetchFailure):
    """No response was received (connection error, timeout)."""


class HttpStatusFailure(FetchFailure):
    """The upstream answered with a non-2xx status."""

    def __init__(
        self,
        code: int,
        message: Optional[str] = None,
        resource_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message or f"HTTP {code}", resource_key, context)
        self.code = code

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.code < 500


class ParseFailure(FetchFailure):
    """The payload could not be decoded or did not match its schema."""


class FetchAborted(Exception):
    """The caller aborted while waiting for a fetch."""

    def __init__(self, resource_key: str):
        super().__init__(f"Fetch aborted by caller: {resource_key}")
        self.resource_key = resource_key
