"""Error taxonomy for the gRPC invocation engine.

Every failure the engine can produce is one of these classes. Core
functions raise them at the point the failure is detected; the session
layer converts them into structured events so nothing escapes to the
interaction loop.
"""

from typing import Any, Dict, Optional


class PanggilError(Exception):
    """Base class for all engine errors."""

    kind = "error"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display or logging."""
        return {"kind": self.kind, "message": str(self)}


class GrpcConnectionError(PanggilError):
    """Dial failed, timed out, or no connection is live.

    Attributes:
        address: Target address of the failed attempt (if any).
        timed_out: Whether the dial deadline expired.
    """

    kind = "connection"

    def __init__(self, message: str, address: Optional[str] = None, timed_out: bool = False):
        super().__init__(message)
        self.address = address
        self.timed_out = timed_out

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.address:
            result["address"] = self.address
        if self.timed_out:
            result["timed_out"] = True
        return result


class StaleConnectionError(GrpcConnectionError):
    """An operation completed against an endpoint that was superseded.

    Attributes:
        elapsed_ms: Time spent on the call before the connection went away.
    """

    kind = "stale_connection"

    def __init__(self, message: str, address: Optional[str] = None, elapsed_ms: int = 0):
        super().__init__(message, address)
        self.elapsed_ms = elapsed_ms

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.elapsed_ms:
            result["elapsed_ms"] = self.elapsed_ms
        return result


class CatalogError(PanggilError):
    """Top-level service enumeration failed."""

    kind = "catalog"


class ResolutionError(PanggilError):
    """A "service/method" identifier does not resolve on the live endpoint."""

    kind = "resolution"


class ParseError(PanggilError):
    """Malformed JSON body or metadata text.

    Attributes:
        source: Which input failed to parse ("body" or "metadata").
    """

    kind = "parse"

    def __init__(self, message: str, source: str = "body"):
        super().__init__(message)
        self.source = source

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["source"] = self.source
        return result


class RpcError(PanggilError):
    """The remote call returned a failure status.

    Attributes:
        code: gRPC status code name (e.g. "UNAVAILABLE"), if known.
        details: Status details reported by the server.
        elapsed_ms: Time spent on the call before it failed.
    """

    kind = "rpc"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[str] = None,
        elapsed_ms: int = 0,
    ):
        super().__init__(message)
        self.code = code
        self.details = details
        self.elapsed_ms = elapsed_ms

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.code:
            result["code"] = self.code
        if self.details:
            result["details"] = self.details
        result["elapsed_ms"] = self.elapsed_ms
        return result


class InvocationTimeoutError(RpcError):
    """The invocation deadline expired."""

    kind = "timeout"


class DecodeError(PanggilError):
    """The response message could not be rendered as JSON.

    Attributes:
        elapsed_ms: Duration of the call that produced the response.
    """

    kind = "decode"

    def __init__(self, message: str, elapsed_ms: int = 0):
        super().__init__(message)
        self.elapsed_ms = elapsed_ms

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["elapsed_ms"] = self.elapsed_ms
        return result


__all__ = [
    "CatalogError",
    "DecodeError",
    "GrpcConnectionError",
    "InvocationTimeoutError",
    "PanggilError",
    "ParseError",
    "ResolutionError",
    "RpcError",
    "StaleConnectionError",
]
