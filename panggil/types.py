"""Data types for the gRPC invocation engine.

Defines the connection state machine states, catalog entry helpers,
invocation results, and the saved-call record exchanged with the
collections/history layer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import PanggilError, ResolutionError


# A catalog entry is the plain string "<service>/<method>".
CatalogEntry = str


class ConnectionState(str, Enum):
    """Connection lifecycle states.

    Transitions:
        DISCONNECTED -> CONNECTING (on connect())
        CONNECTING -> CONNECTED (dial succeeded)
        CONNECTING -> DISCONNECTED (dial failed or superseded)
        CONNECTED -> DISCONNECTED (disconnect() or a new connect())
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Outcome(str, Enum):
    """Outcome of an invocation."""
    SUCCESS = "success"
    FAILURE = "failure"


def make_entry(service: str, method: str) -> CatalogEntry:
    """Build a catalog entry from its parts."""
    return f"{service}/{method}"


def split_entry(entry: CatalogEntry) -> Tuple[str, str]:
    """Split "<service>/<method>" into its parts.

    Raises:
        ResolutionError: If the identifier is not of the expected form.
    """
    parts = entry.split("/", 1) if entry else []
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ResolutionError(f"Invalid service/method format: {entry!r}")
    return parts[0], parts[1]


@dataclass
class InvocationResult:
    """Result of a single invocation, successful or not.

    Attributes:
        outcome: SUCCESS or FAILURE.
        elapsed_ms: Call duration in milliseconds (always populated).
        response_json: Indented response JSON (on success).
        error: Structured error (on failure).
    """
    outcome: Outcome
    elapsed_ms: int
    response_json: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @classmethod
    def success(cls, response_json: str, elapsed_ms: int) -> "InvocationResult":
        return cls(outcome=Outcome.SUCCESS, elapsed_ms=elapsed_ms, response_json=response_json)

    @classmethod
    def failure(cls, error: PanggilError, elapsed_ms: int = 0) -> "InvocationResult":
        elapsed = getattr(error, "elapsed_ms", elapsed_ms) or elapsed_ms
        return cls(outcome=Outcome.FAILURE, elapsed_ms=elapsed, error=error.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display."""
        result: Dict[str, Any] = {
            "outcome": self.outcome.value,
            "elapsed_ms": self.elapsed_ms,
        }
        if self.response_json is not None:
            result["response"] = self.response_json
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class SavedCall:
    """A saved gRPC call as persisted by the collections/history layer.

    The engine never stores these itself; it only accepts them as input
    when a saved call is re-run.

    Attributes:
        name: Display name.
        server: Target address.
        method: Fully qualified "service/method" entry.
        metadata: Metadata JSON text.
        body: Request body JSON text.
        timestamp: When the call was saved.
    """
    name: str
    server: str
    method: CatalogEntry
    metadata: str = ""
    body: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedCall":
        """Create SavedCall from a dictionary."""
        timestamp = data.get("time")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        elif not isinstance(timestamp, datetime):
            timestamp = datetime.now(timezone.utc)

        method = data.get("grpc_method") or data.get("method", "")
        return cls(
            name=data.get("name") or method,
            server=data.get("grpc_server") or data.get("server", ""),
            method=method,
            metadata=data.get("grpc_metadata") or data.get("metadata", ""),
            body=data.get("body", ""),
            timestamp=timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "type": "grpc",
            "grpc_server": self.server,
            "grpc_method": self.method,
            "grpc_metadata": self.metadata,
            "body": self.body,
            "time": self.timestamp.isoformat(),
        }
