"""Connection lifecycle for the gRPC invocation engine.

Owns the single live endpoint (channel plus reflection handle) and the
connection state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED

A connect() issued while a connection is live tears it down first (no
graceful drain), so the state passes through DISCONNECTED before
CONNECTING again. Every connect() and disconnect() bumps a generation
counter; work bound to an older generation is reported as stale rather
than silently running against a connection the user has left.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

import grpc

from .errors import GrpcConnectionError, StaleConnectionError
from .reflection import ReflectionClient
from .types import ConnectionState

logger = logging.getLogger(__name__)


# Blocking dial deadline in seconds. Not retried.
DIAL_TIMEOUT = 10.0

# Signature: (state, detail) -> None
StateCallback = Callable[[ConnectionState, str], None]
ChannelFactory = Callable[[str], grpc.Channel]


@dataclass
class Endpoint:
    """A live connection to one server.

    Attributes:
        address: Target address as typed by the user.
        channel: Connected channel (owned).
        reflection: Reflection handle bound to the channel (owned).
        generation: Connection generation this endpoint belongs to.
    """
    address: str
    channel: grpc.Channel
    reflection: ReflectionClient
    generation: int
    _closed: bool = field(default=False, repr=False)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.channel.close()
        logger.debug(f"Closed channel to {self.address}")


class ConnectionManager:
    """Owns the one live Endpoint and its state machine.

    Attributes:
        state: Current connection state.
        endpoint: The live endpoint, or None.
    """

    def __init__(
        self,
        on_state_change: Optional[StateCallback] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ):
        """Initialize the manager.

        Args:
            on_state_change: Invoked on every state transition with the new
                state and a human-readable detail line.
            channel_factory: Creates a channel for an address. Defaults to
                an insecure channel.
        """
        self._on_state_change = on_state_change
        self._channel_factory = channel_factory or grpc.insecure_channel
        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._endpoint: Optional[Endpoint] = None
        self._pending: Optional[grpc.Channel] = None
        self._generation = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def endpoint(self) -> Optional[Endpoint]:
        return self._endpoint

    def _set_state(self, state: ConnectionState, detail: str) -> None:
        # Caller holds the lock so transitions are reported in order.
        self._state = state
        logger.debug(f"Connection state -> {state.value}: {detail}")
        if self._on_state_change:
            self._on_state_change(state, detail)

    def _teardown_locked(self) -> None:
        """Close the live endpoint and any pending dial."""
        endpoint, self._endpoint = self._endpoint, None
        pending, self._pending = self._pending, None
        if endpoint:
            endpoint.close()
        if pending:
            pending.close()
        if self._state != ConnectionState.DISCONNECTED:
            detail = f"Disconnected from {endpoint.address}" if endpoint else "Disconnected"
            self._set_state(ConnectionState.DISCONNECTED, detail)

    def connect(self, address: str) -> Endpoint:
        """Dial a server and make it the live endpoint.

        Any prior connection is closed first. The dial blocks until the
        channel is ready or DIAL_TIMEOUT expires.

        Args:
            address: host:port of the server.

        Returns:
            The new live Endpoint.

        Raises:
            GrpcConnectionError: If the address is empty or the dial failed.
            StaleConnectionError: If another connect() or disconnect()
                superseded this one while it was dialing.
        """
        address = (address or "").strip()
        if not address:
            raise GrpcConnectionError("Server address is required")

        with self._lock:
            self._generation += 1
            generation = self._generation
            self._teardown_locked()
            self._set_state(ConnectionState.CONNECTING, f"Connecting to {address}...")
            try:
                channel = self._channel_factory(address)
            except ValueError as e:
                self._set_state(ConnectionState.DISCONNECTED, f"Failed to connect: {e}")
                raise GrpcConnectionError(f"Invalid address {address}: {e}", address) from e
            self._pending = channel

        logger.info(f"Dialing {address}")
        try:
            grpc.channel_ready_future(channel).result(timeout=DIAL_TIMEOUT)
        except (grpc.FutureTimeoutError, grpc.FutureCancelledError) as e:
            channel.close()
            with self._lock:
                if generation != self._generation:
                    raise StaleConnectionError(
                        f"Connection to {address} was superseded", address
                    ) from e
                self._pending = None
                timed_out = isinstance(e, grpc.FutureTimeoutError)
                message = (
                    f"Failed to connect to {address}: no response within {DIAL_TIMEOUT:g}s"
                    if timed_out else f"Failed to connect to {address}: dial cancelled"
                )
                logger.error(message)
                self._set_state(ConnectionState.DISCONNECTED, message)
            raise GrpcConnectionError(message, address, timed_out=timed_out) from e

        with self._lock:
            if generation != self._generation:
                channel.close()
                raise StaleConnectionError(f"Connection to {address} was superseded", address)
            self._pending = None
            endpoint = Endpoint(
                address=address,
                channel=channel,
                reflection=ReflectionClient(channel),
                generation=generation,
            )
            self._endpoint = endpoint
            self._set_state(ConnectionState.CONNECTED, f"Connected to {address}")

        logger.info(f"Connected to {address}")
        return endpoint

    def disconnect(self) -> None:
        """Close the live connection. Idempotent."""
        with self._lock:
            self._generation += 1
            self._teardown_locked()

    def current(self) -> Endpoint:
        """Return the live endpoint.

        Raises:
            GrpcConnectionError: If no connection is live.
        """
        endpoint = self._endpoint
        if endpoint is None or endpoint.closed:
            raise GrpcConnectionError("Not connected to any server.")
        return endpoint

    def is_current(self, endpoint: Endpoint) -> bool:
        """Whether endpoint is still the live connection."""
        with self._lock:
            return (
                not endpoint.closed
                and self._endpoint is endpoint
                and endpoint.generation == self._generation
            )

    def ensure_current(self, endpoint: Endpoint) -> None:
        """Raise if endpoint has been superseded.

        Raises:
            StaleConnectionError: If a later connect() or disconnect()
                replaced endpoint.
        """
        if not self.is_current(endpoint):
            raise StaleConnectionError(
                f"Connection to {endpoint.address} is no longer active", endpoint.address
            )
