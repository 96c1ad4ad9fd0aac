"""gRPC server reflection client.

Discovers services and their schemas on a server that exposes the standard
reflection service. The protocol version is auto-detected on first use:
``grpc.reflection.v1`` is tried first and ``grpc.reflection.v1alpha`` is
used when the server reports UNIMPLEMENTED. Both versions share the same
message layout, so the v1alpha message classes shipped with
``grpcio-reflection`` are used for either path.

File descriptors are fetched lazily, one service at a time, and added with
their dependencies to a descriptor pool private to this client. Message and
method descriptors handed out by the client belong to that pool and stay
valid for as long as the client is alive.

Usage:
    channel = grpc.insecure_channel("localhost:8081")
    client = ReflectionClient(channel)
    for name in client.list_services():
        service = client.resolve_service(name)
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional, Set

import grpc
from google.protobuf import descriptor_pool
from google.protobuf.descriptor import ServiceDescriptor
from google.protobuf.descriptor_pb2 import FileDescriptorProto
from grpc_reflection.v1alpha import reflection_pb2

logger = logging.getLogger(__name__)


REFLECTION_V1 = "grpc.reflection.v1.ServerReflection"
REFLECTION_V1ALPHA = "grpc.reflection.v1alpha.ServerReflection"
REFLECTION_SERVICES = frozenset({REFLECTION_V1, REFLECTION_V1ALPHA})
REFLECTION_METHOD = "ServerReflectionInfo"

# Per-request deadline for reflection traffic, in seconds.
REFLECTION_TIMEOUT = 10.0


class ReflectionError(Exception):
    """Reflection request failed or returned an error response."""
    pass


class ReflectionClient:
    """Reflection handle bound to one channel.

    Thread-safe: resolution of new files is serialized with a lock, so
    concurrent template synthesis and invocation for different methods can
    share one client.

    Attributes:
        pool: Descriptor pool holding every file resolved so far.
        protocol: Reflection service name in use, or None before the first
            successful request.
    """

    def __init__(self, channel: grpc.Channel, timeout: float = REFLECTION_TIMEOUT):
        """Initialize the reflection client.

        Args:
            channel: An already-connected channel. Not owned by the client.
            timeout: Deadline for each reflection request in seconds.
        """
        self._channel = channel
        self._timeout = timeout
        self._pool = descriptor_pool.DescriptorPool()
        self._loaded_files: Set[str] = set()
        self._protocol: Optional[str] = None
        self._lock = threading.RLock()

    @property
    def pool(self) -> descriptor_pool.DescriptorPool:
        return self._pool

    @property
    def protocol(self) -> Optional[str]:
        return self._protocol

    # === Transport ===

    def _call(self, service: str, request: reflection_pb2.ServerReflectionRequest):
        stream = self._channel.stream_stream(
            f"/{service}/{REFLECTION_METHOD}",
            request_serializer=reflection_pb2.ServerReflectionRequest.SerializeToString,
            response_deserializer=reflection_pb2.ServerReflectionResponse.FromString,
        )
        # Drain the stream so the call completes once the request side closes.
        return list(stream(iter([request]), timeout=self._timeout))

    def _request(
        self, request: reflection_pb2.ServerReflectionRequest
    ) -> reflection_pb2.ServerReflectionResponse:
        """Send one reflection request, detecting the protocol if needed.

        Raises:
            ReflectionError: If the server returned no response or an
                error response.
            grpc.RpcError: If the call itself failed.
        """
        candidates = [self._protocol] if self._protocol else [REFLECTION_V1, REFLECTION_V1ALPHA]

        responses = None
        for index, service in enumerate(candidates):
            try:
                responses = self._call(service, request)
            except grpc.RpcError as e:
                fallback_left = index + 1 < len(candidates)
                if fallback_left and e.code() == grpc.StatusCode.UNIMPLEMENTED:
                    logger.debug(f"{service} not implemented, trying next protocol")
                    continue
                raise
            if self._protocol is None:
                self._protocol = service
                logger.debug(f"Using reflection protocol {service}")
            break

        if not responses:
            raise ReflectionError("Reflection stream closed without a response")

        response = responses[0]
        if response.HasField("error_response"):
            err = response.error_response
            raise ReflectionError(
                f"Reflection error {err.error_code}: {err.error_message}"
            )
        return response

    # === Listing ===

    def list_services(self) -> List[str]:
        """List fully qualified service names exposed by the server.

        Returns:
            Service names in the order the server reports them, including
            the reflection service itself.
        """
        request = reflection_pb2.ServerReflectionRequest(list_services="")
        response = self._request(request)
        if not response.HasField("list_services_response"):
            raise ReflectionError("Unexpected reply to list_services")
        return [svc.name for svc in response.list_services_response.service]

    # === Resolution ===

    def _parse_files(
        self, response: reflection_pb2.ServerReflectionResponse
    ) -> List[FileDescriptorProto]:
        if not response.HasField("file_descriptor_response"):
            raise ReflectionError("Unexpected reply, expected file descriptors")
        files = []
        for proto_bytes in response.file_descriptor_response.file_descriptor_proto:
            fd = FileDescriptorProto()
            fd.ParseFromString(proto_bytes)
            files.append(fd)
        return files

    def _file_containing_symbol(self, symbol: str) -> List[FileDescriptorProto]:
        logger.debug(f"Reflection: file_containing_symbol={symbol}")
        request = reflection_pb2.ServerReflectionRequest(file_containing_symbol=symbol)
        return self._parse_files(self._request(request))

    def _file_by_filename(self, filename: str) -> List[FileDescriptorProto]:
        logger.debug(f"Reflection: file_by_filename={filename}")
        request = reflection_pb2.ServerReflectionRequest(file_by_filename=filename)
        return self._parse_files(self._request(request))

    def _add_file(self, fd: FileDescriptorProto, batch: Dict[str, FileDescriptorProto]) -> None:
        """Add a file to the pool after its dependencies."""
        if fd.name in self._loaded_files:
            return

        for dep in fd.dependency:
            if dep in self._loaded_files:
                continue
            if dep not in batch:
                for fetched in self._file_by_filename(dep):
                    batch.setdefault(fetched.name, fetched)
            if dep not in batch:
                raise ReflectionError(f"Server did not return dependency {dep}")
            self._add_file(batch[dep], batch)

        try:
            self._pool.AddSerializedFile(fd.SerializeToString())
        except (TypeError, ValueError) as e:
            raise ReflectionError(f"Could not load {fd.name}: {e}") from e
        self._loaded_files.add(fd.name)

    def _load_files(self, files: Iterable[FileDescriptorProto]) -> None:
        batch: Dict[str, FileDescriptorProto] = {}
        ordered = []
        for fd in files:
            batch.setdefault(fd.name, fd)
            ordered.append(fd)
        for fd in ordered:
            self._add_file(fd, batch)

    def resolve_service(self, name: str) -> ServiceDescriptor:
        """Resolve a service and every file its schema depends on.

        Args:
            name: Fully qualified service name.

        Returns:
            The service descriptor from this client's pool.

        Raises:
            ReflectionError: If the server does not know the service.
            grpc.RpcError: If a reflection call failed.
        """
        with self._lock:
            try:
                return self._pool.FindServiceByName(name)
            except KeyError:
                pass

            self._load_files(self._file_containing_symbol(name))

            try:
                return self._pool.FindServiceByName(name)
            except KeyError:
                raise ReflectionError(f"Service {name} not found in returned descriptors")
