"""Request building and invocation against a live endpoint.

Turns user-typed JSON (body and metadata) into a schema-typed call,
executes it on the endpoint's channel with a fixed deadline, and decodes
the response back to indented JSON. Malformed input is rejected before any
network activity; the elapsed time is measured for every call that reaches
the network, whether it succeeds or fails.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import grpc
from google.protobuf import json_format, message_factory
from google.protobuf.descriptor import Descriptor, MethodDescriptor
from google.protobuf.descriptor_pool import DescriptorPool
from google.protobuf.message import Message

from .connection import Endpoint
from .errors import (
    DecodeError,
    InvocationTimeoutError,
    ParseError,
    RpcError,
    StaleConnectionError,
)

logger = logging.getLogger(__name__)


# Invocation deadline in seconds. Not retried.
INVOKE_TIMEOUT = 30.0

Metadata = List[Tuple[str, Union[str, bytes]]]


@dataclass
class InvocationResponse:
    """A decoded response.

    Attributes:
        json_text: Indented JSON rendering of the response. Server-streaming
            calls render as a JSON array of messages.
        elapsed_ms: Call duration in milliseconds.
    """
    json_text: str
    elapsed_ms: int


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def format_json(text: str, source: str = "body") -> str:
    """Re-indent JSON text with two spaces.

    Raises:
        ParseError: If text is not valid JSON.
    """
    try:
        data = json.loads(text)
    except ValueError as e:
        raise ParseError(f"Invalid JSON: {e}", source=source) from e
    return json.dumps(data, indent=2, ensure_ascii=False)


def build_message(
    schema: Descriptor,
    body_text: Optional[str],
    pool: Optional[DescriptorPool] = None,
) -> Message:
    """Parse a JSON body into a dynamic message of the given schema.

    A blank body yields an empty message.

    Args:
        schema: Input message descriptor.
        body_text: Request body JSON text.
        pool: Descriptor pool used to resolve Any payloads.

    Raises:
        ParseError: If the body is not valid JSON for the schema.
    """
    message = message_factory.GetMessageClass(schema)()
    if not body_text or not body_text.strip():
        return message

    try:
        json_format.Parse(body_text, message, descriptor_pool=pool)
    except (json_format.ParseError, TypeError, ValueError) as e:
        logger.error(f"Failed to parse gRPC request body JSON: {e}")
        raise ParseError(f"Error parsing request body JSON: {e}", source="body") from e
    return message


def build_metadata(metadata_text: Optional[str]) -> Metadata:
    """Parse metadata JSON text into a list of (key, value) pairs.

    The text must be a JSON object. Each value is a string or a list of
    strings; a list adds one pair per element. Keys are lower-cased. Keys
    ending in "-bin" carry their value as UTF-8 bytes.

    Raises:
        ParseError: If the text is not an object of strings.
    """
    if not metadata_text or not metadata_text.strip():
        return []

    try:
        data = json.loads(metadata_text)
    except ValueError as e:
        logger.error(f"Failed to parse gRPC metadata JSON: {e}")
        raise ParseError(f"Error parsing metadata JSON: {e}", source="metadata") from e

    if not isinstance(data, dict):
        raise ParseError("Error parsing metadata JSON: expected an object", source="metadata")

    pairs: Metadata = []
    for key, value in data.items():
        values = value if isinstance(value, list) else [value]
        for item in values:
            if not isinstance(item, str):
                raise ParseError(
                    f"Error parsing metadata JSON: value for '{key}' must be a string "
                    f"or a list of strings",
                    source="metadata",
                )
            name = key.lower()
            pairs.append((name, item.encode("utf-8") if name.endswith("-bin") else item))
    return pairs


def _method_path(method: MethodDescriptor) -> str:
    return f"/{method.containing_service.full_name}/{method.name}"


def _translate_rpc_error(
    e: grpc.RpcError, endpoint: Endpoint, path: str, elapsed_ms: int
) -> Exception:
    if endpoint.closed:
        return StaleConnectionError(
            f"Connection to {endpoint.address} closed during {path}",
            endpoint.address,
            elapsed_ms=elapsed_ms,
        )

    code = e.code() if hasattr(e, "code") else None
    details = e.details() if hasattr(e, "details") else str(e)
    code_name = code.name if code is not None else "UNKNOWN"
    logger.error(f"gRPC call {path} failed: {code_name}: {details}")

    if code == grpc.StatusCode.DEADLINE_EXCEEDED:
        return InvocationTimeoutError(
            f"RPC Error: deadline of {INVOKE_TIMEOUT:g}s exceeded",
            code=code_name,
            details=details,
            elapsed_ms=elapsed_ms,
        )
    return RpcError(
        f"RPC Error: {code_name}: {details}",
        code=code_name,
        details=details,
        elapsed_ms=elapsed_ms,
    )


def invoke(
    endpoint: Endpoint,
    method: MethodDescriptor,
    message: Message,
    metadata: Optional[Metadata] = None,
    timeout: float = INVOKE_TIMEOUT,
) -> InvocationResponse:
    """Invoke a method on the endpoint and decode the response.

    Args:
        endpoint: Live endpoint the method was resolved on.
        method: Method descriptor from the endpoint's pool.
        message: Request built with build_message().
        metadata: Pairs built with build_metadata().
        timeout: Call deadline in seconds.

    Returns:
        InvocationResponse with the JSON text and the elapsed time.

    Raises:
        StaleConnectionError: If the endpoint is closed before or during
            the call.
        RpcError: If the server returned a failure status, or the method
            uses client-side streaming.
        InvocationTimeoutError: If the deadline expired.
        DecodeError: If the response could not be rendered as JSON.
    """
    if endpoint.closed:
        raise StaleConnectionError(
            f"Connection to {endpoint.address} is no longer active", endpoint.address
        )

    path = _method_path(method)
    if method.client_streaming:
        raise RpcError(f"{path}: client and bidirectional streaming calls are not supported")

    output_class = message_factory.GetMessageClass(method.output_type)
    call_kwargs = {
        "request_serializer": lambda m: m.SerializeToString(),
        "response_deserializer": output_class.FromString,
    }

    logger.info(f"Invoking gRPC method: {path}")
    start = time.monotonic()
    try:
        if method.server_streaming:
            call = endpoint.channel.unary_stream(path, **call_kwargs)
            responses = list(call(message, metadata=metadata or None, timeout=timeout))
        else:
            call = endpoint.channel.unary_unary(path, **call_kwargs)
            responses = [call(message, metadata=metadata or None, timeout=timeout)]
    except grpc.RpcError as e:
        raise _translate_rpc_error(e, endpoint, path, _elapsed_ms(start)) from e
    except ValueError as e:
        # grpc raises ValueError when the channel was closed underneath us.
        raise StaleConnectionError(
            f"Connection to {endpoint.address} closed during {path}",
            endpoint.address,
            elapsed_ms=_elapsed_ms(start),
        ) from e
    elapsed_ms = _elapsed_ms(start)

    pool = endpoint.reflection.pool
    try:
        if method.server_streaming:
            rendered = [json_format.MessageToDict(r, descriptor_pool=pool) for r in responses]
            json_text = json.dumps(rendered, indent=2, ensure_ascii=False)
        else:
            json_text = json_format.MessageToJson(responses[0], indent=2, descriptor_pool=pool)
    except (json_format.SerializeToJsonError, TypeError, ValueError, KeyError) as e:
        logger.error(f"Failed to marshal gRPC response JSON: {e}")
        raise DecodeError(f"Error formatting response JSON: {e}", elapsed_ms=elapsed_ms) from e

    logger.info(f"gRPC call to {path} successful. Duration: {elapsed_ms}ms")
    return InvocationResponse(json_text=json_text, elapsed_ms=elapsed_ms)
