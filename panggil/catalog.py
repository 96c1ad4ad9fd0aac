"""Service catalog built from server reflection.

Flattens every service/method pair the server exposes into a list of
"<service>/<method>" entries, and resolves such entries back to method
descriptors for template synthesis and invocation.
"""

import logging
from typing import List

import grpc
from google.protobuf.descriptor import MethodDescriptor

from .connection import Endpoint
from .errors import CatalogError, ResolutionError, StaleConnectionError
from .reflection import REFLECTION_SERVICES, ReflectionError
from .types import CatalogEntry, make_entry, split_entry

logger = logging.getLogger(__name__)


def _stale(endpoint: Endpoint) -> StaleConnectionError:
    return StaleConnectionError(
        f"Connection to {endpoint.address} is no longer active", endpoint.address
    )


def _check_live(endpoint: Endpoint) -> None:
    if endpoint.closed:
        raise _stale(endpoint)


def list_methods(endpoint: Endpoint) -> List[CatalogEntry]:
    """List every method on the server as "<service>/<method>".

    Services that fail to resolve are logged and skipped; only a failure
    of the top-level enumeration fails the whole listing.

    Args:
        endpoint: Live endpoint to enumerate.

    Returns:
        Unique entries in discovery order (service order as reported by the
        server, then method declaration order). Reflection services are
        excluded.

    Raises:
        CatalogError: If the service enumeration failed.
        StaleConnectionError: If the endpoint was closed before or during
            the lookup.
    """
    _check_live(endpoint)
    try:
        services = endpoint.reflection.list_services()
    except ValueError as e:
        # grpc raises ValueError once the channel has been closed.
        raise _stale(endpoint) from e
    except (grpc.RpcError, ReflectionError) as e:
        if endpoint.closed:
            raise _stale(endpoint) from e
        logger.error(f"gRPC reflection ListServices failed: {e}")
        raise CatalogError(f"Failed to list services: {e}") from e

    entries: List[CatalogEntry] = []
    seen = set()
    for service_name in services:
        if service_name in REFLECTION_SERVICES:
            continue
        try:
            service = endpoint.reflection.resolve_service(service_name)
        except ValueError as e:
            raise _stale(endpoint) from e
        except (grpc.RpcError, ReflectionError) as e:
            if endpoint.closed:
                raise _stale(endpoint) from e
            logger.warning(f"Skipping service {service_name}: {e}")
            continue

        for method in service.methods:
            entry = make_entry(service_name, method.name)
            if entry in seen:
                continue
            seen.add(entry)
            entries.append(entry)

    logger.info(f"Catalog for {endpoint.address}: {len(entries)} methods")
    return entries


def resolve_method(endpoint: Endpoint, entry: CatalogEntry) -> MethodDescriptor:
    """Resolve a catalog entry to its method descriptor.

    Args:
        endpoint: Live endpoint that owns the schema.
        entry: "<service>/<method>" identifier.

    Returns:
        The method descriptor, borrowed from the endpoint's pool.

    Raises:
        ResolutionError: If the identifier is malformed, or the service or
            method is unknown to the server.
        StaleConnectionError: If the endpoint was closed before or during
            the lookup.
    """
    service_name, method_name = split_entry(entry)
    _check_live(endpoint)

    try:
        service = endpoint.reflection.resolve_service(service_name)
    except ValueError as e:
        raise _stale(endpoint) from e
    except (grpc.RpcError, ReflectionError) as e:
        if endpoint.closed:
            raise _stale(endpoint) from e
        logger.error(f"Failed to resolve gRPC service '{service_name}': {e}")
        raise ResolutionError(f"Error resolving service '{service_name}': {e}") from e

    method = service.methods_by_name.get(method_name)
    if method is None:
        logger.error(f"gRPC method '{method_name}' not found in service '{service_name}'")
        raise ResolutionError(f"Method '{method_name}' not found in service '{service_name}'")
    return method
