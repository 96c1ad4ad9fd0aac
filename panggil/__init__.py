"""panggil - call gRPC methods on any server that exposes reflection.

The engine discovers services at runtime, offers fuzzy method search,
synthesizes editable JSON request templates from input schemas, and
invokes methods with dynamically built messages.

Usage:
    from panggil import ConnectionManager, list_methods, resolve_method

    manager = ConnectionManager()
    endpoint = manager.connect("localhost:8081")
    for entry in list_methods(endpoint):
        print(entry)
"""

from .catalog import list_methods, resolve_method
from .config import ClientConfig, load_client_config
from .connection import ConnectionManager, Endpoint
from .errors import (
    CatalogError,
    DecodeError,
    GrpcConnectionError,
    InvocationTimeoutError,
    PanggilError,
    ParseError,
    ResolutionError,
    RpcError,
    StaleConnectionError,
)
from .invoker import build_message, build_metadata, format_json, invoke
from .matcher import FuzzyMatcher, find
from .session import Session, SessionListener
from .template import render_template, synthesize
from .types import CatalogEntry, ConnectionState, InvocationResult, Outcome, SavedCall

__version__ = "0.1.0"

__all__ = [
    "CatalogEntry",
    "CatalogError",
    "ClientConfig",
    "ConnectionManager",
    "ConnectionState",
    "DecodeError",
    "Endpoint",
    "FuzzyMatcher",
    "GrpcConnectionError",
    "InvocationResult",
    "InvocationTimeoutError",
    "Outcome",
    "PanggilError",
    "ParseError",
    "ResolutionError",
    "RpcError",
    "SavedCall",
    "Session",
    "SessionListener",
    "StaleConnectionError",
    "build_message",
    "build_metadata",
    "find",
    "format_json",
    "invoke",
    "list_methods",
    "load_client_config",
    "render_template",
    "resolve_method",
    "synthesize",
]
