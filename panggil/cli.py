"""Command-line entry point.

One-shot commands talk to the engine synchronously:

    panggil list localhost:8081
    panggil find localhost:8081 sayhello
    panggil template localhost:8081 helloworld.Greeter/SayHello
    panggil call localhost:8081 helloworld.Greeter/SayHello -d '{"name": "Bob"}'

The interactive shell drives a Session and drains its update queue after
every command:

    panggil shell localhost:8081

Bodies and metadata given as ``@path`` are read from that file.
"""

import argparse
import json
import logging
import os
import sys
from concurrent.futures import Future, wait
from pathlib import Path
from typing import Iterable, List, Optional

from dotenv import load_dotenv
from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document
from rich.console import Console
from rich.table import Table
from rich.text import Text

from .body_cache import BodyCache
from .catalog import list_methods, resolve_method
from .config import ClientConfig, load_client_config
from .connection import ConnectionManager
from .errors import PanggilError, ParseError
from .invoker import build_message, build_metadata, format_json, invoke
from .matcher import find
from .session import Session, SessionListener
from .template import render_template
from .types import CatalogEntry, ConnectionState, InvocationResult, SavedCall

logger = logging.getLogger(__name__)

console = Console()

# Longest a shell command waits for its background work, in seconds.
SHELL_WAIT = 45.0

_STATE_STYLES = {
    ConnectionState.DISCONNECTED: "yellow",
    ConnectionState.CONNECTING: "yellow",
    ConnectionState.CONNECTED: "green",
}


def _read_arg(value: Optional[str]) -> str:
    """Return value, or the contents of the file when given as @path."""
    if not value:
        return ""
    if value.startswith("@"):
        return Path(value[1:]).read_text(encoding="utf-8")
    return value


def _print_error(error: PanggilError) -> None:
    console.print(Text(str(error), style="red"))


def _print_result(result: InvocationResult) -> None:
    if result.ok:
        console.print(Text.assemble(
            ("Success!", "green"), " | Duration: ", (f"{result.elapsed_ms}ms", "cyan")
        ))
        console.print_json(result.response_json)
    else:
        error = result.error or {}
        console.print(Text.assemble(
            (error.get("message", "Request failed"), "red"),
            " | Duration: ", (f"{result.elapsed_ms}ms", "cyan"),
        ))


# === One-shot commands ===

def _connect(address: str) -> ConnectionManager:
    manager = ConnectionManager()
    manager.connect(address)
    return manager


def cmd_list(args: argparse.Namespace) -> int:
    manager = _connect(args.address)
    try:
        entries = list_methods(manager.current())
    finally:
        manager.disconnect()

    table = Table(title=f"Methods on {args.address}")
    table.add_column("Service", style="green")
    table.add_column("Method")
    for entry in entries:
        service, method = entry.split("/", 1)
        table.add_row(service, method)
    console.print(table)
    return 0


def cmd_find(args: argparse.Namespace) -> int:
    manager = _connect(args.address)
    try:
        entries = list_methods(manager.current())
    finally:
        manager.disconnect()

    matches = find(args.query, entries)
    if not matches:
        console.print(Text("No results found", style="dim"))
        return 1
    for entry in matches:
        console.print(entry)
    return 0


def cmd_template(args: argparse.Namespace) -> int:
    manager = _connect(args.address)
    try:
        method = resolve_method(manager.current(), args.method)
        console.print_json(render_template(method.input_type, _read_arg(args.body)))
    finally:
        manager.disconnect()
    return 0


def cmd_call(args: argparse.Namespace) -> int:
    body = _read_arg(args.data)
    metadata = build_metadata(_read_arg(args.metadata))

    manager = _connect(args.address)
    try:
        endpoint = manager.current()
        method = resolve_method(endpoint, args.method)
        message = build_message(method.input_type, body, endpoint.reflection.pool)
        try:
            response = invoke(endpoint, method, message, metadata)
        except PanggilError as e:
            _print_result(InvocationResult.failure(e))
            return 1
    finally:
        manager.disconnect()

    _print_result(InvocationResult.success(response.json_text, response.elapsed_ms))
    return 0


# === Interactive shell ===

SHELL_COMMANDS = [
    ("connect", "Connect to a server (connect [host:port])"),
    ("disconnect", "Close the current connection"),
    ("list", "List all methods"),
    ("find", "Fuzzy-search methods (find <query>)"),
    ("use", "Select a method (use <service/method | number>)"),
    ("body", "Show or set the request body (body [json])"),
    ("meta", "Show or set the metadata (meta [json])"),
    ("gen", "Regenerate the template, keeping body edits"),
    ("beautify", "Re-indent body and metadata"),
    ("clear", "Clear body and metadata"),
    ("send", "Invoke the selected method"),
    ("load", "Replay a saved call (load <file.json>)"),
    ("help", "Show commands"),
    ("quit", "Exit the shell"),
]


class MethodCompleter(Completer):
    """Completes shell commands, and method names after "use"."""

    def __init__(self, session: Session):
        self._session = session

    def get_completions(self, document: Document, complete_event) -> Iterable[Completion]:
        text = document.text_before_cursor
        if " " not in text:
            for name, description in SHELL_COMMANDS:
                if name.startswith(text):
                    yield Completion(name, start_position=-len(text), display_meta=description)
            return

        command, _, query = text.partition(" ")
        if command != "use":
            return
        for entry in find(query, self._session.catalog):
            yield Completion(entry, start_position=-len(query))


class ShellListener(SessionListener):
    """Renders session events and keeps the editor state of the shell."""

    def __init__(self):
        self.body = ""
        self.metadata = ""
        self.deliveries = 0

    def connection_state_changed(self, state: ConnectionState, detail: str) -> None:
        console.print(Text(detail, style=_STATE_STYLES[state]))

    def catalog_updated(self, entries: List[CatalogEntry]) -> None:
        for index, entry in enumerate(entries, 1):
            console.print(f"  [dim]{index:>3}[/dim] {entry}")

    def search_results(self, query: str, entries: List[CatalogEntry]) -> None:
        if not entries:
            console.print(Text("No results found", style="dim"))
        self.catalog_updated(entries)

    def template_ready(self, entry: CatalogEntry, json_text: str) -> None:
        self.body = json_text
        self.deliveries += 1
        console.print(Text.assemble("Selected: ", (entry, "green")))
        console.print_json(json_text)

    def invocation_completed(self, entry: CatalogEntry, result: InvocationResult) -> None:
        _print_result(result)

    def saved_call_loaded(self, saved: SavedCall) -> None:
        self.metadata = saved.metadata

    def error_reported(self, operation: str, error: PanggilError) -> None:
        self.deliveries += 1
        _print_error(error)


class Shell:
    """prompt_toolkit REPL around a Session."""

    def __init__(self, config: ClientConfig):
        self._config = config
        self._listener = ShellListener()
        cache = BodyCache(Path(config.body_cache_path) if config.persist_body_cache else None)
        cache.load()
        self._session = Session(listener=self._listener, config=config, body_cache=cache)

    @property
    def session(self) -> Session:
        return self._session

    @property
    def listener(self) -> ShellListener:
        return self._listener

    def _settle(self, future: Optional[Future]) -> None:
        if future is not None:
            wait([future], timeout=SHELL_WAIT)
        self._session.process_updates()

    def _resolve_choice(self, arg: str) -> Optional[CatalogEntry]:
        listing = self._session.search_results if self._session.last_query else self._session.catalog
        if arg.isdigit():
            index = int(arg) - 1
            return listing[index] if 0 <= index < len(listing) else None
        if arg in self._session.catalog:
            return arg
        matches = find(arg, self._session.catalog)
        return matches[0] if matches else (arg if "/" in arg else None)

    def _load(self, path: str) -> None:
        """Replay a saved call record from a JSON file."""
        try:
            record = json.loads(_read_arg(path if path.startswith("@") else f"@{path}"))
            saved = SavedCall.from_dict(record)
        except (OSError, ValueError, AttributeError) as e:
            console.print(Text(f"Cannot load saved call: {e}", style="red"))
            return

        delivered = self._listener.deliveries
        self._settle(self._session.load_saved_call(saved))
        # After a reconnect the method is selected from the connect delivery,
        # so its template arrives one round later.
        if self._session.selected == saved.method and self._listener.deliveries == delivered:
            self._session.process_updates(block=True, timeout=SHELL_WAIT)

    def handle(self, line: str) -> bool:
        """Run one command line. Returns False when the shell should exit."""
        command, _, arg = line.strip().partition(" ")
        arg = arg.strip()
        session = self._session
        listener = self._listener

        if command in ("quit", "exit"):
            return False
        if command == "help":
            for name, description in SHELL_COMMANDS:
                console.print(f"  [bold]{name:<11}[/bold] {description}")
        elif command == "connect":
            self._settle(session.connect(arg or None))
        elif command == "disconnect":
            session.disconnect()
            self._settle(None)
        elif command == "list":
            session.search("")
        elif command == "find":
            session.search(arg)
        elif command == "use":
            entry = self._resolve_choice(arg)
            if entry is None:
                console.print(Text(f"No method matches '{arg}'", style="red"))
            else:
                self._settle(session.select_method(entry, current_body=listener.body))
        elif command == "load":
            self._load(arg)
        elif command in ("body", "meta"):
            attr = "body" if command == "body" else "metadata"
            if arg:
                setattr(listener, attr, _read_arg(arg))
            else:
                console.print(getattr(listener, attr) or Text("(empty)", style="dim"))
        elif command == "gen":
            if session.selected is None:
                console.print(Text("No service/method selected.", style="red"))
            else:
                self._settle(session.generate_template(session.selected, listener.body))
        elif command == "beautify":
            try:
                if listener.body.strip():
                    listener.body = format_json(listener.body, source="body")
                if listener.metadata.strip():
                    listener.metadata = format_json(listener.metadata, source="metadata")
            except ParseError as e:
                _print_error(e)
        elif command == "clear":
            listener.body = ""
            listener.metadata = ""
        elif command == "send":
            if session.selected is None:
                console.print(Text("No service/method selected.", style="red"))
            else:
                console.print(Text(f"Sending request to {session.selected}...", style="yellow"))
                self._settle(session.send(session.selected, listener.body, listener.metadata))
        elif command:
            console.print(Text(f"Unknown command: {command} (try 'help')", style="red"))
        return True

    def run(self, address: Optional[str] = None) -> None:
        prompt = PromptSession(completer=MethodCompleter(self._session))
        if address:
            self.handle(f"connect {address}")
        else:
            console.print(Text("Not connected", style="yellow"))
        try:
            while True:
                try:
                    line = prompt.prompt("panggil> ")
                except KeyboardInterrupt:
                    continue
                except EOFError:
                    break
                if not self.handle(line):
                    break
        finally:
            self._session.close()


def _configure_shell_logging() -> None:
    """Send logs to PANGGIL_TRACE_LOG if set, otherwise drop them."""
    trace_log_path = os.environ.get("PANGGIL_TRACE_LOG")
    root_logger = logging.getLogger()
    if trace_log_path:
        os.makedirs(os.path.dirname(os.path.abspath(trace_log_path)), exist_ok=True)
        file_handler = logging.FileHandler(trace_log_path)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        ))
        root_logger.handlers = [file_handler]
        root_logger.setLevel(logging.DEBUG)
    else:
        # Log lines on stderr would corrupt the prompt.
        root_logger.handlers = [logging.NullHandler()]
        root_logger.setLevel(logging.CRITICAL + 1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="panggil",
        description="Call gRPC methods on any server with reflection enabled",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to .env file (default: .env)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )

    sub = parser.add_subparsers(dest="command")

    lp = sub.add_parser("list", help="List services and methods")
    lp.add_argument("address")
    lp.set_defaults(func=cmd_list)

    fp = sub.add_parser("find", help="Fuzzy-search methods")
    fp.add_argument("address")
    fp.add_argument("query")
    fp.set_defaults(func=cmd_find)

    tp = sub.add_parser("template", help="Print a request body template")
    tp.add_argument("address")
    tp.add_argument("method", help="service/method")
    tp.add_argument("--body", "-b", help="Existing body to merge (JSON or @file)")
    tp.set_defaults(func=cmd_template)

    cp = sub.add_parser("call", help="Invoke a method")
    cp.add_argument("address")
    cp.add_argument("method", help="service/method")
    cp.add_argument("--data", "-d", help="Request body (JSON or @file)")
    cp.add_argument("--metadata", "-m", help="Metadata object (JSON or @file)")
    cp.set_defaults(func=cmd_call)

    sp = sub.add_parser("shell", help="Interactive shell")
    sp.add_argument("address", nargs="?")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "shell":
        _configure_shell_logging()
        config = load_client_config(Path.cwd())
        Shell(config).run(args.address)
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except PanggilError as e:
        _print_error(e)
        return 1
    except OSError as e:
        console.print(Text(f"Error: {e}", style="red"))
        return 1


if __name__ == "__main__":
    sys.exit(main())
