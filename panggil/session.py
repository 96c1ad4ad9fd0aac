"""Interactive session: the engine as seen from the UI layer.

A Session owns the ConnectionManager, a background worker pool, the
current catalog and the per-method body cache. Every network-facing
operation (dial, reflection, invocation) runs on a worker thread; its
completion is posted to a single FIFO update queue. The UI thread applies
queued updates one at a time with process_updates(), so catalog
replacement, template delivery and result display never race with each
other and are applied in completion order.

Usage:
    class Printer(SessionListener):
        def invocation_completed(self, entry, result):
            print(result.response_json or result.error)

    session = Session(listener=Printer())
    session.connect("localhost:8081")
    ...
    session.process_updates()   # call from the UI loop
"""

import logging
import queue
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, List, Optional, TypeVar

import grpc

from .body_cache import BodyCache
from .catalog import list_methods, resolve_method
from .config import ClientConfig
from .connection import ConnectionManager, Endpoint
from .errors import GrpcConnectionError, PanggilError, StaleConnectionError
from .invoker import INVOKE_TIMEOUT, InvocationResponse, build_message, build_metadata, invoke
from .matcher import find
from .template import render_template
from .types import CatalogEntry, ConnectionState, InvocationResult, SavedCall

logger = logging.getLogger(__name__)

T = TypeVar('T')

Update = Callable[[], None]


class UpdateQueue:
    """FIFO of completed-work updates, applied on the UI thread.

    Worker threads post() updates; the UI thread calls drain(). Updates are
    applied one at a time in the order they were posted, which is the order
    the work completed in.
    """

    def __init__(self):
        self._queue: "queue.Queue[Update]" = queue.Queue()
        self._wakeup: Optional[Callable[[], None]] = None

    def set_wakeup(self, wakeup: Optional[Callable[[], None]]) -> None:
        """Set a thread-safe callable run after every post().

        Lets an event loop schedule a drain, e.g.
        ``lambda: loop.call_soon_threadsafe(session.process_updates)``.
        """
        self._wakeup = wakeup

    def post(self, update: Update) -> None:
        self._queue.put(update)
        if self._wakeup:
            self._wakeup()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def drain(self, block: bool = False, timeout: Optional[float] = None) -> int:
        """Apply queued updates.

        Args:
            block: Wait for at least one update before returning.
            timeout: Maximum wait in seconds when block is True.

        Returns:
            Number of updates applied.
        """
        applied = 0
        if block:
            try:
                update = self._queue.get(timeout=timeout)
            except queue.Empty:
                return 0
            update()
            applied += 1

        while True:
            try:
                update = self._queue.get_nowait()
            except queue.Empty:
                break
            update()
            applied += 1
        return applied


class SessionListener:
    """Receives session events on the UI thread.

    Subclass and override what the UI renders; the defaults ignore events.
    """

    def connection_state_changed(self, state: ConnectionState, detail: str) -> None:
        pass

    def catalog_updated(self, entries: List[CatalogEntry]) -> None:
        pass

    def search_results(self, query: str, entries: List[CatalogEntry]) -> None:
        pass

    def template_ready(self, entry: CatalogEntry, json_text: str) -> None:
        pass

    def invocation_completed(self, entry: CatalogEntry, result: InvocationResult) -> None:
        pass

    def saved_call_loaded(self, saved: SavedCall) -> None:
        pass

    def error_reported(self, operation: str, error: PanggilError) -> None:
        pass


class Session:
    """One user's gRPC workbench.

    Attributes:
        manager: The connection manager (owns the live endpoint).
        state: Current connection state.
        catalog: Entries of the live endpoint, in discovery order.
        selected: The currently selected catalog entry, or None.
        last_query: Last search query, or None if no search was issued.
        search_results: Results of the last search.
        body_cache: Per-method body cache.
    """

    def __init__(
        self,
        listener: Optional[SessionListener] = None,
        config: Optional[ClientConfig] = None,
        body_cache: Optional[BodyCache] = None,
        channel_factory: Optional[Callable[[str], grpc.Channel]] = None,
    ):
        self._config = config or ClientConfig()
        self._listener = listener or SessionListener()
        self._updates = UpdateQueue()
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix="panggil",
        )
        self._manager = ConnectionManager(
            on_state_change=self._on_state_change,
            channel_factory=channel_factory,
        )
        self._body_cache = body_cache if body_cache is not None else BodyCache()
        self._catalog: List[CatalogEntry] = []
        self._selected: Optional[CatalogEntry] = None
        self._last_query: Optional[str] = None
        self._search_results: List[CatalogEntry] = []
        self._pending_saved: Optional[SavedCall] = None
        self._closed = False

    # === Properties ===

    @property
    def manager(self) -> ConnectionManager:
        return self._manager

    @property
    def state(self) -> ConnectionState:
        return self._manager.state

    @property
    def catalog(self) -> List[CatalogEntry]:
        return list(self._catalog)

    @property
    def selected(self) -> Optional[CatalogEntry]:
        return self._selected

    @property
    def last_query(self) -> Optional[str]:
        return self._last_query

    @property
    def search_results(self) -> List[CatalogEntry]:
        return list(self._search_results)

    @property
    def body_cache(self) -> BodyCache:
        return self._body_cache

    @property
    def updates(self) -> UpdateQueue:
        return self._updates

    def process_updates(self, block: bool = False, timeout: Optional[float] = None) -> int:
        """Apply completed work. Call from the UI thread only."""
        return self._updates.drain(block=block, timeout=timeout)

    # === Background plumbing ===

    def _on_state_change(self, state: ConnectionState, detail: str) -> None:
        self._updates.post(partial(self._listener.connection_state_changed, state, detail))

    def _report(self, operation: str, error: PanggilError) -> None:
        self._listener.error_reported(operation, error)

    def _run(
        self,
        work: Callable[[], T],
        on_done: Callable[[Optional[T], Optional[PanggilError]], None],
    ) -> Future:
        """Run work on a worker and post its completion to the update queue.

        A completion is posted for every outcome; exceptions outside the
        error taxonomy are wrapped in PanggilError.
        """
        def task():
            try:
                value = work()
            except PanggilError as e:
                self._updates.post(partial(on_done, None, e))
                raise
            except Exception as e:
                logger.error(f"Background task failed: {e}", exc_info=True)
                error = PanggilError(f"Unexpected error: {e}")
                self._updates.post(partial(on_done, None, error))
                raise error from e
            self._updates.post(partial(on_done, value, None))
            return value

        return self._executor.submit(task)

    @staticmethod
    def _failed(error: PanggilError) -> Future:
        future: Future = Future()
        future.set_exception(error)
        return future

    def _bound_endpoint(self, operation: str, on_missing: Optional[Callable[[PanggilError], None]] = None):
        """Endpoint to bind new work to, reporting if there is none."""
        try:
            return self._manager.current()
        except GrpcConnectionError as e:
            if on_missing:
                self._updates.post(partial(on_missing, e))
            else:
                self._updates.post(partial(self._report, operation, e))
            raise

    # === Connection ===

    def connect(self, address: Optional[str] = None) -> Future:
        """Connect to a server and build its catalog in the background.

        Any live connection is torn down first; the current catalog is
        invalidated immediately.

        Args:
            address: host:port. Defaults to the configured default server.

        Returns:
            Future resolving to the new catalog entries.
        """
        address = address or self._config.default_server
        self._catalog = []
        self._selected = None
        self._pending_saved = None
        self._updates.post(partial(self._listener.catalog_updated, []))

        def work():
            endpoint = self._manager.connect(address)
            return endpoint, list_methods(endpoint)

        return self._run(work, self._deliver_connect)

    def _deliver_connect(self, value, error: Optional[PanggilError]) -> None:
        if error is None:
            endpoint, entries = value
            try:
                self._manager.ensure_current(endpoint)
            except StaleConnectionError as e:
                error = e
        if error is not None:
            self._pending_saved = None
            self._report("connect", error)
            return

        self._catalog = entries
        services = {entry.split("/", 1)[0] for entry in entries}
        self._listener.catalog_updated(list(entries))
        self._listener.connection_state_changed(
            ConnectionState.CONNECTED,
            f"Connected to {endpoint.address}. Found {len(services)} services.",
        )

        if self._pending_saved is not None:
            saved, self._pending_saved = self._pending_saved, None
            self.select_method(saved.method)

    def disconnect(self) -> None:
        """Close the live connection and clear the catalog."""
        self._manager.disconnect()
        self._catalog = []
        self._selected = None
        self._updates.post(partial(self._listener.catalog_updated, []))

    # === Search and selection ===

    def search(self, query: str) -> List[CatalogEntry]:
        """Fuzzy-search the catalog and publish the results.

        An empty query lists everything. A query that matches nothing
        publishes an empty list, which differs from last_query being None
        (no search issued yet).
        """
        self._last_query = query
        self._search_results = find(query, self._catalog)
        self._listener.search_results(query, list(self._search_results))
        return list(self._search_results)

    def select_method(self, entry: CatalogEntry, current_body: Optional[str] = None) -> Future:
        """Select a method and generate its template.

        The body being edited for the previously selected method is cached,
        and the cached body for entry (if any) seeds the new template.

        Args:
            entry: Method to select.
            current_body: Body text currently in the editor.
        """
        if self._selected and self._selected != entry and current_body is not None:
            self._body_cache.put(self._selected, current_body)
        self._selected = entry
        return self.generate_template(entry, self._body_cache.get(entry))

    def generate_template(self, entry: CatalogEntry, body_text: str = "") -> Future:
        """Synthesize a request template for entry in the background.

        Args:
            entry: Method whose input schema drives the template.
            body_text: Existing body to merge; invalid JSON counts as {}.

        Returns:
            Future resolving to the template JSON text.
        """
        try:
            endpoint = self._bound_endpoint("template")
        except GrpcConnectionError as e:
            return self._failed(e)

        def work() -> str:
            method = resolve_method(endpoint, entry)
            return render_template(method.input_type, body_text)

        return self._run(work, partial(self._deliver_template, entry, endpoint))

    def _deliver_template(
        self, entry: CatalogEntry, endpoint: Endpoint, text: Optional[str], error: Optional[PanggilError]
    ) -> None:
        if error is None:
            try:
                self._manager.ensure_current(endpoint)
            except StaleConnectionError as e:
                error = e
        if error is not None:
            self._report("template", error)
            return
        self._listener.template_ready(entry, text)

    # === Invocation ===

    def send(self, entry: CatalogEntry, body_text: str = "", metadata_text: str = "") -> Future:
        """Invoke entry with the given body and metadata in the background.

        Input errors (bad metadata, unknown method, bad body) are reported
        before any call is made. The listener always receives an
        InvocationResult, successful or not.

        Returns:
            Future resolving to the InvocationResponse.
        """
        deliver = partial(self._deliver_invocation, entry)
        try:
            endpoint = self._bound_endpoint(
                "invoke", on_missing=lambda e: deliver(None, None, e)
            )
        except GrpcConnectionError as e:
            return self._failed(e)

        def work() -> InvocationResponse:
            metadata = build_metadata(metadata_text)
            method = resolve_method(endpoint, entry)
            message = build_message(method.input_type, body_text, endpoint.reflection.pool)
            return invoke(endpoint, method, message, metadata, timeout=INVOKE_TIMEOUT)

        return self._run(work, partial(deliver, endpoint))

    def _deliver_invocation(
        self,
        entry: CatalogEntry,
        endpoint: Optional[Endpoint],
        response: Optional[InvocationResponse],
        error: Optional[PanggilError],
    ) -> None:
        if error is None and endpoint is not None:
            try:
                self._manager.ensure_current(endpoint)
            except StaleConnectionError as e:
                error = e
        if error is not None:
            result = InvocationResult.failure(error, elapsed_ms=getattr(response, "elapsed_ms", 0))
        else:
            result = InvocationResult.success(response.json_text, response.elapsed_ms)
        self._listener.invocation_completed(entry, result)

    # === Saved calls ===

    def load_saved_call(self, saved: SavedCall) -> Optional[Future]:
        """Load a saved call from the collections/history layer.

        The saved body is placed in the body cache for its method. If the
        saved server is not the live one, the session connects to it and
        selects the method once the catalog is ready; otherwise the method
        is selected right away.

        Returns:
            Future of the connect or template work, or None if the saved
            call has no method.
        """
        self._body_cache.put(saved.method, saved.body)
        self._listener.saved_call_loaded(saved)

        if not saved.method:
            return None

        endpoint = self._manager.endpoint
        if endpoint is not None and not endpoint.closed and endpoint.address == saved.server:
            return self.select_method(saved.method)

        # Completions are applied on this thread, so setting the pending
        # call after connect() cannot miss the connect delivery.
        future = self.connect(saved.server or None)
        self._pending_saved = saved
        return future

    # === Shutdown ===

    def close(self) -> None:
        """Disconnect, stop the worker pool, and persist the body cache."""
        if self._closed:
            return
        self._closed = True
        self._manager.disconnect()
        self._executor.shutdown(wait=False, cancel_futures=True)
        if self._config.persist_body_cache and self._body_cache.path:
            self._body_cache.save()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
