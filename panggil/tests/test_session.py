"""Tests for the Session update loop and its workflows."""

import json
import time
from unittest.mock import MagicMock

import pytest

import panggil.connection as connection
import panggil.session as session_module
from panggil.body_cache import BodyCache
from panggil.config import ClientConfig
from panggil.errors import (
    GrpcConnectionError,
    PanggilError,
    ParseError,
    ResolutionError,
    RpcError,
    StaleConnectionError,
)
from panggil.reflection import ReflectionClient
from panggil.session import Session, SessionListener, UpdateQueue
from panggil.types import ConnectionState, Outcome, SavedCall


class RecordingListener(SessionListener):
    """Records every event as (name, args)."""

    def __init__(self):
        self.events = []

    def connection_state_changed(self, state, detail):
        self.events.append(("state", (state, detail)))

    def catalog_updated(self, entries):
        self.events.append(("catalog", entries))

    def search_results(self, query, entries):
        self.events.append(("search", (query, entries)))

    def template_ready(self, entry, json_text):
        self.events.append(("template", (entry, json_text)))

    def invocation_completed(self, entry, result):
        self.events.append(("result", (entry, result)))

    def saved_call_loaded(self, saved):
        self.events.append(("saved", saved))

    def error_reported(self, operation, error):
        self.events.append(("error", (operation, error)))

    def of(self, name):
        return [args for kind, args in self.events if kind == name]


def drain_until(session, predicate, timeout=10.0):
    """Apply updates until predicate() holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while not predicate():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AssertionError("timed out waiting for session updates")
        session.process_updates(block=True, timeout=min(remaining, 0.5))


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def session(listener):
    s = Session(listener=listener, config=ClientConfig(persist_body_cache=False))
    yield s
    s.close()


@pytest.fixture
def connected(session, listener, greeter_server):
    """A session connected to the test server with updates applied."""
    session.connect(greeter_server).result(timeout=10)
    session.process_updates()
    listener.events.clear()
    return session


class TestUpdateQueue:
    """Tests for the serialized update channel."""

    def test_updates_applied_in_post_order(self):
        updates = UpdateQueue()
        seen = []
        for i in range(5):
            updates.post(lambda i=i: seen.append(i))
        assert updates.pending == 5
        assert updates.drain() == 5
        assert seen == [0, 1, 2, 3, 4]
        assert updates.pending == 0

    def test_blocking_drain_times_out(self):
        assert UpdateQueue().drain(block=True, timeout=0.05) == 0

    def test_wakeup_called_on_post(self):
        updates = UpdateQueue()
        wakeup = MagicMock()
        updates.set_wakeup(wakeup)
        updates.post(lambda: None)
        wakeup.assert_called_once_with()


class TestConnect:
    """Tests for Session.connect."""

    def test_connect_publishes_catalog(self, session, listener, greeter_server):
        endpoint, entries = session.connect(greeter_server).result(timeout=10)
        session.process_updates()

        assert listener.events[0] == ("catalog", [])
        assert listener.of("catalog")[-1] == entries
        assert session.catalog == entries
        assert "ptest.Greeter/SayHello" in entries

        state, detail = listener.of("state")[-1]
        assert state == ConnectionState.CONNECTED
        assert detail == f"Connected to {greeter_server}. Found 2 services."
        assert session.state == ConnectionState.CONNECTED

    def test_state_sequence(self, session, listener, greeter_server):
        session.connect(greeter_server).result(timeout=10)
        session.process_updates()
        states = [state for state, _ in listener.of("state")]
        assert states[0] == ConnectionState.CONNECTING
        assert states[-1] == ConnectionState.CONNECTED

    def test_failed_dial_reported(self, session, listener, monkeypatch):
        monkeypatch.setattr(connection, "DIAL_TIMEOUT", 0.2)
        future = session.connect("127.0.0.1:1")
        with pytest.raises(GrpcConnectionError):
            future.result(timeout=10)
        session.process_updates()

        operation, error = listener.of("error")[-1]
        assert operation == "connect"
        assert isinstance(error, GrpcConnectionError)
        assert session.catalog == []
        assert session.state == ConnectionState.DISCONNECTED

    def test_superseded_connect_reports_stale(self, session, listener, greeter_server):
        """Completions bound to a replaced connection are not applied."""
        session.connect(greeter_server).result(timeout=10)
        session.connect(greeter_server).result(timeout=10)
        session.process_updates()

        errors = listener.of("error")
        assert len(errors) == 1
        assert errors[0][0] == "connect"
        assert isinstance(errors[0][1], StaleConnectionError)
        assert session.state == ConnectionState.CONNECTED
        assert len(session.catalog) == 7

    def test_channel_closed_during_listing_reports_stale(
        self, session, listener, greeter_server, monkeypatch
    ):
        list_services = ReflectionClient.list_services

        def list_then_close(client):
            names = list_services(client)
            client._channel.close()
            return names

        monkeypatch.setattr(ReflectionClient, "list_services", list_then_close)
        future = session.connect(greeter_server)
        with pytest.raises(StaleConnectionError):
            future.result(timeout=10)
        session.process_updates()

        operation, error = listener.of("error")[-1]
        assert operation == "connect"
        assert isinstance(error, StaleConnectionError)
        assert session.catalog == []

    def test_unexpected_failure_still_reported(self, session, listener, greeter_server, monkeypatch):
        def broken(endpoint):
            raise RuntimeError("boom")

        monkeypatch.setattr(session_module, "list_methods", broken)
        future = session.connect(greeter_server)
        with pytest.raises(PanggilError, match="boom"):
            future.result(timeout=10)
        session.process_updates()

        operation, error = listener.of("error")[-1]
        assert operation == "connect"
        assert "Unexpected error: boom" in str(error)

    def test_disconnect_clears_catalog(self, connected, listener):
        connected.disconnect()
        connected.process_updates()
        assert connected.catalog == []
        assert connected.selected is None
        assert ("catalog", []) in listener.events
        assert connected.state == ConnectionState.DISCONNECTED


class TestSearchAndSelect:
    """Tests for search, selection and templates."""

    def test_search(self, connected):
        assert connected.search("walk") == ["ptest.Other/Walk"]
        assert connected.last_query == "walk"
        assert connected.search_results == ["ptest.Other/Walk"]
        assert connected.search("") == connected.catalog

    def test_search_publishes_results(self, connected, listener):
        connected.search("walk")
        connected.search("zzzz")
        assert listener.of("search") == [
            ("walk", ["ptest.Other/Walk"]),
            ("zzzz", []),
        ]
        assert connected.last_query == "zzzz"
        assert connected.search_results == []

    def test_no_search_issued(self, session):
        assert session.last_query is None
        assert session.search_results == []

    def test_select_delivers_template(self, connected, listener):
        connected.select_method("ptest.Other/Walk").result(timeout=10)
        connected.process_updates()

        entry, text = listener.of("template")[-1]
        assert entry == "ptest.Other/Walk"
        assert json.loads(text) == {"value": "", "children": [], "parent": {}}
        assert connected.selected == "ptest.Other/Walk"

    def test_unknown_method_reported(self, connected, listener):
        future = connected.generate_template("ptest.Greeter/Nope")
        with pytest.raises(ResolutionError):
            future.result(timeout=10)
        connected.process_updates()
        operation, _ = listener.of("error")[-1]
        assert operation == "template"

    def test_switching_methods_caches_body(self, connected, listener):
        connected.select_method("ptest.Greeter/SayHello").result(timeout=10)
        connected.select_method(
            "ptest.Other/Walk", current_body='{"name": "edited"}'
        ).result(timeout=10)
        connected.select_method("ptest.Greeter/SayHello", current_body="{}").result(timeout=10)
        connected.process_updates()

        assert connected.body_cache.get("ptest.Greeter/SayHello") == '{"name": "edited"}'
        entry, text = listener.of("template")[-1]
        assert entry == "ptest.Greeter/SayHello"
        assert json.loads(text)["name"] == "edited"

    def test_stale_template_not_applied(self, connected, listener):
        connected.generate_template("ptest.Other/Walk").result(timeout=10)
        connected.disconnect()
        connected.process_updates()

        assert listener.of("template") == []
        operation, error = listener.of("error")[-1]
        assert operation == "template"
        assert isinstance(error, StaleConnectionError)


class TestSend:
    """Tests for Session.send."""

    def test_send_when_disconnected_fails_without_dialing(self, listener):
        factory = MagicMock()
        session = Session(
            listener=listener,
            config=ClientConfig(persist_body_cache=False),
            channel_factory=factory,
        )
        try:
            future = session.send("ptest.Greeter/SayHello", '{"name": "Bob"}')
            with pytest.raises(GrpcConnectionError):
                future.result(timeout=1)
            session.process_updates()
        finally:
            session.close()

        factory.assert_not_called()
        entry, result = listener.of("result")[-1]
        assert entry == "ptest.Greeter/SayHello"
        assert result.outcome == Outcome.FAILURE
        assert result.error["kind"] == "connection"

    def test_send_success(self, connected, listener):
        connected.send(
            "ptest.Greeter/SayHello", '{"name": "Bob"}', '{"x-user": "alice"}'
        ).result(timeout=10)
        connected.process_updates()

        entry, result = listener.of("result")[-1]
        assert result.ok
        assert json.loads(result.response_json) == {"message": "Hello Bob from alice"}
        assert result.elapsed_ms >= 0

    def test_send_bad_body_reports_parse_error(self, connected, listener):
        future = connected.send("ptest.Greeter/SayHello", "{broken")
        with pytest.raises(ParseError):
            future.result(timeout=10)
        connected.process_updates()

        _, result = listener.of("result")[-1]
        assert result.outcome == Outcome.FAILURE
        assert result.error["kind"] == "parse"
        assert result.error["source"] == "body"

    def test_send_unexpected_failure_delivers_result(self, connected, listener, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(session_module, "invoke", broken)
        future = connected.send("ptest.Greeter/SayHello", '{"name": "Bob"}')
        with pytest.raises(PanggilError):
            future.result(timeout=10)
        connected.process_updates()

        _, result = listener.of("result")[-1]
        assert result.outcome == Outcome.FAILURE
        assert result.error["message"] == "Unexpected error: boom"

    def test_send_rpc_failure(self, connected, listener):
        future = connected.send("ptest.Greeter/Fail")
        with pytest.raises(RpcError):
            future.result(timeout=10)
        connected.process_updates()

        _, result = listener.of("result")[-1]
        assert not result.ok
        assert result.error["code"] == "INVALID_ARGUMENT"
        assert result.error["message"] == "RPC Error: INVALID_ARGUMENT: name is required"


class TestSavedCalls:
    """Tests for loading saved calls."""

    def test_load_connects_then_selects(self, session, listener, greeter_server):
        saved = SavedCall(
            name="hello",
            server=greeter_server,
            method="ptest.Greeter/SayHello",
            metadata='{"x-user": "alice"}',
            body='{"name": "Saved"}',
        )
        session.load_saved_call(saved).result(timeout=10)
        drain_until(session, lambda: listener.of("template"))

        assert listener.of("saved") == [saved]
        assert session.selected == "ptest.Greeter/SayHello"
        entry, text = listener.of("template")[-1]
        assert json.loads(text)["name"] == "Saved"

    def test_load_on_live_server_selects_directly(self, connected, listener, greeter_server):
        saved = SavedCall(
            name="walk", server=greeter_server, method="ptest.Other/Walk",
            body='{"value": "leaf"}',
        )
        connected.load_saved_call(saved).result(timeout=10)
        connected.process_updates()

        assert listener.of("catalog") == []
        entry, text = listener.of("template")[-1]
        assert entry == "ptest.Other/Walk"
        assert json.loads(text)["value"] == "leaf"

    def test_load_without_method(self, session, listener):
        saved = SavedCall(name="empty", server="", method="")
        assert session.load_saved_call(saved) is None
        assert listener.of("saved") == [saved]


class TestClose:
    """Tests for Session.close."""

    def test_close_persists_body_cache(self, tmp_path):
        cache_file = tmp_path / "cache.json"
        session = Session(
            config=ClientConfig(body_cache_path=str(cache_file)),
            body_cache=BodyCache(cache_file),
        )
        session.body_cache.put("a.S/M", '{"x": 1}')
        session.close()
        session.close()

        assert json.loads(cache_file.read_text()) == {"a.S/M": '{"x": 1}'}

    def test_context_manager_closes(self):
        with Session(config=ClientConfig(persist_body_cache=False)) as session:
            pass
        assert session.state == ConnectionState.DISCONNECTED
