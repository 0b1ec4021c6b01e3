import functools
import json
import queue
import threading

import pytest
from websockets.exceptions import ConnectionClosedError

from panel_deploy.client import PushCredential
from panel_deploy.reconcile import OutcomeKind, StateWaiter
from panel_deploy.session import (
    EventKind,
    PushSession,
    SessionState,
    transition_session_state,
)

_HANGUP = object()


class FakeSocket:
    def __init__(self):
        self.sent = []
        self.inbox = queue.Queue()
        self.close_calls = 0

    def push(self, event, *args):
        self.inbox.put(json.dumps({"event": event, "args": list(args)}))

    def hang_up(self, exc=None):
        self.inbox.put(exc if exc is not None else _HANGUP)

    def send(self, message):
        self.sent.append(json.loads(message))

    def close(self):
        self.close_calls += 1
        self.inbox.put(_HANGUP)

    def __iter__(self):
        while True:
            item = self.inbox.get(timeout=5)
            if item is _HANGUP:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class FakeConnect:
    def __init__(self, sock=None, gate=None, error=None):
        self.sock = sock
        self.gate = gate
        self.error = error
        self.calls = []

    def __call__(self, uri, **kwargs):
        self.calls.append((uri, kwargs))
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return self.sock


def _open(connect, token="tok-1"):
    return PushSession.open(
        "wss://node.test/ws", token, "https://panel.test", open_timeout=3, connect=connect
    )


def _expect(session, kind):
    event = session.next_event(2.0)
    assert event is not None, f"expected {kind.value} event"
    assert event.kind is kind
    return event


def test_session_authenticates_with_origin_header():
    sock = FakeSocket()
    connect = FakeConnect(sock)
    sock.push("auth success")

    session = _open(connect)
    try:
        _expect(session, EventKind.AUTHENTICATED)
        assert session.state is SessionState.AUTHENTICATED
        assert sock.sent == [{"event": "auth", "args": ["tok-1"]}]
        uri, kwargs = connect.calls[0]
        assert uri == "wss://node.test/ws"
        assert kwargs["additional_headers"] == {"Origin": "https://panel.test"}
        assert kwargs["open_timeout"] == 3
    finally:
        session.close()


def test_status_events_are_lower_cased():
    sock = FakeSocket()
    sock.push("auth success")
    sock.push("status", "Running")

    session = _open(FakeConnect(sock))
    try:
        _expect(session, EventKind.AUTHENTICATED)
        event = _expect(session, EventKind.STATUS_CHANGED)
        assert event.state == "running"
    finally:
        session.close()


def test_status_before_authentication_is_not_surfaced():
    sock = FakeSocket()
    sock.push("status", "running")
    sock.push("console output", "hello")
    sock.push("auth success")

    session = _open(FakeConnect(sock))
    try:
        _expect(session, EventKind.AUTHENTICATED)
        assert session.next_event(0.2) is None
    finally:
        session.close()


def test_token_expiring_resends_same_token_without_interruption():
    sock = FakeSocket()
    sock.push("auth success")
    sock.push("token expiring")
    sock.push("auth success")
    sock.push("status", "running")

    session = _open(FakeConnect(sock))
    try:
        _expect(session, EventKind.AUTHENTICATED)
        _expect(session, EventKind.CREDENTIAL_EXPIRING)
        event = _expect(session, EventKind.STATUS_CHANGED)
        assert event.state == "running"
        assert session.state is SessionState.AUTHENTICATED
        assert sock.sent == [
            {"event": "auth", "args": ["tok-1"]},
            {"event": "auth", "args": ["tok-1"]},
        ]
        assert session.next_event(0.2) is None
    finally:
        session.close()


@pytest.mark.parametrize("event", ["token expired", "jwt error"])
def test_expired_credential_fails_session(event):
    sock = FakeSocket()
    sock.push("auth success")
    sock.push(event, "signature invalid")

    session = _open(FakeConnect(sock))
    _expect(session, EventKind.AUTHENTICATED)
    failed = _expect(session, EventKind.FAILED)
    session.join(2)

    assert event in failed.detail
    assert session.state is SessionState.FAILED
    assert sock.close_calls == 1


def test_remote_hang_up_fails_session_once():
    sock = FakeSocket()
    sock.push("auth success")

    session = _open(FakeConnect(sock))
    _expect(session, EventKind.AUTHENTICATED)
    sock.hang_up()
    failed = _expect(session, EventKind.FAILED)
    session.join(2)
    session.close()

    assert failed.detail == "closed by remote"
    assert session.state is SessionState.FAILED
    assert sock.close_calls == 1
    assert session.next_event(0.1) is None


def test_transport_error_fails_session():
    sock = FakeSocket()
    sock.push("auth success")
    sock.hang_up(ConnectionClosedError(None, None))

    session = _open(FakeConnect(sock))
    _expect(session, EventKind.AUTHENTICATED)
    failed = _expect(session, EventKind.FAILED)

    assert "transport error" in failed.detail
    assert session.state is SessionState.FAILED


@pytest.mark.parametrize("args", [{"state": "running"}, 5, "running"])
def test_malformed_frame_args_fail_session(args):
    sock = FakeSocket()
    sock.push("auth success")
    sock.inbox.put(json.dumps({"event": "status", "args": args}))

    session = _open(FakeConnect(sock))
    _expect(session, EventKind.AUTHENTICATED)
    failed = _expect(session, EventKind.FAILED)
    session.join(2)

    assert "protocol error" in failed.detail
    assert session.state is SessionState.FAILED
    assert sock.close_calls == 1


def test_connect_failure_fails_session():
    session = _open(FakeConnect(error=OSError("connection refused")))

    failed = _expect(session, EventKind.FAILED)

    assert "connection refused" in failed.detail
    assert session.state is SessionState.FAILED
    session.close()


def test_close_is_idempotent():
    sock = FakeSocket()
    sock.push("auth success")

    session = _open(FakeConnect(sock))
    _expect(session, EventKind.AUTHENTICATED)
    session.close()
    session.close()
    session.join(2)
    session.close()

    assert sock.close_calls == 1
    assert session.state is SessionState.CLOSED
    assert session.next_event(0.1) is None


def test_close_while_connecting_releases_late_transport():
    sock = FakeSocket()
    gate = threading.Event()

    session = _open(FakeConnect(sock, gate=gate))
    session.close()
    session.close()
    assert session.state is SessionState.CLOSED

    gate.set()
    session.join(2)

    assert sock.close_calls == 1
    assert sock.sent == []
    assert session.state is SessionState.CLOSED
    assert session.next_event(0.1) is None


def test_invalid_transition_is_rejected():
    with pytest.raises(ValueError):
        transition_session_state(SessionState.CLOSED, SessionState.AUTHENTICATED)
    with pytest.raises(ValueError):
        transition_session_state(SessionState.CONNECTING, SessionState.AUTHENTICATED)


class _Client:
    origin = "https://panel.test"

    def __init__(self):
        self.status_calls = 0

    def get_status(self):
        self.status_calls += 1
        return "starting"

    def get_push_credential(self):
        return PushCredential(token="tok-1", socket="wss://node.test/ws")


def test_waiter_resolves_from_live_session_event():
    sock = FakeSocket()
    sock.push("auth success")
    sock.push("stats", "{}")
    sock.push("status", "running")
    client = _Client()
    waiter = StateWaiter(
        client,
        session_factory=functools.partial(PushSession.open, connect=FakeConnect(sock)),
        name="abc",
    )

    outcome = waiter.wait_for_state("running", 5)

    assert outcome.kind is OutcomeKind.REACHED
    assert client.status_calls == 2
    assert sock.close_calls == 1


class _FlippingClient(_Client):
    def __init__(self, flip_after):
        super().__init__()
        self.flip_after = flip_after

    def get_status(self):
        self.status_calls += 1
        return "running" if self.status_calls > self.flip_after else "starting"


def test_waiter_polls_after_malformed_frame():
    sock = FakeSocket()
    sock.push("auth success")
    sock.inbox.put(json.dumps({"event": "status", "args": 5}))
    client = _FlippingClient(flip_after=2)
    waiter = StateWaiter(
        client,
        poll_interval_seconds=0.05,
        session_factory=functools.partial(PushSession.open, connect=FakeConnect(sock)),
        name="abc",
    )

    outcome = waiter.wait_for_state("running", 5)

    assert outcome.kind is OutcomeKind.REACHED
    assert client.status_calls == 3
    assert sock.close_calls == 1
    assert outcome.elapsed_seconds < 5
