"""Push-channel session against the panel's websocket.

One session serves one reconciliation attempt. A reader thread owns the
transport and drives the state machine; the waiter only ever sees
``SessionEvent`` values pulled through ``next_event``.
"""

import json
import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

DEFAULT_OPEN_TIMEOUT_SECONDS = 10.0


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"
    FAILED = "failed"


class EventKind(str, Enum):
    AUTHENTICATED = "authenticated"
    STATUS_CHANGED = "status_changed"
    CREDENTIAL_EXPIRING = "credential_expiring"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    state: str | None = None
    detail: str | None = None


_TERMINAL = {SessionState.CLOSED, SessionState.FAILED}

_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.CONNECTING: {
        SessionState.AUTHENTICATING,
        SessionState.CLOSED,
        SessionState.FAILED,
    },
    SessionState.AUTHENTICATING: {
        SessionState.AUTHENTICATED,
        SessionState.CLOSED,
        SessionState.FAILED,
    },
    SessionState.AUTHENTICATED: {SessionState.CLOSED, SessionState.FAILED},
    SessionState.CLOSED: set(),
    SessionState.FAILED: set(),
}


def transition_session_state(
    current: SessionState, target: SessionState
) -> SessionState:
    """Return ``target`` if the session may move there from ``current``.

    Invalid transitions raise ValueError.
    """
    if target not in _TRANSITIONS[current]:
        raise ValueError(f"Invalid session transition: {current.value} -> {target.value}")
    return target


Connector = Callable[..., Any]


class PushSession:
    def __init__(
        self,
        address: str,
        token: str,
        origin: str,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT_SECONDS,
        connect: Connector | None = None,
    ) -> None:
        self.address = address
        self.origin = origin
        self.open_timeout = open_timeout
        self._token = token
        self._connect = connect or ws_connect
        self._events: "queue.Queue[SessionEvent]" = queue.Queue()
        self._lock = threading.Lock()
        self._state = SessionState.CONNECTING
        self._transport: Any = None
        self._closing = False
        self._thread: threading.Thread | None = None

    @classmethod
    def open(
        cls,
        address: str,
        token: str,
        origin: str,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT_SECONDS,
        connect: Connector | None = None,
    ) -> "PushSession":
        session = cls(address, token, origin, open_timeout=open_timeout, connect=connect)
        session.start()
        return session

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    def start(self) -> None:
        thread = threading.Thread(target=self._run, name="push-session", daemon=True)
        self._thread = thread
        thread.start()

    def next_event(self, timeout: float) -> SessionEvent | None:
        try:
            return self._events.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None

    def close(self) -> None:
        with self._lock:
            if self._closing:
                return
            self._closing = True
            if self._state not in _TERMINAL:
                self._state = SessionState.CLOSED
            transport = self._take_transport()
        if transport is not None:
            transport.close()

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _take_transport(self) -> Any:
        # caller holds self._lock
        transport = self._transport
        self._transport = None
        return transport

    def _advance(self, target: SessionState) -> bool:
        with self._lock:
            if self._closing or self._state in _TERMINAL:
                return False
            self._state = transition_session_state(self._state, target)
            return True

    def _emit(self, event: SessionEvent) -> None:
        with self._lock:
            if self._closing:
                return
        self._events.put(event)

    def _fail(self, detail: str) -> None:
        with self._lock:
            if self._closing or self._state in _TERMINAL:
                return
            self._state = transition_session_state(self._state, SessionState.FAILED)
            transport = self._take_transport()
        logging.warning("Push session failed: %s", detail)
        self._events.put(SessionEvent(kind=EventKind.FAILED, detail=detail))
        if transport is not None:
            transport.close()

    def _send_auth(self, transport: Any) -> None:
        transport.send(json.dumps({"event": "auth", "args": [self._token]}))

    def _run(self) -> None:
        try:
            transport = self._connect(
                self.address,
                additional_headers={"Origin": self.origin},
                open_timeout=self.open_timeout,
            )
        except (OSError, WebSocketException) as exc:
            self._fail(f"connect to {self.address} failed: {exc}")
            return

        with self._lock:
            closed_early = self._closing
            if not closed_early:
                self._transport = transport
        if closed_early:
            transport.close()
            return

        try:
            self._send_auth(transport)
            self._advance(SessionState.AUTHENTICATING)
            for raw in transport:
                self._handle(transport, raw)
        except (OSError, WebSocketException) as exc:
            self._fail(f"transport error: {exc}")
            return
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            self._fail(f"protocol error: {exc!r}")
            return
        self._fail("closed by remote")

    def _handle(self, transport: Any, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logging.debug("Push session ignored non-JSON frame")
            return
        if not isinstance(message, dict):
            return
        event = message.get("event")
        args = message.get("args") or []
        if not isinstance(args, list):
            raise ValueError(f"malformed args in {event!r} frame: {args!r}")

        if event == "auth success":
            if self.state is SessionState.AUTHENTICATING:
                if self._advance(SessionState.AUTHENTICATED):
                    self._emit(SessionEvent(kind=EventKind.AUTHENTICATED))
            else:
                logging.debug("Push session re-authenticated")
        elif event == "status":
            if self.state is SessionState.AUTHENTICATED and args:
                state = str(args[0]).lower()
                self._emit(SessionEvent(kind=EventKind.STATUS_CHANGED, state=state))
        elif event == "token expiring":
            # Same token on purpose: the panel is expected to refresh it out of band.
            self._emit(SessionEvent(kind=EventKind.CREDENTIAL_EXPIRING))
            self._send_auth(transport)
        elif event in ("token expired", "jwt error"):
            detail = str(args[0]) if args else event
            self._fail(f"{event}: {detail}")
