"""Wait for the panel to report that a server reached a given state.

A wait combines three sources under one deadline: an immediate status
check, events from a push session, and a fixed-interval polling fallback.
Push is an optimisation only. If the credential cannot be fetched or the
session dies, the wait silently degrades to polling on whatever time is
left.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol

from panel_deploy.client import CredentialUnavailable, PushCredential, TransportError
from panel_deploy.session import EventKind, PushSession, SessionEvent

DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_MAX_POLL_FAILURES = 3
MAX_OPEN_TIMEOUT_SECONDS = 10.0


class StatusSource(Protocol):
    origin: str

    def get_status(self) -> str: ...

    def get_push_credential(self) -> PushCredential: ...


class EventSource(Protocol):
    def next_event(self, timeout: float) -> SessionEvent | None: ...

    def close(self) -> None: ...


SessionFactory = Callable[..., EventSource]


class OutcomeKind(str, Enum):
    REACHED = "reached"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    desired: str
    state: str | None = None
    error: str | None = None
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.REACHED

    def describe(self) -> str:
        if self.kind is OutcomeKind.REACHED:
            return f"reached {self.state} after {self.elapsed_seconds:.1f}s"
        if self.kind is OutcomeKind.TIMED_OUT:
            return (
                f"timed out after {self.elapsed_seconds:.1f}s "
                f"waiting for {self.desired}"
            )
        return f"aborted waiting for {self.desired}: {self.error}"


class Deadline:
    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._start = clock()
        self._end = self._start + max(0.0, seconds)

    def remaining(self) -> float:
        return max(0.0, self._end - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._end

    def elapsed(self) -> float:
        return self._clock() - self._start


class _OutcomeSlot:
    """One-shot result holder; only the first fill counts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value: Outcome | None = None

    def fill(self, outcome: Outcome) -> bool:
        with self._lock:
            if self._value is not None:
                logging.debug("Ignoring late outcome %s", outcome.kind.value)
                return False
            self._value = outcome
            return True

    @property
    def value(self) -> Outcome | None:
        with self._lock:
            return self._value


def _same_state(observed: str | None, desired: str) -> bool:
    return observed is not None and observed.strip().lower() == desired


class StateWaiter:
    def __init__(
        self,
        client: StatusSource,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_poll_failures: int = DEFAULT_MAX_POLL_FAILURES,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = time.sleep,
        name: str = "server",
    ) -> None:
        self.client = client
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_failures = max_poll_failures
        self.name = name
        self._session_factory = session_factory or PushSession.open
        self._clock = clock
        self._sleep = sleep

    def wait_for_state(self, desired: str, timeout_seconds: float) -> Outcome:
        target = desired.strip().lower()
        deadline = Deadline(timeout_seconds, self._clock)
        slot = _OutcomeSlot()

        if self._poll_once(target, deadline, slot, "initial check"):
            return self._result(slot)

        session = None if deadline.expired() else self._subscribe(deadline)
        if session is not None:
            try:
                self._consume(session, target, deadline, slot)
            finally:
                session.close()
            if slot.value is not None:
                return self._result(slot)

        self._poll_until(target, deadline, slot)
        return self._result(slot)

    def _result(self, slot: _OutcomeSlot) -> Outcome:
        outcome = slot.value
        if outcome is None:
            raise RuntimeError(f"wait for {self.name} ended without an outcome")
        logging.info("[%s] Wait %s", self.name, outcome.describe())
        return outcome

    def _reached(self, slot: _OutcomeSlot, target: str, deadline: Deadline) -> bool:
        return slot.fill(
            Outcome(
                kind=OutcomeKind.REACHED,
                desired=target,
                state=target,
                elapsed_seconds=deadline.elapsed(),
            )
        )

    def _timed_out(self, slot: _OutcomeSlot, target: str, deadline: Deadline) -> None:
        slot.fill(
            Outcome(
                kind=OutcomeKind.TIMED_OUT,
                desired=target,
                elapsed_seconds=deadline.elapsed(),
            )
        )

    def _poll_once(
        self, target: str, deadline: Deadline, slot: _OutcomeSlot, reason: str
    ) -> bool:
        try:
            status = self.client.get_status()
        except TransportError as exc:
            logging.warning("[%s] Status %s failed: %s", self.name, reason, exc)
            return False
        logging.info("[%s] Status (%s): %s", self.name, reason, status)
        if _same_state(status, target):
            return self._reached(slot, target, deadline)
        return False

    def _subscribe(self, deadline: Deadline) -> EventSource | None:
        try:
            credential = self.client.get_push_credential()
        except CredentialUnavailable as exc:
            logging.warning(
                "[%s] Push channel unavailable, polling instead: %s", self.name, exc
            )
            return None
        return self._session_factory(
            credential.socket,
            credential.token,
            self.client.origin,
            open_timeout=min(MAX_OPEN_TIMEOUT_SECONDS, deadline.remaining()),
        )

    def _consume(
        self,
        session: EventSource,
        target: str,
        deadline: Deadline,
        slot: _OutcomeSlot,
    ) -> None:
        auth_deadline: Deadline | None = Deadline(
            min(MAX_OPEN_TIMEOUT_SECONDS, deadline.remaining()), self._clock
        )
        while True:
            remaining = deadline.remaining()
            if remaining <= 0:
                self._timed_out(slot, target, deadline)
                return
            if auth_deadline is not None:
                if auth_deadline.expired():
                    logging.warning(
                        "[%s] Push channel not authenticated in time, polling instead",
                        self.name,
                    )
                    return
                remaining = min(remaining, auth_deadline.remaining())
            event = session.next_event(remaining)
            if event is None:
                continue

            if event.kind is EventKind.AUTHENTICATED:
                auth_deadline = None
                logging.info("[%s] Push channel authenticated", self.name)
                if self._poll_once(target, deadline, slot, "after subscribe"):
                    return
            elif event.kind is EventKind.STATUS_CHANGED:
                logging.info("[%s] Status (push): %s", self.name, event.state)
                if _same_state(event.state, target) and self._reached(
                    slot, target, deadline
                ):
                    return
            elif event.kind is EventKind.CREDENTIAL_EXPIRING:
                logging.debug("[%s] Push token expiring, re-authenticated", self.name)
            elif event.kind is EventKind.FAILED:
                logging.warning(
                    "[%s] Push channel lost (%s), falling back to polling",
                    self.name,
                    event.detail,
                )
                return

    def _poll_until(self, target: str, deadline: Deadline, slot: _OutcomeSlot) -> None:
        failures = 0
        while slot.value is None:
            remaining = deadline.remaining()
            if remaining <= 0:
                self._timed_out(slot, target, deadline)
                return
            self._sleep(min(self.poll_interval_seconds, remaining))
            try:
                status = self.client.get_status()
            except TransportError as exc:
                failures += 1
                logging.warning(
                    "[%s] Status poll failed (%s/%s): %s",
                    self.name,
                    failures,
                    self.max_poll_failures,
                    exc,
                )
                if failures >= self.max_poll_failures:
                    slot.fill(
                        Outcome(
                            kind=OutcomeKind.ABORTED,
                            desired=target,
                            error=str(exc),
                            elapsed_seconds=deadline.elapsed(),
                        )
                    )
                continue
            failures = 0
            logging.info("[%s] Status (poll): %s", self.name, status)
            if _same_state(status, target):
                self._reached(slot, target, deadline)
