"""Single-assignment completion handle shared by all oauthloop flows.

An AsyncResultHandle is resolved exactly once, either with a value or
with a FlowError. The first resolution wins; later ``success``/``fail``
calls are ignored and report ``False``. Completion callbacks run once,
synchronously on the resolving thread, after the outcome is stored.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from .exceptions import FlowError, InvalidStateError
from .log import log_callback_error


logger = logging.getLogger("oauthloop")

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome carrying the produced value."""

    value: T


@dataclass(frozen=True)
class Err:
    """Failed outcome carrying the flow error."""

    error: FlowError


Outcome = Union[Ok[T], Err]

DoneCallback = Callable[["AsyncResultHandle[Any]"], None]


class AsyncResultHandle(Generic[T]):
    """Single-assignment, single-notification result box.

    Parameters
    ----------
    name : str
        Label used in log messages (e.g. ``"authorization"``).
    """

    def __init__(self, name: str = "operation") -> None:
        """Initialize a pending handle."""
        self.name = name
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._outcome: Outcome[T] | None = None
        self._callbacks: list[DoneCallback] = []

    def __repr__(self) -> str:
        if self._outcome is None:
            status = "pending"
        elif isinstance(self._outcome, Err):
            status = f"failed: {self._outcome.error.kind.value}"
        else:
            status = "succeeded"
        return f"<AsyncResultHandle {self.name} {status}>"

    @property
    def completed(self) -> bool:
        """True once the handle has been resolved."""
        return self._outcome is not None

    @property
    def failed(self) -> bool:
        """True if the handle was resolved with an error."""
        return isinstance(self._outcome, Err)

    @property
    def outcome(self) -> Outcome[T]:
        """The tagged outcome, ``Ok(value)`` or ``Err(error)``.

        Raises
        ------
        InvalidStateError
            If the handle is still pending.
        """
        outcome = self._outcome
        if outcome is None:
            msg = f"{self.name} handle has not completed"
            raise InvalidStateError(msg)
        return outcome

    @property
    def result(self) -> T:
        """The success value.

        Raises
        ------
        InvalidStateError
            If the handle is still pending.
        FlowError
            The stored error, if the handle failed.
        """
        outcome = self.outcome
        if isinstance(outcome, Err):
            raise outcome.error
        return outcome.value

    @property
    def error(self) -> FlowError | None:
        """The stored error, or ``None`` if the handle succeeded.

        Raises
        ------
        InvalidStateError
            If the handle is still pending.
        """
        outcome = self.outcome
        return outcome.error if isinstance(outcome, Err) else None

    def success(self, value: T) -> bool:
        """Resolve the handle with a value.

        Returns
        -------
        bool
            True if this call resolved the handle, False if it was
            already resolved (the call is then ignored).
        """
        return self._resolve(Ok(value))

    def fail(self, error: FlowError) -> bool:
        """Resolve the handle with an error.

        Returns
        -------
        bool
            True if this call resolved the handle, False if it was
            already resolved (the call is then ignored).
        """
        return self._resolve(Err(error))

    def _resolve(self, outcome: Outcome[T]) -> bool:
        with self._lock:
            if self._outcome is not None:
                logger.debug("Ignoring late resolution of %s handle: %r", self.name, outcome)
                return False
            self._outcome = outcome
            callbacks, self._callbacks = self._callbacks, []
            self._done.set()

        for callback in callbacks:
            self._run_callback(callback)
        return True

    def add_done_callback(self, callback: DoneCallback) -> None:
        """Register a completion observer.

        The callback receives the handle. It is called exactly once; if the
        handle has already completed it is called immediately.
        """
        with self._lock:
            if self._outcome is None:
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def _run_callback(self, callback: DoneCallback) -> None:
        try:
            callback(self)
        except Exception as exc:
            log_callback_error(f"{self.name} handle", exc)

    def wait(self, timeout: float | None = None) -> bool:
        """Block the current thread until the handle completes.

        Returns
        -------
        bool
            True if the handle completed, False on timeout.
        """
        return self._done.wait(timeout)

    async def wait_async(self, timeout: float | None = None) -> AsyncResultHandle[T]:
        """Await completion from a coroutine.

        Resolution may happen on any thread; the wake-up is marshalled
        onto the running event loop.

        Raises
        ------
        asyncio.TimeoutError
            If ``timeout`` seconds pass before the handle completes.
        """
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()

        def _set_waiter() -> None:
            if not waiter.done():
                waiter.set_result(None)

        def _wake(_handle: AsyncResultHandle[T]) -> None:
            # The loop may be closed if the waiter gave up long ago.
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(_set_waiter)

        self.add_done_callback(_wake)
        await asyncio.wait_for(waiter, timeout)
        return self
