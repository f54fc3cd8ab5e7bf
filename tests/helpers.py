"""Shared test helpers for driving the loopback redirect server."""

# pylint: disable=consider-using-with

from __future__ import annotations

import threading
import time

from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from tests.constants import CALLBACK_DELAY, HTTP_TIMEOUT


# Placeholder replaced by the state of the authorization URL.
ECHO_STATE = "<echo-state>"


def to_loopback(url: str) -> str:
    """Point a ``localhost`` redirect URL at the IPv4 loopback address."""
    return url.replace("//localhost:", "//127.0.0.1:", 1)


class CallbackSender:
    """Sends GET requests to a redirect server, optionally from a thread.

    Responses are recorded as ``(status, body)`` tuples in completion
    order; connection failures are recorded with status 0.
    """

    def __init__(self) -> None:
        self.responses: list[tuple[int, str]] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def get(self, url: str) -> tuple[int, str]:
        """Send one request and return its status and body."""
        try:
            with urlopen(to_loopback(url), timeout=HTTP_TIMEOUT) as resp:  # noqa: S310
                result = (resp.status, resp.read().decode("utf-8"))
        except HTTPError as exc:
            result = (exc.code, exc.read().decode("utf-8", errors="replace"))
        except (URLError, OSError) as exc:
            result = (0, str(exc))
        with self._lock:
            self.responses.append(result)
        return result

    def send(self, url: str, delay: float = CALLBACK_DELAY) -> threading.Thread:
        """Send one request from a background thread after ``delay`` seconds."""

        def _run() -> None:
            time.sleep(delay)
            self.get(url)

        thread = threading.Thread(target=_run, daemon=True)
        self._threads.append(thread)
        thread.start()
        return thread

    def join(self) -> None:
        """Wait for all background requests to finish."""
        for thread in self._threads:
            thread.join(timeout=HTTP_TIMEOUT * 2)


class RecordingBrowser:
    """Browser collaborator that only records the URLs it was asked to open."""

    def __init__(self, result: Any = True) -> None:
        self.urls: list[str] = []
        self.result = result

    def __call__(self, url: str) -> Any:
        self.urls.append(url)
        return self.result
