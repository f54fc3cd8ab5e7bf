"""Pytest configuration and fixtures."""

from __future__ import annotations

import os

from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlencode, urlparse

import pytest

from oauthloop.config import clear_settings
from tests.helpers import ECHO_STATE, CallbackSender


if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path


@pytest.fixture(autouse=True)
def isolated_settings(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[None, None, None]:
    """Keep configuration files and OAUTHLOOP_* variables out of each test."""
    for key in list(os.environ):
        if key.startswith("OAUTHLOOP_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "appdata"))
    monkeypatch.chdir(tmp_path)

    clear_settings()
    yield
    clear_settings()


@pytest.fixture
def callback_sender() -> Generator[CallbackSender, None, None]:
    """A CallbackSender whose background requests are joined at teardown."""
    sender = CallbackSender()
    yield sender
    sender.join()


@pytest.fixture
def fake_browser(
    callback_sender: CallbackSender,
) -> Callable[..., Callable[[str], bool]]:
    """Factory for browser collaborators that follow the redirect themselves.

    ``fake_browser(code="abc", state=ECHO_STATE)`` returns an opener that
    reads ``redirect_uri`` and ``state`` from the authorization URL and
    requests the redirect with the given query parameters.
    """

    def _factory(**params: str) -> Callable[[str], bool]:
        def _open(url: str) -> bool:
            query = parse_qs(urlparse(url).query)
            redirect_uri = query["redirect_uri"][0]
            expected_state = query["state"][0]
            callback = {
                key: expected_state if value == ECHO_STATE else value
                for key, value in params.items()
            }
            callback_sender.send(f"{redirect_uri}?{urlencode(callback)}")
            return True

        return _open

    return _factory
