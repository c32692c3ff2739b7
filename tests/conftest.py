"""Pytest configuration and fixtures for browser-bank-recipes tests."""

from collections.abc import Callable
from typing import Any

import pytest

from browser_bank_recipes.config import PlaybackSettings


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "e2e: End-to-end tests requiring a real browser and bank site")
    config.addinivalue_line("markers", "integration: Integration tests with a real browser")
    config.addinivalue_line("markers", "slow: Tests that take longer to run")


class FakePage:
    """In-memory stand-in for CDPPage.

    ``handlers`` maps a JS function source (e.g. HIT_AT_POINT_JS) to a callable
    receiving the JSON argument. A handler may return an Exception instance to
    have it raised from call_function().
    """

    def __init__(self, url: str = "https://bank.example/login"):
        self.url = url
        self.ready = "complete"
        self.html = ""
        self.handlers: dict[str, Callable[[Any], Any]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.evaluated: list[str] = []
        self.navigations: list[str] = []
        self.bindings: dict[str, Callable[[str], None]] = {}
        self.init_scripts: dict[str, str] = {}

    def calls_to(self, source: str) -> list[Any]:
        return [arg for called, arg in self.calls if called == source]

    async def evaluate(self, expression: str, *, await_promise: bool = False) -> Any:
        self.evaluated.append(expression)
        return None

    async def call_function(self, source: str, arg: Any = None, *, await_promise: bool = False) -> Any:
        self.calls.append((source, arg))
        handler = self.handlers.get(source)
        if handler is None:
            return None
        result = handler(arg)
        if isinstance(result, Exception):
            raise result
        return result

    async def current_url(self) -> str | None:
        return self.url

    async def navigate(self, url: str) -> None:
        self.navigations.append(url)
        self.url = url

    async def ready_state(self) -> str | None:
        return self.ready

    async def content(self) -> str:
        return self.html

    async def add_binding(self, name: str, handler: Callable[[str], None]) -> None:
        self.bindings[name] = handler

    async def remove_binding(self, name: str) -> None:
        self.bindings.pop(name, None)

    async def add_init_script(self, source: str) -> str:
        identifier = str(len(self.init_scripts) + 1)
        self.init_scripts[identifier] = source
        return identifier

    async def remove_init_script(self, identifier: str) -> None:
        self.init_scripts.pop(identifier, None)


@pytest.fixture
def fake_page() -> FakePage:
    return FakePage()


@pytest.fixture
def fast_playback_settings() -> PlaybackSettings:
    """Playback settings with near-zero waits."""
    return PlaybackSettings(
        load_timeout=0.05,
        ready_timeout=0.05,
        settle_delay=0,
        poll_interval=0.01,
        initial_load_delay=0,
        navigation_check_timeout=0,
        highlight_ms=0,
        between_recipes_delay=0,
    )
