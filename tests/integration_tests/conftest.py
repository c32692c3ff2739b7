"""Shared fixtures for integration tests against a real headless browser."""

import asyncio
from collections.abc import AsyncGenerator

import pytest

from browser_bank_recipes.config import BrowserSettings
from browser_bank_recipes.recipes.page import CDPPage, launch_browser

LAUNCH_TIMEOUT = 60


@pytest.fixture
async def browser_page() -> AsyncGenerator[CDPPage, None]:
    """Launch a headless browser-use session and yield a CDPPage on its tab.

    Skips the test when no browser can be started on this machine.
    """
    try:
        browser_session = await asyncio.wait_for(launch_browser(BrowserSettings(headless=True)), LAUNCH_TIMEOUT)
    except Exception as e:
        pytest.skip(f"No browser available: {e}")

    try:
        yield await CDPPage.connect(browser_session)
    finally:
        await browser_session.kill()
