"""Thin page abstraction over a browser-use BrowserSession.

All page access (evaluate, navigation, bindings, init scripts) goes through
session-scoped CDP commands on ``browser_session.cdp_client``. The rest of the
package only depends on the ``Page`` protocol, so recorder, resolver and
playback can be exercised against fakes.
"""

import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from ..config import BrowserSettings
from ..exceptions import PageError

if TYPE_CHECKING:
    from browser_use.browser.session import BrowserSession, CDPSession

logger = logging.getLogger(__name__)

BindingHandler = Callable[[str], None]


class Page(Protocol):
    """Operations the recipe pipeline needs from a live page."""

    async def evaluate(self, expression: str, *, await_promise: bool = False) -> Any: ...

    async def call_function(self, source: str, arg: Any = None, *, await_promise: bool = False) -> Any: ...

    async def current_url(self) -> str | None: ...

    async def navigate(self, url: str) -> None: ...

    async def ready_state(self) -> str | None: ...

    async def content(self) -> str: ...

    async def add_binding(self, name: str, handler: BindingHandler) -> None: ...

    async def remove_binding(self, name: str) -> None: ...

    async def add_init_script(self, source: str) -> str: ...

    async def remove_init_script(self, identifier: str) -> None: ...


async def launch_browser(browser_settings: BrowserSettings) -> "BrowserSession":
    """Start a browser-use BrowserSession configured from settings."""
    from browser_use import BrowserProfile, BrowserSession

    profile = BrowserProfile(
        headless=browser_settings.headless,
        user_data_dir=browser_settings.user_data_dir,
        keep_alive=True,
    )
    if browser_settings.cdp_url:
        browser_session = BrowserSession(browser_profile=profile, cdp_url=browser_settings.cdp_url)
    else:
        browser_session = BrowserSession(browser_profile=profile)
    await browser_session.start()
    logger.debug("Browser session started")
    return browser_session


class CDPPage:
    """Page implementation backed by session-scoped CDP commands."""

    def __init__(self, browser_session: "BrowserSession", cdp_session: "CDPSession"):
        self.browser_session = browser_session
        self.cdp_session = cdp_session
        self._bindings: dict[str, BindingHandler] = {}
        self._binding_listener_registered = False

    @classmethod
    async def connect(cls, browser_session: "BrowserSession") -> "CDPPage":
        """Attach to the session's current tab with Page and Runtime domains enabled.

        Args:
            browser_session: Started browser-use session

        Returns:
            CDPPage bound to the current tab
        """
        cdp_session = await browser_session.get_or_create_cdp_session()
        cdp_client = browser_session.cdp_client

        try:
            await cdp_client.send.Page.enable(session_id=cdp_session.session_id)
        except Exception as e:
            # May already be enabled by session manager
            logger.debug(f"Page.enable: {e}")

        try:
            await cdp_client.send.Runtime.enable(session_id=cdp_session.session_id)
        except Exception as e:
            logger.debug(f"Runtime.enable: {e}")

        return cls(browser_session, cdp_session)

    @property
    def _session_id(self) -> str:
        return self.cdp_session.session_id

    async def evaluate(self, expression: str, *, await_promise: bool = False) -> Any:
        """Evaluate a JS expression in the page and return its JSON value.

        Raises:
            PageError: If the CDP call fails or the script throws
        """
        try:
            eval_result = await self.browser_session.cdp_client.send.Runtime.evaluate(
                params={
                    "expression": expression,
                    "returnByValue": True,
                    "awaitPromise": await_promise,
                },
                session_id=self._session_id,
            )
        except Exception as e:
            raise PageError(f"Runtime.evaluate failed: {e}") from e

        if eval_result.get("exceptionDetails"):
            details = eval_result["exceptionDetails"]
            exception = details.get("exception", {})
            message = exception.get("description") or details.get("text", "Unknown error")
            raise PageError(f"Script error: {message}")

        return eval_result.get("result", {}).get("value")

    async def call_function(self, source: str, arg: Any = None, *, await_promise: bool = False) -> Any:
        """Call a JS function expression with one JSON-serialisable argument."""
        expression = f"({source})({json.dumps(arg)})"
        return await self.evaluate(expression, await_promise=await_promise)

    async def current_url(self) -> str | None:
        try:
            result = await self.browser_session.cdp_client.send.Page.getFrameTree(session_id=self._session_id)
            frame = result.get("frameTree", {}).get("frame", {})
            return frame.get("url")
        except Exception as e:
            logger.debug(f"Could not get frame tree: {e}")
            return None

    async def navigate(self, url: str) -> None:
        logger.debug(f"Navigating to: {url}")
        try:
            nav_result = await self.browser_session.cdp_client.send.Page.navigate(
                params={"url": url, "transitionType": "typed"},
                session_id=self._session_id,
            )
        except Exception as e:
            raise PageError(f"Navigation to {url} failed: {e}") from e

        if nav_result.get("errorText"):
            raise PageError(f"Navigation failed: {nav_result['errorText']}")

    async def ready_state(self) -> str | None:
        return await self.evaluate("document.readyState")

    async def content(self) -> str:
        html = await self.evaluate("document.documentElement ? document.documentElement.outerHTML : ''")
        return html or ""

    async def add_binding(self, name: str, handler: BindingHandler) -> None:
        """Expose ``window[name](payload)`` to page scripts; payloads are passed to ``handler``."""
        if not self._binding_listener_registered:
            self.browser_session.cdp_client.register.Runtime.bindingCalled(self._on_binding_called)
            self._binding_listener_registered = True

        self._bindings[name] = handler
        try:
            await self.browser_session.cdp_client.send.Runtime.addBinding(
                params={"name": name},
                session_id=self._session_id,
            )
        except Exception as e:
            self._bindings.pop(name, None)
            raise PageError(f"Runtime.addBinding failed: {e}") from e

    async def remove_binding(self, name: str) -> None:
        if self._bindings.pop(name, None) is None:
            return
        try:
            await self.browser_session.cdp_client.send.Runtime.removeBinding(
                params={"name": name},
                session_id=self._session_id,
            )
        except Exception as e:
            logger.debug(f"Runtime.removeBinding: {e}")

    async def add_init_script(self, source: str) -> str:
        """Run ``source`` in every new document of this tab.

        Returns:
            Identifier for remove_init_script()
        """
        try:
            result = await self.browser_session.cdp_client.send.Page.addScriptToEvaluateOnNewDocument(
                params={"source": source},
                session_id=self._session_id,
            )
        except Exception as e:
            raise PageError(f"Page.addScriptToEvaluateOnNewDocument failed: {e}") from e
        return result.get("identifier", "")

    async def remove_init_script(self, identifier: str) -> None:
        try:
            await self.browser_session.cdp_client.send.Page.removeScriptToEvaluateOnNewDocument(
                params={"identifier": identifier},
                session_id=self._session_id,
            )
        except Exception as e:
            logger.debug(f"Page.removeScriptToEvaluateOnNewDocument: {e}")

    def _on_binding_called(self, event: dict, session_id: str | None) -> None:
        """Handle CDP Runtime.bindingCalled (synchronous callback)."""
        try:
            if session_id is not None and session_id != self._session_id:
                return
            handler = self._bindings.get(event.get("name", ""))
            if handler is None:
                return
            handler(event.get("payload", ""))
        except Exception as e:
            logger.debug(f"Error handling binding call: {e}")
