"""Automation surface: single owner of the browser, the recording and the playback.

Only one recording or playback runs per surface. Starting one tears down the
other first (recorder detached, playback cancelled), because both share the
same browser profile with its cookies and local storage.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from ..config import BrowserSettings, RecorderSettings
from ..exceptions import RecordingStateError
from .page import CDPPage, launch_browser
from .recorder import InteractionRecorder, RecordingSession

if TYPE_CHECKING:
    from browser_use.browser.session import BrowserSession

    from .page import Page

logger = logging.getLogger(__name__)


class AutomationSurface:
    """Owns one browser page and at most one active recording or playback."""

    def __init__(self, browser_settings: BrowserSettings | None = None, *, page: "Page | None" = None):
        """Initialize the surface.

        Args:
            browser_settings: How to launch the browser when no page is given
            page: Use an existing page instead of launching a browser
        """
        self.browser_settings = browser_settings or BrowserSettings()
        self._page = page
        self._browser_session: BrowserSession | None = None
        self._recorder: InteractionRecorder | None = None
        self._playback_cancel: asyncio.Event | None = None

    @property
    def recorder(self) -> InteractionRecorder | None:
        return self._recorder

    @property
    def is_playing(self) -> bool:
        return self._playback_cancel is not None

    async def get_page(self) -> "Page":
        if self._page is None:
            self._browser_session = await launch_browser(self.browser_settings)
            self._page = await CDPPage.connect(self._browser_session)
        return self._page

    async def start_recording(self, target_url: str, recorder_settings: RecorderSettings | None = None) -> InteractionRecorder:
        """Open ``target_url`` and start capturing interactions.

        Returns:
            The attached recorder; its ``session`` collects the steps
        """
        await self._teardown()
        recorder_settings = recorder_settings or RecorderSettings()
        page = await self.get_page()

        session = RecordingSession(target_url=target_url)
        recorder = InteractionRecorder(
            session,
            debounce_seconds=recorder_settings.debounce_seconds,
            label_radius_px=recorder_settings.label_radius_px,
            store_sensitive_values=recorder_settings.store_sensitive_values,
        )
        await recorder.attach(page)
        self._recorder = recorder
        await page.navigate(target_url)
        return recorder

    async def stop_recording(self) -> RecordingSession:
        """Detach the recorder and hand back its session for saving."""
        recorder = self._recorder
        if recorder is None:
            raise RecordingStateError("No recording in progress")
        await recorder.detach()
        self._recorder = None
        return recorder.session

    async def cancel_recording(self) -> None:
        recorder = self._recorder
        if recorder is None:
            return
        await recorder.detach()
        recorder.session.cancel()
        self._recorder = None

    async def start_playback(self) -> tuple["Page", asyncio.Event]:
        """Reserve the surface for a playback run.

        Returns:
            The page to replay on and the run's cancel event
        """
        await self._teardown()
        page = await self.get_page()
        self._playback_cancel = asyncio.Event()
        return page, self._playback_cancel

    def cancel_playback(self) -> None:
        if self._playback_cancel is not None:
            logger.info("Playback cancel requested")
            self._playback_cancel.set()

    def finish_playback(self) -> None:
        self._playback_cancel = None

    async def close(self) -> None:
        """Tear down the active session and stop a browser we launched."""
        await self._teardown()
        if self._browser_session is not None:
            try:
                await self._browser_session.stop()
            except Exception as e:
                logger.debug(f"Browser stop failed: {e}")
            self._browser_session = None
            self._page = None

    async def _teardown(self) -> None:
        if self._recorder is not None:
            logger.info("Stopping active recording")
            await self.cancel_recording()
        if self._playback_cancel is not None:
            logger.info("Cancelling active playback")
            self.cancel_playback()
            self.finish_playback()
