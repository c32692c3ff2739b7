"""Tests for AutomationSurface mutual exclusion."""

import pytest

from browser_bank_recipes.exceptions import RecordingStateError
from browser_bank_recipes.recipes.recorder import BINDING_NAME
from browser_bank_recipes.recipes.session import AutomationSurface


@pytest.fixture
def surface(fake_page):
    return AutomationSurface(page=fake_page)


class TestRecording:
    async def test_start_recording_attaches_then_navigates(self, surface, fake_page):
        recorder = await surface.start_recording("https://bank.example/login")

        assert surface.recorder is recorder
        assert recorder.is_attached
        assert BINDING_NAME in fake_page.bindings
        assert fake_page.navigations == ["https://bank.example/login"]
        assert recorder.session.target_url == "https://bank.example/login"

    async def test_stop_recording_returns_session(self, surface, fake_page):
        recorder = await surface.start_recording("https://bank.example/login")

        session = await surface.stop_recording()

        assert session is recorder.session
        assert session.is_active
        assert surface.recorder is None
        assert fake_page.bindings == {}

    async def test_stop_without_recording(self, surface):
        with pytest.raises(RecordingStateError):
            await surface.stop_recording()

    async def test_second_recording_cancels_first(self, surface):
        first = await surface.start_recording("https://bank.example/a")
        second = await surface.start_recording("https://bank.example/b")

        assert not first.is_attached
        assert not first.session.is_active
        assert surface.recorder is second


class TestPlayback:
    async def test_playback_stops_recording(self, surface, fake_page):
        recorder = await surface.start_recording("https://bank.example/login")

        page, cancel_event = await surface.start_playback()

        assert page is fake_page
        assert not recorder.is_attached
        assert surface.recorder is None
        assert surface.is_playing
        assert not cancel_event.is_set()

    async def test_recording_cancels_playback(self, surface):
        _, cancel_event = await surface.start_playback()

        await surface.start_recording("https://bank.example/login")

        assert cancel_event.is_set()
        assert not surface.is_playing

    async def test_cancel_and_finish(self, surface):
        _, cancel_event = await surface.start_playback()
        surface.cancel_playback()
        assert cancel_event.is_set()
        surface.finish_playback()
        assert not surface.is_playing

    async def test_close_with_external_page(self, surface, fake_page):
        await surface.start_recording("https://bank.example/login")
        await surface.close()
        assert surface.recorder is None
        assert fake_page.bindings == {}
