"""
Tests for the cooperative pause/cancel token
"""

import asyncio

import pytest

from core.chapter_pipeline.control import ControlToken


class TestControlToken:

    def test_initial_state(self):
        token = ControlToken()
        assert not token.paused
        assert not token.cancelled

    def test_pause_after_cancel_is_refused(self):
        token = ControlToken()
        assert token.request_cancel()
        assert not token.request_pause()
        assert not token.paused

    def test_cancel_reports_first_request_only(self):
        token = ControlToken()
        assert token.request_cancel()
        assert not token.request_cancel()

    def test_resume_reports_whether_paused(self):
        token = ControlToken()
        assert not token.request_resume()
        token.request_pause()
        assert token.request_resume()

    @pytest.mark.asyncio
    async def test_wait_returns_immediately_when_not_paused(self):
        token = ControlToken()
        await asyncio.wait_for(token.wait_released(), timeout=0.5)

    @pytest.mark.asyncio
    async def test_wait_blocks_until_resume(self):
        token = ControlToken()
        token.request_pause()
        waiter = asyncio.create_task(token.wait_released())

        await asyncio.sleep(0.01)
        assert not waiter.done()

        token.request_resume()
        await asyncio.wait_for(waiter, timeout=0.5)

    @pytest.mark.asyncio
    async def test_cancel_releases_paused_waiter(self):
        token = ControlToken()
        token.request_pause()
        waiter = asyncio.create_task(token.wait_released())
        await asyncio.sleep(0.01)

        token.request_cancel()
        await asyncio.wait_for(waiter, timeout=0.5)
        assert token.cancelled

    @pytest.mark.asyncio
    async def test_repause_before_wake_keeps_waiting(self):
        token = ControlToken()
        token.request_pause()
        waiter = asyncio.create_task(token.wait_released())
        await asyncio.sleep(0.01)

        token.request_resume()
        token.request_pause()
        await asyncio.sleep(0.01)
        assert not waiter.done()

        token.request_resume()
        await asyncio.wait_for(waiter, timeout=0.5)
