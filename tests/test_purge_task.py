"""
tests/test_purge_task.py -- The background session-purge task in api/main.py.

Covers:
  - a sweep that raises (store outage or anything else) does not end the loop
  - lifespan shutdown cancels and awaits the task before closing the store
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from api.main import _purge_loop, lifespan
from auth.errors import StoreUnavailable


def _fake_app(gateway) -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace(gateway=gateway))


class TestPurgeLoop:
    def test_loop_survives_failed_sweeps(self) -> None:
        """RuntimeError, then StoreUnavailable, then success: the loop keeps sweeping."""
        gateway = MagicMock()
        outcomes = [RuntimeError("boom"), StoreUnavailable()]

        def sweep() -> int:
            if outcomes:
                raise outcomes.pop(0)
            return 0

        gateway.purge_sessions.side_effect = sweep

        async def run() -> int:
            task = asyncio.create_task(_purge_loop(_fake_app(gateway), 0))
            for _ in range(500):
                if gateway.purge_sessions.call_count >= 3:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return gateway.purge_sessions.call_count

        calls = asyncio.run(run())
        assert calls >= 3, f"Expected the loop to keep sweeping after errors, got {calls} call(s)"


class TestLifespanShutdown:
    def test_purge_task_awaited_before_store_close(self, settings_factory) -> None:
        settings = settings_factory(database_url="sqlite:///:memory:", purge_interval_seconds=3600)
        app = SimpleNamespace(state=SimpleNamespace())

        async def run():
            async with lifespan(app):
                assert not app.state.purge_task.done()
            return app.state.purge_task

        with patch("api.main.get_settings", return_value=settings):
            task = asyncio.run(run())
        assert task.done()
        assert task.cancelled()
