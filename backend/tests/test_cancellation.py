from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from pilot.agent.cancellation import CancellationToken
from pilot.agent.errors import Cancelled


def test_guard_returns_the_result():
    async def scenario():
        token = CancellationToken()

        async def work():
            await asyncio.sleep(0)
            return 42

        return await token.guard(work())

    assert asyncio.run(scenario()) == 42


def test_guard_propagates_errors():
    async def scenario():
        async def work():
            raise RuntimeError("boom")

        await CancellationToken().guard(work())

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())


def test_guard_raises_cancelled_and_stops_the_work():
    finished = []

    async def scenario():
        token = CancellationToken()

        async def work():
            await asyncio.sleep(3600)
            finished.append(True)

        asyncio.get_running_loop().call_later(0.01, token.cancel, "stop")
        await token.guard(work())

    with pytest.raises(Cancelled):
        asyncio.run(scenario())
    assert finished == []


def test_cancel_is_one_shot():
    token = CancellationToken()
    assert not token.cancelled
    token.raise_if_cancelled()

    assert token.cancel("first") is True
    assert token.cancel("second") is False
    assert token.reason == "first"
    with pytest.raises(Cancelled):
        token.raise_if_cancelled()


def test_guard_on_cancelled_token_does_not_start_the_work():
    started = []

    async def work():
        started.append(True)

    token = CancellationToken()
    token.cancel()
    with pytest.raises(Cancelled):
        asyncio.run(token.guard(work()))
    assert started == []
