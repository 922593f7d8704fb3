"""Tests for the single-flight refresh gate."""

import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock

from sessionguard.api.pipeline import RequestDescriptor
from sessionguard.auth.gate import AuthGate, GateState
from sessionguard.auth.refresh import RefreshResult
from sessionguard.auth.session import SessionController
from sessionguard.auth.storage import TokenSet, TokenStore, now_ms
from sessionguard.errors import AuthExpiredError, RefreshError, SessionClosedError

from tests.conftest import (
    NEW_ACCESS_TOKEN,
    NEW_REFRESH_TOKEN,
    OLD_ACCESS_TOKEN,
    OLD_REFRESH_TOKEN,
    SAMPLE_USER,
)

EXPIRED = AuthExpiredError("Token expired", 401, "TOKEN_EXPIRED")


class BlockingRefresher:
    """Refresher that holds the refresh open until released."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    async def refresh(self, refresh_token):
        self.calls += 1
        self.started.set()
        await self.release.wait()
        if self.fail:
            raise RefreshError("Invalid refresh token", 401, "INVALID_REFRESH_TOKEN")
        return RefreshResult(
            tokens=TokenSet(NEW_ACCESS_TOKEN, NEW_REFRESH_TOKEN, now_ms() + 3_600_000)
        )


@pytest.fixture
def store():
    store = TokenStore()
    store.save(TokenSet(OLD_ACCESS_TOKEN, OLD_REFRESH_TOKEN, now_ms() - 1), SAMPLE_USER)
    return store


@pytest.fixture
def ended():
    return []


@pytest.fixture
def controller(store, ended):
    return SessionController(store, on_session_ended=ended.append)


def make_descriptor(n: int = 0) -> RequestDescriptor:
    return RequestDescriptor("GET", f"/items/{n}", sent_token=OLD_ACCESS_TOKEN)


async def replay_ok(descriptor):
    return httpx.Response(200, json={"url": descriptor.url})


async def wait_until(predicate, rounds: int = 100):
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class TestSingleFlight:
    """Concurrent callers share one refresh."""

    @pytest.mark.asyncio
    async def test_concurrent_failures_refresh_once(self, store, controller):
        refresher = BlockingRefresher()
        gate = AuthGate(store, refresher, controller)
        replay = AsyncMock(side_effect=replay_ok)

        descriptors = [make_descriptor(n) for n in range(5)]
        tasks = [
            asyncio.create_task(gate.handle_auth_failure(d, EXPIRED, replay))
            for d in descriptors
        ]
        await wait_until(lambda: gate.pending == 5)

        assert gate.state is GateState.REFRESHING
        refresher.release.set()
        responses = await asyncio.gather(*tasks)

        assert refresher.calls == 1
        assert gate.refresh_count == 1
        assert [r.json()["url"] for r in responses] == [d.url for d in descriptors]
        assert replay.await_count == 5
        assert all(d.retried for d in descriptors)
        assert store.access_token == NEW_ACCESS_TOKEN
        assert store.refresh_token == NEW_REFRESH_TOKEN
        assert store.get_user() == SAMPLE_USER
        assert gate.state is GateState.IDLE
        assert gate.pending == 0

    @pytest.mark.asyncio
    async def test_refresh_failure_rejects_all_and_logs_out_once(self, store, controller, ended):
        refresher = BlockingRefresher(fail=True)
        gate = AuthGate(store, refresher, controller)
        replay = AsyncMock(side_effect=replay_ok)

        tasks = [
            asyncio.create_task(gate.handle_auth_failure(make_descriptor(n), EXPIRED, replay))
            for n in range(4)
        ]
        await wait_until(lambda: gate.pending == 4)
        refresher.release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, RefreshError) for r in results)
        assert refresher.calls == 1
        assert replay.await_count == 0
        assert ended == ["INVALID_REFRESH_TOKEN"]
        assert controller.logout_count == 1
        assert store.load() is None
        assert gate.state is GateState.IDLE
        assert gate.pending == 0

    @pytest.mark.asyncio
    async def test_unexpected_refresh_exception_becomes_refresh_error(self, store, controller, ended):
        refresher = AsyncMock()
        refresher.refresh.side_effect = ValueError("bad payload")
        gate = AuthGate(store, refresher, controller)

        with pytest.raises(RefreshError) as exc_info:
            await gate.handle_auth_failure(make_descriptor(), EXPIRED, replay_ok)

        assert exc_info.value.code == "REFRESH_FAILED"
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert ended == ["REFRESH_FAILED"]

    @pytest.mark.asyncio
    async def test_sequential_expiries_refresh_each_time(self, store, controller):
        refresher = BlockingRefresher()
        refresher.release.set()
        gate = AuthGate(store, refresher, controller)

        await gate.handle_auth_failure(make_descriptor(1), EXPIRED, replay_ok)
        # Later expiry of the new token is a new event.
        await gate.handle_auth_failure(
            RequestDescriptor("GET", "/x", sent_token=NEW_ACCESS_TOKEN), EXPIRED, replay_ok
        )

        assert refresher.calls == 2

    @pytest.mark.asyncio
    async def test_already_rotated_token_replays_without_refresh(self, store, controller):
        """A 401 for a token that was already replaced skips the refresh."""
        refresher = BlockingRefresher()
        gate = AuthGate(store, refresher, controller)
        store.save(TokenSet(NEW_ACCESS_TOKEN, NEW_REFRESH_TOKEN, now_ms() + 60_000))

        descriptor = make_descriptor()
        response = await gate.handle_auth_failure(descriptor, EXPIRED, replay_ok)

        assert response.status_code == 200
        assert descriptor.retried is True
        assert refresher.calls == 0

    @pytest.mark.asyncio
    async def test_refresh_now_joins_inflight_refresh(self, store, controller):
        refresher = BlockingRefresher()
        gate = AuthGate(store, refresher, controller)

        first = asyncio.create_task(gate.refresh_now())
        second = asyncio.create_task(gate.refresh_now())
        await refresher.started.wait()
        refresher.release.set()

        assert await first == NEW_ACCESS_TOKEN
        assert await second == NEW_ACCESS_TOKEN
        assert refresher.calls == 1


class TestLogoutDuringRefresh:
    """A refresh that lands after a forced logout is discarded."""

    @pytest.mark.asyncio
    async def test_late_refresh_does_not_restore_session(self, store, controller, ended):
        refresher = BlockingRefresher()
        gate = AuthGate(store, refresher, controller)
        replay = AsyncMock(side_effect=replay_ok)

        task = asyncio.create_task(gate.handle_auth_failure(make_descriptor(), EXPIRED, replay))
        await refresher.started.wait()

        # Another request hit a non-refreshable 401 meanwhile.
        assert controller.force_logout("INVALID_TOKEN") is True
        refresher.release.set()

        with pytest.raises(RefreshError) as exc_info:
            await task

        assert exc_info.value.code == "SESSION_ENDED"
        assert store.access_token is None
        assert store.load() is None
        assert replay.await_count == 0
        assert ended == ["INVALID_TOKEN"]
        assert controller.logout_count == 1
        assert gate.state is GateState.IDLE
        assert gate.pending == 0

    @pytest.mark.asyncio
    async def test_next_login_rearms_logout(self, store, controller, ended):
        refresher = BlockingRefresher()
        gate = AuthGate(store, refresher, controller)

        task = asyncio.create_task(gate.refresh_now())
        await refresher.started.wait()
        controller.force_logout("INVALID_TOKEN")
        refresher.release.set()
        with pytest.raises(RefreshError):
            await task

        controller.login({"accessToken": "a3", "refreshToken": "r3", "expiresIn": 3600}, SAMPLE_USER)
        assert controller.force_logout("USER_NOT_FOUND") is True

        assert store.access_token is None
        assert ended == ["INVALID_TOKEN", "USER_NOT_FOUND"]


class TestCancellation:
    """Callers may abandon a parked request."""

    @pytest.mark.asyncio
    async def test_cancelled_waiter_removed_without_affecting_others(self, store, controller):
        refresher = BlockingRefresher()
        gate = AuthGate(store, refresher, controller)

        tasks = [
            asyncio.create_task(gate.handle_auth_failure(make_descriptor(n), EXPIRED, replay_ok))
            for n in range(3)
        ]
        await wait_until(lambda: gate.pending == 3)

        tasks[1].cancel()
        await wait_until(lambda: gate.pending == 2)
        assert gate.state is GateState.REFRESHING

        refresher.release.set()
        first = await tasks[0]
        third = await tasks[2]

        assert first.status_code == 200
        assert third.status_code == 200
        assert tasks[1].cancelled()
        assert refresher.calls == 1
        assert gate.pending == 0

    @pytest.mark.asyncio
    async def test_cancelling_driver_keeps_refresh_running(self, store, controller):
        """The caller that started the refresh can leave; the refresh finishes."""
        refresher = BlockingRefresher()
        gate = AuthGate(store, refresher, controller)

        driver = asyncio.create_task(gate.handle_auth_failure(make_descriptor(0), EXPIRED, replay_ok))
        await refresher.started.wait()
        follower = asyncio.create_task(gate.handle_auth_failure(make_descriptor(1), EXPIRED, replay_ok))
        await wait_until(lambda: gate.pending == 2)

        driver.cancel()
        await wait_until(lambda: gate.pending == 1)
        refresher.release.set()

        assert (await follower).status_code == 200
        assert store.access_token == NEW_ACCESS_TOKEN

    @pytest.mark.asyncio
    async def test_dispose_rejects_parked_waiters(self, store, controller, ended):
        refresher = BlockingRefresher()
        gate = AuthGate(store, refresher, controller)

        task = asyncio.create_task(gate.handle_auth_failure(make_descriptor(), EXPIRED, replay_ok))
        await refresher.started.wait()
        gate.dispose()

        with pytest.raises(SessionClosedError):
            await task
        assert gate.state is GateState.IDLE
        assert gate.pending == 0
        assert ended == []

        with pytest.raises(SessionClosedError):
            await gate.refresh_now()
