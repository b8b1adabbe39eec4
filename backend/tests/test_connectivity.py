# Overview: Pytest coverage for the connectivity supervisor (heartbeat + OS flag).

import asyncio

import pytest

from possync.client.connectivity import ConnectivitySupervisor


class FakeApi:
    def __init__(self, reachable=True):
        self.reachable = reachable
        self.calls = 0

    async def health(self, timeout=None):
        self.calls += 1
        return self.reachable


class FakeEngine:
    def __init__(self):
        self.events = []

    def cancel(self, reason="offline"):
        self.events.append(("cancel", reason))

    def resume(self):
        self.events.append(("resume",))


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def triggers():
    return []


@pytest.fixture
def supervisor(api, engine, triggers):
    async def on_online(reason):
        triggers.append(reason)

    return ConnectivitySupervisor(api, engine=engine, on_online=on_online, heartbeat_interval=0.01)


def run(coro):
    return asyncio.run(coro)


class TestTransitions:

    def test_starts_offline_until_first_heartbeat(self, supervisor):
        assert supervisor.online is False
        assert supervisor.should_sync() is False

    def test_successful_heartbeat_goes_online_and_triggers_once(self, supervisor, engine, triggers):
        async def scenario():
            await supervisor.check()
            await supervisor.check()
            await asyncio.sleep(0)

        run(scenario())

        assert supervisor.online is True
        assert engine.events == [("resume",)]
        assert triggers == ["reconnected"]
        assert supervisor.status().last_online_at is not None

    def test_failed_heartbeat_goes_offline_and_cancels(self, supervisor, api, engine):
        async def scenario():
            await supervisor.check()
            api.reachable = False
            await supervisor.check()

        run(scenario())

        assert supervisor.online is False
        assert engine.events == [("resume",), ("cancel", "offline")]

    def test_os_down_is_trusted_without_probe(self, supervisor, api, engine):
        async def scenario():
            await supervisor.check()
            supervisor.set_os_online(False)
            await supervisor.check()

        run(scenario())

        assert supervisor.online is False
        assert api.calls == 1
        assert engine.events[-1] == ("cancel", "offline")

    def test_os_up_is_confirmed_by_heartbeat(self, supervisor, api, triggers):
        async def scenario():
            supervisor.set_os_online(False)
            supervisor.set_os_online(True)
            assert supervisor.online is False
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        run(scenario())

        assert api.calls == 1
        assert supervisor.online is True
        assert triggers == ["reconnected"]

    def test_os_up_without_loop_waits_for_next_heartbeat(self, supervisor, api):
        supervisor.set_os_online(True)
        assert api.calls == 0
        assert supervisor.online is False


class TestReconnectAttempts:

    def test_failed_probes_count_and_success_resets(self, supervisor, api):
        api.reachable = False

        async def scenario():
            await supervisor.check()
            await supervisor.reconnect()
            await supervisor.reconnect()
            assert supervisor.status().reconnect_attempts == 3
            api.reachable = True
            await supervisor.reconnect()

        run(scenario())

        status = supervisor.status()
        assert status.online is True
        assert status.reconnect_attempts == 0

    def test_status_is_a_snapshot(self, supervisor):
        snapshot = supervisor.status()
        snapshot.online = True
        assert supervisor.online is False

    def test_status_to_dict(self, supervisor):
        assert set(supervisor.status().to_dict()) == {
            "online", "osOnline", "reconnectAttempts", "lastOnlineAt", "lastCheckedAt",
        }


class TestSubscribers:

    def test_callbacks_fire_on_transitions_only(self, supervisor, api):
        seen = []
        supervisor.subscribe(lambda s: seen.append(s.online))

        async def scenario():
            await supervisor.check()
            await supervisor.check()
            api.reachable = False
            await supervisor.check()

        run(scenario())
        assert seen == [True, False]

    def test_unsubscribe(self, supervisor):
        seen = []
        unsubscribe = supervisor.subscribe(seen.append)
        unsubscribe()
        run(supervisor.check())
        assert seen == []

    def test_failing_callback_does_not_block_others(self, supervisor):
        seen = []

        def broken(_status):
            raise RuntimeError("boom")

        supervisor.subscribe(broken)
        supervisor.subscribe(lambda s: seen.append(s.online))
        run(supervisor.check())
        assert seen == [True]


class TestHeartbeatLoop:

    def test_loop_probes_until_stopped(self, supervisor, api):
        async def scenario():
            supervisor.start()
            await asyncio.sleep(0.05)
            await supervisor.stop()

        run(scenario())

        assert api.calls >= 2
        assert supervisor.online is True
