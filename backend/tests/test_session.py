# Overview: Pytest coverage for SyncSession wiring (triggers, sign-out, scheduling).

import asyncio

import httpx
import pytest

from possync.client.config import ClientConfig
from possync.client.engine import PassReport
from possync.client.session import SyncSession


@pytest.fixture
def make_session(tmp_path, store_a, token_a, bridge):
    def _make(token=token_a, **overrides):
        config = ClientConfig(
            api_url="http://pos.test",
            db_path=str(tmp_path / "session.sqlite3"),
            store_id=store_a.id,
            token=token,
            backoff_jitter=0.0,
            **overrides,
        )
        return SyncSession(config, transport=httpx.MockTransport(bridge))
    return _make


class TestSession:

    def test_store_id_required(self, tmp_path):
        with pytest.raises(ValueError):
            SyncSession(ClientConfig(db_path=str(tmp_path / "x.sqlite3")))

    def test_trigger_suppressed_while_offline(self, make_session, bridge):
        async def scenario():
            async with make_session() as session:
                return await session.trigger("interval")

        assert asyncio.run(scenario()) is None
        assert bridge.requests == []

    def test_sync_now_probes_then_syncs(self, make_session, bridge):
        async def scenario():
            async with make_session() as session:
                row = session.writer.create("category", {"name": "Drinks"})
                report = await session.sync_now()
                return report, session.store.get("category", row.local_id).dirty

        report, dirty = asyncio.run(scenario())

        assert report.ok
        assert dirty is False
        assert bridge.requests[0] == ("GET", "/api/health")
        assert bridge.count("POST") == 1

    def test_rejected_token_signs_out(self, make_session, bridge):
        async def scenario():
            async with make_session(token="stale") as session:
                session.writer.create("category", {"name": "Drinks"})
                report = await session.sync_now()
                after = await session.trigger("interval")
                return session, report, after, session.status()

        session, report, after, status = asyncio.run(scenario())

        assert report.aborted == "unauthenticated"
        assert session.authenticated is False
        assert session.api.token is None
        assert after is None
        assert status["authenticated"] is False

    def test_sign_in_again_resumes(self, make_session, token_a):
        async def scenario():
            async with make_session(token="stale") as session:
                row = session.writer.create("category", {"name": "Drinks"})
                await session.sync_now()
                session.sign_in(token_a)
                report = await session.sync_now()
                return report, session.store.get("category", row.local_id).dirty

        report, dirty = asyncio.run(scenario())
        assert report.ok
        assert dirty is False

    def test_offline_session_keeps_local_writes(self, make_session, bridge):
        bridge.fail_with = httpx.ConnectError

        async def scenario():
            async with make_session() as session:
                session.writer.create("category", {"name": "Drinks"})
                report = await session.sync_now()
                return report, session.journal.count(session.store_id)

        report, pending = asyncio.run(scenario())
        assert report is None
        assert pending == 1


class TestScheduling:

    def test_next_delay_uses_backoff_after_failure(self, make_session):
        session = make_session(sync_interval=45.0)
        try:
            assert session.next_delay(None) == 45.0
            assert session.next_delay(PassReport("s", retry_in=4.0)) == 4.0
            assert session.next_delay(PassReport("s")) == 45.0
        finally:
            session.store.close()

    def test_status_includes_connectivity(self, make_session):
        session = make_session()
        try:
            status = session.status()
            assert status["connectivity"]["online"] is False
            assert status["authenticated"] is True
            assert status["pending"] == 0
        finally:
            session.store.close()
