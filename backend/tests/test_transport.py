# Overview: Pytest coverage for the client HTTP transport and its tagged results.

import asyncio

import httpx
import pytest

from possync.client.errors import ErrorKind
from possync.client.transport import (
    SyncApi, classify, Accepted, VersionConflict, Rejected, TransientFailure, PullPage,
)


@pytest.fixture
def api(bridge, token_a):
    return SyncApi("http://pos.test", token_a, transport=httpx.MockTransport(bridge))


def run(coro):
    return asyncio.run(coro)


class TestClassify:

    @pytest.mark.parametrize("status,kind", [
        (400, ErrorKind.VALIDATION),
        (401, ErrorKind.UNAUTHENTICATED),
        (403, ErrorKind.TENANT_VIOLATION),
        (404, ErrorKind.VALIDATION),
        (422, ErrorKind.VALIDATION),
    ])
    def test_rejections(self, status, kind):
        result = classify(httpx.Response(status, json={"error": "nope"}))
        assert isinstance(result, Rejected)
        assert result.kind == kind
        assert result.message == "nope"

    @pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
    def test_transient(self, status):
        assert isinstance(classify(httpx.Response(status, text="busy")), TransientFailure)

    def test_conflict_with_current(self):
        result = classify(httpx.Response(409, json={"error": "x", "code": "DUPLICATE", "current": {"_id": "1"}}))
        assert result == VersionConflict({"_id": "1"}, "DUPLICATE")

    def test_conflict_without_current_is_validation(self):
        result = classify(httpx.Response(409, json={"error": "name taken"}))
        assert isinstance(result, Rejected)
        assert result.kind == ErrorKind.VALIDATION

    def test_refusal(self):
        result = classify(httpx.Response(422, json={"error": "manual", "code": "RESOLVER_REFUSAL"}))
        assert result.kind == ErrorKind.RESOLVER_REFUSAL


class TestSyncApi:

    def test_create_then_stale_update(self, api):
        async def scenario():
            created = await api.create("category", {"name": "Drinks"})
            await api.update("category", created.row["_id"], {"name": "Hot"}, 1)
            stale = await api.update("category", created.row["_id"], {"name": "Cold"}, 1)
            return created, stale

        created, stale = run(scenario())
        assert isinstance(created, Accepted)
        assert created.row["syncVersion"] == 1
        assert isinstance(stale, VersionConflict)
        assert stale.current["name"] == "Hot"
        assert stale.current["syncVersion"] == 2

    def test_pull_page(self, api):
        async def scenario():
            await api.create("category", {"name": "Drinks"})
            return await api.pull("category")

        page = run(scenario())
        assert isinstance(page, PullPage)
        assert [item["name"] for item in page.items] == ["Drinks"]

    def test_health(self, api, bridge):
        assert run(api.health(timeout=1)) is True
        bridge.fail_with = httpx.ConnectError
        assert run(api.health(timeout=1)) is False

    def test_network_error_is_transient(self, api, bridge):
        bridge.fail_with = httpx.ReadTimeout
        result = run(api.create("category", {"name": "Drinks"}))
        assert isinstance(result, TransientFailure)

    def test_token_can_be_cleared(self, api):
        api.token = None
        result = run(api.pull("category"))
        assert isinstance(result, Rejected)
        assert result.kind == ErrorKind.UNAUTHENTICATED
