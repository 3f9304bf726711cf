from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from sentinel_shield.api.client import EmergencyPauseClient
from sentinel_shield.api.server import ShieldApi
from sentinel_shield.config import ApiConfig
from sentinel_shield.inference.alerts import Notifier
from sentinel_shield.inference.executor import PauseExecutor
from sentinel_shield.inference.pipeline import ProtectionPipeline
from sentinel_shield.models.heuristics import TransactionAnalyzer
from sentinel_shield.persistence.journal import EventJournal
from sentinel_shield.registry.lifecycle import ProtectionRegistry

from conftest import CONTRACT


API_KEY = "test-key"
VULN = "0x" + "5" * 64


@pytest.fixture
def pipeline(fake_chain):
    """Pipeline with a direct executor over the in-memory chain."""
    registry = ProtectionRegistry(chain=fake_chain)
    return ProtectionPipeline(
        analyzer=TransactionAnalyzer(),
        journal=EventJournal(),
        registry=registry,
        executor=PauseExecutor(fake_chain, on_state_change=registry.apply_paused_state),
        notifier=Notifier(log_notices=False),
    )


@pytest.fixture
def api(pipeline):
    return ShieldApi(pipeline, ApiConfig(api_key=API_KEY), status_provider=lambda: {"connection": {"status": "idle"}})


class TestEmergencyPauseEndpoint:
    @pytest.mark.asyncio
    async def test_requires_api_key(self, api, fake_chain):
        async with TestClient(TestServer(api.app)) as client:
            resp = await client.post("/emergency-pause", json={"target": CONTRACT, "vulnHash": VULN})
            assert resp.status == 401
            resp = await client.post(
                "/emergency-pause",
                json={"target": CONTRACT, "vulnHash": VULN},
                headers={"X-API-Key": "wrong"},
            )
            assert resp.status == 401
        assert fake_chain.submissions == []

    @pytest.mark.asyncio
    async def test_missing_server_key_rejects_everything(self, pipeline):
        api = ShieldApi(pipeline, ApiConfig(api_key=None))
        async with TestClient(TestServer(api.app)) as client:
            resp = await client.post("/emergency-pause", json={}, headers={"X-API-Key": ""})
            assert resp.status == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"target": "nope", "vulnHash": VULN},
            {"target": CONTRACT, "vulnHash": "0x1234"},
            {"target": CONTRACT},
            ["not", "an", "object"],
        ],
    )
    async def test_rejects_invalid_body(self, api, body):
        async with TestClient(TestServer(api.app)) as client:
            resp = await client.post("/emergency-pause", json=body, headers={"X-API-Key": API_KEY})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_pause_then_already_paused(self, api, fake_chain):
        async with TestClient(TestServer(api.app)) as client:
            headers = {"X-API-Key": API_KEY}
            body = {"target": CONTRACT, "vulnHash": VULN, "source": "ops"}

            first = await client.post("/emergency-pause", json=body, headers=headers)
            second = await client.post("/emergency-pause", json=body, headers=headers)

            assert first.status == 200
            data = await first.json()
            assert data["success"] and data["txHash"]
            assert (await second.json()) == {"success": True, "alreadyPaused": True}
        assert len(fake_chain.submissions) == 1

    @pytest.mark.asyncio
    async def test_not_authorized_maps_to_403(self, api, fake_chain):
        fake_chain.submit_error = ValueError("AccessControl: account is missing role")
        async with TestClient(TestServer(api.app)) as client:
            resp = await client.post(
                "/emergency-pause",
                json={"target": CONTRACT, "vulnHash": VULN},
                headers={"X-API-Key": API_KEY},
            )
            assert resp.status == 403
            assert (await resp.json())["failureClass"] == "NotAuthorized"

    @pytest.mark.asyncio
    async def test_pending_maps_to_202(self, api, fake_chain):
        fake_chain.mined = None
        async with TestClient(TestServer(api.app)) as client:
            resp = await client.post(
                "/emergency-pause",
                json={"target": CONTRACT, "vulnHash": VULN},
                headers={"X-API-Key": API_KEY},
            )
            assert resp.status == 202
            assert (await resp.json())["pending"] is True


class TestReadEndpoints:
    @pytest.mark.asyncio
    async def test_events_filters(self, api, pipeline):
        await pipeline.handle_message({
            "type": "THREAT_DETECTED",
            "threat": {"id": "r1", "level": "HIGH", "contractAddress": CONTRACT, "timestamp": 1},
        })
        await pipeline.handle_message({
            "type": "THREAT_DETECTED",
            "threat": {"id": "r2", "level": "LOW", "contractAddress": CONTRACT, "timestamp": 2},
        })

        async with TestClient(TestServer(api.app)) as client:
            everything = await (await client.get("/events")).json()
            high = await (await client.get("/events", params={"level": "high"})).json()
            limited = await (await client.get("/events", params={"limit": "1"})).json()
            bad = await client.get("/events", params={"level": "SEVERE"})

        assert [e["id"] for e in everything["events"]] == ["r2", "r1"]
        assert high["count"] == 1 and high["events"][0]["id"] == "r1"
        assert limited["count"] == 1
        assert bad.status == 400

    @pytest.mark.asyncio
    async def test_status(self, api):
        async with TestClient(TestServer(api.app)) as client:
            status = await (await client.get("/status")).json()
        assert status["connection"] == {"status": "idle"}
        assert "pipeline" in status and "summary" in status


class TestEmergencyPauseClient:
    @pytest.mark.asyncio
    async def test_client_against_running_endpoint(self, api, fake_chain):
        """The remote executor speaks the same protocol the endpoint serves."""
        async with TestServer(api.app) as server:
            client = EmergencyPauseClient(str(server.make_url("")), API_KEY, source="peer")
            try:
                first = await client.execute_pause(CONTRACT, VULN)
                second = await client.execute_pause(CONTRACT, VULN)
            finally:
                await client.close()

        assert first.triggered
        assert second.already_paused
        assert fake_chain.submissions == [(CONTRACT, VULN)]

    @pytest.mark.asyncio
    async def test_client_wrong_key(self, api):
        async with TestServer(api.app) as server:
            client = EmergencyPauseClient(str(server.make_url("")), "wrong")
            try:
                result = await client.execute_pause(CONTRACT, VULN)
            finally:
                await client.close()

        assert not result.success
        assert result.failure_class == "CredentialRejected"

    @pytest.mark.asyncio
    async def test_client_unreachable(self):
        client = EmergencyPauseClient("http://127.0.0.1:1", API_KEY, timeout=1)
        try:
            result = await client.execute_pause(CONTRACT, VULN)
        finally:
            await client.close()
        assert result.failure_class == "SubmissionFailed"

    @pytest.mark.asyncio
    async def test_client_non_object_body(self):
        async def handler(request):
            return web.json_response([1, 2, 3])

        app = web.Application()
        app.router.add_post("/emergency-pause", handler)
        async with TestServer(app) as server:
            client = EmergencyPauseClient(str(server.make_url("")), API_KEY)
            try:
                result = await client.execute_pause(CONTRACT, VULN)
            finally:
                await client.close()

        assert not result.success
        assert result.failure_class == "SubmissionFailed"
