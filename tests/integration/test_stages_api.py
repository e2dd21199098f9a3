"""Integration tests for the stage gate HTTP and WebSocket API."""

import json
import logging
import uuid

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient

from stagegate.engines.triggers.trigger_engine import TriggerKind, TriggerRule
from stagegate.kernel.identity.jwt import Role
from stagegate.kernel.stages.stage_id import StageId


class TestHealthAndStages:
    """Tests for /health and /api/v1/stages."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["stages"] == 3
        assert "X-Request-ID" in response.headers

    async def test_slow_request_log_carries_engine_state(self, client: AsyncClient, api_context, monkeypatch, caplog):
        from stagegate.api.middleware import request_id

        monkeypatch.setattr(request_id, "SLOW_REQUEST_MS", -1)
        with caplog.at_level(logging.WARNING, logger="stagegate.api.middleware.request_id"):
            response = await client.get("/health")
        assert response.status_code == 200
        slow = [r for r in caplog.records if r.getMessage() == "Slow request"]
        assert len(slow) == 1
        assert slow[0].engine_ready is True
        assert slow[0].rule_epoch == api_context.registry.epoch
        assert slow[0].loaded_principals == 0

    async def test_list_requires_authentication(self, client: AsyncClient):
        response = await client.get("/api/v1/stages")
        assert response.status_code == 401

    async def test_list_stages(self, client: AsyncClient, principal_headers):
        response = await client.get("/api/v1/stages", headers=principal_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        mid = next(s for s in data["stages"] if s["id"] == "stagegate:mid")
        assert mid["dependencies"] == ["stagegate:base"]
        assert mid["unlock_message"] == "Alloys unlocked"

    async def test_get_stage(self, client: AsyncClient, principal_headers):
        response = await client.get("/api/v1/stages/late", headers=principal_headers)
        assert response.status_code == 200
        assert response.json()["id"] == "stagegate:late"

    async def test_unknown_stage_404(self, client: AsyncClient, principal_headers):
        response = await client.get("/api/v1/stages/nope", headers=principal_headers)
        assert response.status_code == 404
        assert response.json()["code"] == "UnknownStageError"

    async def test_validation_requires_admin(self, client: AsyncClient, principal_headers, admin_headers):
        assert (await client.get("/api/v1/stages/validation", headers=principal_headers)).status_code == 403

        response = await client.get("/api/v1/stages/validation", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["valid"] is True

    async def test_context_missing_returns_503(self, client: AsyncClient, principal_headers):
        from stagegate.main import app

        app.state.context = None
        response = await client.get("/api/v1/stages", headers=principal_headers)
        assert response.status_code == 503


class TestGrantAndRevoke:
    """Tests for stage mutations through the API."""

    async def test_grant_cascades(self, client: AsyncClient, admin_headers, principal_headers, principal_id):
        response = await client.post(
            f"/api/v1/principals/{principal_id}/grant",
            json={"stage": "mid"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["added"] == ["stagegate:base", "stagegate:mid"]

        response = await client.get(f"/api/v1/principals/{principal_id}/stages", headers=principal_headers)
        assert response.status_code == 200
        assert response.json()["stages"] == ["stagegate:base", "stagegate:mid"]

    async def test_reading_offline_principal_does_not_load_it(
        self, client: AsyncClient, api_context, principal_headers, principal_id
    ):
        api_context.durable.principals[principal_id] = frozenset({StageId.parse("base")})
        response = await client.get(f"/api/v1/principals/{principal_id}/stages", headers=principal_headers)
        assert response.status_code == 200
        assert response.json()["stages"] == ["stagegate:base"]
        assert response.json()["bypass"] is False
        assert not api_context.store.is_loaded(principal_id)
        assert principal_id not in api_context.store.principals()

    async def test_principal_cannot_grant(self, client: AsyncClient, principal_headers, principal_id):
        response = await client.post(
            f"/api/v1/principals/{principal_id}/grant",
            json={"stage": "mid"},
            headers=principal_headers,
        )
        assert response.status_code == 403

    async def test_principal_cannot_read_others(self, client: AsyncClient, principal_headers):
        response = await client.get(f"/api/v1/principals/{uuid.uuid4()}/stages", headers=principal_headers)
        assert response.status_code == 403

    async def test_grant_unknown_stage(self, client: AsyncClient, admin_headers, principal_id):
        response = await client.post(
            f"/api/v1/principals/{principal_id}/grant",
            json={"stage": "nope"},
            headers=admin_headers,
        )
        assert response.status_code == 404

    async def test_grant_invalid_body(self, client: AsyncClient, admin_headers, principal_id):
        response = await client.post(
            f"/api/v1/principals/{principal_id}/grant",
            json={"cause": "command"},
            headers=admin_headers,
        )
        assert response.status_code == 422
        assert response.json()["errors"][0]["field"].endswith("stage")

    async def test_revoke(self, client: AsyncClient, admin_headers, principal_id):
        await client.post(f"/api/v1/principals/{principal_id}/grant", json={"stage": "late"}, headers=admin_headers)
        response = await client.post(
            f"/api/v1/principals/{principal_id}/revoke",
            json={"stage": "mid", "cause": "command"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["removed"] == ["stagegate:mid"]
        assert data["stages"] == ["stagegate:base", "stagegate:late"]

    async def test_strict_bypass_requires_confirmation(self, client: AsyncClient, admin_headers, principal_id,
                                                       make_context, make_stage):
        """A strict dependency bypass is confirmed by repeating the request."""
        from stagegate.main import app

        app.state.context = make_context(
            [make_stage("base"), make_stage("late", ["base"])],
            grant_policy="strict",
        )
        url = f"/api/v1/principals/{principal_id}/grant"

        refused = await client.post(url, json={"stage": "late"}, headers=admin_headers)
        assert refused.status_code == 409
        assert refused.json()["missing"] == ["stagegate:base"]

        pending = await client.post(url, json={"stage": "late", "bypass_dependencies": True}, headers=admin_headers)
        assert pending.status_code == 409
        detail = pending.json()["detail"]
        assert detail["missing"] == ["stagegate:base"]
        assert detail["confirm_within_seconds"] == 10.0

        confirmed = await client.post(url, json={"stage": "late", "bypass_dependencies": True}, headers=admin_headers)
        assert confirmed.status_code == 200
        assert confirmed.json()["stages"] == ["stagegate:late"]


class TestAccess:
    """Tests for access queries, bypass and lock tables."""

    async def test_access_query(self, client: AsyncClient, admin_headers, principal_headers, principal_id):
        url = f"/api/v1/principals/{principal_id}/access/item/ns:alloy_bar"
        response = await client.get(url, headers=principal_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["required_stage"] == "stagegate:mid"
        assert data["locked"] is True

        await client.post(f"/api/v1/principals/{principal_id}/grant", json={"stage": "mid"}, headers=admin_headers)
        response = await client.get(url, headers=principal_headers)
        assert response.json()["locked"] is False

    async def test_unknown_resource_is_unrestricted(self, client: AsyncClient, principal_headers, principal_id):
        response = await client.get(
            f"/api/v1/principals/{principal_id}/access/block/base:dirt",
            headers=principal_headers,
        )
        assert response.status_code == 200
        assert response.json()["required_stage"] is None
        assert response.json()["locked"] is False

    async def test_bypass_flag(self, client: AsyncClient, admin_headers, principal_headers, principal_id):
        response = await client.put(
            f"/api/v1/principals/{principal_id}/bypass",
            json={"active": True},
            headers=admin_headers,
        )
        assert response.json() == {"principal_id": str(principal_id), "active": True, "changed": True}

        response = await client.get(
            f"/api/v1/principals/{principal_id}/access/item/techmod:gear",
            headers=principal_headers,
        )
        assert response.json()["required_stage"] == "stagegate:late"
        assert response.json()["locked"] is False

    async def test_interaction_query(self, client: AsyncClient, principal_headers, principal_id):
        response = await client.get(
            f"/api/v1/principals/{principal_id}/interactions",
            params={"type": "use", "held": "base:stick"},
            headers=principal_headers,
        )
        assert response.status_code == 200
        assert response.json()["locked"] is False

    async def test_catalog_and_lock_table(self, client: AsyncClient, admin_headers, principal_headers):
        response = await client.post(
            "/api/v1/catalog",
            json={
                "kind": "item",
                "resources": [
                    {"id": "base:stone_pick"},
                    {"id": "techmod:gear", "tags": ["#techmod:gears"]},
                    {"id": "base:dirt"},
                ],
            },
            headers=admin_headers,
        )
        assert response.status_code == 201
        assert response.json()["added"] == 3

        response = await client.get("/api/v1/locks/item", headers=principal_headers)
        assert response.status_code == 200
        assert response.json()["entries"] == {
            "base:stone_pick": "stagegate:base",
            "techmod:gear": "stagegate:late",
        }

    async def test_cache_stats(self, client: AsyncClient, admin_headers, principal_headers, principal_id):
        await client.get(f"/api/v1/principals/{principal_id}/access/item/base:stone_pick", headers=principal_headers)
        response = await client.get("/api/v1/cache/stats", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["misses"] >= 1


class TestTriggerEvents:
    """Tests for external event intake."""

    async def test_event_grants_on_next_cycle(self, client: AsyncClient, api_context, admin_headers, principal_id):
        api_context.triggers.load([
            TriggerRule(kind=TriggerKind.REGION_ENTRY, key="base:forge", stage=StageId.parse("mid")),
        ])
        response = await client.post(
            f"/api/v1/principals/{principal_id}/events",
            json={"kind": "region_entry", "key": "base:forge"},
            headers=admin_headers,
        )
        assert response.status_code == 202
        assert response.json()["stages"] == ["stagegate:mid"]
        assert not api_context.store.has(principal_id, "mid")

        await api_context.run_cycle()
        assert api_context.store.has(principal_id, "mid")


class TestReplicationSocket:
    """Tests for the replication WebSocket (runs the full application lifespan)."""

    def test_snapshot_and_resync(self, jwt_manager):
        from stagegate.main import app

        principal = uuid.uuid4()
        token, _, _ = jwt_manager.create_access_token(principal, Role.PRINCIPAL)

        with TestClient(app) as client:
            with client.websocket_connect(f"/api/v1/replication/{principal}?token={token}") as websocket:
                snapshot = [json.loads(websocket.receive_text()) for _ in range(4)]
                assert [m["type"] for m in snapshot] == ["definitions", "stage_set", "lock_table", "bypass"]
                assert snapshot[1]["principal_id"] == str(principal)

                websocket.send_text("resync")
                again = [json.loads(websocket.receive_text()) for _ in range(4)]
                assert again[1]["type"] == "stage_set"

    def test_rejects_foreign_token(self, jwt_manager):
        from starlette.websockets import WebSocketDisconnect

        from stagegate.main import app

        token, _, _ = jwt_manager.create_access_token(uuid.uuid4(), Role.PRINCIPAL)
        with TestClient(app) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect(f"/api/v1/replication/{uuid.uuid4()}?token={token}") as websocket:
                    websocket.receive_text()
            assert exc_info.value.code == 1008
