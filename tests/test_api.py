"""Tests for the local HTTP API."""

from __future__ import annotations

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from keysmith.api import create_app

EXPORT_PASSWORD = "Export-Passw0rd!"


@pytest.fixture
async def client(service):
    transport = ASGITransport(app=create_app(service))
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


class TestSecrets:
    @pytest.mark.asyncio
    async def test_crud_roundtrip(self, client):
        resp = await client.post("/secrets", json={"id": "a", "value": "sk-123", "type": "apiKey"})
        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == "a"

        resp = await client.get("/secrets")
        body = resp.json()
        assert body["success"] is True
        assert [m["id"] for m in body["data"]] == ["a"]
        assert "sk-123" not in resp.text

        resp = await client.get("/secrets/a")
        assert resp.json()["data"]["value"] == "sk-123"

        resp = await client.delete("/secrets/a")
        assert resp.json()["data"] == {"deleted": True}

        resp = await client.get("/secrets/a")
        assert resp.status_code == 404
        assert resp.json() == {
            "success": False,
            "error": "Secret not found: a",
            "code": "not_found",
        }

    @pytest.mark.asyncio
    async def test_invalid_record_400(self, client):
        resp = await client.post("/secrets", json={"id": "a", "type": "apiKey"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_export_import(self, client):
        await client.post("/secrets", json={"id": "a", "value": "sk-123", "type": "apiKey"})
        resp = await client.post("/vault/export", json={"password": EXPORT_PASSWORD})
        exported = resp.json()["data"]
        await client.delete("/secrets/a")

        resp = await client.post(
            "/vault/import", json={"data": exported, "password": EXPORT_PASSWORD}
        )
        assert resp.json()["data"] == {"imported": 1}

        resp = await client.post("/vault/import", json={"data": exported, "password": "bad"})
        assert resp.status_code == 400
        assert resp.json()["code"] == "import_error"

    @pytest.mark.asyncio
    async def test_export_requires_password(self, client):
        resp = await client.post("/vault/export", json={"password": ""})
        assert resp.json()["code"] == "validation_error"


class TestOAuth:
    @pytest.mark.asyncio
    async def test_start_and_poll(self, client, service):
        resp = await client.post(
            "/oauth/start",
            json={"authUrl": "https://p.example/authorize", "clientId": "c", "scopes": ["x"]},
        )
        assert resp.status_code == 200
        session_id = resp.json()["data"]["session_id"]

        assert (await client.get(f"/oauth/{session_id}")).json() == {"status": "pending"}
        service.coordinator.handle_callback(session_id, code="CODE")
        assert (await client.get(f"/oauth/{session_id}")).json() == {
            "status": "success",
            "code": "CODE",
        }
        assert (await client.get(f"/oauth/{session_id}")).json()["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_snake_case_body_accepted(self, client):
        resp = await client.post(
            "/oauth/start",
            json={"auth_url": "https://p.example/a", "client_id": "c", "use_pkce": False},
        )
        assert resp.status_code == 200
        assert "code_verifier" not in resp.json()["data"]

    @pytest.mark.asyncio
    async def test_capacity_is_429(self, client, keysmith_config):
        body = {"authUrl": "https://p.example/a", "clientId": "c"}
        for _ in range(keysmith_config.oauth.max_sessions):
            await client.post("/oauth/start", json=body)
        resp = await client.post("/oauth/start", json=body)
        assert resp.status_code == 429


class TestJobs:
    @pytest.mark.asyncio
    async def test_submit_and_poll(self, client):
        resp = await client.post(
            "/jobs", json={"serviceName": "demo", "actionName": "fetchKey", "params": {"suffix": "9"}}
        )
        assert resp.status_code == 200
        job_id = resp.json()["data"]["job_id"]
        for _ in range(5):
            await asyncio.sleep(0)

        resp = await client.get(f"/jobs/{job_id}")
        assert resp.json() == {"status": "completed", "result": "sk-automated-9"}

    @pytest.mark.asyncio
    async def test_capacity_is_429(self, client, registry, keysmith_config):
        gate = asyncio.Event()

        async def hang(ctx):
            await gate.wait()

        registry.register("demo", "hang", hang)
        body = {"serviceName": "demo", "actionName": "hang"}
        for _ in range(keysmith_config.automation.max_concurrent_jobs):
            assert (await client.post("/jobs", json=body)).status_code == 200
        resp = await client.post("/jobs", json=body)
        assert resp.status_code == 429
        assert resp.json()["code"] == "capacity_exceeded"

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        assert (await client.get("/jobs/nope")).json()["status"] == "not_found"


class TestHealthAndHardening:
    @pytest.mark.asyncio
    async def test_health(self, client):
        await client.post("/secrets", json={"id": "a", "value": "v", "type": "apiKey"})
        body = (await client.get("/health")).json()
        assert body["status"] == "healthy"
        assert body["secrets"] == 1
        assert body["oauth_sessions"] == 0
        assert body["running_jobs"] == 0

    @pytest.mark.asyncio
    async def test_security_headers(self, client):
        resp = await client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Cache-Control"] == "no-store"

    @pytest.mark.asyncio
    async def test_remote_peer_refused(self, service):
        transport = ASGITransport(app=create_app(service), client=("192.168.1.20", 40000))
        async with AsyncClient(transport=transport, base_url="http://test") as remote:
            resp = await remote.get("/secrets")
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_non_json_body_is_415(self, client):
        resp = await client.post(
            "/secrets", content=b"id=a", headers={"Content-Type": "text/plain"}
        )
        assert resp.status_code == 415
        assert resp.json()["code"] == "unsupported_media_type"

    @pytest.mark.asyncio
    async def test_oversized_body_is_413(self, service):
        transport = ASGITransport(app=create_app(service, max_body_bytes=64))
        async with AsyncClient(transport=transport, base_url="http://test") as small:
            resp = await small.post(
                "/secrets", json={"id": "a", "value": "x" * 100, "type": "oauth"}
            )
        assert resp.status_code == 413
        assert resp.json()["code"] == "payload_too_large"
        assert "a" not in service.store

    @pytest.mark.asyncio
    async def test_rate_limited_after_quota(self, service):
        transport = ASGITransport(app=create_app(service, rate_limit="2/minute"))
        async with AsyncClient(transport=transport, base_url="http://test") as c:
            assert (await c.get("/health")).status_code == 200
            assert (await c.get("/secrets")).status_code == 200
            resp = await c.get("/health")
        assert resp.status_code == 429
        assert resp.json()["code"] == "rate_limited"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    @pytest.mark.asyncio
    async def test_malformed_api_key_is_400(self, client):
        resp = await client.post(
            "/secrets", json={"id": "a", "value": "sk 123\n", "type": "apiKey"}
        )
        assert resp.status_code == 400
        assert "invalid characters" in resp.json()["error"]
