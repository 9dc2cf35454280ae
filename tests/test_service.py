"""Tests for CredentialService — structured results across all subsystems."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from keysmith.automation.models import JobPollStatus
from keysmith.oauth.coordinator import PollStatus
from keysmith.service import CredentialService, Outcome, create_service
from keysmith.vault.backends import KeyringSecretBackend

EXPORT_PASSWORD = "Export-Passw0rd!"


class TestOutcome:
    def test_ok_dict(self):
        assert Outcome.ok({"a": 1}).to_dict() == {"success": True, "data": {"a": 1}}

    def test_fail_dict(self):
        assert Outcome.fail("nope", "not_found").to_dict() == {
            "success": False,
            "error": "nope",
            "code": "not_found",
        }


class TestVaultOperations:
    def test_save_get_list_delete(self, service):
        saved = service.save_secret({"id": "a", "value": "sk-123", "type": "apiKey"})
        assert saved.success
        assert saved.data["id"] == "a"
        assert "value" not in saved.data

        got = service.get_secret("a")
        assert got.success
        assert got.data["value"] == "sk-123"
        assert got.data["type"] == "apiKey"

        listed = service.list_secrets()
        assert [m["id"] for m in listed.data] == ["a"]
        assert "sk-123" not in str(listed.data)

        assert service.delete_secret("a").data == {"deleted": True}
        assert service.delete_secret("a").data == {"deleted": False}

    def test_get_missing_is_not_found(self, service):
        outcome = service.get_secret("missing")
        assert not outcome.success
        assert outcome.code == "not_found"

    def test_invalid_record_is_validation_error(self, service):
        outcome = service.save_secret({"id": "a", "value": "", "type": "apiKey"})
        assert outcome.code == "validation_error"
        assert service.list_secrets().data == []

    def test_records_use_camel_case_keys(self, service):
        service.save_secret(
            {"id": "gh", "value": "gho_x", "type": "oauth", "serviceId": "github", "refreshToken": "r"}
        )
        got = service.get_secret("gh").data
        assert got["serviceId"] == "github"
        assert got["refreshToken"] == "r"

    def test_corrupted_secret_reported(self, service, memory_keyring):
        service.save_secret({"id": "a", "value": "alpha", "type": "apiKey"})
        service.save_secret({"id": "b", "value": "beta", "type": "apiKey"})
        service_name = service.store.backend.secrets_service
        entries = memory_keyring.entries
        entries[(service_name, "a")] = entries[(service_name, "b")]

        outcome = service.get_secret("a")
        assert not outcome.success
        assert outcome.code == "corrupted_secret"

    def test_export_import(self, service):
        service.save_secret({"id": "a", "value": "sk-123", "type": "apiKey"})
        exported = service.export_vault(EXPORT_PASSWORD)
        assert exported.success
        service.delete_secret("a")

        assert service.import_vault(exported.data, EXPORT_PASSWORD).data == {"imported": 1}
        assert service.get_secret("a").data["value"] == "sk-123"

    def test_import_wrong_password(self, service):
        service.save_secret({"id": "a", "value": "sk-123", "type": "apiKey"})
        exported = service.export_vault(EXPORT_PASSWORD).data
        outcome = service.import_vault(exported, "wrong")
        assert outcome.code == "import_error"

    def test_unexpected_error_is_internal(self, service, caplog):
        with patch.object(service.store, "list", side_effect=RuntimeError("disk on fire")):
            outcome = service.list_secrets()
        assert outcome.code == "internal_error"
        assert "disk on fire" not in (outcome.error or "")
        assert "disk on fire" in caplog.text


class TestOAuthOperations:
    @pytest.mark.asyncio
    async def test_start_and_poll(self, service):
        outcome = await service.start_oauth(
            "https://provider.example/authorize", "client-1", ["read"]
        )
        assert outcome.success
        session_id = outcome.data["session_id"]
        assert outcome.data["code_verifier"]
        assert outcome.data["authorization_url"].startswith("https://provider.example/authorize?")

        assert service.poll_oauth(session_id).status is PollStatus.PENDING
        service.coordinator.handle_callback(session_id, code="CODE")
        assert service.poll_oauth(session_id).to_dict() == {"status": "success", "code": "CODE"}

    @pytest.mark.asyncio
    async def test_without_pkce_omits_verifier(self, service):
        outcome = await service.start_oauth("https://p.example/a", "c", [], use_pkce=False)
        assert "code_verifier" not in outcome.data

    @pytest.mark.asyncio
    async def test_invalid_url(self, service):
        outcome = await service.start_oauth("javascript:alert(1)", "c")
        assert outcome.code == "validation_error"

    @pytest.mark.asyncio
    async def test_capacity(self, service, keysmith_config):
        for _ in range(keysmith_config.oauth.max_sessions):
            assert (await service.start_oauth("https://p.example/a", "c")).success
        outcome = await service.start_oauth("https://p.example/a", "c")
        assert outcome.code == "capacity_exceeded"


class TestJobOperations:
    @pytest.mark.asyncio
    async def test_submit_and_poll(self, service):
        outcome = await service.submit_job("demo", "fetchKey", {"suffix": "1"})
        assert outcome.success
        job_id = outcome.data["job_id"]
        for _ in range(5):
            await asyncio.sleep(0)

        poll = await service.poll_job(job_id)
        assert poll.status is JobPollStatus.COMPLETED
        assert poll.result == "sk-automated-1"

    @pytest.mark.asyncio
    async def test_failed_job(self, service):
        job_id = (await service.submit_job("demo", "broken")).data["job_id"]
        for _ in range(5):
            await asyncio.sleep(0)
        poll = await service.poll_job(job_id)
        assert poll.to_dict() == {"status": "failed", "error": "login page changed"}

    @pytest.mark.asyncio
    async def test_unknown_action(self, service):
        outcome = await service.submit_job("demo", "nothing")
        assert outcome.code == "validation_error"

    @pytest.mark.asyncio
    async def test_resource_failure(self, service, pool):
        pool.fail = True
        outcome = await service.submit_job("demo", "fetchKey")
        assert outcome.code == "resource_error"

    @pytest.mark.asyncio
    async def test_poll_unknown(self, service):
        assert (await service.poll_job("missing")).status is JobPollStatus.NOT_FOUND


class TestCreateService:
    @pytest.mark.asyncio
    async def test_wires_components(self, keysmith_config, memory_keyring):
        svc = create_service(keysmith_config, keyring_api=memory_keyring)
        try:
            assert isinstance(svc, CredentialService)
            assert isinstance(svc.store.backend, KeyringSecretBackend)
            assert svc.coordinator.config is keysmith_config.oauth
            assert svc.scheduler.config is keysmith_config.automation
        finally:
            await svc.close()
