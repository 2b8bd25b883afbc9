"""Tests for LicenseClient.validate_license."""

import json
import time

import httpx
import pytest
from structlog.testing import capture_logs

from api_client import ApiClient
from cache import create_cache_key
from license_client import FALLBACK_REASON, LicenseClient
from models import ValidateLicenseRequest
from conftest import make_record

CACHE_KEY = create_cache_key("test-software", "TEST-LICENSE")


def _events(logs):
    return [entry["event"] for entry in logs]


class TestFreshCache:
    """A fresh cached record answers immediately and is refreshed in the background."""

    @pytest.mark.asyncio
    async def test_returns_cached_result_and_refreshes_once(self, client, api, cache_storage):
        await cache_storage.set(CACHE_KEY, make_record(is_valid=True, reason="cached", age_hours=1))
        api.respond("/license/validate", body={"isValid": False, "reason": "revoked"})

        result = await client.validate_license(licenseKey="TEST-LICENSE", cacheDurationInHours=24)

        assert result.isValid is True
        assert result.reason == "cached"
        assert api.calls("/license/validate") == []
        assert len(client.background_tasks) == 1

        await client.wait_for_background_tasks()

        assert len(api.calls("/license/validate")) == 1
        refreshed = await cache_storage.get(CACHE_KEY)
        assert refreshed.isValid is False
        assert refreshed.reason == "revoked"

    @pytest.mark.asyncio
    async def test_default_cache_duration_is_24_hours(self, client, api, cache_storage):
        await cache_storage.set(CACHE_KEY, make_record(reason="cached", age_hours=23))

        result = await client.validate_license(licenseKey="TEST-LICENSE")
        await client.wait_for_background_tasks()

        assert result.reason == "cached"

    @pytest.mark.asyncio
    async def test_failed_background_refresh_is_logged_and_keeps_record(self, client, api, cache_storage):
        record = make_record(is_valid=True, reason="cached", age_hours=1)
        await cache_storage.set(CACHE_KEY, record)
        api.respond("/license/validate", status=503, body={"error": "unavailable"})

        with capture_logs() as logs:
            result = await client.validate_license(licenseKey="TEST-LICENSE")
            await client.wait_for_background_tasks()

        assert result.isValid is True
        assert "background_refresh_failed" in _events(logs)
        assert await cache_storage.get(CACHE_KEY) == record

    @pytest.mark.asyncio
    async def test_injected_logger_receives_background_errors(
        self, client_config, api, cache_storage, license_key_store
    ):
        class RecordingLogger:
            def __init__(self):
                self.events = []

            def info(self, event, **kw):
                self.events.append(("info", event))

            def warning(self, event, **kw):
                self.events.append(("warning", event))

            def error(self, event, **kw):
                self.events.append(("error", event))

        logger = RecordingLogger()
        client = LicenseClient(
            client_config,
            cache_storage=cache_storage,
            license_key_store=license_key_store,
            api_client=ApiClient(client_config, transport=httpx.MockTransport(api.handler)),
            logger=logger,
        )
        await cache_storage.set(CACHE_KEY, make_record(age_hours=1))
        api.respond("/license/validate", status=500, body={})

        await client.validate_license(licenseKey="TEST-LICENSE")
        await client.wait_for_background_tasks()

        assert ("error", "background_refresh_failed") in logger.events


class TestOnlineValidation:
    """Expired, missing or bypassed cache goes to the API."""

    @pytest.mark.asyncio
    async def test_expired_cache_is_revalidated(self, client, api, cache_storage):
        await cache_storage.set(CACHE_KEY, make_record(is_valid=False, reason="old", age_hours=25))

        before = int(time.time() * 1000)
        result = await client.validate_license(licenseKey="TEST-LICENSE", cacheDurationInHours=24)

        assert result.isValid is True
        assert result.reason == "ok"
        assert client.background_tasks == set()
        updated = await cache_storage.get(CACHE_KEY)
        assert updated.isValid is True
        assert updated.reason == "ok"
        assert before <= updated.timestamp <= int(time.time() * 1000)

    @pytest.mark.asyncio
    async def test_force_online_ignores_fresh_cache(self, client, api, cache_storage):
        await cache_storage.set(CACHE_KEY, make_record(is_valid=True, reason="cached", age_hours=0))
        api.respond("/license/validate", body={"isValid": False, "reason": "revoked"})

        result = await client.validate_license(
            ValidateLicenseRequest(licenseKey="TEST-LICENSE", forceOnlineValidation=True)
        )

        assert result.isValid is False
        assert result.reason == "revoked"
        assert len(api.calls("/license/validate")) == 1

    @pytest.mark.asyncio
    async def test_request_shape(self, client, api):
        await client.validate_license(
            licenseKey="TEST-LICENSE",
            machineId="machine-1",
            sessionId="session-1",
            environment={"userAgent": "pytest"},
        )

        [request] = api.calls("/license/validate")
        assert str(request.url) == "https://api.test/v1/license/validate"
        assert request.headers["Authorization"] == "Bearer TEST-LICENSE"
        assert json.loads(request.content) == {
            "licenseKey": "TEST-LICENSE",
            "softwareId": "test-software",
            "machineId": "machine-1",
            "sessionId": "session-1",
            "environment": {"userAgent": "pytest"},
        }

    @pytest.mark.asyncio
    async def test_machine_and_session_ids_are_filled_in(self, client, api):
        await client.validate_license(licenseKey="TEST-LICENSE")

        body = json.loads(api.calls("/license/validate")[0].content)
        assert body["machineId"] == client.machine_id
        assert body["sessionId"] == client.session_id
        assert body["environment"] == {}

    @pytest.mark.asyncio
    async def test_software_id_override(self, client, api, cache_storage):
        await client.validate_license(licenseKey="TEST-LICENSE", softwareId="other-software")

        body = json.loads(api.calls("/license/validate")[0].content)
        assert body["softwareId"] == "other-software"
        assert await cache_storage.get(create_cache_key("other-software", "TEST-LICENSE")) is not None
        assert await cache_storage.get(CACHE_KEY) is None


class TestRememberedLicenseKey:
    """Valid license keys are remembered per software id."""

    @pytest.mark.asyncio
    async def test_valid_result_remembers_key(self, client, api, license_key_store):
        await client.validate_license(licenseKey="TEST-LICENSE")

        assert await license_key_store.get("test-software") == "TEST-LICENSE"

    @pytest.mark.asyncio
    async def test_invalid_result_does_not_remember_key(self, client, api, license_key_store):
        api.respond("/license/validate", body={"isValid": False, "reason": "expired"})

        await client.validate_license(licenseKey="TEST-LICENSE")

        assert await license_key_store.get("test-software") is None

    @pytest.mark.asyncio
    async def test_omitted_key_uses_remembered_key(self, client, api, license_key_store):
        await license_key_store.set("test-software", "REMEMBERED")

        result = await client.validate_license()

        assert result.isValid is True
        [request] = api.calls("/license/validate")
        assert request.headers["Authorization"] == "Bearer REMEMBERED"

    @pytest.mark.asyncio
    async def test_no_key_anywhere_fails_without_network(self, client, api):
        with capture_logs() as logs:
            result = await client.validate_license()

        assert result.isValid is False
        assert result.reason == FALLBACK_REASON
        assert api.requests == []
        assert "license_validation_failed" in _events(logs)


class TestFailureFallback:
    """API failures fall back to the last cached answer, whatever its age."""

    @pytest.mark.asyncio
    async def test_no_cache_and_failing_api_returns_safe_default(self, client, api):
        api.respond("/license/validate", status=500, body={"error": "boom"})

        result = await client.validate_license(licenseKey="TEST-LICENSE")

        assert result.isValid is False
        assert result.reason == FALLBACK_REASON

    @pytest.mark.asyncio
    @pytest.mark.parametrize("age_hours", [25, 24 * 30])
    async def test_stale_record_served_on_failure(self, client, api, cache_storage, age_hours):
        await cache_storage.set(CACHE_KEY, make_record(is_valid=True, reason="Valid license", age_hours=age_hours))
        api.respond("/license/validate", status=502, body={})

        with capture_logs() as logs:
            result = await client.validate_license(licenseKey="TEST-LICENSE")

        assert result.isValid is True
        assert result.reason == "Valid license"
        assert "stale_cache_fallback" in _events(logs)

    @pytest.mark.asyncio
    async def test_forced_validation_falls_back_to_cache(self, client, api, cache_storage):
        await cache_storage.set(CACHE_KEY, make_record(is_valid=False, reason="expired", age_hours=0))
        api.respond("/license/validate", status=500, body={})

        result = await client.validate_license(licenseKey="TEST-LICENSE", forceOnlineValidation=True)

        assert result.isValid is False
        assert result.reason == "expired"

    @pytest.mark.asyncio
    async def test_malformed_api_response_falls_back(self, client, api, cache_storage):
        api.respond("/license/validate", body={"unexpected": "shape"})

        result = await client.validate_license(licenseKey="TEST-LICENSE")

        assert result.reason == FALLBACK_REASON
        assert await cache_storage.get(CACHE_KEY) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [
        {"licenseKey": "TEST-LICENSE", "cacheDurationInHours": -1},
        {"licenseKey": 12345},
    ])
    async def test_malformed_arguments_fall_back(self, client, api, params):
        with capture_logs() as logs:
            result = await client.validate_license(**params)

        assert result.isValid is False
        assert result.reason == FALLBACK_REASON
        assert api.requests == []
        assert "license_validation_failed" in _events(logs)

    @pytest.mark.asyncio
    async def test_broken_cache_storage_never_raises(self, client, api):
        class ExplodingStorage:
            async def get(self, key):
                raise RuntimeError("storage exploded")

            async def set(self, key, record):
                raise RuntimeError("storage exploded")

            async def clear(self):
                raise RuntimeError("storage exploded")

        client.cache_storage = ExplodingStorage()

        result = await client.validate_license(licenseKey="TEST-LICENSE")

        assert result.isValid is False
        assert result.reason == FALLBACK_REASON


class TestPeriodicValidation:
    """Scheduler-driven forced re-validation."""

    @pytest.mark.asyncio
    async def test_periodic_run_forces_online_validation(self, client, api, cache_storage):
        await cache_storage.set(CACHE_KEY, make_record(reason="cached", age_hours=0))

        await client.run_periodic_validation(license_key="TEST-LICENSE")

        assert len(api.calls("/license/validate")) == 1
        assert (await cache_storage.get(CACHE_KEY)).reason == "ok"

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, client):
        client.start_periodic_validation(license_key="TEST-LICENSE", interval_hours=1)
        client.start_periodic_validation(license_key="TEST-LICENSE", interval_hours=1)
        try:
            assert client.scheduler.running
            assert [job.id for job in client.scheduler.get_jobs()] == ["license_revalidation"]
        finally:
            client.stop_periodic_validation()

    @pytest.mark.asyncio
    async def test_clear_cache(self, client, cache_storage):
        await cache_storage.set(CACHE_KEY, make_record())

        await client.clear_cache()

        assert await cache_storage.get(CACHE_KEY) is None
