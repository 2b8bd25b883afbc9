"""Pytest configuration and fixtures."""

import os
import time

import httpx
import pytest

# Set test environment variables before importing app modules
os.environ.setdefault("CODECHECKOUT_SOFTWARE_ID", "test-software")
os.environ.setdefault("CODECHECKOUT_API_URL", "https://api.test/v1")
os.environ.setdefault("CODECHECKOUT_SHARED_STORE_URL", "")

from api_client import ApiClient
from cache import MemoryCacheStorage, MemoryLicenseKeyStore
from config import ClientConfig
from license_client import LicenseClient
from models import ValidationRecord

HOUR_MS = 60 * 60 * 1000


def hours_ago(hours: float) -> int:
    return int(time.time() * 1000 - hours * HOUR_MS)


def make_record(is_valid=True, reason="cached", age_hours=1.0) -> ValidationRecord:
    return ValidationRecord(isValid=is_valid, reason=reason, timestamp=hours_ago(age_hours))


class FakeCodeCheckoutApi:
    """Stands in for the CodeCheckout API behind an httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.responses = {}

    def respond(self, path: str, status: int = 200, body=None):
        self.responses[path] = (status, body if body is not None else {})

    def calls(self, path: str):
        return [r for r in self.requests if r.url.path.endswith(path)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for path, (status, body) in self.responses.items():
            if request.url.path.endswith(path):
                return httpx.Response(status, json=body)
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def api():
    fake = FakeCodeCheckoutApi()
    fake.respond("/license/validate", body={"isValid": True, "reason": "ok"})
    return fake


@pytest.fixture
def client_config():
    return ClientConfig(softwareId="test-software", baseUrl="https://api.test/v1")


@pytest.fixture
def cache_storage():
    return MemoryCacheStorage()


@pytest.fixture
def license_key_store():
    return MemoryLicenseKeyStore()


@pytest.fixture
def client(api, client_config, cache_storage, license_key_store):
    return LicenseClient(
        client_config,
        cache_storage=cache_storage,
        license_key_store=license_key_store,
        api_client=ApiClient(client_config, transport=httpx.MockTransport(api.handler)),
    )
