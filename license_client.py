import asyncio
import time
from typing import Optional, Set

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from api_client import ApiClient
from cache import (
    BackendDetector,
    CacheStorage,
    LicenseKeyStore,
    create_cache_key,
    create_storage,
    detect_storage_backend,
)
from config import ClientConfig, Settings, resolve_config, settings as default_settings
from identifiers import generate_session_id, get_machine_id, mask_license_key
from models import ValidateLicenseRequest, ValidateLicenseResponse, ValidationRecord

VALIDATE_PATH = "/license/validate"
FALLBACK_REASON = "Error validating license"


class MissingLicenseKeyError(LookupError):
    """No license key was given and none is remembered for the software."""


def _now_ms() -> int:
    return int(time.time() * 1000)


class LicenseClient:
    """
    License validation for one software product.

    The client owns its configuration, validation cache, license key store
    and API client. Validation prefers the cache and refreshes it in the
    background; when the API cannot be reached it falls back to whatever
    the cache last saw.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        settings: Settings = default_settings,
        cache_storage: Optional[CacheStorage] = None,
        license_key_store: Optional[LicenseKeyStore] = None,
        api_client: Optional[ApiClient] = None,
        detector: BackendDetector = detect_storage_backend,
        logger=None,
    ):
        self.settings = settings
        self.config = config if config is not None else resolve_config()
        self.logger = logger if logger is not None else structlog.get_logger()

        if cache_storage is None or license_key_store is None:
            detected_cache, detected_keys = create_storage(settings, detector)
            cache_storage = cache_storage or detected_cache
            license_key_store = license_key_store or detected_keys
        self.cache_storage = cache_storage
        self.license_key_store = license_key_store

        self.api_client = api_client or ApiClient(self.config, timeout=settings.API_TIMEOUT)
        self.session_id = generate_session_id()
        self.background_tasks: Set[asyncio.Task] = set()
        self.scheduler = AsyncIOScheduler()

    @property
    def machine_id(self) -> str:
        return get_machine_id()

    async def validate_license(
        self, request: Optional[ValidateLicenseRequest] = None, **params
    ) -> ValidateLicenseResponse:
        """
        Decide whether a license is valid.

        Accepts either a ValidateLicenseRequest or its fields as keyword
        arguments. Never raises: every failure ends in the last cached
        answer for the license or, if there is none, an invalid result.
        """
        software_id = self.config.softwareId
        license_key = None
        cache_key = create_cache_key(software_id, "")

        try:
            if request is None:
                request = ValidateLicenseRequest(**params)

            software_id = request.softwareId or self.config.softwareId
            license_key = request.licenseKey
            if not license_key:
                license_key = await self.license_key_store.get(software_id)
            cache_key = create_cache_key(software_id, license_key or "")

            if not license_key:
                raise MissingLicenseKeyError("licenseKey is required for license validation")

            request = request.model_copy(update={
                "softwareId": software_id,
                "licenseKey": license_key,
                "machineId": request.machineId or self.machine_id,
                "sessionId": request.sessionId or self.session_id,
            })

            cache_duration = request.cacheDurationInHours
            if cache_duration is None:
                cache_duration = self.settings.CACHE_DURATION_HOURS

            if not request.forceOnlineValidation:
                cached = await self.cache_storage.get(cache_key)
                if cached is not None:
                    age_in_hours = (_now_ms() - cached.timestamp) / (1000 * 60 * 60)
                    if age_in_hours < cache_duration:
                        self._refresh_in_background(request, cache_key)
                        return ValidateLicenseResponse(isValid=cached.isValid, reason=cached.reason)

            return await self._validate_online(request, cache_key)

        except Exception as e:
            self.logger.error(
                "license_validation_failed",
                software_id=software_id,
                license_key=mask_license_key(license_key or ""),
                error=repr(e),
            )
            return await self._fallback(cache_key)

    async def _validate_online(
        self, request: ValidateLicenseRequest, cache_key: str
    ) -> ValidateLicenseResponse:
        if not request.licenseKey:
            raise MissingLicenseKeyError("licenseKey is required for license validation")

        data = await self.api_client.post(
            VALIDATE_PATH,
            json={
                "licenseKey": request.licenseKey,
                "softwareId": request.softwareId,
                "machineId": request.machineId,
                "sessionId": request.sessionId,
                "environment": request.environment or {},
            },
            headers={"Authorization": f"Bearer {request.licenseKey}"},
        )
        result = ValidateLicenseResponse.model_validate(data)

        await self.cache_storage.set(
            cache_key,
            ValidationRecord(isValid=result.isValid, reason=result.reason, timestamp=_now_ms()),
        )

        if result.isValid:
            await self.license_key_store.set(request.softwareId, request.licenseKey)

        self.logger.info(
            "license_validated",
            software_id=request.softwareId,
            license_key=mask_license_key(request.licenseKey),
            is_valid=result.isValid,
        )
        return result

    async def _fallback(self, cache_key: str) -> ValidateLicenseResponse:
        try:
            cached = await self.cache_storage.get(cache_key)
            if cached is not None:
                self.logger.warning("stale_cache_fallback", cached_at=cached.timestamp)
                return ValidateLicenseResponse(isValid=cached.isValid, reason=cached.reason)
        except Exception as e:
            self.logger.error("cached_license_read_failed", error=repr(e))

        return ValidateLicenseResponse(isValid=False, reason=FALLBACK_REASON)

    def run_in_background(self, coro) -> asyncio.Task:
        """
        Schedule `coro` without awaiting it.

        The task reference is held until it finishes so it cannot be garbage
        collected mid-flight. `coro` is expected to handle its own errors.
        """
        task = asyncio.create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    def _refresh_in_background(self, request: ValidateLicenseRequest, cache_key: str) -> asyncio.Task:
        return self.run_in_background(self._background_refresh(request, cache_key))

    async def _background_refresh(self, request: ValidateLicenseRequest, cache_key: str):
        try:
            await self._validate_online(request, cache_key)
        except Exception as e:
            # The cached answer stays in place until it expires naturally
            self.logger.error(
                "background_refresh_failed",
                software_id=request.softwareId,
                license_key=mask_license_key(request.licenseKey or ""),
                error=repr(e),
            )

    async def wait_for_background_tasks(self):
        """Wait until every background refresh started so far has finished."""
        while self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)

    async def clear_cache(self):
        await self.cache_storage.clear()

    async def run_periodic_validation(self, license_key: Optional[str] = None):
        result = await self.validate_license(
            licenseKey=license_key,
            forceOnlineValidation=True,
        )
        self.logger.info(
            "periodic_validation_completed",
            software_id=self.config.softwareId,
            is_valid=result.isValid,
        )

    def start_periodic_validation(
        self, license_key: Optional[str] = None, interval_hours: Optional[int] = None
    ):
        """
        Start periodic forced re-validation.

        Must be called from a running event loop. Calling it again while the
        scheduler is running has no effect.
        """
        if not self.scheduler.running:
            self.scheduler.add_job(
                self.run_periodic_validation,
                'interval',
                hours=interval_hours or self.settings.REVALIDATION_INTERVAL_HOURS,
                kwargs={"license_key": license_key},
                id='license_revalidation'
            )
            self.scheduler.start()

    def stop_periodic_validation(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
