from datetime import datetime, timezone
from typing import Dict, Any

import structlog

from identifiers import mask_license_key
from license_client import LicenseClient
from models import AnalyticsEventRequest, AnalyticsEventResponse

logger = structlog.get_logger()

EVENTS_PATH = "/analytics/events"

async def log_analytics_event(
    client: LicenseClient, event: AnalyticsEventRequest
) -> AnalyticsEventResponse:
    """
    Send an analytics event without waiting for the API.

    Returns success as soon as the event is queued. Failures while sending
    are only logged; failures while preparing the event return success=False.
    """
    try:
        if not event.commandId:
            raise ValueError("commandId is required for analytics events")

        software_id = event.softwareId or client.config.softwareId
        license_key = event.licenseKey or await client.license_key_store.get(software_id)

        payload = {
            "softwareId": software_id,
            "commandId": event.commandId,
            "licenseKey": license_key,
            "hasValidLicense": bool(license_key),
            "machineId": event.machineId or client.machine_id,
            "sessionId": event.sessionId or client.session_id,
            "timestamp": event.timestamp or datetime.now(timezone.utc).isoformat(),
        }
    except Exception as e:
        logger.error("analytics_event_preparation_failed", command_id=event.commandId, error=repr(e))
        return AnalyticsEventResponse(success=False)

    client.run_in_background(_send_event(client, payload))
    return AnalyticsEventResponse(success=True)

async def _send_event(client: LicenseClient, payload: Dict[str, Any]):
    try:
        await client.api_client.post(EVENTS_PATH, json=payload)
    except Exception as e:
        logger.error(
            "analytics_event_failed",
            command_id=payload["commandId"],
            license_key=mask_license_key(payload["licenseKey"] or ""),
            error=repr(e),
        )
