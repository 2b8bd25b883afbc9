from urllib.parse import urlencode, quote
from typing import Dict, Any

import httpx
import structlog

from config import resolve_config
from identifiers import generate_license_key
from license_client import LicenseClient
from models import GenerateCheckoutUrlRequest, GenerateCheckoutUrlResponse

logger = structlog.get_logger()

async def generate_checkout_url(
    client: LicenseClient, request: GenerateCheckoutUrlRequest
) -> GenerateCheckoutUrlResponse:
    """
    Get a checkout URL for buying a license.

    The license key the checkout will activate is generated unless one is
    given. If the API cannot produce a URL, an equivalent one is built locally.
    """
    config = resolve_config(client.config, softwareId=request.softwareId)
    license_key = request.licenseKey or generate_license_key()

    params: Dict[str, Any] = {"licenseKey": license_key}
    success_url = request.successUrl or config.defaultSuccessUrl
    cancel_url = request.cancelUrl or config.defaultCancelUrl
    if success_url:
        params["successUrl"] = success_url
    if cancel_url:
        params["cancelUrl"] = cancel_url
    if request.testMode:
        params["testMode"] = "true"

    try:
        data = await client.api_client.get(
            f"/{quote(config.softwareId, safe='')}/checkout", params=params
        )
        return GenerateCheckoutUrlResponse(licenseKey=license_key, url=data["url"])
    except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
        logger.warning("checkout_url_fallback", software_id=config.softwareId, error=repr(e))

    query = urlencode({"softwareId": config.softwareId, **params})
    return GenerateCheckoutUrlResponse(
        licenseKey=license_key,
        url=f"{config.baseUrl.rstrip('/')}/checkout?{query}",
    )
