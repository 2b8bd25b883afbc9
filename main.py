from functools import lru_cache

from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from analytics import log_analytics_event
from checkout import generate_checkout_url
from config import ConfigurationError
from license_client import LicenseClient
from models import (
    ValidateLicenseRequest,
    ValidateLicenseResponse,
    AnalyticsEventRequest,
    AnalyticsEventResponse,
    GenerateCheckoutUrlRequest,
    GenerateCheckoutUrlResponse,
    ClearCacheResponse,
    HealthCheckResponse
)

VERSION = "1.0.0"

app = FastAPI(
    title="CodeCheckout License Client Service",
    description="Local license validation with offline caching for CodeCheckout-licensed software",
    version=VERSION
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@lru_cache()
def get_client() -> LicenseClient:
    """One client per process; it owns the validation cache."""
    try:
        return LicenseClient()
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

# API Endpoints
@app.post("/api/license/validate", response_model=ValidateLicenseResponse)
async def validate_license(
    request: ValidateLicenseRequest,
    client: LicenseClient = Depends(get_client)
):
    """
    Validate a license.

    Answers from the local cache when it is fresh (refreshing it in the
    background), otherwise asks the CodeCheckout API. If the API is
    unreachable the last cached answer is returned, even when expired.
    """
    return await client.validate_license(request)

@app.post("/api/license/cache/clear", response_model=ClearCacheResponse)
async def clear_cache(client: LicenseClient = Depends(get_client)):
    """
    Remove all cached validation results.

    Remembered license keys are kept.
    """
    await client.clear_cache()
    return {"success": True, "message": "Validation cache cleared"}

@app.post("/api/analytics/events", response_model=AnalyticsEventResponse)
async def log_event(
    event: AnalyticsEventRequest,
    client: LicenseClient = Depends(get_client)
):
    return await log_analytics_event(client, event)

@app.post("/api/checkout/url", response_model=GenerateCheckoutUrlResponse)
async def checkout_url(
    request: GenerateCheckoutUrlRequest,
    client: LicenseClient = Depends(get_client)
):
    """
    Generate a checkout URL and the license key it will activate.
    """
    try:
        return await generate_checkout_url(client, request)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.get("/health", response_model=HealthCheckResponse)
async def health_check(client: LicenseClient = Depends(get_client)):
    """
    Health check endpoint for container orchestration.
    """
    return {
        "status": "healthy",
        "service": "license-client",
        "version": VERSION,
        "softwareId": client.config.softwareId,
        "machineId": client.machine_id,
        "cacheBackend": client.cache_storage.backend.value
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
