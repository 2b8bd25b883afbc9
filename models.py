from pydantic import BaseModel, Field
from typing import Optional, Dict, Any

class ValidationRecord(BaseModel):
    isValid: bool
    reason: Optional[str] = None
    timestamp: int  # epoch milliseconds

class ValidateLicenseRequest(BaseModel):
    licenseKey: Optional[str] = None
    softwareId: Optional[str] = None
    machineId: Optional[str] = None
    sessionId: Optional[str] = None
    environment: Optional[Dict[str, Any]] = None
    forceOnlineValidation: bool = False
    cacheDurationInHours: Optional[float] = Field(default=None, ge=0)

class ValidateLicenseResponse(BaseModel):
    isValid: bool
    reason: Optional[str] = None

class AnalyticsEventRequest(BaseModel):
    commandId: str
    softwareId: Optional[str] = None
    licenseKey: Optional[str] = None
    machineId: Optional[str] = None
    sessionId: Optional[str] = None
    timestamp: Optional[str] = None

class AnalyticsEventResponse(BaseModel):
    success: bool

class GenerateCheckoutUrlRequest(BaseModel):
    softwareId: Optional[str] = None
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None
    testMode: bool = False
    licenseKey: Optional[str] = None

class GenerateCheckoutUrlResponse(BaseModel):
    licenseKey: str
    url: str

class ClearCacheResponse(BaseModel):
    success: bool
    message: str

class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    softwareId: Optional[str] = None
    machineId: Optional[str] = None
    cacheBackend: Optional[str] = None
