from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel

from errors import FailureKind


class LicenseStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    GRACE = "grace"
    EXPIRED = "expired"
    INVALID = "invalid"


class LicenseRecord(BaseModel):
    """The single persisted license record of this installation."""

    key: str = ""
    status: LicenseStatus = LicenseStatus.INACTIVE
    expires_at: Optional[datetime] = None
    site_count: int = 0
    max_sites: int = 1
    last_validated_at: Optional[datetime] = None
    last_check_attempt_at: Optional[datetime] = None
    last_failure_kind: Optional[FailureKind] = None
    last_error: Optional[str] = None

    @property
    def masked_key(self) -> str:
        return mask_key(self.key)


def mask_key(key: str) -> str:
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}…{key[-4:]}"


# Authority wire format
class AuthorityResponse(BaseModel):
    result: Literal["success", "rejected", "error"]
    status: Optional[str] = None
    expires_at: Optional[datetime] = None
    max_sites: Optional[int] = None
    site_count: Optional[int] = None
    reason: Optional[str] = None


class ActivationResult(BaseModel):
    status: LicenseStatus
    expires_at: Optional[datetime] = None
    max_sites: Optional[int] = None
    site_count: Optional[int] = None
    message: Optional[str] = None


class ValidationResult(ActivationResult):
    checked_at: datetime
    from_cache: bool = False


class CheckOutcome(BaseModel):
    outcome: Literal["success", "rejected", "transient", "inactive"]
    status: LicenseStatus
    message: str
    grace_hours_remaining: Optional[int] = None
    retry: Optional[str] = None
    from_cache: bool = False


class StatusDetail(BaseModel):
    status: LicenseStatus
    active: bool
    license_key: str
    expires_at: Optional[datetime] = None
    site_count: int
    max_sites: int
    last_validated_at: Optional[datetime] = None
    last_check_attempt_at: Optional[datetime] = None
    last_failure_kind: Optional[FailureKind] = None
    last_error: Optional[str] = None
    grace_hours_remaining: Optional[int] = None


class DeactivationOutcome(BaseModel):
    status: LicenseStatus
    remote_released: bool
    message: str


# API request/response models
class LicenseActivationRequest(BaseModel):
    licenseKey: str


class LicenseActivationResponse(BaseModel):
    success: bool
    status: LicenseStatus
    expiresAt: Optional[datetime] = None
    maxSites: Optional[int] = None
    message: Optional[str] = None


class AttemptResponse(BaseModel):
    action: str
    result: str
    message: Optional[str] = None
    siteIdentifier: Optional[str] = None
    attemptedAt: datetime


class FeatureCheckRequest(BaseModel):
    featureKey: str


class FeatureCheckResponse(BaseModel):
    featureKey: str
    available: bool
    reason: Optional[str] = None


class FeatureListResponse(BaseModel):
    available: List[str]
    core: List[str]


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    siteIdentifier: Optional[str] = None
    licenseActive: bool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
