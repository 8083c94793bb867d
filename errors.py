"""
Failure taxonomy for license operations.

Every failure carries a ``kind`` that decides how the state machine reacts:
TRANSIENT failures may be absorbed by the grace period, AUTHORITATIVE ones
lock features immediately, LOCAL ones never reach the network.
"""

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    LOCAL = "local"
    TRANSIENT = "transient"
    AUTHORITATIVE = "authoritative"


class LicenseError(Exception):
    kind: FailureKind = FailureKind.LOCAL
    from_cache = False
    code = "license_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "kind": self.kind.value, "message": self.message}


class InvalidInput(LicenseError):
    code = "invalid_input"


class NoLicenseKey(InvalidInput):
    code = "no_license"


class RemoteRejected(LicenseError):
    """The authority explicitly denied the key (invalid, expired, revoked, site limit)."""

    kind = FailureKind.AUTHORITATIVE
    code = "rejected"

    def __init__(self, reason: str, status: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.status = status

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status"] = getattr(self.status, "value", self.status)
        return data


class TransientFailure(LicenseError):
    """The authority's real answer is unknown."""

    kind = FailureKind.TRANSIENT
    code = "transient"
    retry_guidance = "The license server could not be reached. Please try again in a few minutes."


class NetworkUnreachable(TransientFailure):
    code = "network_unreachable"


class Timeout(TransientFailure):
    code = "timeout"


class ServerError(TransientFailure):
    code = "server_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedResponse(TransientFailure):
    code = "malformed_response"


class FeatureUnavailable(LicenseError):
    def __init__(self, feature: str, code: str, message: str):
        super().__init__(message)
        self.feature = feature
        self.code = code


_TRANSIENT_CODES = {
    cls.code: cls for cls in (TransientFailure, NetworkUnreachable, Timeout, ServerError, MalformedResponse)
}


def error_from_dict(data: dict) -> LicenseError:
    """Rebuild a failure stored in the validation cache."""
    if data.get("kind") == FailureKind.AUTHORITATIVE.value:
        return RemoteRejected(data.get("message", ""), data.get("status"))
    error_cls = _TRANSIENT_CODES.get(data.get("code"), TransientFailure)
    return error_cls(data.get("message", ""))
