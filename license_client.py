import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from pydantic import ValidationError

from config import settings
from errors import (
    InvalidInput, LicenseError, MalformedResponse, NetworkUnreachable,
    RemoteRejected, ServerError, Timeout, error_from_dict,
)
from models import (
    ActivationResult, AuthorityResponse, LicenseStatus, ValidationResult,
    mask_key, utcnow,
)
from site_identity import get_system_info
from state_store import StateStore

logger = logging.getLogger(__name__)

DEVELOPMENT_KEYS = {"test", "tet"}

_STATUS_MAP = {
    "active": LicenseStatus.ACTIVE,
    "valid": LicenseStatus.ACTIVE,
    "expired": LicenseStatus.EXPIRED,
    "invalid": LicenseStatus.INVALID,
    "revoked": LicenseStatus.INVALID,
    "disabled": LicenseStatus.INVALID,
}


def _map_status(raw: Optional[str]) -> Optional[LicenseStatus]:
    if raw is None:
        return None
    return _STATUS_MAP.get(raw.strip().lower())


class LicenseClient:
    """
    Talks to the remote license authority.

    Each call makes exactly one HTTP attempt and either returns a normalized
    result or raises a LicenseError whose ``kind`` tells the caller whether
    the failure was transient or authoritative.
    """

    def __init__(
        self,
        store: StateStore,
        api_url: str = None,
        timeout: float = None,
        deactivate_timeout: float = None,
        cache_ttl: timedelta = None,
        transport: httpx.AsyncBaseTransport = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.api_url = api_url or settings.LICENSE_API_URL
        self.timeout = timeout or settings.LICENSE_API_TIMEOUT
        self.deactivate_timeout = deactivate_timeout or settings.DEACTIVATE_API_TIMEOUT
        self.cache_ttl = cache_ttl or timedelta(minutes=settings.VALIDATION_CACHE_MINUTES)
        self._transport = transport
        self._clock = clock
        self._key_pattern = re.compile(settings.LICENSE_KEY_PATTERN)

    def check_key(self, license_key: str) -> str:
        """Normalize a user-supplied key or raise InvalidInput."""
        key = (license_key or "").strip()
        if not key:
            raise InvalidInput("License key cannot be empty.")
        if not self._key_pattern.match(key):
            raise InvalidInput("Invalid license key format.")
        return key

    def _is_development_key(self, key: str) -> bool:
        return settings.ALLOW_DEVELOPMENT_KEYS and key.lower() in DEVELOPMENT_KEYS

    async def activate(self, license_key: str, site_identifier: str) -> ActivationResult:
        key = self.check_key(license_key)

        if self._is_development_key(key):
            logger.warning("Development license key accepted without contacting the server")
            return ActivationResult(
                status=LicenseStatus.ACTIVE,
                expires_at=self._clock() + timedelta(days=365),
                max_sites=999,
                site_count=1,
                message="Test license key activated for development."
            )

        result = await self._call(
            "activate_license", key, site_identifier, self.timeout,
            lambda response: self._to_result(response, ActivationResult)
        )
        result.message = result.message or "License activated successfully."
        return result

    async def deactivate(self, license_key: str, site_identifier: str) -> ActivationResult:
        key = (license_key or "").strip()
        if not key:
            raise InvalidInput("License key cannot be empty.")

        if not self._is_development_key(key):
            await self._call("deactivate_license", key, site_identifier, self.deactivate_timeout, lambda response: response)

        return ActivationResult(status=LicenseStatus.INACTIVE, message="License deactivated successfully.")

    async def validate(self, license_key: str, site_identifier: str, force: bool = False) -> ValidationResult:
        """
        Ask the authority for the current status of ``license_key``.

        Unless ``force`` is set, an outcome (result or failure) younger than
        the cache TTL is replayed without a network call.
        """
        key = self.check_key(license_key)

        if not force:
            cached = self.store.get_cached()
            if cached is not None:
                return self._replay(cached)

        if self._is_development_key(key):
            result = ValidationResult(
                status=LicenseStatus.ACTIVE,
                expires_at=self._clock() + timedelta(days=365),
                max_sites=999,
                site_count=1,
                checked_at=self._clock()
            )
            self.store.set_cached({"result": result.model_dump(mode="json")}, self.cache_ttl)
            return result

        try:
            result = await self._call(
                "check_license", key, site_identifier, self.timeout,
                lambda response: self._to_result(response, ValidationResult, checked_at=self._clock())
            )
        except LicenseError as e:
            self.store.set_cached({"error": e.to_dict()}, self.cache_ttl)
            raise

        self.store.set_cached({"result": result.model_dump(mode="json")}, self.cache_ttl)
        return result

    def invalidate_cache(self):
        self.store.invalidate()

    def _replay(self, cached: dict) -> ValidationResult:
        if "error" in cached:
            error = error_from_dict(cached["error"])
            error.from_cache = True
            raise error
        result = ValidationResult.model_validate(cached["result"])
        result.from_cache = True
        return result

    async def _call(self, action: str, key: str, site_identifier: str, timeout: float, convert):
        try:
            response = await self._post(action, key, site_identifier, timeout)
            parsed = self._parse(response)
            result = convert(parsed)
        except LicenseError as e:
            outcome = "rejected" if isinstance(e, RemoteRejected) else "transient"
            logger.warning("License %s for %s failed (%s): %s", action, mask_key(key), e.code, e.message)
            self.store.record_attempt(action, outcome, e.message, site_identifier)
            raise

        logger.info("License %s for %s succeeded", action, mask_key(key))
        self.store.record_attempt(action, "success", parsed.reason, site_identifier)
        return result

    async def _post(self, action: str, key: str, site_identifier: str, timeout: float) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                return await client.post(
                    self.api_url,
                    json={
                        "action": action,
                        "license_key": key,
                        "site_identifier": site_identifier,
                        "plugin_version": settings.APP_VERSION,
                        "environment": get_system_info()
                    },
                    headers={
                        "Content-Type": "application/json",
                        "User-Agent": f"{settings.INSTALLATION_NAME}/{settings.APP_VERSION}; {site_identifier}"
                    }
                )
        except httpx.TimeoutException as e:
            raise Timeout(f"License server did not respond within {timeout:g} seconds.") from e
        except httpx.HTTPError as e:
            raise NetworkUnreachable(f"HTTP request failed: {e}") from e

    def _parse(self, response: httpx.Response) -> AuthorityResponse:
        code = response.status_code
        if code >= 500:
            raise ServerError(f"Server returned error code: {code}", code)

        parsed = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            try:
                parsed = AuthorityResponse.model_validate(body)
            except ValidationError:
                parsed = None

        # Only a well-formed rejection payload is authoritative
        if parsed is not None and parsed.result == "rejected":
            status = _map_status(parsed.status) or LicenseStatus.INVALID
            raise RemoteRejected(parsed.reason or "License rejected by server.", status)

        if not response.is_success:
            raise ServerError(f"Server returned error code: {code}", code)
        if parsed is None:
            raise MalformedResponse("Malformed response from license server.")
        if parsed.result == "error":
            raise ServerError(parsed.reason or "License server reported an error.", code)
        return parsed

    def _to_result(self, response: AuthorityResponse, result_cls, **extra):
        status = _map_status(response.status)
        if status is None:
            raise MalformedResponse("Malformed response from license server.")
        if status is not LicenseStatus.ACTIVE:
            raise RemoteRejected(response.reason or f"License is {status.value}.", status)
        return result_cls(
            status=status,
            expires_at=response.expires_at,
            max_sites=response.max_sites,
            site_count=response.site_count,
            message=response.reason,
            **extra
        )
