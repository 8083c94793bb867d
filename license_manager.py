"""
License state machine.

One LicenseManager is built at application start and handed to everything
that needs to know whether premium features are unlocked. It is the only
code that changes the license status.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from errors import (
    FailureKind, LicenseError, NoLicenseKey, RemoteRejected, TransientFailure,
)
from grace_period import GracePeriodController
from license_client import LicenseClient
from models import (
    ActivationResult, CheckOutcome, DeactivationOutcome, LicenseRecord,
    LicenseStatus, StatusDetail, ValidationResult, utcnow,
)
from state_store import StateStore

logger = logging.getLogger(__name__)

_LOCKED_STATUSES = {LicenseStatus.EXPIRED, LicenseStatus.INVALID}


class LicenseManager:
    def __init__(
        self,
        store: StateStore,
        client: LicenseClient,
        site_identifier: str,
        grace: Optional[GracePeriodController] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.client = client
        self.site_identifier = site_identifier
        self.grace = grace or GracePeriodController()
        self._clock = clock
        self._record = store.load_record()
        self._lock = asyncio.Lock()
        self._in_flight: Optional[asyncio.Future] = None

    @property
    def record(self) -> LicenseRecord:
        return self._record.model_copy()

    def is_license_active(self) -> bool:
        """
        Whether gated features may run. Never touches the network.

        A GRACE record stops counting as active as soon as its window has
        closed, even before the next validation records EXPIRED.
        """
        record = self._record
        if record.status is LicenseStatus.ACTIVE:
            return True
        if record.status is LicenseStatus.GRACE:
            return self.grace.is_open(record, self._clock())
        return False

    def get_status_detail(self) -> StatusDetail:
        record = self._record
        window = self.grace.window(record, self._clock())
        grace_hours = None
        if record.status is LicenseStatus.GRACE and window.open:
            grace_hours = window.hours_remaining
        return StatusDetail(
            status=record.status,
            active=self.is_license_active(),
            license_key=record.masked_key,
            expires_at=record.expires_at,
            site_count=record.site_count,
            max_sites=record.max_sites,
            last_validated_at=record.last_validated_at,
            last_check_attempt_at=record.last_check_attempt_at,
            last_failure_kind=record.last_failure_kind,
            last_error=record.last_error,
            grace_hours_remaining=grace_hours
        )

    async def activate(self, license_key: str) -> ActivationResult:
        """
        Activate ``license_key`` for this site. Any failure is raised to the
        caller and leaves the stored record untouched.
        """
        async with self._lock:
            result = await self.client.activate(license_key, self.site_identifier)
            now = self._clock()
            record = LicenseRecord(
                key=self.client.check_key(license_key),
                status=LicenseStatus.ACTIVE,
                expires_at=result.expires_at,
                site_count=result.site_count or 0,
                max_sites=result.max_sites or 1,
                last_validated_at=now,
                last_check_attempt_at=now
            )
            self.client.invalidate_cache()
            self._commit(record)
            return result

    async def deactivate(self) -> DeactivationOutcome:
        """
        Release this site remotely, then clear local state whatever the
        remote outcome was.
        """
        async with self._lock:
            key = self._record.key
            if not key:
                raise NoLicenseKey("No license key found to deactivate.")

            remote_released = True
            message = "License deactivated successfully."
            try:
                await self.client.deactivate(key, self.site_identifier)
            except LicenseError as e:
                remote_released = False
                message = f"License deactivated on this site, but the license server could not be notified: {e.message}"
                logger.warning("Remote license release failed (%s): %s", e.code, e.message)

            self.client.invalidate_cache()
            self._commit(LicenseRecord())
            return DeactivationOutcome(status=LicenseStatus.INACTIVE, remote_released=remote_released, message=message)

    async def validate(self, force: bool = False) -> CheckOutcome:
        """
        Re-validate the stored key. Never raises for remote failures: the
        outcome is folded into the record and returned.

        Callers arriving while a validation is running share its outcome
        instead of issuing a second request. A forced caller that joined a
        run answered from the cache gets a fresh check afterwards.
        """
        task = self._in_flight
        if task is None or task.done():
            task = self._in_flight = asyncio.ensure_future(self._run_validation(force))
            return await asyncio.shield(task)

        outcome = await asyncio.shield(task)
        if force and outcome.from_cache:
            return await self.validate(force=True)
        return outcome

    def next_check_due(self, interval: timedelta) -> datetime:
        """When the next remote check should run, given the last attempt."""
        now = self._clock()
        last_attempt = self._record.last_check_attempt_at
        if last_attempt is None:
            return now
        return max(now, last_attempt + interval)

    async def check_now(self) -> CheckOutcome:
        return await self.validate(force=True)

    async def on_scheduled_tick(self):
        outcome = await self.validate(force=False)
        logger.info("Scheduled license check: %s (%s)", outcome.outcome, outcome.status.value)

    async def reset(self):
        """Uninstall: wipe the record, cache entries and attempt log."""
        async with self._lock:
            self.store.clear_all()
            self._record = LicenseRecord()

    async def _run_validation(self, force: bool) -> CheckOutcome:
        async with self._lock:
            record = self._record
            if not record.key:
                if record.status is not LicenseStatus.INACTIVE:
                    self._commit(LicenseRecord())
                return CheckOutcome(outcome="inactive", status=LicenseStatus.INACTIVE, message="No license key configured.")

            now = self._clock()
            try:
                result = await self.client.validate(record.key, self.site_identifier, force=force)
            except TransientFailure as e:
                return self._on_transient_failure(record, e, now)
            except RemoteRejected as e:
                return self._on_rejected(record, e.status, e, now)
            except LicenseError as e:
                # Stored key no longer passes the local format check
                return self._on_rejected(record, LicenseStatus.INVALID, e, now)
            return self._on_success(record, result, now)

    def _on_success(self, record: LicenseRecord, result: ValidationResult, now: datetime) -> CheckOutcome:
        updated = record.model_copy(update={
            "status": LicenseStatus.ACTIVE,
            "expires_at": result.expires_at,
            "site_count": result.site_count if result.site_count is not None else record.site_count,
            "max_sites": result.max_sites if result.max_sites is not None else record.max_sites,
            "last_validated_at": result.checked_at,
            "last_check_attempt_at": record.last_check_attempt_at if result.from_cache else now,
            "last_failure_kind": None,
            "last_error": None,
        })
        self._commit(updated)
        return CheckOutcome(
            outcome="success",
            status=LicenseStatus.ACTIVE,
            message=result.message or "License validated successfully.",
            from_cache=result.from_cache
        )

    def _on_rejected(self, record: LicenseRecord, status, error: LicenseError, now: datetime) -> CheckOutcome:
        status = LicenseStatus(status) if status else LicenseStatus.INVALID
        if status not in _LOCKED_STATUSES:
            status = LicenseStatus.INVALID
        updated = record.model_copy(update={
            "status": status,
            "last_check_attempt_at": record.last_check_attempt_at if error.from_cache else now,
            "last_failure_kind": FailureKind.AUTHORITATIVE,
            "last_error": error.message,
        })
        if record.status is not status:
            logger.error("License %s by the license server: %s", status.value, error.message)
        self._commit(updated)
        return CheckOutcome(outcome="rejected", status=status, message=error.message, from_cache=error.from_cache)

    def _on_transient_failure(self, record: LicenseRecord, error: TransientFailure, now: datetime) -> CheckOutcome:
        updated = record.model_copy(update={
            "last_check_attempt_at": record.last_check_attempt_at if error.from_cache else now,
            "last_failure_kind": FailureKind.TRANSIENT,
            "last_error": error.message,
        })

        if updated.status is LicenseStatus.ACTIVE:
            updated = updated.model_copy(update={"status": LicenseStatus.GRACE})
            self._commit(updated)
        if updated.status is LicenseStatus.GRACE:
            updated = updated.model_copy(update={
                "status": self.grace.status_after_transient_failure(updated, now)
            })
        # Inactive, expired and invalid records keep their status
        self._commit(updated)

        window = self.grace.window(updated, now)
        return CheckOutcome(
            outcome="transient",
            status=updated.status,
            message=error.message,
            grace_hours_remaining=window.hours_remaining if updated.status is LicenseStatus.GRACE else None,
            retry=error.retry_guidance,
            from_cache=error.from_cache
        )

    def _commit(self, record: LicenseRecord):
        previous = self._record.status
        self.store.save_record(record)
        self._record = record
        if previous is not record.status:
            logger.info("License status changed: %s -> %s", previous.value, record.status.value)
