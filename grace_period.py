"""
Grace period decisions.

Grace extends trust in the last successful validation while the license
server cannot be reached. It is available only after a TRANSIENT failure and
only while ``now - last_validated_at`` is within the grace period.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from config import settings
from errors import FailureKind
from models import LicenseRecord, LicenseStatus

logger = logging.getLogger(__name__)

GRACE_PERIOD = timedelta(hours=settings.GRACE_PERIOD_HOURS)


@dataclass(frozen=True)
class GraceWindow:
    open: bool
    remaining: timedelta

    @property
    def hours_remaining(self) -> int:
        return math.ceil(self.remaining.total_seconds() / 3600)


CLOSED = GraceWindow(open=False, remaining=timedelta(0))


def grace_window(
    last_validated_at: Optional[datetime],
    now: datetime,
    last_failure_kind: Optional[FailureKind],
    period: timedelta = GRACE_PERIOD,
) -> GraceWindow:
    if last_failure_kind is not FailureKind.TRANSIENT or last_validated_at is None:
        return CLOSED
    remaining = period - (now - last_validated_at)
    if remaining < timedelta(0):
        return CLOSED
    return GraceWindow(open=True, remaining=remaining)


class GracePeriodController:
    def __init__(self, period: timedelta = GRACE_PERIOD):
        self.period = period

    def window(self, record: LicenseRecord, now: datetime) -> GraceWindow:
        return grace_window(record.last_validated_at, now, record.last_failure_kind, self.period)

    def is_open(self, record: LicenseRecord, now: datetime) -> bool:
        return self.window(record, now).open

    def status_after_transient_failure(self, record: LicenseRecord, now: datetime) -> LicenseStatus:
        """
        Status a GRACE record moves to after another transient failure.
        ``record.last_failure_kind`` must already be TRANSIENT.
        """
        window = self.window(record, now)
        if window.open:
            logger.warning(
                "License server unreachable; grace period active with %.1f hours remaining",
                window.remaining.total_seconds() / 3600
            )
            return LicenseStatus.GRACE

        logger.error(
            "License server unreachable and the %d hour grace period has expired",
            int(self.period.total_seconds() // 3600)
        )
        return LicenseStatus.EXPIRED
