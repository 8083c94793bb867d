"""
Durable key/value persistence for the license record, plus a short-lived
expiring cache and an audit log of remote attempts.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from database import LicenseCacheEntry, LicenseCheckAttempt, LicenseSetting
from models import LicenseRecord, utcnow

logger = logging.getLogger(__name__)

RECORD_KEY = "license_record"
MAX_ATTEMPTS = 200
VALIDATION_CACHE_KEY = "license_check"


def _naive(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


class StateStore:
    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow, max_attempts: int = MAX_ATTEMPTS):
        self._session_factory = session_factory
        self._clock = clock
        self.max_attempts = max_attempts

    # Durable settings
    def get(self, key: str, default: Any = None) -> Any:
        with self._session_factory() as db:
            entry = db.query(LicenseSetting).filter(LicenseSetting.key == key).first()
            return entry.value if entry else default

    def set(self, key: str, value: Any) -> None:
        with self._session_factory() as db:
            entry = db.query(LicenseSetting).filter(LicenseSetting.key == key).first()
            now = _naive(self._clock())
            if entry:
                entry.value = value
                entry.updated_at = now
            else:
                db.add(LicenseSetting(key=key, value=value, updated_at=now))
            db.commit()

    def delete(self, key: str) -> None:
        with self._session_factory() as db:
            db.query(LicenseSetting).filter(LicenseSetting.key == key).delete()
            db.commit()

    # Expiring cache
    def get_cached(self, key: str = VALIDATION_CACHE_KEY) -> Any:
        with self._session_factory() as db:
            entry = db.query(LicenseCacheEntry).filter(LicenseCacheEntry.key == key).first()
            if not entry:
                return None
            if entry.expires_at <= _naive(self._clock()):
                db.delete(entry)
                db.commit()
                return None
            return entry.value

    def set_cached(self, value: Any, ttl: timedelta, key: str = VALIDATION_CACHE_KEY) -> None:
        expires_at = _naive(self._clock() + ttl)
        with self._session_factory() as db:
            entry = db.query(LicenseCacheEntry).filter(LicenseCacheEntry.key == key).first()
            if entry:
                entry.value = value
                entry.expires_at = expires_at
            else:
                db.add(LicenseCacheEntry(key=key, value=value, expires_at=expires_at))
            db.commit()

    def invalidate(self, key: Optional[str] = VALIDATION_CACHE_KEY) -> None:
        """Drop one cache entry, or every entry when ``key`` is None."""
        with self._session_factory() as db:
            query = db.query(LicenseCacheEntry)
            if key is not None:
                query = query.filter(LicenseCacheEntry.key == key)
            query.delete()
            db.commit()

    # License record
    def load_record(self) -> LicenseRecord:
        data = self.get(RECORD_KEY)
        if data is None:
            return LicenseRecord()
        return LicenseRecord.model_validate(data)

    def save_record(self, record: LicenseRecord) -> None:
        self.set(RECORD_KEY, record.model_dump(mode="json"))

    def clear_all(self) -> None:
        """Wipe the record, every cache entry and the attempt log."""
        with self._session_factory() as db:
            db.query(LicenseSetting).delete()
            db.query(LicenseCacheEntry).delete()
            db.query(LicenseCheckAttempt).delete()
            db.commit()
        logger.info("License state wiped")

    # Attempt log
    def record_attempt(self, action: str, result: str, message: Optional[str], site_identifier: Optional[str]):
        with self._session_factory() as db:
            db.add(LicenseCheckAttempt(
                action=action,
                result=result,
                message=message,
                site_identifier=site_identifier,
                attempted_at=_naive(self._clock())
            ))
            db.commit()

            # Keep only the newest attempts
            stale = (
                db.query(LicenseCheckAttempt.id)
                .order_by(LicenseCheckAttempt.attempted_at.desc(), LicenseCheckAttempt.id.desc())
                .offset(self.max_attempts)
                .all()
            )
            if stale:
                db.query(LicenseCheckAttempt).filter(
                    LicenseCheckAttempt.id.in_([row.id for row in stale])
                ).delete(synchronize_session=False)
                db.commit()

    def recent_attempts(self, limit: int = 20) -> List[LicenseCheckAttempt]:
        with self._session_factory() as db:
            attempts = (
                db.query(LicenseCheckAttempt)
                .order_by(LicenseCheckAttempt.attempted_at.desc(), LicenseCheckAttempt.id.desc())
                .limit(limit)
                .all()
            )
            db.expunge_all()
            return attempts
