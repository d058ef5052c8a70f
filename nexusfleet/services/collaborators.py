"""
Collaborator Interfaces

Narrow interfaces to the systems around the fleet engine: audit trail,
usage accounting, user plans and runtime settings. Services receive these
through their constructors; the defaults below are enough to run the
engine standalone.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nexusfleet.config import FleetSettings, get_settings
from nexusfleet.models.fleet import UsageRecord, UserPlan

logger = logging.getLogger(__name__)

AUDIT_VPN_KEY_GENERATED = "VPN_KEY_GENERATED"
AUDIT_VPN_KEY_REVOKED = "VPN_KEY_REVOKED"
AUDIT_NODE_PROVISIONED = "NODE_PROVISIONED"

SETTING_MAINTENANCE_MODE = "maintenance_mode"


class AuditService(ABC):
    """Records security-relevant actions."""

    @abstractmethod
    def log(
        self,
        action: str,
        actor_id: str,
        target_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass


class UsageService(ABC):
    """Accepts cumulative per-day transfer totals for a user."""

    @abstractmethod
    def record_usage(
        self,
        user_id: str,
        upload_bytes: int,
        download_bytes: int,
        iso_date: str,
    ) -> None:
        pass


class UserDirectory(ABC):
    """Looks up the subscription plan of a user."""

    @abstractmethod
    def get_plan(self, user_id: str) -> UserPlan:
        pass


class SettingsStore(ABC):
    """Reads operator-controlled runtime settings."""

    @abstractmethod
    def get_setting_value(self, key: str) -> Optional[str]:
        pass


class LoggingAuditService(AuditService):
    """
    Audit service that writes one JSON line per action to a dedicated logger.

    Persistence of the audit trail is left to the logging configuration.
    """

    def __init__(self, logger_name: str = "nexusfleet.audit"):
        self._audit_logger = logging.getLogger(logger_name)

    def log(self, action, actor_id, target_id=None, details=None):
        entry = {
            "action": action,
            "actor_id": actor_id,
            "target_id": target_id,
            "details": details or {},
        }
        self._audit_logger.info(json.dumps(entry, default=str, sort_keys=True))


class SqlUsageService(UsageService):
    """
    Usage service backed by the usage_records table.

    Counters reported by nodes are cumulative, so repeated reports for the
    same user and day merge by per-field maximum. Totals never decrease.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory
        self._lock = threading.Lock()

    def record_usage(self, user_id, upload_bytes, download_bytes, iso_date):
        with self._lock, self._session_factory() as db:
            record = (
                db.query(UsageRecord)
                .filter(UsageRecord.user_id == user_id, UsageRecord.record_date == iso_date)
                .first()
            )
            if record is None:
                db.add(UsageRecord(
                    user_id=user_id,
                    record_date=iso_date,
                    bytes_uploaded=upload_bytes,
                    bytes_downloaded=download_bytes,
                ))
            else:
                record.bytes_uploaded = max(record.bytes_uploaded, upload_bytes)
                record.bytes_downloaded = max(record.bytes_downloaded, download_bytes)

            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.warning(f"Concurrent usage insert for {user_id} on {iso_date}; merging")
                record = (
                    db.query(UsageRecord)
                    .filter(UsageRecord.user_id == user_id, UsageRecord.record_date == iso_date)
                    .one()
                )
                record.bytes_uploaded = max(record.bytes_uploaded, upload_bytes)
                record.bytes_downloaded = max(record.bytes_downloaded, download_bytes)
                db.commit()

    def get_usage(self, user_id: str, iso_date: str) -> Optional[UsageRecord]:
        with self._session_factory() as db:
            record = (
                db.query(UsageRecord)
                .filter(UsageRecord.user_id == user_id, UsageRecord.record_date == iso_date)
                .first()
            )
            if record is not None:
                db.expunge(record)
            return record

    def get_user_usage(self, user_id: str, days: int = 30) -> List[UsageRecord]:
        """Most recent daily records for a user, newest first."""
        with self._session_factory() as db:
            records = (
                db.query(UsageRecord)
                .filter(UsageRecord.user_id == user_id)
                .order_by(UsageRecord.record_date.desc())
                .limit(days)
                .all()
            )
            for record in records:
                db.expunge(record)
            return records


class InMemoryUserDirectory(UserDirectory):
    """User directory holding plans in a dict; unknown users are on the free plan."""

    def __init__(self, plans: Optional[Dict[str, UserPlan]] = None):
        self._plans: Dict[str, UserPlan] = dict(plans or {})

    def set_plan(self, user_id: str, plan: UserPlan) -> None:
        self._plans[user_id] = UserPlan(plan)

    def get_plan(self, user_id):
        return self._plans.get(user_id, UserPlan.FREE)


class EnvSettingsStore(SettingsStore):
    """
    Settings store layered over FleetSettings.

    Explicit overrides win; otherwise the matching FleetSettings field is
    returned as a lower-case string ("true"/"false" for flags).
    """

    def __init__(
        self,
        settings: Optional[FleetSettings] = None,
        overrides: Optional[Dict[str, str]] = None,
    ):
        self._settings = settings or get_settings()
        self._overrides: Dict[str, str] = dict(overrides or {})

    def set_setting_value(self, key: str, value: str) -> None:
        self._overrides[key] = value

    def get_setting_value(self, key):
        if key in self._overrides:
            return self._overrides[key]
        value = getattr(self._settings, key, None)
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)
