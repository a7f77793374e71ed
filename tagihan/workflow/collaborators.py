"""Contracts for the services the workflow core talks to.

The core only depends on the ``Protocol`` shapes below. The default
implementations read and write the application database; a deployment (or a
test) can register different ones in ``app.extensions``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from flask import current_app

from tagihan.core.errors import MissingReferenceDataError
from tagihan.core.extensions import db
from tagihan.core.models import AppSetting, JadwalPenganggaran, Notification, TagihanStatus, UnitSkpd, utcnow

logger = logging.getLogger(__name__)

NOTIFICATION_EXTENSION = "tagihan.notification_service"
REFERENCE_DATA_EXTENSION = "tagihan.reference_data_service"


@dataclass(frozen=True)
class DomainEvent:
    tagihan_id: int
    new_status: TagihanStatus
    actor_id: int
    recipient_id: int | None = None
    message: str = ""
    occurred_at: datetime = field(default_factory=utcnow)


class NotificationService(Protocol):
    def notify(self, user_id: int, message: str, related_document_id: int | None) -> None: ...


class ReferenceDataService(Protocol):
    def lookup(self, owning_unit: str) -> dict[str, str]: ...

    def active_schedules(self) -> list[dict[str, str]]: ...

    def sp2d_setting(self) -> str: ...


class DatabaseNotificationService:
    def notify(self, user_id: int, message: str, related_document_id: int | None) -> None:
        db.session.add(Notification(user_id=user_id, message=message, tagihan_id=related_document_id))
        db.session.commit()


class DatabaseReferenceDataService:
    def _setting(self, key: str) -> str | None:
        setting = db.session.get(AppSetting, key)
        return setting.value.strip() if setting and setting.value else None

    def lookup(self, owning_unit: str) -> dict[str, str]:
        unit = UnitSkpd.query.filter_by(name=(owning_unit or "").strip()).first()
        if not unit or not unit.unit_code:
            raise MissingReferenceDataError(f"Kode SKPD untuk '{owning_unit}' tidak ditemukan", owning_unit=owning_unit)
        region_code = self._setting("kode_wilayah")
        if not region_code:
            raise MissingReferenceDataError("Kode wilayah belum diatur")
        return {"unit_code": unit.unit_code, "region_code": region_code}

    def active_schedules(self) -> list[dict[str, str]]:
        rows = JadwalPenganggaran.query.filter_by(is_active=True).order_by(JadwalPenganggaran.code.asc()).all()
        return [{"code": row.code, "description": row.description} for row in rows]

    def sp2d_setting(self) -> str:
        value = self._setting("nomor_sp2d")
        if not value:
            raise MissingReferenceDataError("Pengaturan nomor SP2D belum diatur")
        return value


def init_collaborators(app) -> None:
    app.extensions.setdefault(NOTIFICATION_EXTENSION, DatabaseNotificationService())
    app.extensions.setdefault(REFERENCE_DATA_EXTENSION, DatabaseReferenceDataService())


def notification_service() -> NotificationService:
    return current_app.extensions[NOTIFICATION_EXTENSION]


def reference_data_service() -> ReferenceDataService:
    return current_app.extensions[REFERENCE_DATA_EXTENSION]


def publish_event(domain_event: DomainEvent) -> bool:
    """Hand a transition to the notifier. Delivery is best effort."""
    logger.info(
        "Tagihan %s -> %s by user %s",
        domain_event.tagihan_id,
        domain_event.new_status.value,
        domain_event.actor_id,
    )
    if domain_event.recipient_id is None or not domain_event.message:
        return False
    try:
        notification_service().notify(domain_event.recipient_id, domain_event.message, domain_event.tagihan_id)
    except Exception:
        db.session.rollback()
        logger.exception("Notification for tagihan %s was not delivered", domain_event.tagihan_id)
        return False
    return True
