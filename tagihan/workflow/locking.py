"""Per-document review locks, kept in the tagihan row itself.

Acquisition is one conditional UPDATE; whoever's statement matches the row
owns the lock. A lock older than the timeout counts as abandoned and can be
taken over by anyone. There is no sweeper: staleness is judged at
acquisition time from ``locked_at``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_, update

from tagihan.core.context import AuthContext
from tagihan.core.errors import (
    AlreadyLockedError,
    DocumentNotFoundError,
    PermissionDeniedError,
    StaleStateError,
    TerminalStateError,
)
from tagihan.core.extensions import db
from tagihan.core.models import Role, Tagihan, TagihanStatus, utcnow
from tagihan.core.utils import as_utc

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = timedelta(minutes=30)
REVIEW_ROLES = (Role.VERIFIER.value, Role.CORRECTOR.value)


def lock_timeout() -> timedelta:
    minutes = current_app.config.get("LOCK_TIMEOUT_MINUTES")
    return timedelta(minutes=int(minutes)) if minutes else LOCK_TIMEOUT


def lock_available_clause(user_id: int, now: datetime):
    return or_(
        Tagihan.locked_by.is_(None),
        Tagihan.locked_by == user_id,
        Tagihan.locked_at < now - lock_timeout(),
    )


def lock_available_for(tagihan: Tagihan, user_id: int, now: datetime) -> bool:
    if tagihan.locked_by is None or tagihan.locked_by == user_id:
        return True
    locked_at = as_utc(tagihan.locked_at)
    return locked_at is not None and locked_at < as_utc(now) - lock_timeout()


def explain_rejection(tagihan_id: int, expected: set[TagihanStatus], user_id: int, now: datetime) -> Exception:
    """Work out why a conditional update on ``tagihan_id`` matched no row."""
    tagihan = db.session.get(Tagihan, tagihan_id)
    if tagihan is None:
        return DocumentNotFoundError(f"Tagihan {tagihan_id} tidak ditemukan", tagihan_id=tagihan_id)
    if tagihan.status == TagihanStatus.COMPLETED and TagihanStatus.COMPLETED not in expected:
        return TerminalStateError(f"Tagihan {tagihan_id} sudah selesai", tagihan_id=tagihan_id)
    if tagihan.status not in expected:
        return StaleStateError(
            f"Tagihan {tagihan_id} berstatus {tagihan.status.value}",
            tagihan_id=tagihan_id,
            status=tagihan.status.value,
        )
    if not lock_available_for(tagihan, user_id, now):
        return AlreadyLockedError(
            f"Tagihan {tagihan_id} dikunci oleh pengguna {tagihan.locked_by}",
            tagihan_id=tagihan_id,
            locked_by=tagihan.locked_by,
            locked_at=as_utc(tagihan.locked_at).isoformat(),
        )
    return StaleStateError(f"Tagihan {tagihan_id} sudah diproses", tagihan_id=tagihan_id, status=tagihan.status.value)


def acquire_lock(tagihan_id: int, actor: AuthContext, now: datetime | None = None) -> Tagihan:
    if not actor.has_role(*REVIEW_ROLES):
        raise PermissionDeniedError("Hanya verifikator atau staf koreksi yang dapat mengunci tagihan")
    now = as_utc(now) or utcnow()
    result = db.session.execute(
        update(Tagihan)
        .where(Tagihan.id == tagihan_id)
        .where(Tagihan.status == TagihanStatus.AWAITING_VERIFICATION)
        .where(lock_available_clause(actor.id, now))
        .values(locked_by=actor.id, locked_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.rollback()
        error = explain_rejection(tagihan_id, {TagihanStatus.AWAITING_VERIFICATION}, actor.id, now)
        logger.warning("Lock on tagihan %s refused for user %s: %s", tagihan_id, actor.id, type(error).__name__)
        raise error
    db.session.commit()
    logger.info("Tagihan %s locked by user %s", tagihan_id, actor.id)
    return db.session.get(Tagihan, tagihan_id)


def release_lock(tagihan_id: int, actor: AuthContext) -> bool:
    result = db.session.execute(
        update(Tagihan)
        .where(Tagihan.id == tagihan_id)
        .where(Tagihan.locked_by == actor.id)
        .values(locked_by=None, locked_at=None)
        .execution_options(synchronize_session=False)
    )
    released = result.rowcount > 0
    db.session.commit()
    if released:
        logger.info("Tagihan %s unlocked by user %s", tagihan_id, actor.id)
    return released
