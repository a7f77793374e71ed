"""Role worklists (antrian) as predicates over the tagihan table.

Nothing here is stored: every queue is recomputed from the current column
values and the wall clock. Each predicate exists twice, as a SQL clause for
listing and as a Python check on a loaded row, and both must agree.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Callable

from sqlalchemy import and_, func, or_

from tagihan.core.context import AuthContext
from tagihan.core.errors import PermissionDeniedError, ValidationError
from tagihan.core.extensions import db
from tagihan.core.models import Role, Tagihan, TagihanStatus, utcnow
from tagihan.core.utils import as_utc
from tagihan.workflow.locking import lock_available_clause, lock_available_for


def registrar_queue_clause(_actor: AuthContext | None = None, _now: datetime | None = None):
    return Tagihan.status == TagihanStatus.AWAITING_REGISTRATION


def verifier_queue_clause(actor: AuthContext, now: datetime):
    return and_(
        Tagihan.status == TagihanStatus.AWAITING_VERIFICATION,
        Tagihan.verification_number.is_(None),
        lock_available_clause(actor.id, now),
    )


# Verifiers and correctors pull from one shared pool.
corrector_queue_clause = verifier_queue_clause


def disbursement_queue_clause(_actor: AuthContext | None = None, _now: datetime | None = None):
    return Tagihan.status == TagihanStatus.FORWARDED


def owner_worklist_clause(actor: AuthContext, _now: datetime | None = None):
    return Tagihan.submitting_user_id == actor.id


def in_registrar_queue(tagihan: Tagihan) -> bool:
    return tagihan.status == TagihanStatus.AWAITING_REGISTRATION


def in_verifier_queue(tagihan: Tagihan, user_id: int, now: datetime) -> bool:
    return (
        tagihan.status == TagihanStatus.AWAITING_VERIFICATION
        and tagihan.verification_number is None
        and lock_available_for(tagihan, user_id, now)
    )


in_corrector_queue = in_verifier_queue


def in_disbursement_queue(tagihan: Tagihan) -> bool:
    return tagihan.status == TagihanStatus.FORWARDED


def day_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    return start, start + timedelta(days=1)


def registrar_history_clause(actor: AuthContext, now: datetime):
    start, end = day_bounds(now)
    return and_(
        Tagihan.registrar_name == actor.display_name,
        Tagihan.registration_time >= start,
        Tagihan.registration_time < end,
    )


def verifier_history_clause(actor: AuthContext, now: datetime):
    start, end = day_bounds(now)
    return and_(
        Tagihan.verifier_name == actor.display_name,
        or_(
            and_(Tagihan.verification_time >= start, Tagihan.verification_time < end),
            Tagihan.revision_deadline > now,
        ),
    )


def corrector_history_clause(actor: AuthContext, now: datetime):
    start, end = day_bounds(now)
    return and_(
        Tagihan.corrector_id == actor.id,
        Tagihan.correction_time >= start,
        Tagihan.correction_time < end,
    )


def in_verifier_history(tagihan: Tagihan, actor: AuthContext, now: datetime) -> bool:
    if tagihan.verifier_name != actor.display_name:
        return False
    start, end = day_bounds(now)
    verified_at = as_utc(tagihan.verification_time)
    deadline = as_utc(tagihan.revision_deadline)
    return (verified_at is not None and start <= verified_at < end) or (deadline is not None and deadline > now)


@dataclass(frozen=True)
class QueueDefinition:
    roles: tuple[str, ...]
    clause: Callable[[AuthContext, datetime], object]
    newest_first: bool = False


QUEUES: dict[str, QueueDefinition] = {
    "registrasi": QueueDefinition((Role.REGISTRAR.value,), registrar_queue_clause),
    "verifikasi": QueueDefinition((Role.VERIFIER.value,), verifier_queue_clause),
    "koreksi": QueueDefinition((Role.CORRECTOR.value,), corrector_queue_clause),
    "sp2d": QueueDefinition((Role.SP2D.value,), disbursement_queue_clause),
    "skpd": QueueDefinition((Role.SKPD.value,), owner_worklist_clause, newest_first=True),
}

HISTORIES: dict[str, QueueDefinition] = {
    "registrasi": QueueDefinition((Role.REGISTRAR.value,), registrar_history_clause, newest_first=True),
    "verifikasi": QueueDefinition((Role.VERIFIER.value,), verifier_history_clause, newest_first=True),
    "koreksi": QueueDefinition((Role.CORRECTOR.value,), corrector_history_clause, newest_first=True),
}


def _definition(registry: dict[str, QueueDefinition], name: str, actor: AuthContext) -> QueueDefinition:
    definition = registry.get((name or "").strip().lower())
    if definition is None:
        raise ValidationError(f"Antrian tidak dikenal: {name}")
    if not actor.has_role(*definition.roles):
        raise PermissionDeniedError(f"Peran {actor.role} tidak dapat membuka antrian {name}")
    return definition


def _apply_filters(query, filters: dict[str, str]):
    unit = (filters.get("skpd") or "").strip()
    if unit:
        query = query.filter(Tagihan.owning_unit_name == unit)
    status = (filters.get("status") or "").strip().upper()
    if status:
        if status not in TagihanStatus.__members__:
            raise ValidationError(f"Status tidak dikenal: {status}")
        query = query.filter(Tagihan.status == TagihanStatus[status])
    search = (filters.get("q") or "").strip()
    if search:
        pattern = f"%{search.lower()}%"
        query = query.filter(
            or_(
                func.lower(Tagihan.spm_number).like(pattern),
                func.lower(Tagihan.description).like(pattern),
            )
        )
    return query


def _list(
    registry: dict[str, QueueDefinition],
    name: str,
    actor: AuthContext,
    now: datetime | None,
    filters: dict[str, str] | None,
) -> list[Tagihan]:
    definition = _definition(registry, name, actor)
    now = as_utc(now) or utcnow()
    query = Tagihan.query.filter(definition.clause(actor, now))
    query = _apply_filters(query, filters or {})
    if definition.newest_first:
        query = query.order_by(Tagihan.submission_time.desc(), Tagihan.id.desc())
    else:
        query = query.order_by(Tagihan.submission_time.asc(), Tagihan.id.asc())
    return query.all()


def list_queue(
    name: str,
    actor: AuthContext,
    now: datetime | None = None,
    filters: dict[str, str] | None = None,
) -> list[Tagihan]:
    return _list(QUEUES, name, actor, now, filters)


def list_history(
    name: str,
    actor: AuthContext,
    now: datetime | None = None,
    filters: dict[str, str] | None = None,
) -> list[Tagihan]:
    return _list(HISTORIES, name, actor, now, filters)


def queue_counts(actor: AuthContext, now: datetime | None = None) -> dict[str, int]:
    now = as_utc(now) or utcnow()
    counts: dict[str, int] = {}
    for name, definition in QUEUES.items():
        if not actor.has_role(*definition.roles):
            continue
        counts[name] = (
            db.session.query(func.count(Tagihan.id)).filter(definition.clause(actor, now)).scalar() or 0
        )
    return counts
