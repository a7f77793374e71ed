from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy import and_, delete, or_, update
from sqlalchemy.exc import IntegrityError

from tagihan.core.context import AuthContext
from tagihan.core.errors import (
    DocumentNotFoundError,
    DuplicateSequenceError,
    MissingReferenceDataError,
    NumberCollisionError,
    PermissionDeniedError,
    RevisionWindowClosedError,
    StaleStateError,
    TerminalStateError,
    ValidationError,
)
from tagihan.core.extensions import db
from tagihan.core.models import (
    DEFAULT_VERIFICATION_CHECKLIST,
    Notification,
    Role,
    Tagihan,
    TagihanEvent,
    TagihanStatus,
    utcnow,
)
from tagihan.core.utils import as_utc
from tagihan.workflow.collaborators import DomainEvent, publish_event, reference_data_service
from tagihan.workflow.guard import check_duplicate_sequence
from tagihan.workflow.locking import explain_rejection, lock_available_clause
from tagihan.workflow.numbering import (
    format_sp2d_number,
    format_spm_number,
    issue_correction_number,
    issue_registration_number,
    issue_sp2d_sequence,
    issue_verification_number,
    next_spm_sequence,
    spm_year_of,
)

logger = logging.getLogger(__name__)

TRANSITIONS: dict[TagihanStatus, set[TagihanStatus]] = {
    TagihanStatus.AWAITING_REGISTRATION: {TagihanStatus.AWAITING_VERIFICATION, TagihanStatus.UNDER_REVIEW},
    TagihanStatus.UNDER_REVIEW: {TagihanStatus.AWAITING_VERIFICATION},
    TagihanStatus.AWAITING_VERIFICATION: {TagihanStatus.FORWARDED, TagihanStatus.RETURNED},
    TagihanStatus.RETURNED: {TagihanStatus.AWAITING_VERIFICATION},
    TagihanStatus.FORWARDED: {TagihanStatus.COMPLETED},
    TagihanStatus.COMPLETED: set(),
}

OWNER_EDITABLE_STATES = (TagihanStatus.AWAITING_REGISTRATION, TagihanStatus.UNDER_REVIEW)
NUMBERING_FIELDS = ("owning_unit_name", "document_type", "schedule_code", "sequence_number", "document_date")
HOLD_DAYS_RANGE = range(1, 4)
# Bounds of the Numeric(18, 2) amount column and the integer sequence column.
MAX_GROSS_AMOUNT = Decimal(10) ** 16
MAX_SEQUENCE_NUMBER = 2**31 - 1
LOCK_CLEARED = {"locked_by": None, "locked_at": None}


def can_transition(current: TagihanStatus, target: TagihanStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


def _check_transition(tagihan_id: int, current: TagihanStatus, target: TagihanStatus) -> None:
    if not can_transition(current, target):
        raise StaleStateError(
            f"Tagihan {tagihan_id} tidak dapat berpindah dari {current.value} ke {target.value}",
            tagihan_id=tagihan_id,
            status=current.value,
            target=target.value,
        )


def _resolve_now(now: datetime | None) -> datetime:
    return as_utc(now) or utcnow()


def _require_role(actor: AuthContext, *roles: Role) -> None:
    if not actor.has_role(*(role.value for role in roles)):
        raise PermissionDeniedError(
            f"Peran {actor.role or '-'} tidak diizinkan",
            role=actor.role,
            required=",".join(role.value for role in roles),
        )


def _is_admin(actor: AuthContext) -> bool:
    return actor.role == Role.ADMIN.value


def _require_owner(tagihan: Tagihan, actor: AuthContext) -> None:
    if not _is_admin(actor) and tagihan.submitting_user_id != actor.id:
        raise PermissionDeniedError("Tagihan ini bukan milik Anda", tagihan_id=tagihan.id)


def _owner_clause(actor: AuthContext):
    if _is_admin(actor):
        return Tagihan.id.isnot(None)
    return Tagihan.submitting_user_id == actor.id


def _text(payload: dict, key: str) -> str:
    value = payload.get(key)
    return "" if value is None else str(value).strip()


def _parse_iso_date(value: str, field_name: str) -> date:
    raw = (value or "").strip()
    if not raw:
        raise ValidationError(f"{field_name} wajib diisi", field=field_name)
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"Format tanggal tidak valid untuk {field_name}", field=field_name) from exc


def _parse_optional_iso_date(value: str | None, field_name: str) -> date | None:
    raw = (value or "").strip()
    if not raw:
        return None
    return _parse_iso_date(raw, field_name)


def _parse_decimal(value: str, field_name: str) -> Decimal:
    raw = (value or "").strip().replace(",", ".")
    if not raw:
        raise ValidationError(f"{field_name} wajib diisi", field=field_name)
    try:
        amount = Decimal(raw)
    except InvalidOperation as exc:
        raise ValidationError(f"Nilai tidak valid untuk {field_name}", field=field_name) from exc
    if not amount.is_finite():
        raise ValidationError(f"Nilai tidak valid untuk {field_name}", field=field_name)
    if amount < 0:
        raise ValidationError(f"{field_name} tidak boleh negatif", field=field_name)
    if amount >= MAX_GROSS_AMOUNT:
        raise ValidationError(f"{field_name} melebihi batas", field=field_name)
    return amount.quantize(Decimal("0.01"))


def _parse_positive_int(value: str, field_name: str, maximum: int = MAX_SEQUENCE_NUMBER) -> int:
    raw = (value or "").strip()
    if not raw.isdecimal() or len(raw) > len(str(maximum)) or not 0 < int(raw) <= maximum:
        raise ValidationError(f"{field_name} harus bilangan bulat positif", field=field_name)
    return int(raw)


def _content_values(payload: dict, partial: bool) -> dict[str, object]:
    values: dict[str, object] = {}
    labels = {
        "description": "Uraian",
        "document_type": "Jenis tagihan",
        "claim_type": "Jenis SPM",
    }
    for key, label in labels.items():
        if partial and key not in payload:
            continue
        text = _text(payload, key)
        if not text:
            raise ValidationError(f"{label} wajib diisi", field=key)
        values[key] = text
    if not partial or "gross_amount" in payload:
        values["gross_amount"] = _parse_decimal(_text(payload, "gross_amount"), "gross_amount")
    if not partial or "funding_source" in payload:
        values["funding_source"] = _text(payload, "funding_source")
    return values


def _numbering_values(
    owning_unit_name: str,
    document_type: str,
    schedule_code: str,
    sequence_number: int,
    document_date: date,
    exclude_id: int | None = None,
) -> dict[str, object]:
    references = reference_data_service()
    active_codes = {row["code"] for row in references.active_schedules()}
    if schedule_code not in active_codes:
        raise MissingReferenceDataError(f"Jadwal '{schedule_code}' tidak aktif", schedule_code=schedule_code)
    unit = references.lookup(owning_unit_name)
    spm_number = format_spm_number(
        unit["region_code"],
        sequence_number,
        document_type,
        unit["unit_code"],
        schedule_code,
        document_date,
    )
    year = spm_year_of(spm_number)
    check_duplicate_sequence(sequence_number, owning_unit_name, schedule_code, year, exclude_id=exclude_id)
    return {
        "owning_unit_name": owning_unit_name,
        "schedule_code": schedule_code,
        "sequence_number": sequence_number,
        "document_date": document_date,
        "spm_number": spm_number,
        "spm_year": year,
    }


def _owning_unit(payload: dict, actor: AuthContext, default: str | None = None) -> str:
    requested = _text(payload, "owning_unit_name") or default or actor.unit_name or ""
    if not requested:
        raise ValidationError("Nama SKPD wajib diisi", field="owning_unit_name")
    if actor.unit_name and requested != actor.unit_name and not _is_admin(actor):
        raise PermissionDeniedError("Tidak dapat mengajukan tagihan untuk SKPD lain", owning_unit_name=requested)
    return requested


def _edit_values(tagihan: Tagihan, payload: dict, actor: AuthContext) -> dict[str, object]:
    values = _content_values(payload, partial=True)
    if not any(key in payload for key in NUMBERING_FIELDS):
        return values
    owning_unit_name = _owning_unit(payload, actor, default=tagihan.owning_unit_name)
    schedule_code = _text(payload, "schedule_code") or tagihan.schedule_code
    document_date = _parse_optional_iso_date(_text(payload, "document_date"), "document_date") or tagihan.document_date
    document_type = str(values.get("document_type") or tagihan.document_type)
    raw_sequence = _text(payload, "sequence_number")
    sequence_number = _parse_positive_int(raw_sequence, "sequence_number") if raw_sequence else tagihan.sequence_number
    values.update(
        _numbering_values(
            owning_unit_name,
            document_type,
            schedule_code,
            sequence_number,
            document_date,
            exclude_id=tagihan.id,
        )
    )
    return values


def _log_event(
    tagihan_id: int,
    from_status: TagihanStatus | None,
    to_status: TagihanStatus,
    actor: AuthContext,
    detail: str,
    at: datetime,
) -> None:
    db.session.add(
        TagihanEvent(
            tagihan_id=tagihan_id,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor.id,
            detail=detail[:255],
            at=at,
        )
    )


def _load(tagihan_id: int) -> Tagihan:
    tagihan = db.session.get(Tagihan, tagihan_id)
    if tagihan is None:
        raise DocumentNotFoundError(f"Tagihan {tagihan_id} tidak ditemukan", tagihan_id=tagihan_id)
    return tagihan


def _load_in_state(tagihan_id: int, expected: set[TagihanStatus], actor: AuthContext, now: datetime) -> Tagihan:
    tagihan = _load(tagihan_id)
    if tagihan.status not in expected:
        raise explain_rejection(tagihan_id, expected, actor.id, now)
    return tagihan


def _owner_edit_window(now: datetime):
    return or_(
        Tagihan.status.in_(OWNER_EDITABLE_STATES),
        and_(
            Tagihan.status == TagihanStatus.RETURNED,
            Tagihan.editable_by_owner.is_(True),
            or_(Tagihan.revision_deadline.is_(None), Tagihan.revision_deadline > now),
        ),
    )


def revision_window_open(tagihan: Tagihan, now: datetime) -> bool:
    if tagihan.status in OWNER_EDITABLE_STATES:
        return True
    if tagihan.status != TagihanStatus.RETURNED or not tagihan.editable_by_owner:
        return False
    deadline = as_utc(tagihan.revision_deadline)
    return deadline is None or deadline > as_utc(now)


def _edit_rejection(tagihan_id: int) -> Exception:
    tagihan = db.session.get(Tagihan, tagihan_id)
    if tagihan is None:
        return DocumentNotFoundError(f"Tagihan {tagihan_id} tidak ditemukan", tagihan_id=tagihan_id)
    if tagihan.status == TagihanStatus.COMPLETED:
        return TerminalStateError(f"Tagihan {tagihan_id} sudah selesai", tagihan_id=tagihan_id)
    if tagihan.status == TagihanStatus.RETURNED:
        deadline = as_utc(tagihan.revision_deadline)
        return RevisionWindowClosedError(
            f"Tagihan {tagihan_id} tidak dapat diperbaiki lagi",
            tagihan_id=tagihan_id,
            revision_deadline=deadline.isoformat() if deadline else None,
        )
    return StaleStateError(
        f"Tagihan {tagihan_id} berstatus {tagihan.status.value}",
        tagihan_id=tagihan_id,
        status=tagihan.status.value,
    )


def _apply(
    tagihan_id: int,
    criteria: list,
    values: dict[str, object],
    rejection,
    conflict_error: type[DuplicateSequenceError] = NumberCollisionError,
) -> None:
    """Run one conditional UPDATE; roll back and raise if it matched nothing."""
    statement = update(Tagihan).where(Tagihan.id == tagihan_id)
    for criterion in criteria:
        statement = statement.where(criterion)
    try:
        result = db.session.execute(statement.values(**values).execution_options(synchronize_session=False))
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Constraint violation while updating tagihan %s", tagihan_id)
        raise conflict_error(f"Tagihan {tagihan_id} bentrok dengan data lain", tagihan_id=tagihan_id) from exc
    if result.rowcount == 0:
        db.session.rollback()
        raise rejection()


def _finish(
    tagihan_id: int,
    from_status: TagihanStatus,
    to_status: TagihanStatus,
    actor: AuthContext,
    now: datetime,
    detail: str,
    recipient_id: int | None = None,
    message: str = "",
) -> Tagihan:
    _log_event(tagihan_id, from_status, to_status, actor, detail, now)
    db.session.commit()
    logger.info("Tagihan %s: %s -> %s (%s)", tagihan_id, from_status.value, to_status.value, detail)
    publish_event(
        DomainEvent(
            tagihan_id=tagihan_id,
            new_status=to_status,
            actor_id=actor.id,
            recipient_id=recipient_id,
            message=message,
            occurred_at=now,
        )
    )
    return db.session.get(Tagihan, tagihan_id)


def get_tagihan(tagihan_id: int, actor: AuthContext) -> Tagihan:
    tagihan = _load(tagihan_id)
    if actor.role == Role.SKPD.value:
        _require_owner(tagihan, actor)
    return tagihan


def suggest_sequence_number(payload: dict, actor: AuthContext, now: datetime | None = None) -> int:
    now = _resolve_now(now)
    owning_unit_name = _owning_unit(payload, actor)
    schedule_code = _text(payload, "schedule_code")
    if not schedule_code:
        raise ValidationError("Kode jadwal wajib diisi", field="schedule_code")
    document_date = _parse_optional_iso_date(_text(payload, "document_date"), "document_date") or now.date()
    return next_spm_sequence(owning_unit_name, schedule_code, document_date.year)


def submit_tagihan(payload: dict, actor: AuthContext, now: datetime | None = None) -> Tagihan:
    _require_role(actor, Role.SKPD)
    now = _resolve_now(now)
    content = _content_values(payload, partial=False)
    owning_unit_name = _owning_unit(payload, actor)
    schedule_code = _text(payload, "schedule_code")
    if not schedule_code:
        raise ValidationError("Kode jadwal wajib diisi", field="schedule_code")
    document_date = _parse_optional_iso_date(_text(payload, "document_date"), "document_date") or now.date()
    raw_sequence = _text(payload, "sequence_number")
    if raw_sequence:
        sequence_number = _parse_positive_int(raw_sequence, "sequence_number")
    else:
        sequence_number = next_spm_sequence(owning_unit_name, schedule_code, document_date.year)
    numbering = _numbering_values(
        owning_unit_name,
        str(content["document_type"]),
        schedule_code,
        sequence_number,
        document_date,
    )

    tagihan = Tagihan(
        submitting_user_id=actor.id,
        status=TagihanStatus.AWAITING_REGISTRATION,
        submission_time=now,
        editable_by_owner=False,
        **content,
        **numbering,
    )
    db.session.add(tagihan)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("SPM scope collision on insert for sequence %s (%s)", sequence_number, owning_unit_name)
        raise DuplicateSequenceError(
            f"Nomor urut {sequence_number} sudah dipakai",
            sequence_number=sequence_number,
            owning_unit_name=owning_unit_name,
            schedule_code=schedule_code,
            year=numbering["spm_year"],
        ) from exc

    _log_event(tagihan.id, None, TagihanStatus.AWAITING_REGISTRATION, actor, f"Pengajuan SPM {tagihan.spm_number}", now)
    db.session.commit()
    logger.info("Tagihan %s submitted as %s", tagihan.id, tagihan.spm_number)
    publish_event(DomainEvent(tagihan.id, TagihanStatus.AWAITING_REGISTRATION, actor.id, occurred_at=now))
    return tagihan


def update_tagihan(tagihan_id: int, payload: dict, actor: AuthContext, now: datetime | None = None) -> Tagihan:
    _require_role(actor, Role.SKPD)
    now = _resolve_now(now)
    tagihan = _load(tagihan_id)
    _require_owner(tagihan, actor)
    if not revision_window_open(tagihan, now):
        raise _edit_rejection(tagihan_id)
    values = _edit_values(tagihan, payload, actor)
    if not values:
        raise ValidationError("Tidak ada perubahan", tagihan_id=tagihan_id)
    status = tagihan.status

    _apply(
        tagihan_id,
        [_owner_clause(actor), _owner_edit_window(now)],
        values,
        lambda: _edit_rejection(tagihan_id),
        conflict_error=DuplicateSequenceError,
    )
    _log_event(tagihan_id, status, status, actor, "Perubahan oleh SKPD: " + ", ".join(sorted(values)), now)
    db.session.commit()
    logger.info("Tagihan %s edited by owner (%s)", tagihan_id, ", ".join(sorted(values)))
    return db.session.get(Tagihan, tagihan_id)


def delete_tagihan(tagihan_id: int, actor: AuthContext) -> None:
    _require_role(actor, Role.SKPD)
    tagihan = _load(tagihan_id)
    _require_owner(tagihan, actor)
    db.session.execute(
        update(Notification)
        .where(Notification.tagihan_id == tagihan_id)
        .values(tagihan_id=None)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        delete(TagihanEvent)
        .where(TagihanEvent.tagihan_id == tagihan_id)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(
        delete(Tagihan)
        .where(Tagihan.id == tagihan_id)
        .where(Tagihan.status == TagihanStatus.AWAITING_REGISTRATION)
        .where(_owner_clause(actor))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.session.rollback()
        raise explain_rejection(tagihan_id, {TagihanStatus.AWAITING_REGISTRATION}, actor.id, utcnow())
    db.session.commit()
    logger.info("Tagihan %s deleted by user %s", tagihan_id, actor.id)


def register(tagihan_id: int, actor: AuthContext, now: datetime | None = None) -> Tagihan:
    _require_role(actor, Role.REGISTRAR)
    now = _resolve_now(now)
    expected = {TagihanStatus.AWAITING_REGISTRATION}
    tagihan = _load_in_state(tagihan_id, expected, actor, now)
    spm_number, owner_id = tagihan.spm_number, tagihan.submitting_user_id

    _check_transition(tagihan_id, TagihanStatus.AWAITING_REGISTRATION, TagihanStatus.AWAITING_VERIFICATION)
    registration_number = issue_registration_number(tagihan_id, now)
    _apply(
        tagihan_id,
        [Tagihan.status.in_(expected)],
        {
            "status": TagihanStatus.AWAITING_VERIFICATION,
            "registration_number": registration_number,
            "registration_time": now,
            "registrar_name": actor.display_name,
            "revision_note": None,
            "editable_by_owner": False,
        },
        lambda: explain_rejection(tagihan_id, expected, actor.id, now),
    )
    return _finish(
        tagihan_id,
        TagihanStatus.AWAITING_REGISTRATION,
        TagihanStatus.AWAITING_VERIFICATION,
        actor,
        now,
        f"Registrasi {registration_number}",
        recipient_id=owner_id,
        message=f"Tagihan SPM {spm_number} telah diregistrasi dengan nomor {registration_number}.",
    )


def send_back_for_revision(tagihan_id: int, actor: AuthContext, note: str, now: datetime | None = None) -> Tagihan:
    _require_role(actor, Role.REGISTRAR)
    now = _resolve_now(now)
    note = (note or "").strip()
    if not note:
        raise ValidationError("Catatan tinjau kembali wajib diisi", field="note")
    expected = {TagihanStatus.AWAITING_REGISTRATION}
    tagihan = _load_in_state(tagihan_id, expected, actor, now)
    spm_number, owner_id = tagihan.spm_number, tagihan.submitting_user_id
    _check_transition(tagihan_id, TagihanStatus.AWAITING_REGISTRATION, TagihanStatus.UNDER_REVIEW)

    _apply(
        tagihan_id,
        [Tagihan.status.in_(expected)],
        {
            "status": TagihanStatus.UNDER_REVIEW,
            "revision_note": note,
            "registration_number": None,
            "registration_time": None,
            "registrar_name": None,
            "editable_by_owner": True,
        },
        lambda: explain_rejection(tagihan_id, expected, actor.id, now),
    )
    return _finish(
        tagihan_id,
        TagihanStatus.AWAITING_REGISTRATION,
        TagihanStatus.UNDER_REVIEW,
        actor,
        now,
        f"Tinjau kembali: {note}",
        recipient_id=owner_id,
        message=f"Tagihan SPM {spm_number} perlu ditinjau kembali: {note}",
    )


def resubmit(
    tagihan_id: int,
    actor: AuthContext,
    payload: dict | None = None,
    now: datetime | None = None,
) -> Tagihan:
    _require_role(actor, Role.SKPD)
    now = _resolve_now(now)
    tagihan = _load(tagihan_id)
    _require_owner(tagihan, actor)
    from_status = tagihan.status
    if from_status not in (TagihanStatus.UNDER_REVIEW, TagihanStatus.RETURNED):
        raise explain_rejection(tagihan_id, {TagihanStatus.UNDER_REVIEW, TagihanStatus.RETURNED}, actor.id, now)
    if not revision_window_open(tagihan, now):
        raise _edit_rejection(tagihan_id)
    _check_transition(tagihan_id, from_status, TagihanStatus.AWAITING_VERIFICATION)

    values = _edit_values(tagihan, payload or {}, actor)
    values.update(
        {
            "status": TagihanStatus.AWAITING_VERIFICATION,
            "verification_number": None,
            "editable_by_owner": False,
            "revision_deadline": None,
            "revision_note": None,
            **LOCK_CLEARED,
        }
    )
    if from_status == TagihanStatus.UNDER_REVIEW:
        # Sent back before registration, so the document has no registration number yet.
        values["registration_number"] = issue_registration_number(tagihan_id, now)
        values["registration_time"] = now

    _apply(
        tagihan_id,
        [Tagihan.status == from_status, _owner_clause(actor), _owner_edit_window(now)],
        values,
        lambda: _edit_rejection(tagihan_id),
        conflict_error=DuplicateSequenceError,
    )
    return _finish(tagihan_id, from_status, TagihanStatus.AWAITING_VERIFICATION, actor, now, "Diajukan ulang")


def normalize_checklist(checklist) -> list[dict[str, object]]:
    if not isinstance(checklist, (list, tuple)) or not checklist:
        raise ValidationError("Checklist verifikasi tidak boleh kosong", field="checklist")
    items: list[dict[str, object]] = []
    for position, raw in enumerate(checklist, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Item checklist #{position} tidak valid", field="checklist")
        criterion = str(raw.get("criterion", raw.get("item")) or "").strip()
        if not criterion:
            raise ValidationError(f"Kriteria checklist #{position} kosong", field="checklist")
        satisfied = raw.get("satisfied", raw.get("memenuhi_syarat"))
        if isinstance(satisfied, str):
            satisfied = satisfied.strip().lower() in {"true", "1", "ya", "yes"}
        if not isinstance(satisfied, bool):
            raise ValidationError(f"Status item '{criterion}' harus ya/tidak", field="checklist")
        note = str(raw.get("note", raw.get("keterangan")) or "").strip()
        items.append({"criterion": criterion, "satisfied": satisfied, "note": note})
    return items


def checklist_template(tagihan: Tagihan) -> list[dict[str, object]]:
    if tagihan.verification_checklist:
        return [dict(item) for item in tagihan.verification_checklist]
    return [{"criterion": item, "satisfied": True, "note": ""} for item in DEFAULT_VERIFICATION_CHECKLIST]


def _review_criteria(actor: AuthContext, now: datetime) -> list:
    return [
        Tagihan.status == TagihanStatus.AWAITING_VERIFICATION,
        Tagihan.verification_number.is_(None),
        lock_available_clause(actor.id, now),
    ]


def _load_for_review(tagihan_id: int, actor: AuthContext, now: datetime) -> Tagihan:
    tagihan = _load_in_state(tagihan_id, {TagihanStatus.AWAITING_VERIFICATION}, actor, now)
    if tagihan.verification_number is not None:
        raise StaleStateError(f"Tagihan {tagihan_id} sudah diverifikasi", tagihan_id=tagihan_id)
    return tagihan


def verify(
    tagihan_id: int,
    checklist,
    actor: AuthContext,
    hold_days: int | str | None = None,
    now: datetime | None = None,
) -> Tagihan:
    _require_role(actor, Role.VERIFIER)
    now = _resolve_now(now)
    items = normalize_checklist(checklist)
    passed = all(item["satisfied"] for item in items)
    deadline = None
    if not passed:
        raw_hold = "" if hold_days is None else str(hold_days).strip()
        hold = _parse_positive_int(raw_hold, "hold_days") if raw_hold else 1
        if hold not in HOLD_DAYS_RANGE:
            raise ValidationError("Durasi penahanan harus antara 1 hingga 3 hari", field="hold_days")
        # One day means a final return: the owner cannot revise it.
        deadline = now + timedelta(days=hold) if hold > 1 else None

    tagihan = _load_for_review(tagihan_id, actor, now)
    spm_number, owner_id = tagihan.spm_number, tagihan.submitting_user_id
    new_status = TagihanStatus.FORWARDED if passed else TagihanStatus.RETURNED
    _check_transition(tagihan_id, TagihanStatus.AWAITING_VERIFICATION, new_status)

    verification_number = issue_verification_number(tagihan_id, now)
    _apply(
        tagihan_id,
        _review_criteria(actor, now),
        {
            "status": new_status,
            "verification_number": verification_number,
            "verification_time": now,
            "verifier_name": actor.display_name,
            "verification_checklist": items,
            "correction_number": None,
            "corrector_id": None,
            "correction_time": None,
            "correction_note": None,
            "editable_by_owner": deadline is not None,
            "revision_deadline": deadline,
            **LOCK_CLEARED,
        },
        lambda: explain_rejection(tagihan_id, {TagihanStatus.AWAITING_VERIFICATION}, actor.id, now),
    )
    if passed:
        message = f"Selamat! Tagihan SPM {spm_number} Anda telah DITERUSKAN."
    else:
        message = f"Perhatian! Tagihan SPM {spm_number} DIKEMBALIKAN."
        if deadline is not None:
            message += f" Harap perbaiki sebelum {deadline:%d-%m-%Y %H:%M}."
    return _finish(
        tagihan_id,
        TagihanStatus.AWAITING_VERIFICATION,
        new_status,
        actor,
        now,
        f"Verifikasi {verification_number}",
        recipient_id=owner_id,
        message=message,
    )


def correct(tagihan_id: int, actor: AuthContext, note: str, now: datetime | None = None) -> Tagihan:
    _require_role(actor, Role.CORRECTOR)
    now = _resolve_now(now)
    note = (note or "").strip()
    if not note:
        raise ValidationError("Keterangan koreksi wajib diisi", field="note")
    tagihan = _load_for_review(tagihan_id, actor, now)
    if not tagihan.registration_number:
        raise MissingReferenceDataError(f"Tagihan {tagihan_id} belum memiliki nomor registrasi", tagihan_id=tagihan_id)
    spm_number, owner_id = tagihan.spm_number, tagihan.submitting_user_id

    _check_transition(tagihan_id, TagihanStatus.AWAITING_VERIFICATION, TagihanStatus.RETURNED)
    correction_number = issue_correction_number(tagihan.registration_number, tagihan_id, now)
    _apply(
        tagihan_id,
        _review_criteria(actor, now),
        {
            "status": TagihanStatus.RETURNED,
            "correction_number": correction_number,
            "corrector_id": actor.id,
            "correction_time": now,
            "correction_note": note,
            "editable_by_owner": True,
            "revision_deadline": None,
            **LOCK_CLEARED,
        },
        lambda: explain_rejection(tagihan_id, {TagihanStatus.AWAITING_VERIFICATION}, actor.id, now),
    )
    return _finish(
        tagihan_id,
        TagihanStatus.AWAITING_VERIFICATION,
        TagihanStatus.RETURNED,
        actor,
        now,
        f"Koreksi {correction_number}",
        recipient_id=owner_id,
        message=f"Perhatian! Tagihan SPM {spm_number} DIKEMBALIKAN oleh Staf Koreksi.",
    )


def register_disbursement(
    tagihan_id: int,
    payload: dict,
    actor: AuthContext,
    now: datetime | None = None,
) -> Tagihan:
    _require_role(actor, Role.SP2D)
    now = _resolve_now(now)
    bank_name = _text(payload, "bank_name")
    if not bank_name:
        raise ValidationError("Nama bank wajib diisi", field="bank_name")
    sp2d_date = _parse_optional_iso_date(_text(payload, "sp2d_date"), "sp2d_date") or now.date()
    bank_submission_date = (
        _parse_optional_iso_date(_text(payload, "bank_submission_date"), "bank_submission_date") or sp2d_date
    )
    note = _text(payload, "note")

    expected = {TagihanStatus.FORWARDED}
    tagihan = _load_in_state(tagihan_id, expected, actor, now)
    spm_number, owner_id = tagihan.spm_number, tagihan.submitting_user_id
    references = reference_data_service()
    unit = references.lookup(tagihan.owning_unit_name)
    schedules = references.active_schedules()
    if not schedules:
        raise MissingReferenceDataError("Tidak ada jadwal penganggaran aktif")
    setting = references.sp2d_setting()

    _check_transition(tagihan_id, TagihanStatus.FORWARDED, TagihanStatus.COMPLETED)
    sp2d_sequence = issue_sp2d_sequence(tagihan_id, now)
    try:
        sp2d_number = format_sp2d_number(
            unit["region_code"],
            setting,
            sp2d_sequence,
            tagihan.document_type,
            unit["unit_code"],
            schedules[0]["code"],
            sp2d_date,
        )
    except ValidationError:
        db.session.rollback()
        raise
    _apply(
        tagihan_id,
        [Tagihan.status.in_(expected)],
        {
            "status": TagihanStatus.COMPLETED,
            "sp2d_number": sp2d_number,
            "sp2d_sequence": sp2d_sequence,
            "sp2d_date": sp2d_date,
            "sp2d_registration_time": now,
            "sp2d_note": note or None,
            "bank_name": bank_name,
            "bank_submission_date": bank_submission_date,
        },
        lambda: explain_rejection(tagihan_id, expected, actor.id, now),
    )
    return _finish(
        tagihan_id,
        TagihanStatus.FORWARDED,
        TagihanStatus.COMPLETED,
        actor,
        now,
        f"SP2D {sp2d_number}",
        recipient_id=owner_id,
        message=f"Tagihan SPM {spm_number} telah terbit SP2D nomor {sp2d_number}.",
    )
