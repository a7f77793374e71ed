"""Document number minting.

Every counter follows the same steps: pick the scope window, read the
highest value already issued in it, add one (or seed at 1) and format.
The read and the write are not atomic. Two concurrent issuances can pick the
same value; the unique constraints on ``nomor_terbit`` and on the tagihan
SPM scope turn that race into an error instead of a duplicate.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from tagihan.core.errors import NumberCollisionError, ValidationError
from tagihan.core.extensions import db
from tagihan.core.models import NomorTerbit, NumberKind, Tagihan

logger = logging.getLogger(__name__)

SP2D_WINDOW = "ALL"
_TYPE_CODE_RE = re.compile(r"\(([^)]+)\)")


def month_window(moment: datetime | date) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def last_issued_seq(kind: NumberKind, window: str) -> int:
    value = (
        db.session.query(func.max(NomorTerbit.seq))
        .filter(NomorTerbit.kind == kind, NomorTerbit.window == window)
        .scalar()
    )
    return int(value or 0)


def _issue(kind: NumberKind, window: str, tagihan_id: int | None, issued_at: datetime, formatter) -> tuple[int, str]:
    seq = last_issued_seq(kind, window) + 1
    value = formatter(seq)
    db.session.add(NomorTerbit(kind=kind, window=window, seq=seq, value=value, tagihan_id=tagihan_id, issued_at=issued_at))
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Number collision for %s window=%s seq=%s", kind.value, window, seq)
        raise NumberCollisionError(f"Nomor {value} sudah terbit", kind=kind.value, number=value) from exc
    return seq, value


def issue_registration_number(tagihan_id: int | None, now: datetime) -> str:
    stamp = now.strftime("%Y%m%d")
    _, value = _issue(
        NumberKind.REGISTRATION,
        month_window(now),
        tagihan_id,
        now,
        lambda seq: f"REG-{stamp}-{seq:04d}",
    )
    return value


def issue_verification_number(tagihan_id: int | None, now: datetime) -> str:
    stamp = now.strftime("%Y%m%d")
    _, value = _issue(
        NumberKind.VERIFICATION,
        month_window(now),
        tagihan_id,
        now,
        lambda seq: f"VER-{stamp}-{seq:04d}",
    )
    return value


def issue_correction_number(registration_number: str | None, tagihan_id: int | None, now: datetime) -> str:
    registration_seq = parse_sequence_suffix(registration_number)
    _, value = _issue(
        NumberKind.CORRECTION,
        month_window(now),
        tagihan_id,
        now,
        lambda seq: f"{registration_seq}-K-{seq:04d}",
    )
    return value


def issue_sp2d_sequence(tagihan_id: int | None, now: datetime) -> int:
    seq, _ = _issue(NumberKind.SP2D, SP2D_WINDOW, tagihan_id, now, str)
    return seq


def parse_sequence_suffix(number: str | None, separator: str = "-") -> int:
    raw = (number or "").strip()
    if not raw:
        raise ValidationError("Nomor registrasi kosong")
    suffix = raw.rsplit(separator, 1)[-1]
    try:
        return int(suffix, 10)
    except ValueError as exc:
        raise ValidationError(f"Nomor '{raw}' tidak berakhiran angka urut") from exc


def next_spm_sequence(owning_unit_name: str, schedule_code: str, year: int) -> int:
    value = (
        db.session.query(func.max(Tagihan.sequence_number))
        .filter(Tagihan.owning_unit_name == owning_unit_name)
        .filter(Tagihan.schedule_code == schedule_code)
        .filter(Tagihan.spm_year == year)
        .scalar()
    )
    return int(value or 0) + 1


def document_type_code(document_type: str) -> str:
    # "Langsung (LS)" -> "LS"; plain values are used as they are.
    match = _TYPE_CODE_RE.search(document_type or "")
    return match.group(1).strip() if match else (document_type or "").strip()


def _segment(value: str, field_name: str) -> str:
    text = (value or "").strip()
    if not text or "/" in text:
        raise ValidationError(f"Segmen nomor {field_name} tidak valid: {value!r}", field=field_name)
    return text


def format_spm_number(
    region_code: str,
    sequence_number: int,
    document_type: str,
    unit_code: str,
    schedule_code: str,
    issue_date: date,
) -> str:
    # Print and report consumers split this on "/" by position.
    return "/".join(
        [
            _segment(region_code, "region_code"),
            f"{sequence_number:06d}",
            _segment(document_type_code(document_type), "document_type"),
            _segment(unit_code, "unit_code"),
            _segment(schedule_code, "schedule_code"),
            str(issue_date.month),
            f"{issue_date.year:04d}",
        ]
    )


def format_sp2d_number(
    region_code: str,
    setting: str,
    sp2d_sequence: int,
    document_type: str,
    unit_code: str,
    schedule_code: str,
    sp2d_date: date,
) -> str:
    return "/".join(
        [
            _segment(region_code, "region_code"),
            _segment(setting, "nomor_sp2d"),
            f"{sp2d_sequence:06d}",
            _segment(document_type_code(document_type), "document_type"),
            _segment(unit_code, "unit_code"),
            _segment(schedule_code, "schedule_code"),
            str(sp2d_date.month),
            f"{sp2d_date.year:04d}",
        ]
    )


def spm_year_of(spm_number: str) -> int:
    return parse_sequence_suffix(spm_number, separator="/")
