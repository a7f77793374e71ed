from __future__ import annotations

import logging

from tagihan.core.errors import DuplicateSequenceError
from tagihan.core.models import Tagihan

logger = logging.getLogger(__name__)


def find_sequence_conflict(
    sequence_number: int,
    owning_unit_name: str,
    schedule_code: str,
    year: int,
    exclude_id: int | None = None,
) -> Tagihan | None:
    query = (
        Tagihan.query.filter(Tagihan.sequence_number == sequence_number)
        .filter(Tagihan.owning_unit_name == owning_unit_name)
        .filter(Tagihan.schedule_code == schedule_code)
        .filter(Tagihan.spm_number.like(f"%/{year:04d}"))
    )
    if exclude_id is not None:
        query = query.filter(Tagihan.id != exclude_id)
    return query.order_by(Tagihan.id.asc()).first()


def check_duplicate_sequence(
    sequence_number: int,
    owning_unit_name: str,
    schedule_code: str,
    year: int,
    exclude_id: int | None = None,
) -> None:
    conflict = find_sequence_conflict(sequence_number, owning_unit_name, schedule_code, year, exclude_id)
    if conflict is None:
        return
    logger.warning(
        "Sequence %s already used by tagihan %s (%s, %s, %s)",
        sequence_number,
        conflict.id,
        owning_unit_name,
        schedule_code,
        year,
    )
    raise DuplicateSequenceError(
        f"Nomor urut {sequence_number} sudah dipakai oleh SPM {conflict.spm_number}",
        sequence_number=sequence_number,
        owning_unit_name=owning_unit_name,
        schedule_code=schedule_code,
        year=year,
    )
