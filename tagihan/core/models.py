from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from flask_login import UserMixin
from sqlalchemy import CheckConstraint, Enum as SAEnum, ForeignKey, Index, UniqueConstraint, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from werkzeug.security import generate_password_hash

from tagihan.core.errors import TerminalStateError
from tagihan.core.extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TagihanStatus(str, Enum):
    AWAITING_REGISTRATION = "AWAITING_REGISTRATION"
    UNDER_REVIEW = "UNDER_REVIEW"
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
    FORWARDED = "FORWARDED"
    RETURNED = "RETURNED"
    COMPLETED = "COMPLETED"


class Role(str, Enum):
    SKPD = "skpd"
    REGISTRAR = "registrar"
    VERIFIER = "verifier"
    CORRECTOR = "corrector"
    SP2D = "sp2d"
    ADMIN = "admin"


class NumberKind(str, Enum):
    REGISTRATION = "REG"
    VERIFICATION = "VER"
    CORRECTION = "KOR"
    SP2D = "SP2D"


DEFAULT_VERIFICATION_CHECKLIST: list[str] = [
    "SPTJ",
    "Kebenaran Perhitungan Tagihan",
    "Kesesuaian Kode Rekening",
    "E-Billing",
    "Fotocopy Rekening Pihak Ketiga / Bendahara Pengeluaran / Bendahara Pengeluaran Pembantu",
    "Fotocopy NPWP",
    "Tanda Penerimaan / Kwitansi / Bukti Pembayaran",
    "Lainnya",
]

TAGIHAN_STATUS_ENUM = SAEnum(TagihanStatus, name="tagihan_status")


class User(UserMixin, db.Model):
    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    password_hash: Mapped[str] = mapped_column(db.String(255), nullable=False)
    role: Mapped[str] = mapped_column(db.String(30), nullable=False, default=Role.SKPD.value)
    # Only set for SKPD staff: the owning unit they submit for.
    unit_name: Mapped[str | None] = mapped_column(db.String(160), nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    @validates("role")
    def validate_role(self, _key, value):
        allowed = {r.value for r in Role}
        if (value or "").lower() not in allowed:
            raise ValueError(f"Peran tidak dikenal: {value}")
        return value.lower()


class UnitSkpd(db.Model):
    __tablename__ = "unit_skpd"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(160), unique=True, nullable=False)
    unit_code: Mapped[str] = mapped_column(db.String(40), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class JadwalPenganggaran(db.Model):
    __tablename__ = "jadwal_penganggaran"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(db.String(20), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(db.String(160), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)


class AppSetting(db.Model):
    __tablename__ = "app_setting"

    key: Mapped[str] = mapped_column(db.String(60), primary_key=True)
    value: Mapped[str] = mapped_column(db.String(160), nullable=False)


class Tagihan(db.Model):
    __tablename__ = "tagihan"
    __table_args__ = (
        UniqueConstraint(
            "sequence_number",
            "owning_unit_name",
            "schedule_code",
            "spm_year",
            name="uq_tagihan_spm_scope",
        ),
        CheckConstraint("gross_amount >= 0", name="ck_tagihan_amount"),
        CheckConstraint("sequence_number > 0", name="ck_tagihan_sequence"),
        CheckConstraint(
            "(locked_by IS NULL AND locked_at IS NULL) OR (locked_by IS NOT NULL AND locked_at IS NOT NULL)",
            name="ck_tagihan_lock_pair",
        ),
        CheckConstraint(
            "revision_deadline IS NULL OR (verification_time IS NOT NULL AND revision_deadline > verification_time)",
            name="ck_tagihan_revision_deadline",
        ),
        Index("ix_tagihan_status_submitted", "status", "submission_time"),
        Index("ix_tagihan_unit_status", "owning_unit_name", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    owning_unit_name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    submitting_user_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False, index=True)

    description: Mapped[str] = mapped_column(db.String(500), nullable=False)
    gross_amount: Mapped[Decimal] = mapped_column(db.Numeric(18, 2), nullable=False, default=0)
    document_type: Mapped[str] = mapped_column(db.String(80), nullable=False)
    claim_type: Mapped[str] = mapped_column(db.String(80), nullable=False)
    funding_source: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")

    spm_number: Mapped[str] = mapped_column(db.String(120), nullable=False, index=True)
    sequence_number: Mapped[int] = mapped_column(nullable=False)
    schedule_code: Mapped[str] = mapped_column(db.String(20), nullable=False)
    spm_year: Mapped[int] = mapped_column(nullable=False)
    document_date: Mapped[date] = mapped_column(nullable=False)

    status: Mapped[TagihanStatus] = mapped_column(
        TAGIHAN_STATUS_ENUM,
        nullable=False,
        default=TagihanStatus.AWAITING_REGISTRATION,
    )
    submission_time: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    registration_number: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    registration_time: Mapped[datetime | None] = mapped_column(nullable=True)
    registrar_name: Mapped[str | None] = mapped_column(db.String(120), nullable=True)

    verification_number: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    verification_time: Mapped[datetime | None] = mapped_column(nullable=True)
    verifier_name: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    verification_checklist: Mapped[list | None] = mapped_column(db.JSON, nullable=True)

    correction_number: Mapped[str | None] = mapped_column(db.String(40), nullable=True)
    corrector_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    correction_time: Mapped[datetime | None] = mapped_column(nullable=True)
    correction_note: Mapped[str | None] = mapped_column(db.String(500), nullable=True)

    locked_by: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(nullable=True)

    revision_note: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    editable_by_owner: Mapped[bool] = mapped_column(nullable=False, default=False)
    revision_deadline: Mapped[datetime | None] = mapped_column(nullable=True)

    sp2d_number: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    sp2d_date: Mapped[date | None] = mapped_column(nullable=True)
    sp2d_sequence: Mapped[int | None] = mapped_column(nullable=True, unique=True)
    sp2d_registration_time: Mapped[datetime | None] = mapped_column(nullable=True)
    sp2d_note: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    bank_submission_date: Mapped[date | None] = mapped_column(nullable=True)

    submitted_by = relationship("User", foreign_keys=[submitting_user_id])
    events = relationship(
        "TagihanEvent",
        back_populates="tagihan",
        cascade="all, delete-orphan",
        order_by="TagihanEvent.id",
    )

    @validates("gross_amount")
    def validate_gross_amount(self, _key, value):
        if value is not None and Decimal(value) < 0:
            raise ValueError("Jumlah kotor tidak boleh negatif")
        return value


class NomorTerbit(db.Model):
    # Ledger of every number handed out, so a number survives edits of its document.
    __tablename__ = "nomor_terbit"
    __table_args__ = (
        UniqueConstraint("kind", "window", "seq", name="uq_nomor_terbit_window_seq"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    kind: Mapped[NumberKind] = mapped_column(SAEnum(NumberKind, name="number_kind"), nullable=False)
    window: Mapped[str] = mapped_column(db.String(20), nullable=False)
    seq: Mapped[int] = mapped_column(nullable=False)
    value: Mapped[str] = mapped_column(db.String(120), nullable=False)
    tagihan_id: Mapped[int | None] = mapped_column(ForeignKey("tagihan.id", ondelete="SET NULL"), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class TagihanEvent(db.Model):
    __tablename__ = "tagihan_event"
    __table_args__ = (Index("ix_tagihan_event_tagihan_at", "tagihan_id", "at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    tagihan_id: Mapped[int] = mapped_column(ForeignKey("tagihan.id", ondelete="CASCADE"), nullable=False)
    from_status: Mapped[TagihanStatus | None] = mapped_column(TAGIHAN_STATUS_ENUM, nullable=True)
    to_status: Mapped[TagihanStatus] = mapped_column(TAGIHAN_STATUS_ENUM, nullable=False)
    actor_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    detail: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    tagihan = relationship("Tagihan", back_populates="events")
    actor = relationship("User")


class Notification(db.Model):
    __tablename__ = "notification"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False, index=True)
    message: Mapped[str] = mapped_column(db.String(500), nullable=False)
    tagihan_id: Mapped[int | None] = mapped_column(ForeignKey("tagihan.id", ondelete="SET NULL"), nullable=True)
    is_read: Mapped[bool] = mapped_column(default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


@event.listens_for(Tagihan, "before_update")
def tagihan_before_update(mapper, _connection, target: Tagihan) -> None:
    # A completed document is frozen, whatever path tries to flush it.
    state = inspect(target)
    history = state.attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous != TagihanStatus.COMPLETED:
        return
    if any(state.attrs[attr.key].history.has_changes() for attr in mapper.column_attrs):
        raise TerminalStateError(f"Tagihan {target.id} sudah selesai", tagihan_id=target.id)


def seed_demo_data(session) -> None:
    session.add_all(
        [
            AppSetting(key="kode_wilayah", value="71.06"),
            AppSetting(key="nomor_sp2d", value="SP2D"),
            UnitSkpd(name="Dinas Pendidikan", unit_code="1.01.0.00.0.00.01.0000"),
            UnitSkpd(name="Dinas Kesehatan", unit_code="1.02.0.00.0.00.01.0000"),
            JadwalPenganggaran(code="M", description="APBD Murni", is_active=True),
            JadwalPenganggaran(code="P", description="APBD Perubahan", is_active=False),
        ]
    )

    users = [
        ("skpd@tagihan.local", "Operator Dinas Pendidikan", "skpd123", Role.SKPD, "Dinas Pendidikan"),
        ("registrasi@tagihan.local", "Staf Registrasi", "registrasi123", Role.REGISTRAR, None),
        ("verifikator@tagihan.local", "Verifikator Satu", "verifikator123", Role.VERIFIER, None),
        ("verifikator2@tagihan.local", "Verifikator Dua", "verifikator123", Role.VERIFIER, None),
        ("koreksi@tagihan.local", "Staf Koreksi", "koreksi123", Role.CORRECTOR, None),
        ("sp2d@tagihan.local", "Staf SP2D", "sp2d123", Role.SP2D, None),
        ("admin@tagihan.local", "Administrator", "admin123", Role.ADMIN, None),
    ]
    session.add_all(
        [
            User(
                email=email,
                full_name=full_name,
                password_hash=generate_password_hash(password),
                role=role.value,
                unit_name=unit_name,
            )
            for email, full_name, password, role, unit_name in users
        ]
    )
    session.commit()
