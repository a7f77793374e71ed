"""tagihan workflow schema

Revision ID: 7a1b2c3d4e5f
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "7a1b2c3d4e5f"
down_revision = None
branch_labels = None
depends_on = None


TAGIHAN_STATUSES = (
    "AWAITING_REGISTRATION",
    "UNDER_REVIEW",
    "AWAITING_VERIFICATION",
    "FORWARDED",
    "RETURNED",
    "COMPLETED",
)


def upgrade():
    tagihan_status = sa.Enum(*TAGIHAN_STATUSES, name="tagihan_status")
    number_kind = sa.Enum("REGISTRATION", "VERIFICATION", "CORRECTION", "SP2D", name="number_kind")

    op.create_table(
        "user_account",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=120), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=30), nullable=False),
        sa.Column("unit_name", sa.String(length=160), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_table(
        "unit_skpd",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("unit_code", sa.String(length=40), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )
    op.create_table(
        "jadwal_penganggaran",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("description", sa.String(length=160), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )
    op.create_table(
        "app_setting",
        sa.Column("key", sa.String(length=60), nullable=False),
        sa.Column("value", sa.String(length=160), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "tagihan",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("owning_unit_name", sa.String(length=160), nullable=False),
        sa.Column("submitting_user_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("gross_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("document_type", sa.String(length=80), nullable=False),
        sa.Column("claim_type", sa.String(length=80), nullable=False),
        sa.Column("funding_source", sa.String(length=120), nullable=False),
        sa.Column("spm_number", sa.String(length=120), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("schedule_code", sa.String(length=20), nullable=False),
        sa.Column("spm_year", sa.Integer(), nullable=False),
        sa.Column("document_date", sa.Date(), nullable=False),
        sa.Column("status", tagihan_status, nullable=False),
        sa.Column("submission_time", sa.DateTime(), nullable=False),
        sa.Column("registration_number", sa.String(length=40), nullable=True),
        sa.Column("registration_time", sa.DateTime(), nullable=True),
        sa.Column("registrar_name", sa.String(length=120), nullable=True),
        sa.Column("verification_number", sa.String(length=40), nullable=True),
        sa.Column("verification_time", sa.DateTime(), nullable=True),
        sa.Column("verifier_name", sa.String(length=120), nullable=True),
        sa.Column("verification_checklist", sa.JSON(), nullable=True),
        sa.Column("correction_number", sa.String(length=40), nullable=True),
        sa.Column("corrector_id", sa.Integer(), nullable=True),
        sa.Column("correction_time", sa.DateTime(), nullable=True),
        sa.Column("correction_note", sa.String(length=500), nullable=True),
        sa.Column("locked_by", sa.Integer(), nullable=True),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("revision_note", sa.String(length=500), nullable=True),
        sa.Column("editable_by_owner", sa.Boolean(), nullable=False),
        sa.Column("revision_deadline", sa.DateTime(), nullable=True),
        sa.Column("sp2d_number", sa.String(length=120), nullable=True),
        sa.Column("sp2d_date", sa.Date(), nullable=True),
        sa.Column("sp2d_sequence", sa.Integer(), nullable=True),
        sa.Column("sp2d_registration_time", sa.DateTime(), nullable=True),
        sa.Column("sp2d_note", sa.String(length=500), nullable=True),
        sa.Column("bank_name", sa.String(length=120), nullable=True),
        sa.Column("bank_submission_date", sa.Date(), nullable=True),
        sa.CheckConstraint("gross_amount >= 0", name="ck_tagihan_amount"),
        sa.CheckConstraint("sequence_number > 0", name="ck_tagihan_sequence"),
        sa.CheckConstraint(
            "(locked_by IS NULL AND locked_at IS NULL) OR (locked_by IS NOT NULL AND locked_at IS NOT NULL)",
            name="ck_tagihan_lock_pair",
        ),
        sa.CheckConstraint(
            "revision_deadline IS NULL OR (verification_time IS NOT NULL AND revision_deadline > verification_time)",
            name="ck_tagihan_revision_deadline",
        ),
        sa.ForeignKeyConstraint(["submitting_user_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["corrector_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["locked_by"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "sequence_number",
            "owning_unit_name",
            "schedule_code",
            "spm_year",
            name="uq_tagihan_spm_scope",
        ),
        sa.UniqueConstraint("sp2d_sequence"),
    )
    with op.batch_alter_table("tagihan", schema=None) as batch_op:
        batch_op.create_index("ix_tagihan_submitting_user_id", ["submitting_user_id"], unique=False)
        batch_op.create_index("ix_tagihan_spm_number", ["spm_number"], unique=False)
        batch_op.create_index("ix_tagihan_status_submitted", ["status", "submission_time"], unique=False)
        batch_op.create_index("ix_tagihan_unit_status", ["owning_unit_name", "status"], unique=False)

    op.create_table(
        "nomor_terbit",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kind", number_kind, nullable=False),
        sa.Column("window", sa.String(length=20), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("value", sa.String(length=120), nullable=False),
        sa.Column("tagihan_id", sa.Integer(), nullable=True),
        sa.Column("issued_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["tagihan_id"], ["tagihan.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("kind", "window", "seq", name="uq_nomor_terbit_window_seq"),
    )
    op.create_table(
        "tagihan_event",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tagihan_id", sa.Integer(), nullable=False),
        sa.Column("from_status", tagihan_status, nullable=True),
        sa.Column("to_status", tagihan_status, nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("detail", sa.String(length=255), nullable=False),
        sa.Column("at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["tagihan_id"], ["tagihan.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("tagihan_event", schema=None) as batch_op:
        batch_op.create_index("ix_tagihan_event_tagihan_at", ["tagihan_id", "at"], unique=False)

    op.create_table(
        "notification",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("message", sa.String(length=500), nullable=False),
        sa.Column("tagihan_id", sa.Integer(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["tagihan_id"], ["tagihan.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("notification", schema=None) as batch_op:
        batch_op.create_index("ix_notification_user_id", ["user_id"], unique=False)


def downgrade():
    with op.batch_alter_table("notification", schema=None) as batch_op:
        batch_op.drop_index("ix_notification_user_id")
    op.drop_table("notification")

    with op.batch_alter_table("tagihan_event", schema=None) as batch_op:
        batch_op.drop_index("ix_tagihan_event_tagihan_at")
    op.drop_table("tagihan_event")
    op.drop_table("nomor_terbit")

    with op.batch_alter_table("tagihan", schema=None) as batch_op:
        batch_op.drop_index("ix_tagihan_unit_status")
        batch_op.drop_index("ix_tagihan_status_submitted")
        batch_op.drop_index("ix_tagihan_spm_number")
        batch_op.drop_index("ix_tagihan_submitting_user_id")
    op.drop_table("tagihan")

    op.drop_table("app_setting")
    op.drop_table("jadwal_penganggaran")
    op.drop_table("unit_skpd")
    op.drop_table("user_account")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute(sa.text("DROP TYPE IF EXISTS number_kind"))
        op.execute(sa.text("DROP TYPE IF EXISTS tagihan_status"))
