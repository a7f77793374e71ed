from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tagihan.core.errors import (
    AlreadyLockedError,
    DuplicateSequenceError,
    MissingReferenceDataError,
    PermissionDeniedError,
    RevisionWindowClosedError,
    StaleStateError,
    TerminalStateError,
    ValidationError,
)
from tagihan.core.extensions import db
from tagihan.core.models import (
    DEFAULT_VERIFICATION_CHECKLIST,
    NomorTerbit,
    Notification,
    Tagihan,
    TagihanEvent,
    TagihanStatus,
)
from tagihan.core.utils import as_utc
from tagihan.workflow import services
from tagihan.workflow.collaborators import NOTIFICATION_EXTENSION
from tagihan.workflow.locking import acquire_lock
from tagihan.workflow.services import (
    can_transition,
    correct,
    delete_tagihan,
    register,
    register_disbursement,
    resubmit,
    send_back_for_revision,
    update_tagihan,
    verify,
)

T0 = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)
UNIT_CODE = "1.01.0.00.0.00.01.0000"


def _checklist(*failing: str) -> list[dict[str, object]]:
    return [
        {"criterion": item, "satisfied": item not in failing, "note": "kurang" if item in failing else ""}
        for item in DEFAULT_VERIFICATION_CHECKLIST
    ]


def _registered(make_tagihan, actors, **overrides) -> int:
    tagihan = make_tagihan(**overrides)
    register(tagihan.id, actors("registrar"), now=T0)
    return tagihan.id


def _returned_with_hold(make_tagihan, actors, hold_days: int, **overrides) -> int:
    tagihan_id = _registered(make_tagihan, actors, **overrides)
    verifier = actors("verifier")
    acquire_lock(tagihan_id, verifier, now=T0)
    verify(tagihan_id, _checklist("E-Billing"), verifier, hold_days=hold_days, now=T0)
    return tagihan_id


def test_submission_formats_spm_number_and_logs_event(app, actors, make_tagihan):
    with app.app_context():
        tagihan = make_tagihan()

        assert tagihan.status == TagihanStatus.AWAITING_REGISTRATION
        assert tagihan.spm_number == f"71.06/000012/LS/{UNIT_CODE}/M/1/2025"
        assert tagihan.spm_year == 2025
        assert tagihan.gross_amount == Decimal("1500000.00")
        assert tagihan.submitting_user_id == actors("skpd").id
        assert [e.to_status for e in tagihan.events] == [TagihanStatus.AWAITING_REGISTRATION]


def test_submission_without_sequence_takes_next_free_one(app, make_tagihan):
    with app.app_context():
        make_tagihan(sequence_number="7")
        tagihan = make_tagihan(sequence_number="")

        assert tagihan.sequence_number == 8


def test_scenario_submit_register_verify_forward(app, actors, make_tagihan):
    with app.app_context():
        tagihan = make_tagihan()
        registered = register(tagihan.id, actors("registrar"), now=T0)

        assert registered.status == TagihanStatus.AWAITING_VERIFICATION
        assert registered.registration_number == "REG-20250115-0001"
        assert registered.registrar_name == "Staf Registrasi"

        verifier = actors("verifier")
        acquire_lock(tagihan.id, verifier, now=T0 + timedelta(minutes=1))
        verified = verify(tagihan.id, _checklist(), verifier, now=T0 + timedelta(minutes=2))

        assert verified.status == TagihanStatus.FORWARDED
        assert verified.verification_number == "VER-20250115-0001"
        assert verified.verifier_name == "Verifikator Satu"
        assert verified.locked_by is None
        assert verified.locked_at is None
        assert verified.editable_by_owner is False
        assert len(verified.verification_checklist) == len(DEFAULT_VERIFICATION_CHECKLIST)

        messages = [n.message for n in Notification.query.filter_by(user_id=actors("skpd").id).all()]
        assert any("REG-20250115-0001" in message for message in messages)
        assert any("DITERUSKAN" in message for message in messages)


def test_verify_return_with_hold_days_sets_deadline(app, actors, make_tagihan):
    with app.app_context():
        tagihan_id = _returned_with_hold(make_tagihan, actors, hold_days=3)
        tagihan = db.session.get(Tagihan, tagihan_id)

        assert tagihan.status == TagihanStatus.RETURNED
        assert tagihan.editable_by_owner is True
        assert as_utc(tagihan.revision_deadline) == T0 + timedelta(days=3)
        assert tagihan.locked_by is None


def test_final_return_is_not_editable(app, actors, make_tagihan):
    with app.app_context():
        tagihan_id = _returned_with_hold(make_tagihan, actors, hold_days=1)
        tagihan = db.session.get(Tagihan, tagihan_id)
        assert tagihan.editable_by_owner is False
        assert tagihan.revision_deadline is None

        with pytest.raises(RevisionWindowClosedError):
            resubmit(tagihan_id, actors("skpd"), now=T0 + timedelta(hours=1))


def test_hold_days_outside_range_is_rejected(app, actors, make_tagihan):
    with app.app_context():
        tagihan_id = _registered(make_tagihan, actors)
        with pytest.raises(ValidationError):
            verify(tagihan_id, _checklist("SPTJ"), actors("verifier"), hold_days=5, now=T0)
        with pytest.raises(ValidationError):
            verify(tagihan_id, [], actors("verifier"), now=T0)


def test_scenario_revision_window(app, actors, make_tagihan):
    with app.app_context():
        skpd = actors("skpd")
        first = _returned_with_hold(make_tagihan, actors, hold_days=3, sequence_number="12")
        second = _returned_with_hold(make_tagihan, actors, hold_days=3, sequence_number="13")

        resubmitted = resubmit(
            first,
            skpd,
            payload={"description": "Belanja ATK (lampiran lengkap)"},
            now=T0 + timedelta(days=2),
        )
        assert resubmitted.status == TagihanStatus.AWAITING_VERIFICATION
        assert resubmitted.description == "Belanja ATK (lampiran lengkap)"
        assert resubmitted.verification_number is None
        assert resubmitted.revision_deadline is None
        assert resubmitted.editable_by_owner is False
        assert resubmitted.registration_number == "REG-20250115-0001"

        with pytest.raises(RevisionWindowClosedError):
            update_tagihan(second, {"description": "Terlambat"}, skpd, now=T0 + timedelta(days=4))
        assert db.session.get(Tagihan, second).description == "Belanja alat tulis kantor"


def test_send_back_and_resubmit_mints_registration(app, actors, make_tagihan):
    with app.app_context():
        tagihan = make_tagihan()
        with pytest.raises(ValidationError):
            send_back_for_revision(tagihan.id, actors("registrar"), "  ", now=T0)

        sent_back = send_back_for_revision(tagihan.id, actors("registrar"), "Lampiran kurang", now=T0)
        assert sent_back.status == TagihanStatus.UNDER_REVIEW
        assert sent_back.revision_note == "Lampiran kurang"
        assert sent_back.registration_number is None
        assert sent_back.editable_by_owner is True

        later = T0 + timedelta(days=1)
        resubmitted = resubmit(tagihan.id, actors("skpd"), now=later)
        assert resubmitted.status == TagihanStatus.AWAITING_VERIFICATION
        assert resubmitted.registration_number == "REG-20250116-0001"
        assert as_utc(resubmitted.registration_time) == later
        assert resubmitted.revision_note is None


def test_correction_returns_document_to_owner(app, actors, make_tagihan):
    with app.app_context():
        tagihan_id = _registered(make_tagihan, actors)
        corrector = actors("corrector")
        acquire_lock(tagihan_id, corrector, now=T0)

        with pytest.raises(ValidationError):
            correct(tagihan_id, corrector, "", now=T0)
        corrected = correct(tagihan_id, corrector, "Kode rekening salah", now=T0 + timedelta(minutes=3))

        assert corrected.status == TagihanStatus.RETURNED
        assert corrected.correction_number == "1-K-0001"
        assert corrected.corrector_id == corrector.id
        assert corrected.correction_note == "Kode rekening salah"
        assert corrected.editable_by_owner is True
        assert corrected.revision_deadline is None
        assert corrected.locked_by is None

        resubmit(tagihan_id, actors("skpd"), now=T0 + timedelta(days=10))
        verifier = actors("verifier")
        acquire_lock(tagihan_id, verifier, now=T0 + timedelta(days=10))
        verified = verify(tagihan_id, _checklist(), verifier, now=T0 + timedelta(days=10))
        assert verified.correction_number is None
        assert verified.corrector_id is None


def test_verify_respects_other_reviewers_lock(app, actors, make_tagihan):
    with app.app_context():
        tagihan_id = _registered(make_tagihan, actors)
        acquire_lock(tagihan_id, actors("verifier"), now=T0)

        with pytest.raises(AlreadyLockedError):
            verify(tagihan_id, _checklist(), actors("verifier2"), now=T0 + timedelta(minutes=5))
        with pytest.raises(AlreadyLockedError):
            correct(tagihan_id, actors("corrector"), "Salah hitung", now=T0 + timedelta(minutes=5))

        verify(tagihan_id, _checklist(), actors("verifier"), now=T0 + timedelta(minutes=6))
        with pytest.raises(StaleStateError):
            verify(tagihan_id, _checklist(), actors("verifier2"), now=T0 + timedelta(minutes=7))


def test_scenario_duplicate_sequence(app, actors, make_tagihan):
    with app.app_context():
        make_tagihan(sequence_number="12")
        with pytest.raises(DuplicateSequenceError) as excinfo:
            make_tagihan(sequence_number="12")

        assert excinfo.value.context["sequence_number"] == 12
        assert Tagihan.query.count() == 1

        # Same number in another year or for another unit is a different scope.
        make_tagihan(sequence_number="12", document_date="2026-01-05")
        make_tagihan(sequence_number="12", actor_key="admin", owning_unit_name="Dinas Kesehatan")
        assert Tagihan.query.count() == 3


def test_duplicate_sequence_caught_by_constraint_when_guard_is_raced(app, make_tagihan, monkeypatch):
    with app.app_context():
        make_tagihan(sequence_number="12")
        monkeypatch.setattr(services, "check_duplicate_sequence", lambda *args, **kwargs: None)

        with pytest.raises(DuplicateSequenceError):
            make_tagihan(sequence_number="12")
        assert Tagihan.query.count() == 1


def test_owner_edit_renumbers_and_guards_sequence(app, actors, make_tagihan):
    with app.app_context():
        skpd = actors("skpd")
        first = make_tagihan(sequence_number="12")
        make_tagihan(sequence_number="13")

        edited = update_tagihan(first.id, {"sequence_number": "14", "gross_amount": "2000000"}, skpd, now=T0)
        assert edited.spm_number == f"71.06/000014/LS/{UNIT_CODE}/M/1/2025"
        assert edited.gross_amount == Decimal("2000000.00")

        with pytest.raises(DuplicateSequenceError):
            update_tagihan(first.id, {"sequence_number": "13"}, skpd, now=T0)
        with pytest.raises(ValidationError):
            update_tagihan(first.id, {"gross_amount": "-5"}, skpd, now=T0)


def test_only_owner_may_edit_or_delete(app, actors, make_tagihan):
    with app.app_context():
        tagihan = make_tagihan()
        with pytest.raises(PermissionDeniedError):
            update_tagihan(tagihan.id, {"description": "x"}, actors("registrar"), now=T0)
        with pytest.raises(PermissionDeniedError):
            register(tagihan.id, actors("verifier"), now=T0)


def test_delete_only_while_awaiting_registration(app, actors, make_tagihan):
    with app.app_context():
        skpd = actors("skpd")
        removable = make_tagihan(sequence_number="1")
        kept = make_tagihan(sequence_number="2")
        register(kept.id, actors("registrar"), now=T0)

        removable_id, kept_id = removable.id, kept.id
        delete_tagihan(removable_id, skpd)
        assert db.session.get(Tagihan, removable_id) is None
        assert TagihanEvent.query.filter_by(tagihan_id=removable_id).count() == 0

        with pytest.raises(StaleStateError):
            delete_tagihan(kept_id, skpd)


def test_missing_reference_data(app, actors, make_tagihan):
    with app.app_context():
        with pytest.raises(MissingReferenceDataError):
            make_tagihan(schedule_code="P")
        with pytest.raises(MissingReferenceDataError):
            make_tagihan(actor_key="admin", owning_unit_name="Dinas Tidak Ada")
        with pytest.raises(PermissionDeniedError):
            make_tagihan(owning_unit_name="Dinas Kesehatan")


def test_out_of_range_amount_and_sequence_are_rejected(app, actors, make_tagihan):
    with app.app_context():
        for amount in ("1e30", "10000000000000000", "NaN"):
            with pytest.raises(ValidationError) as excinfo:
                make_tagihan(gross_amount=amount)
            assert excinfo.value.context["field"] == "gross_amount"
        for sequence in ("99999999999999999999", "2147483648", "-3"):
            with pytest.raises(ValidationError) as excinfo:
                make_tagihan(sequence_number=sequence)
            assert excinfo.value.context["field"] == "sequence_number"
        assert Tagihan.query.count() == 0

        largest = make_tagihan(sequence_number="2147483647")
        assert largest.spm_number.startswith("71.06/2147483647/LS/")


def test_slash_in_number_segment_is_rejected(app, actors, make_tagihan):
    with app.app_context():
        with pytest.raises(ValidationError) as excinfo:
            make_tagihan(document_type="LS/GU")
        assert excinfo.value.context["field"] == "document_type"
        assert Tagihan.query.count() == 0


def test_transitions_follow_the_table(app, actors, make_tagihan, monkeypatch):
    monkeypatch.setitem(
        services.TRANSITIONS,
        TagihanStatus.AWAITING_REGISTRATION,
        {TagihanStatus.UNDER_REVIEW},
    )
    with app.app_context():
        tagihan_id = make_tagihan().id
        with pytest.raises(StaleStateError) as excinfo:
            register(tagihan_id, actors("registrar"), now=T0)
        assert excinfo.value.context["target"] == "AWAITING_VERIFICATION"
        assert db.session.get(Tagihan, tagihan_id).status == TagihanStatus.AWAITING_REGISTRATION
        assert NomorTerbit.query.count() == 0

        sent_back = send_back_for_revision(tagihan_id, actors("registrar"), "Lengkapi lampiran", now=T0)
        assert sent_back.status == TagihanStatus.UNDER_REVIEW


def test_disbursement_completes_and_freezes_document(app, actors, make_tagihan):
    with app.app_context():
        tagihan_id = _registered(make_tagihan, actors)
        verifier = actors("verifier")
        acquire_lock(tagihan_id, verifier, now=T0)
        verify(tagihan_id, _checklist(), verifier, now=T0)

        completed = register_disbursement(
            tagihan_id,
            {"sp2d_date": "2025-01-20", "bank_name": "Bank SulutGo"},
            actors("sp2d"),
            now=T0 + timedelta(days=5),
        )
        assert completed.status == TagihanStatus.COMPLETED
        assert completed.sp2d_sequence == 1
        assert completed.sp2d_number == f"71.06/SP2D/000001/LS/{UNIT_CODE}/M/1/2025"
        assert completed.bank_submission_date.isoformat() == "2025-01-20"

        with pytest.raises(TerminalStateError):
            register_disbursement(tagihan_id, {"bank_name": "Bank Lain"}, actors("sp2d"), now=T0)
        with pytest.raises(TerminalStateError):
            update_tagihan(tagihan_id, {"description": "Ubah"}, actors("skpd"), now=T0)
        with pytest.raises(TerminalStateError):
            acquire_lock(tagihan_id, verifier, now=T0)

        frozen = db.session.get(Tagihan, tagihan_id)
        frozen.description = "Diubah langsung"
        with pytest.raises(TerminalStateError):
            db.session.commit()
        db.session.rollback()
        assert db.session.get(Tagihan, tagihan_id).description == "Belanja alat tulis kantor"


def test_failing_notifier_does_not_roll_back_transition(app, actors, make_tagihan, caplog):
    class BrokenNotifier:
        def notify(self, user_id, message, related_document_id):
            raise RuntimeError("smtp down")

    app.extensions[NOTIFICATION_EXTENSION] = BrokenNotifier()
    with app.app_context():
        tagihan = make_tagihan()
        with caplog.at_level(logging.ERROR, logger="tagihan.workflow.collaborators"):
            registered = register(tagihan.id, actors("registrar"), now=T0)

        assert registered.status == TagihanStatus.AWAITING_VERIFICATION
        assert db.session.get(Tagihan, tagihan.id).registration_number == "REG-20250115-0001"
        assert "was not delivered" in caplog.text


def test_transition_table():
    assert can_transition(TagihanStatus.AWAITING_REGISTRATION, TagihanStatus.UNDER_REVIEW)
    assert can_transition(TagihanStatus.RETURNED, TagihanStatus.AWAITING_VERIFICATION)
    assert not can_transition(TagihanStatus.COMPLETED, TagihanStatus.FORWARDED)
    assert not can_transition(TagihanStatus.AWAITING_REGISTRATION, TagihanStatus.FORWARDED)
