from __future__ import annotations

from datetime import datetime

from flask import g, jsonify, request
from flask_login import login_required

from tagihan.core.i18n import translate
from tagihan.core.models import Role, Tagihan, TagihanStatus, utcnow
from tagihan.core.permissions import require_auth_context, require_role
from tagihan.core.utils import as_utc, rupiah
from tagihan.workflow import workflow_bp
from tagihan.workflow.locking import acquire_lock, release_lock
from tagihan.workflow.queues import list_history, list_queue, queue_counts
from tagihan.workflow.services import (
    TRANSITIONS,
    checklist_template,
    correct,
    delete_tagihan,
    get_tagihan,
    register,
    register_disbursement,
    resubmit,
    revision_window_open,
    send_back_for_revision,
    submit_tagihan,
    suggest_sequence_number,
    update_tagihan,
    verify,
)


def _payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _iso(value) -> str | None:
    if value is None:
        return None
    if hasattr(value, "tzinfo"):
        return as_utc(value).isoformat()
    return value.isoformat()


def serialize_tagihan(tagihan: Tagihan, detail: bool = False, now: datetime | None = None) -> dict[str, object]:
    # The stored flag stays set after the deadline; report it as expired.
    editable = tagihan.editable_by_owner and revision_window_open(tagihan, now or utcnow())
    data: dict[str, object] = {
        "id": tagihan.id,
        "spm_number": tagihan.spm_number,
        "owning_unit_name": tagihan.owning_unit_name,
        "description": tagihan.description,
        "gross_amount": str(tagihan.gross_amount),
        "gross_amount_label": rupiah(tagihan.gross_amount),
        "document_type": tagihan.document_type,
        "status": tagihan.status.value,
        "status_label": translate(f"status.{tagihan.status.value}"),
        "submission_time": _iso(tagihan.submission_time),
        "registration_number": tagihan.registration_number,
        "verification_number": tagihan.verification_number,
        "correction_number": tagihan.correction_number,
        "sp2d_number": tagihan.sp2d_number,
        "locked_by": tagihan.locked_by,
        "editable_by_owner": editable,
        "revision_deadline": _iso(tagihan.revision_deadline),
    }
    if not detail:
        return data
    data.update(
        {
            "claim_type": tagihan.claim_type,
            "funding_source": tagihan.funding_source,
            "sequence_number": tagihan.sequence_number,
            "schedule_code": tagihan.schedule_code,
            "document_date": _iso(tagihan.document_date),
            "submitting_user_id": tagihan.submitting_user_id,
            "registration_time": _iso(tagihan.registration_time),
            "registrar_name": tagihan.registrar_name,
            "revision_note": tagihan.revision_note,
            "verification_time": _iso(tagihan.verification_time),
            "verifier_name": tagihan.verifier_name,
            "verification_checklist": tagihan.verification_checklist,
            "corrector_id": tagihan.corrector_id,
            "correction_time": _iso(tagihan.correction_time),
            "correction_note": tagihan.correction_note,
            "locked_at": _iso(tagihan.locked_at),
            "sp2d_date": _iso(tagihan.sp2d_date),
            "sp2d_note": tagihan.sp2d_note,
            "bank_name": tagihan.bank_name,
            "bank_submission_date": _iso(tagihan.bank_submission_date),
            "next_statuses": sorted(status.value for status in TRANSITIONS[tagihan.status]),
            "events": [
                {
                    "from_status": event.from_status.value if event.from_status else None,
                    "to_status": event.to_status.value,
                    "actor_id": event.actor_id,
                    "detail": event.detail,
                    "at": _iso(event.at),
                }
                for event in tagihan.events
            ],
        }
    )
    return data


def _filters() -> dict[str, str]:
    return {key: request.args.get(key, "") for key in ("skpd", "status", "q")}


@workflow_bp.get("/antrian/<queue>")
@login_required
@require_auth_context
def queue_page(queue: str):
    rows = list_queue(queue, g.auth, filters=_filters())
    return jsonify({"queue": queue, "count": len(rows), "items": [serialize_tagihan(row) for row in rows]})


@workflow_bp.get("/riwayat/<role>")
@login_required
@require_auth_context
def history_page(role: str):
    rows = list_history(role, g.auth, filters=_filters())
    return jsonify({"history": role, "count": len(rows), "items": [serialize_tagihan(row) for row in rows]})


@workflow_bp.get("/dashboard")
@login_required
@require_auth_context
def dashboard():
    return jsonify({"counts": queue_counts(g.auth)})


@workflow_bp.get("/nomor-urut/saran")
@login_required
@require_role(Role.SKPD.value)
def sequence_suggestion():
    return jsonify({"sequence_number": suggest_sequence_number(request.args.to_dict(), g.auth)})


@workflow_bp.post("")
@login_required
@require_role(Role.SKPD.value)
def submit():
    tagihan = submit_tagihan(_payload(), g.auth)
    return jsonify(serialize_tagihan(tagihan, detail=True)), 201


@workflow_bp.get("/<int:tagihan_id>")
@login_required
@require_auth_context
def detail(tagihan_id: int):
    tagihan = get_tagihan(tagihan_id, g.auth)
    return jsonify(serialize_tagihan(tagihan, detail=True))


@workflow_bp.patch("/<int:tagihan_id>")
@login_required
@require_role(Role.SKPD.value)
def edit(tagihan_id: int):
    tagihan = update_tagihan(tagihan_id, _payload(), g.auth)
    return jsonify(serialize_tagihan(tagihan, detail=True))


@workflow_bp.delete("/<int:tagihan_id>")
@login_required
@require_role(Role.SKPD.value)
def remove(tagihan_id: int):
    delete_tagihan(tagihan_id, g.auth)
    return jsonify({"ok": True, "id": tagihan_id})


@workflow_bp.post("/<int:tagihan_id>/registrasi")
@login_required
@require_role(Role.REGISTRAR.value)
def registration(tagihan_id: int):
    return jsonify(serialize_tagihan(register(tagihan_id, g.auth), detail=True))


@workflow_bp.post("/<int:tagihan_id>/kembalikan")
@login_required
@require_role(Role.REGISTRAR.value)
def send_back(tagihan_id: int):
    note = str(_payload().get("note") or "")
    return jsonify(serialize_tagihan(send_back_for_revision(tagihan_id, g.auth, note), detail=True))


@workflow_bp.post("/<int:tagihan_id>/ajukan-ulang")
@login_required
@require_role(Role.SKPD.value)
def resubmission(tagihan_id: int):
    return jsonify(serialize_tagihan(resubmit(tagihan_id, g.auth, _payload()), detail=True))


@workflow_bp.post("/<int:tagihan_id>/kunci")
@login_required
@require_role(Role.VERIFIER.value, Role.CORRECTOR.value)
def lock(tagihan_id: int):
    tagihan = acquire_lock(tagihan_id, g.auth)
    data = serialize_tagihan(tagihan, detail=True)
    data["checklist_template"] = checklist_template(tagihan)
    return jsonify(data)


@workflow_bp.post("/<int:tagihan_id>/lepas-kunci")
@login_required
@require_role(Role.VERIFIER.value, Role.CORRECTOR.value)
def unlock(tagihan_id: int):
    return jsonify({"released": release_lock(tagihan_id, g.auth)})


@workflow_bp.post("/<int:tagihan_id>/verifikasi")
@login_required
@require_role(Role.VERIFIER.value)
def verification(tagihan_id: int):
    payload = _payload()
    tagihan = verify(tagihan_id, payload.get("checklist"), g.auth, hold_days=payload.get("hold_days"))
    return jsonify(serialize_tagihan(tagihan, detail=True))


@workflow_bp.post("/<int:tagihan_id>/koreksi")
@login_required
@require_role(Role.CORRECTOR.value)
def correction(tagihan_id: int):
    note = str(_payload().get("note") or "")
    return jsonify(serialize_tagihan(correct(tagihan_id, g.auth, note), detail=True))


@workflow_bp.post("/<int:tagihan_id>/sp2d")
@login_required
@require_role(Role.SP2D.value)
def disbursement(tagihan_id: int):
    tagihan = register_disbursement(tagihan_id, _payload(), g.auth)
    return jsonify(serialize_tagihan(tagihan, detail=True))


def status_labels() -> dict[str, str]:
    return {status.value: translate(f"status.{status.value}") for status in TagihanStatus}


@workflow_bp.get("/status")
def statuses():
    return jsonify(status_labels())
