from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request, session
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash

from tagihan.core.i18n import SUPPORTED_LANGS
from tagihan.core.models import User

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _form_value(name: str, default: str = "") -> str:
    payload = request.get_json(silent=True) or {}
    value = payload.get(name) if payload else request.form.get(name)
    return str(value if value is not None else default)


@auth_bp.post("/login")
def login_post():
    email = _form_value("email").strip().lower()
    password = _form_value("password")
    user = User.query.filter_by(email=email).first()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        logger.warning("Failed login for %s", email or "<empty>")
        return jsonify({"error": "InvalidCredentials", "message": "Email atau kata sandi salah"}), 401
    login_user(user)
    return jsonify({"id": user.id, "full_name": user.full_name, "role": user.role, "unit_name": user.unit_name})


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(
        {
            "id": current_user.id,
            "full_name": current_user.full_name,
            "role": current_user.role,
            "unit_name": current_user.unit_name,
        }
    )


@auth_bp.post("/logout")
@login_required
def logout():
    logout_user()
    return jsonify({"ok": True})


@auth_bp.post("/lang")
def set_lang():
    lang = _form_value("lang", "id")
    if lang not in SUPPORTED_LANGS:
        lang = "id"
    session["lang"] = lang
    return jsonify({"lang": lang})
