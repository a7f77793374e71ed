from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tagihan import create_app
from tagihan.core.config import Config
from tagihan.core.context import AuthContext
from tagihan.core.extensions import db
from tagihan.core.models import User, seed_demo_data
from tagihan.workflow.services import submit_tagihan

T0 = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

ACTOR_EMAILS = {
    "skpd": "skpd@tagihan.local",
    "registrar": "registrasi@tagihan.local",
    "verifier": "verifikator@tagihan.local",
    "verifier2": "verifikator2@tagihan.local",
    "corrector": "koreksi@tagihan.local",
    "sp2d": "sp2d@tagihan.local",
    "admin": "admin@tagihan.local",
}

PASSWORDS = {
    "skpd": "skpd123",
    "registrar": "registrasi123",
    "verifier": "verifikator123",
    "verifier2": "verifikator123",
    "corrector": "koreksi123",
    "sp2d": "sp2d123",
    "admin": "admin123",
}


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret"
    LOCK_TIMEOUT_MINUTES = 30
    LOG_LEVEL = "WARNING"


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        seed_demo_data(db.session)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login_as(client):
    def _login(key: str):
        return client.post(
            "/auth/login",
            json={"email": ACTOR_EMAILS[key], "password": PASSWORDS[key]},
        )

    return _login


@pytest.fixture
def actors(app):
    def _actor(key: str) -> AuthContext:
        user = User.query.filter_by(email=ACTOR_EMAILS[key]).first()
        return AuthContext.from_user(user)

    return _actor


def tagihan_payload(**overrides) -> dict[str, str]:
    payload = {
        "description": "Belanja alat tulis kantor",
        "gross_amount": "1500000",
        "document_type": "Langsung (LS)",
        "claim_type": "LS Barang dan Jasa",
        "funding_source": "DAU",
        "schedule_code": "M",
        "document_date": "2025-01-15",
        "sequence_number": "12",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_tagihan(actors):
    def _make(now: datetime = T0, actor_key: str = "skpd", **overrides):
        return submit_tagihan(tagihan_payload(**overrides), actors(actor_key), now=now)

    return _make


@pytest.fixture
def payload():
    return tagihan_payload
