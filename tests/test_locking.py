from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tagihan.core.errors import AlreadyLockedError, PermissionDeniedError, StaleStateError
from tagihan.core.extensions import db
from tagihan.core.models import Tagihan
from tagihan.core.utils import as_utc
from tagihan.workflow.locking import acquire_lock, lock_available_for, release_lock
from tagihan.workflow.queues import list_queue
from tagihan.workflow.services import register

T0 = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def awaiting_verification(app, actors, make_tagihan):
    tagihan = make_tagihan()
    register(tagihan.id, actors("registrar"), now=T0)
    return tagihan.id


def test_lock_contention_and_stale_takeover(app, actors, awaiting_verification):
    with app.app_context():
        v1, v2 = actors("verifier"), actors("verifier2")

        locked = acquire_lock(awaiting_verification, v1, now=T0)
        assert locked.locked_by == v1.id
        assert as_utc(locked.locked_at) == T0

        with pytest.raises(AlreadyLockedError) as excinfo:
            acquire_lock(awaiting_verification, v2, now=T0 + timedelta(minutes=5))
        assert excinfo.value.context["locked_by"] == v1.id
        assert excinfo.value.http_status == 423

        # Exactly thirty minutes old is still held.
        with pytest.raises(AlreadyLockedError):
            acquire_lock(awaiting_verification, v2, now=T0 + timedelta(minutes=30))

        taken = acquire_lock(awaiting_verification, v2, now=T0 + timedelta(minutes=31))
        assert taken.locked_by == v2.id
        assert as_utc(taken.locked_at) == T0 + timedelta(minutes=31)


def test_holder_can_refresh_own_lock(app, actors, awaiting_verification):
    with app.app_context():
        v1 = actors("verifier")
        acquire_lock(awaiting_verification, v1, now=T0)
        refreshed = acquire_lock(awaiting_verification, v1, now=T0 + timedelta(minutes=10))

        assert as_utc(refreshed.locked_at) == T0 + timedelta(minutes=10)


def test_lock_timeout_follows_config(app, actors, awaiting_verification):
    app.config["LOCK_TIMEOUT_MINUTES"] = 5
    with app.app_context():
        acquire_lock(awaiting_verification, actors("verifier"), now=T0)
        taken = acquire_lock(awaiting_verification, actors("corrector"), now=T0 + timedelta(minutes=6))

        assert taken.locked_by == actors("corrector").id


def test_lock_requires_reviewer_role_and_awaiting_verification(app, actors, make_tagihan):
    with app.app_context():
        tagihan = make_tagihan()
        with pytest.raises(PermissionDeniedError):
            acquire_lock(tagihan.id, actors("skpd"), now=T0)
        with pytest.raises(StaleStateError):
            acquire_lock(tagihan.id, actors("verifier"), now=T0)


def test_release_only_by_holder(app, actors, awaiting_verification):
    with app.app_context():
        v1, v2 = actors("verifier"), actors("verifier2")
        acquire_lock(awaiting_verification, v1, now=T0)

        assert release_lock(awaiting_verification, v2) is False
        assert db.session.get(Tagihan, awaiting_verification).locked_by == v1.id

        assert release_lock(awaiting_verification, v1) is True
        tagihan = db.session.get(Tagihan, awaiting_verification)
        assert tagihan.locked_by is None
        assert tagihan.locked_at is None


def test_locked_document_leaves_other_reviewers_queue_until_stale(app, actors, awaiting_verification):
    with app.app_context():
        v1, v2 = actors("verifier"), actors("verifier2")
        acquire_lock(awaiting_verification, v1, now=T0)

        soon = T0 + timedelta(minutes=5)
        later = T0 + timedelta(minutes=31)
        assert [t.id for t in list_queue("verifikasi", v1, now=soon)] == [awaiting_verification]
        assert list_queue("verifikasi", v2, now=soon) == []
        assert list_queue("koreksi", actors("corrector"), now=soon) == []
        assert [t.id for t in list_queue("verifikasi", v2, now=later)] == [awaiting_verification]

        tagihan = db.session.get(Tagihan, awaiting_verification)
        assert lock_available_for(tagihan, v2.id, soon) is False
        assert lock_available_for(tagihan, v2.id, later) is True
