from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from app.models import SessionRecord
from app.services.session_store import (
    ORDER_FLOW_KIND,
    SessionStoreError,
    clear_session,
    compare_and_set_step,
    ephemeral_session,
    find_live_session,
    get_or_create_session,
    run_with_retry,
    sweep_expired_sessions,
    update_step,
)
from app.services.state_machine import OrderStep

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class TestGetOrCreateSession:
    def test_creates_idle_record_with_ttl(self, db):
        record = get_or_create_session(db, "T1", "C1", now=T0)

        assert record.id is not None
        assert record.current_step == "idle"
        assert record.data == {}
        assert record.kind == ORDER_FLOW_KIND
        assert record.expires_at == T0 + timedelta(minutes=120)

    def test_returns_same_live_record(self, db):
        first = get_or_create_session(db, "T1", "C1", now=T0)
        second = get_or_create_session(db, "T1", "C1", now=T0 + timedelta(minutes=30))

        assert first.id == second.id
        assert db.query(SessionRecord).count() == 1

    def test_concurrent_sessions_converge_on_one_record(self, session_factory):
        db_a = session_factory()
        db_b = session_factory()
        try:
            record_a = get_or_create_session(db_a, "T1", "C1", now=T0)
            record_b = get_or_create_session(db_b, "T1", "C1", now=T0)
            assert record_a.id == record_b.id
            assert db_a.query(SessionRecord).count() == 1
        finally:
            db_a.close()
            db_b.close()

    def test_expired_record_is_reset(self, db):
        record = get_or_create_session(db, "T1", "C1", now=T0)
        update_step(db, record, "invoice_review", {"product_id": "SKU-001", "quantity": 3}, now=T0)

        fresh = get_or_create_session(db, "T1", "C1", now=T0 + timedelta(hours=3))

        assert fresh.current_step == "idle"
        assert fresh.data == {}
        assert fresh.expires_at == T0 + timedelta(hours=3, minutes=120)
        assert db.query(SessionRecord).count() == 1

    def test_scoped_by_tenant_and_kind(self, db):
        a = get_or_create_session(db, "T1", "C1", now=T0)
        b = get_or_create_session(db, "T2", "C1", now=T0)
        c = get_or_create_session(db, "T1", "C1", "survey", now=T0)

        assert len({a.id, b.id, c.id}) == 3

    def test_custom_ttl(self, db):
        record = get_or_create_session(db, "T1", "C1", ttl_minutes=15, now=T0)
        assert record.expires_at == T0 + timedelta(minutes=15)


class TestUpdateStep:
    def test_merges_data_and_refreshes_expiry(self, db):
        record = get_or_create_session(db, "T1", "C1", now=T0)
        update_step(db, record, "quantity_selection", {"product_id": "SKU-001", "note": "a"}, now=T0)

        later = T0 + timedelta(minutes=90)
        updated = update_step(db, record, "invoice_review", {"quantity": 3, "note": "b"}, now=later)

        assert updated.current_step == "invoice_review"
        assert updated.data == {"product_id": "SKU-001", "note": "b", "quantity": 3}
        assert updated.expires_at == later + timedelta(minutes=120)

    def test_accepts_enum_steps(self, db):
        record = get_or_create_session(db, "T1", "C1", now=T0)
        updated = update_step(db, record, OrderStep.QUANTITY_SELECTION, now=T0)
        assert updated.current_step == "quantity_selection"

    def test_ephemeral_record_cannot_be_persisted(self):
        record = ephemeral_session("T1", "C1", now=T0)

        with pytest.raises(SessionStoreError):
            update_step(Mock(), record, "quantity_selection", {"product_id": "SKU-001"})


class TestCompareAndSetStep:
    def test_swaps_when_step_matches(self, db):
        record = get_or_create_session(db, "T1", "C1", now=T0)
        update_step(db, record, "payment_selection", {"quantity": 2}, now=T0)

        swapped = compare_and_set_step(db, record, "payment_selection", "completed", {"payment_method": "cod"}, now=T0)

        assert swapped is not None
        assert swapped.current_step == "completed"
        assert swapped.data == {"quantity": 2, "payment_method": "cod"}

    def test_second_swap_loses(self, session_factory):
        db_a = session_factory()
        db_b = session_factory()
        try:
            record_a = get_or_create_session(db_a, "T1", "C1", now=T0)
            update_step(db_a, record_a, "payment_selection", now=T0)
            record_b = get_or_create_session(db_b, "T1", "C1", now=T0)

            first = compare_and_set_step(db_a, record_a, "payment_selection", "completed", now=T0)
            second = compare_and_set_step(db_b, record_b, "payment_selection", "completed", now=T0)

            assert first is not None
            assert second is None
        finally:
            db_a.close()
            db_b.close()


class TestClearSession:
    def test_resets_to_idle_and_keeps_record(self, db):
        record = get_or_create_session(db, "T1", "C1", now=T0)
        update_step(db, record, "invoice_review", {"quantity": 4}, now=T0)

        cleared = clear_session(db, record, now=T0 + timedelta(minutes=5))

        assert cleared.id == record.id
        assert cleared.current_step == "idle"
        assert cleared.data == {}
        assert cleared.expires_at == T0 + timedelta(minutes=125)
        assert find_live_session(db, "T1", "C1", now=T0 + timedelta(minutes=5)) is not None

    def test_clears_ephemeral_in_memory(self):
        record = ephemeral_session("T1", "C1", now=T0)
        record.current_step = "quantity_selection"
        record.data = {"product_id": "SKU-001"}

        cleared = clear_session(Mock(), record)

        assert cleared.current_step == "idle"
        assert cleared.data == {}


class TestSweepExpiredSessions:
    def test_purges_only_expired(self, db):
        get_or_create_session(db, "T1", "old", now=T0)
        get_or_create_session(db, "T1", "new", now=T0 + timedelta(hours=2))

        removed = sweep_expired_sessions(db, now=T0 + timedelta(hours=2, minutes=1))

        assert removed == 1
        remaining = [r.contact_id for r in db.query(SessionRecord).all()]
        assert remaining == ["new"]


class TestRunWithRetry:
    def _transient(self):
        return OperationalError("UPDATE session_records", {}, Exception("server closed the connection"))

    def test_retries_transient_errors(self, db_session):
        operation = Mock(side_effect=[self._transient(), self._transient(), "ok"])
        sleep = Mock()

        result = run_with_retry(db_session, operation, description="test", attempts=3, backoff_seconds=0.5, sleep=sleep)

        assert result == "ok"
        assert operation.call_count == 3
        assert db_session.rollback.call_count == 2
        assert db_session.commit.call_count == 1
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_gives_up_after_attempts(self, db_session):
        operation = Mock(side_effect=self._transient())

        with pytest.raises(SessionStoreError):
            run_with_retry(db_session, operation, description="test", attempts=2, sleep=Mock())

        assert operation.call_count == 2

    def test_does_not_retry_permanent_errors(self, db_session):
        operation = Mock(side_effect=IntegrityError("INSERT", {}, Exception("constraint")))

        with pytest.raises(SessionStoreError):
            run_with_retry(db_session, operation, description="test", attempts=3, sleep=Mock())

        assert operation.call_count == 1
        db_session.rollback.assert_called_once()
