"""
Test suite for audit trail module

Tests hash chaining, tamper detection and querying of ledger audit events.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_ledger.storage import InMemoryStorage
from loan_ledger.audit import AuditTrail, AuditEvent, AuditEventType


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


def log_payment(trail, loan_id="loan-1", amount="100.00", tenant_id="tenant-a"):
    return trail.log_event(
        event_type=AuditEventType.PAYMENT_RECORDED,
        entity_type="loan",
        entity_id=loan_id,
        metadata={"amount": Decimal(amount), "payment_date": date(2024, 1, 20)},
        tenant_id=tenant_id,
        user_id="officer-1",
        correlation_id="req-1"
    )


class TestAuditEvent:
    """Test individual audit events"""

    def test_first_event_starts_chain(self, audit_trail):
        event = log_payment(audit_trail)
        assert event.sequence == 1
        assert event.previous_hash == ""
        assert len(event.current_hash) == 64
        assert event.verify_hash()

    def test_metadata_serialized(self, audit_trail):
        event = log_payment(audit_trail)
        assert event.metadata == {"amount": "100.00", "payment_date": "2024-01-20"}

    def test_events_are_chained(self, audit_trail):
        first = log_payment(audit_trail)
        second = log_payment(audit_trail, amount="50.00")
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash

    def test_round_trip_preserves_hash(self, audit_trail, storage):
        event = log_payment(audit_trail)
        loaded = AuditEvent.from_dict(storage.load("audit_events", event.id))
        assert loaded.event_type == AuditEventType.PAYMENT_RECORDED
        assert loaded.tenant_id == "tenant-a"
        assert loaded.verify_hash()


class TestAuditTrail:
    """Test audit trail queries and integrity checks"""

    def test_intact_chain_verifies(self, audit_trail):
        for amount in ("10.00", "20.00", "30.00"):
            log_payment(audit_trail, amount=amount)

        result = audit_trail.verify_integrity()
        assert result['valid'] is True
        assert result['total_events'] == 3
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_tampered_metadata_detected(self, audit_trail, storage):
        log_payment(audit_trail)
        event = log_payment(audit_trail, amount="50.00")

        data = storage.load("audit_events", event.id)
        data['metadata']['amount'] = "5000.00"
        storage.save("audit_events", event.id, data)

        result = audit_trail.verify_integrity()
        assert result['valid'] is False
        assert [e['event_id'] for e in result['hash_errors']] == [event.id]

    def test_deleted_event_breaks_chain(self, audit_trail, storage):
        first = log_payment(audit_trail)
        log_payment(audit_trail)
        log_payment(audit_trail)
        storage.delete("audit_events", first.id)

        result = audit_trail.verify_integrity()
        assert result['valid'] is False
        assert len(result['chain_breaks']) == 1

    def test_rolled_back_event_is_not_chained_to(self, audit_trail, storage):
        first = log_payment(audit_trail)
        with pytest.raises(RuntimeError):
            with storage.atomic():
                log_payment(audit_trail)
                raise RuntimeError("abort")

        second = log_payment(audit_trail)
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert audit_trail.verify_integrity()['valid'] is True

    def test_events_for_entity(self, audit_trail):
        log_payment(audit_trail, loan_id="loan-1")
        log_payment(audit_trail, loan_id="loan-2")
        log_payment(audit_trail, loan_id="loan-1")

        events = audit_trail.get_events_for_entity("loan", "loan-1")
        assert len(events) == 2
        assert [e.sequence for e in events] == [1, 3]
        assert len(audit_trail.get_events_for_entity("loan", "loan-1", limit=1)) == 1

    def test_events_by_type_and_tenant(self, audit_trail):
        log_payment(audit_trail, tenant_id="tenant-a")
        log_payment(audit_trail, tenant_id="tenant-b")
        audit_trail.log_event(AuditEventType.LOAN_CLOSED, "loan", "loan-1", tenant_id="tenant-a")

        assert len(audit_trail.get_events_by_type(AuditEventType.PAYMENT_RECORDED)) == 2
        assert len(audit_trail.get_events_by_type(AuditEventType.PAYMENT_RECORDED, tenant_id="tenant-b")) == 1

    def test_get_event_by_id_and_count(self, audit_trail):
        event = log_payment(audit_trail)
        assert audit_trail.get_event_by_id(event.id).id == event.id
        assert audit_trail.get_event_by_id("missing") is None
        assert audit_trail.count_events() == 1
        assert len(audit_trail.get_all_events()) == 1
