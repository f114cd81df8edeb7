"""
Test suite for audit module

Tests the hash-chained audit trail, metadata serialization and tamper
detection.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

from funds_ledger.audit import AuditEvent, AuditEventType, AuditTrail
from funds_ledger.loans import LoanStatus
from funds_ledger.storage import InMemoryStorage


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Decimals, dates and enums become JSON-friendly values"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.LOAN_PAYMENT_MADE,
            entity_type="loan",
            entity_id="LOAN001",
            sequence=1,
            previous_hash="",
            current_hash="",
            metadata={
                "amount": Decimal("860.66"),
                "due_date": date(2026, 2, 15),
                "posted_at": now,
                "status": LoanStatus.ACTIVE,
                "nested": {"fee": Decimal("25.00")}
            }
        )

        assert event.metadata["amount"] == "860.66"
        assert event.metadata["due_date"] == "2026-02-15"
        assert event.metadata["posted_at"] == now.isoformat()
        assert event.metadata["status"] == "active"
        assert event.metadata["nested"]["fee"] == "25.00"

    def test_hash_is_deterministic(self):
        now = datetime.now(timezone.utc)
        kwargs = dict(
            id="AUDIT001", created_at=now, updated_at=now,
            event_type=AuditEventType.ACCOUNT_OPENED, entity_type="account", entity_id="ACC001",
            sequence=1, previous_hash="", current_hash="", metadata={"balance": "10.00"}
        )
        first = AuditEvent(**kwargs)
        second = AuditEvent(**kwargs)
        assert first.calculate_hash() == second.calculate_hash()
        assert len(first.calculate_hash()) == 64


class TestAuditTrail:
    """Test the hash chain"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_events_are_chained(self):
        first = self.audit.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1", {"balance": "0.00"})
        second = self.audit.log_event(
            AuditEventType.INTERNAL_TRANSFER_COMPLETED, "transfer", "T1",
            {"amount": Decimal("100.00")}, user_id="alice"
        )

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert second.user_id == "alice"

    def test_queries(self):
        self.audit.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A1")
        self.audit.log_event(AuditEventType.TRANSFER_FAILED, "account", "A1", {"reason": "insufficient_funds"})
        self.audit.log_event(AuditEventType.ACCOUNT_OPENED, "account", "A2")

        for_a1 = self.audit.get_events_for_entity("account", "A1")
        assert [e.event_type for e in for_a1] == [AuditEventType.ACCOUNT_OPENED, AuditEventType.TRANSFER_FAILED]
        assert len(self.audit.get_events_by_type(AuditEventType.ACCOUNT_OPENED)) == 2
        assert len(self.audit.get_all_events()) == 3

    def test_verify_integrity_on_clean_chain(self):
        for i in range(5):
            self.audit.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "L1", {"n": i})

        result = self.audit.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 5
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_tampered_metadata_is_detected(self):
        self.audit.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "L1", {"amount": "100.00"})
        event = self.audit.log_event(AuditEventType.LOAN_PAYMENT_MADE, "loan", "L1", {"amount": "200.00"})

        stored = self.storage.load("audit_events", event.id)
        stored["metadata"]["amount"] = "2.00"
        self.storage.save("audit_events", event.id, stored)

        result = self.audit.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'][0]['event_id'] == event.id

    def test_deleted_event_breaks_chain(self):
        events = [
            self.audit.log_event(AuditEventType.ACCOUNT_OPENED, "account", f"A{i}")
            for i in range(3)
        ]
        self.storage.delete("audit_events", events[1].id)

        result = self.audit.verify_integrity()
        assert not result['valid']
        assert result['chain_breaks'][0]['event_id'] == events[2].id
