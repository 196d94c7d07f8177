from datetime import timedelta
from decimal import Decimal

import pytest

from payportal.storage.errors import ConstraintViolation, DuplicateRecord, MissingReference
from payportal.storage.memory import MemoryStore
from payportal.storage.models import PaymentStatus, Role


@pytest.fixture
def store():
    s = MemoryStore()
    s.create_user("alice", account_number="12345678")
    return s


def _payment(store, owner="alice", amount="10.00"):
    return store.create_payment(
        owner,
        amount=Decimal(amount),
        currency="ZAR",
        provider="SWIFT",
        recipient_account="987654321",
        swift_code="ABSAZAJJ",
    )


class TestUsers:
    def test_names_are_unique_case_insensitive(self, store):
        with pytest.raises(DuplicateRecord) as exc_info:
            store.create_user("Alice", account_number="99999999")
        assert exc_info.value.detail == {"field": "name"}

    def test_account_numbers_are_unique(self, store):
        with pytest.raises(DuplicateRecord) as exc_info:
            store.create_user("bob", account_number="12345678")
        assert exc_info.value.detail == {"field": "account_number"}
        assert "12345678" not in str(exc_info.value)

    def test_returned_user_is_a_copy(self, store):
        user = store.get_user_by_name("alice")
        user.role = Role.EMPLOYEE
        assert store.get_user_by_name("alice").role == Role.CUSTOMER


class TestPayments:
    def test_owner_must_exist(self, store):
        with pytest.raises(MissingReference) as exc_info:
            _payment(store, owner="ghost")
        assert isinstance(exc_info.value, ConstraintViolation)
        assert exc_info.value.detail == {"field": "owner"}
        assert "ghost" not in str(exc_info.value.detail)

    def test_list_is_newest_first_and_filtered(self, store):
        store.create_user("bob", account_number="87654321")
        first = _payment(store)
        second = _payment(store)
        store.payments[first.id].created_at -= timedelta(minutes=1)
        _payment(store, owner="bob")

        listed = store.list_payments(owner="alice")

        assert [p.id for p in listed] == [second.id, first.id]

    def test_status_changes_only_once(self, store):
        payment = _payment(store)

        updated = store.set_payment_status(payment.id, PaymentStatus.APPROVED, processed_by="reviewer")
        assert updated.status == PaymentStatus.APPROVED
        assert updated.processed_at is not None

        assert store.set_payment_status(payment.id, PaymentStatus.REJECTED, processed_by="reviewer") is None
        assert store.list_payments(status=PaymentStatus.PENDING) == []

