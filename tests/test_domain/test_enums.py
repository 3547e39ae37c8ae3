"""Tests for domain enumerations."""

from __future__ import annotations

from rent_settlement.domain.enums import (
    AgreementStatus,
    DisplayStatus,
    EventType,
    PaymentDirection,
    PaymentStatus,
)


class TestAgreementStatus:
    def test_all_statuses_exist(self) -> None:
        expected = {"uninitialized", "active", "settled", "disputed"}
        assert {s.value for s in AgreementStatus} == expected

    def test_status_is_str_enum(self) -> None:
        assert isinstance(AgreementStatus.ACTIVE, str)
        assert AgreementStatus.ACTIVE == "active"


class TestPaymentStatus:
    def test_terminal_states(self) -> None:
        assert {s for s in PaymentStatus if s.is_terminal} == {
            PaymentStatus.CONFIRMED,
            PaymentStatus.FAILED,
        }

    def test_display_status_covers_every_payment_status(self) -> None:
        for status in PaymentStatus:
            assert DisplayStatus(status.value) == status.value
        assert DisplayStatus.NEEDS_REVIEW == "needs_review"


class TestEventType:
    def test_all_event_types_exist(self) -> None:
        # 9 payment/reconciliation + 6 agreement lifecycle
        assert len(EventType) == 15

    def test_event_type_is_str_enum(self) -> None:
        assert isinstance(EventType.PAYMENT_CONFIRMED, str)


class TestPaymentDirection:
    def test_closed_set(self) -> None:
        assert {d.value for d in PaymentDirection} == {"deposit", "withdrawal"}
