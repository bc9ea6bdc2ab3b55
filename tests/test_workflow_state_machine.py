"""Unit tests for the workflow transition tables."""

import pytest

from rental_platform.domain.enums import (
    ConfirmationStatus,
    PaymentStatus,
    RentalRequestStatus,
    TenancyStatus,
    WithdrawalStatus,
)
from rental_platform.domain.errors import InvalidStateError, InvalidTransitionError
from rental_platform.services.workflow_state_machine import (
    CONFIRMATION_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    RENTAL_REQUEST_TRANSITIONS,
    TENANCY_TRANSITIONS,
    WITHDRAWAL_TRANSITIONS,
    can_transition,
    is_terminal,
    sources_for,
    validate_transition,
)

R = RentalRequestStatus
C = ConfirmationStatus
P = PaymentStatus
W = WithdrawalStatus

TABLES = [
    ("rental_request", RENTAL_REQUEST_TRANSITIONS),
    ("agreement_confirmation", CONFIRMATION_TRANSITIONS),
    ("payment", PAYMENT_TRANSITIONS),
    ("withdrawal_request", WITHDRAWAL_TRANSITIONS),
    ("tenancy_agreement", TENANCY_TRANSITIONS),
]


class TestValidTransitions:
    """Every edge in every table is allowed, by enum or by raw string."""

    @pytest.mark.parametrize(
        "entity,from_status,to_status",
        [
            (entity, from_s, to_s)
            for entity, table in TABLES
            for from_s, targets in table.items()
            for to_s in targets
        ],
    )
    def test_all_table_edges(self, entity, from_status, to_status):
        assert can_transition(entity, from_status, to_status)
        assert can_transition(entity, from_status.value, to_status.value)
        validate_transition(entity, from_status, to_status)


class TestInvalidTransitions:

    @pytest.mark.parametrize("entity,from_status,to_status", [
        ("rental_request", R.REJECTED, R.ACCEPTED),
        ("rental_request", R.WITHDRAWN, R.PENDING),
        ("agreement_confirmation", C.EXPIRED, C.CONFIRMED),
        ("agreement_confirmation", C.CONFIRMED, C.REJECTED),
        ("payment", P.FAILED, P.COMPLETED),
        ("payment", P.COMPLETED, P.FAILED),
        ("withdrawal_request", W.PENDING, W.COMPLETED),
        ("withdrawal_request", W.COMPLETED, W.PROCESSING),
        ("tenancy_agreement", TenancyStatus.ENDED, TenancyStatus.ACTIVE),
    ])
    def test_rejected(self, entity, from_status, to_status):
        assert not can_transition(entity, from_status, to_status)
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition(entity, from_status, to_status)
        assert exc_info.value.kind == "invalid_state"
        assert isinstance(exc_info.value, InvalidStateError)

    def test_unknown_entity(self):
        with pytest.raises(ValueError):
            can_transition("invoice", "pending", "paid")

    def test_unknown_status_is_not_an_edge(self):
        assert not can_transition("payment", "bogus", "completed")


class TestSourcesFor:

    def test_completed_payment_sources(self):
        assert set(sources_for("payment", P.COMPLETED)) == {"pending", "processing"}

    def test_request_back_to_pending_only_from_accepted(self):
        assert sources_for("rental_request", R.PENDING) == ["accepted"]

    def test_withdrawal_compensation_edge(self):
        assert sources_for("withdrawal_request", W.PENDING) == ["approved"]

    def test_unreachable_target(self):
        assert sources_for("agreement_confirmation", C.PENDING) == []


class TestTerminalStates:

    @pytest.mark.parametrize("entity,status", [
        ("rental_request", R.REJECTED),
        ("agreement_confirmation", C.EXPIRED),
        ("payment", "failed"),
        ("withdrawal_request", W.COMPLETED),
        ("tenancy_agreement", TenancyStatus.TERMINATED),
    ])
    def test_terminal(self, entity, status):
        assert is_terminal(entity, status)

    @pytest.mark.parametrize("entity,status", [
        ("rental_request", R.ACCEPTED),
        ("payment", P.COMPLETED),
        ("withdrawal_request", W.PROCESSING),
    ])
    def test_not_terminal(self, entity, status):
        assert not is_terminal(entity, status)

    def test_terminal_states_have_no_outgoing_edges(self):
        for entity, table in TABLES:
            for source in table:
                assert not is_terminal(entity, source), (entity, source)
