"""Workflow state machine: transition tables for every status-bearing entity.

Services never hand-roll "only from pending" guards. They ask this module
which source states may reach a target, and use that set as the WHERE clause
of a conditional UPDATE so that concurrent writers cannot both win.
"""

from enum import Enum

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from rental_platform.domain.enums import (
    ConfirmationStatus,
    PaymentStatus,
    RentalRequestStatus,
    TenancyStatus,
    WithdrawalStatus,
)
from rental_platform.domain.errors import InvalidTransitionError, NotFoundError

# ---------------------------------------------------------------------------
# Transition maps: from_status -> set of allowed to_status
# ---------------------------------------------------------------------------

R = RentalRequestStatus
C = ConfirmationStatus
P = PaymentStatus
W = WithdrawalStatus
T = TenancyStatus

RENTAL_REQUEST_TRANSITIONS: dict[RentalRequestStatus, set[RentalRequestStatus]] = {
    R.PENDING: {R.ACCEPTED, R.REJECTED, R.WITHDRAWN},
    # Tenant rejected the offered terms; landlord may re-offer
    R.ACCEPTED: {R.PENDING},
}

CONFIRMATION_TRANSITIONS: dict[ConfirmationStatus, set[ConfirmationStatus]] = {
    C.PENDING: {C.CONFIRMED, C.REJECTED, C.EXPIRED},
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    P.PENDING: {P.PROCESSING, P.COMPLETED, P.FAILED, P.CANCELLED},
    P.PROCESSING: {P.COMPLETED, P.FAILED, P.CANCELLED},
    P.COMPLETED: {P.REFUNDED},
}

WITHDRAWAL_TRANSITIONS: dict[WithdrawalStatus, set[WithdrawalStatus]] = {
    W.PENDING: {W.APPROVED, W.REJECTED, W.CANCELLED},
    # APPROVED -> PENDING is the compensating step when payout initiation fails
    W.APPROVED: {W.PROCESSING, W.PENDING},
    W.PROCESSING: {W.COMPLETED, W.FAILED},
}

TENANCY_TRANSITIONS: dict[TenancyStatus, set[TenancyStatus]] = {
    T.ACTIVE: {T.ENDED, T.TERMINATED},
}

_TABLES: dict[str, dict] = {
    "rental_request": RENTAL_REQUEST_TRANSITIONS,
    "agreement_confirmation": CONFIRMATION_TRANSITIONS,
    "payment": PAYMENT_TRANSITIONS,
    "withdrawal_request": WITHDRAWAL_TRANSITIONS,
    "tenancy_agreement": TENANCY_TRANSITIONS,
}

TERMINAL_STATES: dict[str, set[Enum]] = {
    "rental_request": {R.REJECTED, R.WITHDRAWN},
    "agreement_confirmation": {C.CONFIRMED, C.REJECTED, C.EXPIRED},
    "payment": {P.FAILED, P.CANCELLED, P.REFUNDED},
    "withdrawal_request": {W.REJECTED, W.COMPLETED, W.FAILED, W.CANCELLED},
    "tenancy_agreement": {T.ENDED, T.TERMINATED},
}

# Withdrawal states that block a second request for the same confirmation
OPEN_WITHDRAWAL_STATES: set[WithdrawalStatus] = {W.PENDING, W.APPROVED, W.PROCESSING}


def _table(entity: str) -> dict:
    try:
        return _TABLES[entity]
    except KeyError:
        raise ValueError(f"Unknown workflow entity: {entity}") from None


def _value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def can_transition(entity: str, current_status, target_status) -> bool:
    """Return True if ``current_status -> target_status`` is a table edge."""
    table = _table(entity)
    for source, targets in table.items():
        if source.value == _value(current_status):
            return any(t.value == _value(target_status) for t in targets)
    return False


def validate_transition(entity: str, current_status, target_status) -> None:
    """Raise InvalidTransitionError unless the edge exists."""
    if not can_transition(entity, current_status, target_status):
        raise InvalidTransitionError(entity, _value(current_status), _value(target_status))


def sources_for(entity: str, target_status) -> list[str]:
    """Status values from which ``target_status`` is reachable in one step.

    Used as ``Model.status.in_(...)`` in conditional updates.
    """
    target = _value(target_status)
    return [
        source.value
        for source, targets in _table(entity).items()
        if any(t.value == target for t in targets)
    ]


def is_terminal(entity: str, status) -> bool:
    return any(s.value == _value(status) for s in TERMINAL_STATES[entity])


# ---------------------------------------------------------------------------
# Conditional updates
# ---------------------------------------------------------------------------


async def apply_transition(
    db: AsyncSession,
    model,
    entity: str,
    entity_id: str,
    target_status,
    *conditions,
    **values,
) -> bool:
    """``UPDATE model SET status=target WHERE id=? AND status IN sources``.

    Extra ``conditions`` are ANDed into the WHERE clause. Returns True only
    for the caller whose statement actually changed the row. Does not commit.
    """
    stmt = (
        update(model)
        .where(
            model.id == entity_id,
            model.status.in_(sources_for(entity, target_status)),
            *conditions,
        )
        .values(status=_value(target_status), **values)
        .execution_options(synchronize_session="fetch")
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def require_transition(
    db: AsyncSession,
    model,
    entity: str,
    entity_id: str,
    target_status,
    *conditions,
    **values,
) -> None:
    """Like apply_transition, but raises when the row was not changed.

    NotFoundError if the row does not exist, otherwise InvalidTransitionError
    naming the status it was found in.
    """
    if await apply_transition(db, model, entity, entity_id, target_status, *conditions, **values):
        return
    current = await db.get(model, entity_id, populate_existing=True)
    if current is None:
        raise NotFoundError(f"{entity} {entity_id} not found")
    raise InvalidTransitionError(entity, current.status, _value(target_status))
