"""Rental request lifecycle against a real (in-memory) database."""

from datetime import date, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from rental_platform.domain.enums import ConfirmationStatus, RentalRequestStatus
from rental_platform.domain.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from rental_platform.domain.models import AgreementConfirmation, RentalRequest, User
from rental_platform.services.rental_request_service import RentalRequestService

NEXT_WEEK = date.today() + timedelta(days=7)


class TestCreate:

    async def test_creates_pending_request_for_room_owner(self, db_session, make_user, make_room):
        landlord = await make_user(role="landlord")
        tenant = await make_user()
        room = await make_room(landlord=landlord)

        request = await RentalRequestService(db_session).create(
            tenant_id=tenant.id,
            room_id=room.id,
            proposed_start_date=NEXT_WEEK,
            guest_count=2,
            message="Quiet student, non-smoker",
        )

        assert request.status == RentalRequestStatus.PENDING.value
        assert request.landlord_id == landlord.id
        assert request.accommodation_id == room.accommodation_id

    async def test_unknown_room(self, db_session, make_user):
        tenant = await make_user()
        with pytest.raises(NotFoundError):
            await RentalRequestService(db_session).create(tenant.id, "missing", NEXT_WEEK)

    async def test_unavailable_room(self, db_session, make_user, make_room):
        tenant = await make_user()
        room = await make_room(is_available=False)
        with pytest.raises(ConflictError):
            await RentalRequestService(db_session).create(tenant.id, room.id, NEXT_WEEK)

    @pytest.mark.parametrize("kwargs", [
        {"guest_count": 0},
        {"guest_count": 3},
        {"proposed_start_date": date.today() - timedelta(days=1)},
        {"proposed_end_date": NEXT_WEEK},
        {"proposed_rent": -1},
        {"message": "x" * 1001},
    ])
    async def test_validation(self, db_session, make_user, make_room, kwargs):
        tenant = await make_user()
        room = await make_room(capacity=2)
        args = {"proposed_start_date": NEXT_WEEK, **kwargs}
        with pytest.raises(ValidationError):
            await RentalRequestService(db_session).create(tenant.id, room.id, **args)

    async def test_landlord_cannot_request_own_room(self, db_session, make_user, make_room):
        landlord = await make_user(role="landlord")
        room = await make_room(landlord=landlord)
        with pytest.raises(ValidationError):
            await RentalRequestService(db_session).create(landlord.id, room.id, NEXT_WEEK)


class TestLandlordResponses:

    async def test_accept(self, db_session, make_rental_request):
        request = await make_rental_request()
        accepted = await RentalRequestService(db_session).accept(request.id, request.landlord_id, "Welcome")
        assert accepted.status == RentalRequestStatus.ACCEPTED.value
        assert accepted.accepted_at is not None
        assert accepted.response_message == "Welcome"

    async def test_only_landlord_may_respond(self, db_session, make_rental_request):
        request = await make_rental_request()
        with pytest.raises(ForbiddenError):
            await RentalRequestService(db_session).accept(request.id, request.tenant_id)

    async def test_reject_then_accept_is_invalid(self, db_session, make_rental_request):
        request = await make_rental_request()
        service = RentalRequestService(db_session)
        await service.reject(request.id, request.landlord_id, "Already let")
        with pytest.raises(InvalidStateError):
            await service.accept(request.id, request.landlord_id)

    async def test_second_accept_loses(self, db_session, make_rental_request):
        request = await make_rental_request()
        service = RentalRequestService(db_session)
        await service.accept(request.id, request.landlord_id)
        with pytest.raises(InvalidStateError):
            await service.accept(request.id, request.landlord_id)

    async def test_tenant_withdraw(self, db_session, make_rental_request):
        request = await make_rental_request()
        withdrawn = await RentalRequestService(db_session).withdraw(request.id, request.tenant_id)
        assert withdrawn.status == RentalRequestStatus.WITHDRAWN.value

    async def test_withdraw_by_other_user(self, db_session, make_rental_request):
        request = await make_rental_request()
        with pytest.raises(ForbiddenError):
            await RentalRequestService(db_session).withdraw(request.id, request.landlord_id)

    async def test_mark_viewed(self, db_session, make_rental_request):
        request = await make_rental_request()
        viewed = await RentalRequestService(db_session).mark_viewed(request.id, request.landlord_id)
        assert viewed.viewed_by_landlord is True
        assert viewed.viewed_at is not None


class TestAcceptAndOffer:

    async def test_accepts_and_creates_confirmation(self, db_session, make_rental_request, sent_emails):
        request = await make_rental_request()

        result = await RentalRequestService(db_session).accept_and_offer(
            request.id, request.landlord_id, {"monthly_rent": 2_800_000}
        )

        confirmation = result["confirmation"]
        assert result["email_sent"] is True
        assert result["rental_request"].status == RentalRequestStatus.ACCEPTED.value
        assert result["rental_request"].agreement_confirmation_id == confirmation.id
        assert confirmation.status == ConfirmationStatus.PENDING.value
        assert confirmation.agreement_terms["monthly_rent"] == 2_800_000
        assert confirmation.agreement_terms["deposit"] == 6_000_000
        assert confirmation.agreement_terms["start_date"] == NEXT_WEEK.isoformat()
        assert len(confirmation.confirmation_token) == 64
        tenant = await db_session.get(User, request.tenant_id)
        assert sent_emails == [("agreement confirmation", tenant.email)]

    async def test_invalid_terms_leave_request_pending(self, db_session, make_rental_request):
        request = await make_rental_request()

        with pytest.raises(ValidationError):
            await RentalRequestService(db_session).accept_and_offer(
                request.id,
                request.landlord_id,
                {"start_date": NEXT_WEEK, "end_date": NEXT_WEEK - timedelta(days=1)},
            )

        reloaded = await db_session.get(RentalRequest, request.id, populate_existing=True)
        assert reloaded.status == RentalRequestStatus.PENDING.value
        count = await db_session.scalar(select(func.count(AgreementConfirmation.id)))
        assert count == 0

    async def test_email_failure_does_not_undo_offer(self, db_session, make_rental_request, sent_emails):
        request = await make_rental_request()
        with patch(
            "rental_platform.services.email_service._deliver", new=AsyncMock(return_value=False)
        ):
            result = await RentalRequestService(db_session).accept_and_offer(
                request.id, request.landlord_id, {}
            )

        assert result["email_sent"] is False
        assert result["confirmation"].status == ConfirmationStatus.PENDING.value
