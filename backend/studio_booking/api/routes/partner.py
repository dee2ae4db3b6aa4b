"""
Partner (studio owner) endpoints: desk check-in, no-shows and earnings.
"""

from fastapi import APIRouter, Depends

from studio_booking.api.deps import get_booking_controller
from studio_booking.api.errors import unwrap
from studio_booking.core.security import Principal, require_partner
from studio_booking.schemas.booking import BookingResponse, NoShowResponse, SessionEarningsResponse
from studio_booking.services.booking_service import BookingAdmissionController

router = APIRouter(prefix="/partner", tags=["Partner"])


@router.get("/bookings/{code}", response_model=BookingResponse)
async def get_booking_by_code(
    code: str,
    partner: Principal = Depends(require_partner),
    controller: BookingAdmissionController = Depends(get_booking_controller),
):
    return unwrap(await controller.get_booking_by_code(code, partner.user_id))


@router.post("/bookings/{code}/check-in", response_model=BookingResponse)
async def check_in_by_code(
    code: str,
    partner: Principal = Depends(require_partner),
    controller: BookingAdmissionController = Depends(get_booking_controller),
):
    return unwrap(await controller.check_in_by_code(code, partner.user_id))


@router.post("/sessions/{session_id}/no-shows", response_model=NoShowResponse)
async def mark_no_shows(
    session_id: int,
    partner: Principal = Depends(require_partner),
    controller: BookingAdmissionController = Depends(get_booking_controller),
):
    """Mark every unchecked confirmed booking of an ended session as NO_SHOW.

    Safe to repeat: a second call reports count 0.
    """
    count = unwrap(await controller.mark_no_show(session_id, partner.user_id))
    return NoShowResponse(session_id=session_id, count=count)


@router.get("/sessions/{session_id}/earnings", response_model=SessionEarningsResponse)
async def session_earnings(
    session_id: int,
    partner: Principal = Depends(require_partner),
    controller: BookingAdmissionController = Depends(get_booking_controller),
):
    earnings = unwrap(await controller.session_earnings(session_id, partner.user_id))
    return SessionEarningsResponse(
        session_id=earnings.session_id,
        bookings=earnings.bookings,
        gross_credits=earnings.gross_credits,
        gross_amount=earnings.split.gross,
        commission_bps=earnings.commission_bps,
        commission=earnings.split.commission,
        partner_payout=earnings.split.partner_payout,
    )
