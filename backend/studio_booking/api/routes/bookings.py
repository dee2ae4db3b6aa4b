"""
Client booking endpoints with concurrency-safe seat reservation.
"""

from fastapi import APIRouter, Depends, status

from studio_booking.api.deps import get_booking_controller
from studio_booking.api.errors import unwrap
from studio_booking.core.security import get_current_user_id
from studio_booking.schemas.booking import BookingCreate, BookingResponse
from studio_booking.services.booking_service import BookingAdmissionController

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    user_id: int = Depends(get_current_user_id),
    controller: BookingAdmissionController = Depends(get_booking_controller),
):
    """
    Book a seat in a class session.

    The session row is locked and its booked count is incremented with a
    conditional UPDATE, so concurrent requests never overbook. Returns 409
    SESSION_FULL or DUPLICATE_BOOKING when the seat cannot be taken.
    """
    return unwrap(await controller.create_booking(user_id, booking_data.session_id))


@router.get("", response_model=list[BookingResponse])
async def list_user_bookings(
    user_id: int = Depends(get_current_user_id),
    controller: BookingAdmissionController = Depends(get_booking_controller),
):
    """Get all bookings for the authenticated user, most recent first."""
    return await controller.list_user_bookings(user_id)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    controller: BookingAdmissionController = Depends(get_booking_controller),
):
    return unwrap(await controller.get_booking(booking_id, user_id))


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    controller: BookingAdmissionController = Depends(get_booking_controller),
):
    """Cancel a confirmed booking and release its seat (closes 2 hours before start)."""
    return unwrap(await controller.cancel_booking(booking_id, user_id))


@router.post("/{booking_id}/check-in", response_model=BookingResponse)
async def check_in(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    controller: BookingAdmissionController = Depends(get_booking_controller),
):
    return unwrap(await controller.check_in(booking_id, user_id))
