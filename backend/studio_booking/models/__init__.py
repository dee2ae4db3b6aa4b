from studio_booking.models.user import User, UserRole
from studio_booking.models.studio import Studio, StudioClass, ClassSession, SessionStatus
from studio_booking.models.booking import Booking, BookingStatus, SEAT_HOLDING_STATUSES
from studio_booking.models.purchase import Purchase, PurchaseStatus
from studio_booking.models.payment_event import PaymentEvent
from studio_booking.models.notification import Notification, NotificationType

__all__ = [
    "User", "UserRole",
    "Studio", "StudioClass", "ClassSession", "SessionStatus",
    "Booking", "BookingStatus", "SEAT_HOLDING_STATUSES",
    "Purchase", "PurchaseStatus",
    "PaymentEvent",
    "Notification", "NotificationType",
]
