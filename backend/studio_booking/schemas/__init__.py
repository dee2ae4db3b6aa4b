from studio_booking.schemas.booking import (
    BookingCreate, BookingResponse, NoShowResponse, SessionEarningsResponse,
)
from studio_booking.schemas.payment import (
    CheckoutCreate, CheckoutResponse, PurchaseResponse, PurchaseListResponse,
    VerifySessionResponse, BalanceResponse, CreditPackageResponse, RefundResponse, WebhookAck,
)

__all__ = [
    "BookingCreate", "BookingResponse", "NoShowResponse", "SessionEarningsResponse",
    "CheckoutCreate", "CheckoutResponse", "PurchaseResponse", "PurchaseListResponse",
    "VerifySessionResponse", "BalanceResponse", "CreditPackageResponse", "RefundResponse", "WebhookAck",
]
