"""
Payment reconciliation engine.

Turns checkout sessions into credits exactly once, whichever path reports
the payment first: the processor's webhook, a client polling
verify_session, or a redelivery of either.

CONCURRENCY STRATEGY: Compare-and-Swap on purchase status
==========================================================

  UPDATE purchases SET status = 'COMPLETED' ... WHERE id = :id AND status = 'PENDING'

  Only the caller whose UPDATE affects a row increments the balance, and the
  increment runs in the same transaction. Every other caller sees the
  purchase already COMPLETED and returns it unchanged. The same pattern
  guards PENDING -> FAILED / CANCELLED.

Refunds debit the balance with `WHERE credit_balance >= :credits`, so a
balance already spent on bookings is never driven negative. The processor
refund is called after the ledger commit; if it fails the ledger change is
compensated in a second transaction.

No transaction is held open across a processor call.
"""

from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.config import get_settings
from studio_booking.core.logging import get_logger
from studio_booking.core.metrics import credits_issued, credits_refunded, record_payment_event, record_purchase_transition
from studio_booking.db.base import utcnow
from studio_booking.db.ledger import LedgerStore
from studio_booking.domain.errors import ErrorKind, PaymentProcessorError, Result, StorageUnavailableError
from studio_booking.models.notification import NotificationType
from studio_booking.models.purchase import Purchase, PurchaseStatus
from studio_booking.models.user import User
from studio_booking.services.notifications import NotificationDispatcher, NotificationMessage, deliver, queue_notification
from studio_booking.services.payment_journal import PaymentEventJournal, RecordOutcome
from studio_booking.services.payment_processor import PaymentProcessor, ProcessorEvent
from studio_booking.services.pricing import CREDIT_PACKAGES, CreditPackage, get_package, price_for_credits

logger = get_logger(__name__)

PAID_STATUSES = ("paid", "no_payment_required")
PURCHASE_NOT_FOUND = "Purchase not found"
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class CheckoutResult:
    checkout_session_id: str
    redirect_url: Optional[str]
    amount: int
    credits: int


@dataclass(frozen=True)
class VerifiedSession:
    purchase: Purchase
    processor_status: str


@dataclass(frozen=True)
class RefundResult:
    purchase: Purchase
    refund_id: str


@dataclass(frozen=True)
class PurchasePage:
    items: list[Purchase]
    total: int
    page: int
    page_size: int


def _payment_intent_id(checkout_session: dict[str, Any]) -> Optional[str]:
    intent = checkout_session.get("payment_intent")
    if isinstance(intent, dict):
        return intent.get("id")
    return intent


class PaymentReconciliationEngine:
    def __init__(
        self,
        ledger: LedgerStore,
        processor: PaymentProcessor,
        dispatcher: NotificationDispatcher,
        journal: Optional[PaymentEventJournal] = None,
        clock=utcnow,
    ):
        settings = get_settings()
        self._ledger = ledger
        self._processor = processor
        self._dispatcher = dispatcher
        self._journal = journal or PaymentEventJournal(ledger, clock=clock)
        self._clock = clock
        self.currency = settings.STRIPE_CURRENCY
        self.min_credits = settings.MIN_CREDITS_PER_PURCHASE
        self.max_credits = settings.MAX_CREDITS_PER_PURCHASE

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout(
        self,
        user_id: int,
        credits: Optional[int] = None,
        package_id: Optional[str] = None,
    ) -> Result[CheckoutResult]:
        package: Optional[CreditPackage] = None
        if package_id is not None and credits is not None:
            return Result.failure(ErrorKind.VALIDATION, "Provide either credits or package_id, not both")
        if package_id is not None:
            package = get_package(package_id)
            if package is None:
                return Result.failure(ErrorKind.VALIDATION, f"Unknown credit package: {package_id}")
            credits, amount = package.credits, package.price
        else:
            if credits is None or not self.min_credits <= credits <= self.max_credits:
                return Result.failure(
                    ErrorKind.VALIDATION,
                    f"Credit amount must be between {self.min_credits} and {self.max_credits}",
                )
            amount = price_for_credits(credits)

        async with self._ledger.transaction() as db:
            user = await db.get(User, user_id)
        if user is None:
            return Result.failure(ErrorKind.NOT_FOUND, "User not found")
        if not user.is_active or not user.is_verified:
            return Result.failure(ErrorKind.NOT_ELIGIBLE, "Account must be verified to purchase credits")

        try:
            session = await self._processor.create_checkout_session(
                user_id=user_id,
                credits=credits,
                amount=amount,
                currency=self.currency,
                customer_email=user.email,
                package_id=package.id if package else None,
            )
        except PaymentProcessorError as e:
            return Result.failure(ErrorKind.PROCESSOR_UNAVAILABLE, str(e))

        meta: dict[str, Any] = {"sessionUrl": session.url}
        if session.expires_at is not None:
            meta["expiresAt"] = session.expires_at.isoformat()
        async with self._ledger.transaction() as db:
            db.add(Purchase(
                user_id=user_id,
                credits=credits,
                amount=amount,
                currency=self.currency,
                package_id=package.id if package else None,
                checkout_session_id=session.id,
                status=PurchaseStatus.PENDING,
                meta=meta,
            ))

        record_purchase_transition(PurchaseStatus.PENDING)
        logger.info(
            "checkout_created",
            user_id=user_id,
            credits=credits,
            amount=amount,
            package_id=package_id,
            checkout_session_id=session.id,
        )
        return Result.success(CheckoutResult(
            checkout_session_id=session.id,
            redirect_url=session.url,
            amount=amount,
            credits=credits,
        ))

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def apply_completed_payment(
        self,
        checkout_session_id: str,
        amount_received: Optional[int] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Result[Purchase]:
        """The single credit-issuing path."""
        async with self._ledger.transaction() as db:
            purchase = await self._purchase_by_checkout(db, checkout_session_id)
            if purchase is None:
                return Result.failure(ErrorKind.NOT_FOUND, PURCHASE_NOT_FOUND)

            meta = dict(purchase.meta or {})
            meta["completedAt"] = self._clock().isoformat()
            if amount_received is not None:
                meta["amountReceived"] = amount_received
            values: dict[str, Any] = {"status": PurchaseStatus.COMPLETED, "meta": meta}
            if payment_intent_id:
                values["payment_intent_id"] = payment_intent_id

            swapped = await db.execute(
                update(Purchase)
                .where(Purchase.id == purchase.id, Purchase.status == PurchaseStatus.PENDING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if swapped.rowcount != 1:
                await db.refresh(purchase)
                if purchase.status == PurchaseStatus.COMPLETED:
                    logger.info("payment_already_applied", purchase_id=purchase.id)
                    return Result.success(purchase)
                return Result.failure(
                    ErrorKind.PURCHASE_NOT_PENDING, f"Purchase is {purchase.status.lower()}"
                )

            await db.execute(
                update(User)
                .where(User.id == purchase.user_id)
                .values(credit_balance=User.credit_balance + purchase.credits)
                .execution_options(synchronize_session=False)
            )
            message = await queue_notification(
                db,
                purchase.user_id,
                NotificationType.CREDITS_PURCHASED,
                "Credits Added!",
                f"You've successfully purchased {purchase.credits} credits. Happy booking!",
            )
            await db.refresh(purchase)

        if amount_received is not None and amount_received != purchase.amount:
            logger.warning(
                "payment_amount_mismatch",
                purchase_id=purchase.id,
                expected=purchase.amount,
                received=amount_received,
            )
        credits_issued.inc(purchase.credits)
        record_purchase_transition(PurchaseStatus.COMPLETED)
        logger.info(
            "credits_issued",
            purchase_id=purchase.id,
            user_id=purchase.user_id,
            credits=purchase.credits,
            checkout_session_id=checkout_session_id,
        )
        await deliver(self._dispatcher, [message])
        return Result.success(purchase)

    async def apply_failed_payment(
        self,
        checkout_session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Result[Purchase]:
        return await self._close_pending(
            PurchaseStatus.FAILED,
            checkout_session_id=checkout_session_id,
            payment_intent_id=payment_intent_id,
            meta_updates={"failureReason": reason or "Payment failed", "failedAt": self._clock().isoformat()},
            notification=(
                NotificationType.PAYMENT_FAILED,
                "Payment Failed",
                "Your credit purchase could not be processed. Please try again.",
            ),
        )

    async def apply_cancelled_payment(
        self,
        checkout_session_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Result[Purchase]:
        return await self._close_pending(
            PurchaseStatus.CANCELLED,
            checkout_session_id=checkout_session_id,
            payment_intent_id=payment_intent_id,
            meta_updates={"cancelledAt": self._clock().isoformat()},
            notification=(
                NotificationType.PAYMENT_CANCELLED,
                "Payment Cancelled",
                "Your credit purchase was cancelled. No charge was made.",
            ),
        )

    async def _close_pending(
        self,
        to_status: PurchaseStatus,
        *,
        checkout_session_id: Optional[str],
        payment_intent_id: Optional[str],
        meta_updates: dict[str, Any],
        notification: tuple[NotificationType, str, str],
    ) -> Result[Purchase]:
        """PENDING -> FAILED/CANCELLED; a purchase already terminal is returned unchanged."""
        if checkout_session_id is None and payment_intent_id is None:
            return Result.failure(ErrorKind.VALIDATION, "checkout_session_id or payment_intent_id is required")

        async with self._ledger.transaction() as db:
            if checkout_session_id is not None:
                purchase = await self._purchase_by_checkout(db, checkout_session_id)
            else:
                purchase = await self._purchase_by_intent(db, payment_intent_id)
            if purchase is None:
                return Result.failure(ErrorKind.NOT_FOUND, PURCHASE_NOT_FOUND)

            values: dict[str, Any] = {"status": to_status, "meta": {**(purchase.meta or {}), **meta_updates}}
            if payment_intent_id and not purchase.payment_intent_id:
                values["payment_intent_id"] = payment_intent_id
            swapped = await db.execute(
                update(Purchase)
                .where(Purchase.id == purchase.id, Purchase.status == PurchaseStatus.PENDING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.refresh(purchase)
            if swapped.rowcount != 1:
                logger.info(
                    "purchase_transition_skipped",
                    purchase_id=purchase.id,
                    status=purchase.status,
                    requested=to_status,
                )
                return Result.success(purchase)

            kind, title, body = notification
            message = await queue_notification(db, purchase.user_id, kind, title, body)

        record_purchase_transition(to_status)
        logger.info("purchase_closed", purchase_id=purchase.id, status=to_status)
        await deliver(self._dispatcher, [message])
        return Result.success(purchase)

    # ------------------------------------------------------------------
    # Reconciliation entry points
    # ------------------------------------------------------------------

    async def verify_session(self, checkout_session_id: str, user_id: int) -> Result[VerifiedSession]:
        """Client-side poll after the processor redirect."""
        async with self._ledger.transaction() as db:
            purchase = await self._purchase_by_checkout(db, checkout_session_id)
        if purchase is None:
            return Result.failure(ErrorKind.NOT_FOUND, PURCHASE_NOT_FOUND)
        if purchase.user_id != user_id:
            return Result.failure(ErrorKind.ACCESS_DENIED, PURCHASE_NOT_FOUND)

        try:
            status = await self._processor.retrieve_checkout_session(checkout_session_id)
        except PaymentProcessorError as e:
            return Result.failure(ErrorKind.PROCESSOR_UNAVAILABLE, str(e))

        if purchase.status == PurchaseStatus.PENDING:
            if status.payment_status in PAID_STATUSES:
                result = await self.apply_completed_payment(
                    checkout_session_id, status.amount_total, status.payment_intent_id
                )
            elif status.status == "expired":
                result = await self.apply_cancelled_payment(checkout_session_id=checkout_session_id)
            else:
                result = None
            if result is not None:
                if not result.ok:
                    return Result(error=result.error)
                purchase = result.value

        return Result.success(VerifiedSession(purchase=purchase, processor_status=status.payment_status))

    async def process_notification(self, event: ProcessorEvent) -> RecordOutcome:
        """Journal, then apply a verified processor event.

        Raises StorageUnavailableError when the ledger is down so the caller
        can answer with a retryable status; the journal row, if written,
        stays unprocessed and is reclaimed on a later delivery.

        Returns IN_FLIGHT without applying anything when another delivery
        holds an unexpired claim; the caller must not acknowledge it.
        """
        outcome = await self._journal.record_if_new(event.id, event.type, {"object": event.data})
        record_payment_event(event.type, outcome)
        if not outcome.should_process:
            return outcome

        error: Optional[str] = None
        try:
            result = await self._apply_event(event)
            if result is not None and not result.ok:
                error = str(result.error)
                logger.warning("payment_event_rejected", event_id=event.id, event_type=event.type, error=error)
        except StorageUnavailableError:
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error("payment_event_failed", event_id=event.id, event_type=event.type, exc_info=True)

        await self._journal.mark_processed(event.id, error)
        logger.info("payment_event_processed", event_id=event.id, event_type=event.type, outcome=outcome)
        return outcome

    async def _apply_event(self, event: ProcessorEvent) -> Optional[Result[Purchase]]:
        obj = event.data
        if event.type == "checkout.session.completed":
            if obj.get("payment_status") not in PAID_STATUSES:
                # Delayed payment methods complete later via async_payment_succeeded
                logger.info("checkout_completed_unpaid", checkout_session_id=obj.get("id"))
                return None
            return await self.apply_completed_payment(obj["id"], obj.get("amount_total"), _payment_intent_id(obj))
        if event.type == "checkout.session.async_payment_succeeded":
            return await self.apply_completed_payment(obj["id"], obj.get("amount_total"), _payment_intent_id(obj))
        if event.type == "checkout.session.async_payment_failed":
            return await self.apply_failed_payment(
                checkout_session_id=obj["id"],
                payment_intent_id=_payment_intent_id(obj),
                reason="Asynchronous payment failed",
            )
        if event.type == "payment_intent.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            return await self.apply_failed_payment(payment_intent_id=obj["id"], reason=last_error.get("message"))
        if event.type == "checkout.session.expired":
            return await self.apply_cancelled_payment(checkout_session_id=obj["id"])
        if event.type == "payment_intent.canceled":
            return await self.apply_cancelled_payment(payment_intent_id=obj["id"])

        logger.debug("payment_event_ignored", event_id=event.id, event_type=event.type)
        return None

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund(self, purchase_id: int, reason: Optional[str] = None) -> Result[RefundResult]:
        async with self._ledger.transaction() as db:
            locked = await db.execute(
                select(Purchase).where(Purchase.id == purchase_id).with_for_update()
            )
            purchase = locked.scalar_one_or_none()
            if purchase is None:
                return Result.failure(ErrorKind.NOT_FOUND, PURCHASE_NOT_FOUND)
            if purchase.status != PurchaseStatus.COMPLETED:
                return Result.failure(ErrorKind.NOT_COMPLETED, "Only completed purchases can be refunded")

            balance = await db.scalar(
                select(User.credit_balance).where(User.id == purchase.user_id).with_for_update()
            )
            if balance is None or balance < purchase.credits:
                return Result.failure(
                    ErrorKind.INSUFFICIENT_BALANCE_FOR_REFUND,
                    "Credits from this purchase have already been used",
                )
            if not purchase.payment_intent_id:
                # Nothing was charged through the processor (e.g. no_payment_required)
                return Result.failure(ErrorKind.NOT_REFUNDABLE, "Purchase has no processor payment to refund")

            debited = await db.execute(
                update(User)
                .where(User.id == purchase.user_id, User.credit_balance >= purchase.credits)
                .values(credit_balance=User.credit_balance - purchase.credits)
                .execution_options(synchronize_session=False)
            )
            if debited.rowcount != 1:
                return Result.failure(
                    ErrorKind.INSUFFICIENT_BALANCE_FOR_REFUND,
                    "Credits from this purchase have already been used",
                )

            meta = {**(purchase.meta or {}), "refundedAt": self._clock().isoformat()}
            if reason:
                meta["refundReason"] = reason
            await self._swap_status(db, purchase, PurchaseStatus.COMPLETED, PurchaseStatus.REFUNDED, meta)

        try:
            refund_id = await self._processor.refund(purchase.payment_intent_id, amount=purchase.amount)
        except PaymentProcessorError as e:
            await self._compensate_refund(purchase)
            return Result.failure(ErrorKind.PROCESSOR_UNAVAILABLE, str(e))

        async with self._ledger.transaction() as db:
            await db.execute(
                update(Purchase)
                .where(Purchase.id == purchase.id)
                .values(meta={**(purchase.meta or {}), "refundId": refund_id})
                .execution_options(synchronize_session=False)
            )
            message = await queue_notification(
                db,
                purchase.user_id,
                NotificationType.REFUND_PROCESSED,
                "Refund Processed",
                f"Your purchase of {purchase.credits} credits has been refunded.",
            )
            await db.refresh(purchase)

        credits_refunded.inc(purchase.credits)
        record_purchase_transition(PurchaseStatus.REFUNDED)
        logger.info(
            "purchase_refunded",
            purchase_id=purchase.id,
            user_id=purchase.user_id,
            credits=purchase.credits,
            refund_id=refund_id,
        )
        await deliver(self._dispatcher, [message])
        return Result.success(RefundResult(purchase=purchase, refund_id=refund_id))

    async def _compensate_refund(self, purchase: Purchase) -> None:
        """Undo the ledger side of a refund the processor did not accept."""
        async with self._ledger.transaction() as db:
            meta = {k: v for k, v in (purchase.meta or {}).items() if k not in ("refundedAt", "refundReason")}
            await self._swap_status(db, purchase, PurchaseStatus.REFUNDED, PurchaseStatus.COMPLETED, meta)
            await db.execute(
                update(User)
                .where(User.id == purchase.user_id)
                .values(credit_balance=User.credit_balance + purchase.credits)
                .execution_options(synchronize_session=False)
            )
        logger.warning("refund_compensated", purchase_id=purchase.id, credits=purchase.credits)

    @staticmethod
    async def _swap_status(
        db: AsyncSession,
        purchase: Purchase,
        from_status: PurchaseStatus,
        to_status: PurchaseStatus,
        meta: dict[str, Any],
    ) -> None:
        swapped = await db.execute(
            update(Purchase)
            .where(Purchase.id == purchase.id, Purchase.status == from_status)
            .values(status=to_status, meta=meta)
            .execution_options(synchronize_session=False)
        )
        if swapped.rowcount != 1:
            # The row is locked by this transaction; anything else is a ledger bug
            raise RuntimeError(f"purchase {purchase.id} left {from_status} while locked")
        await db.refresh(purchase)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_purchases(
        self,
        user_id: int,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Result[PurchasePage]:
        if page < 1 or not 1 <= page_size <= MAX_PAGE_SIZE:
            return Result.failure(
                ErrorKind.VALIDATION, f"page must be >= 1 and page_size within 1..{MAX_PAGE_SIZE}"
            )
        if status is not None and status not in PurchaseStatus.__members__:
            return Result.failure(ErrorKind.VALIDATION, f"Unknown purchase status: {status}")

        filters = [Purchase.user_id == user_id]
        if status is not None:
            filters.append(Purchase.status == status)
        async with self._ledger.transaction() as db:
            total = await db.scalar(select(func.count(Purchase.id)).where(*filters))
            result = await db.execute(
                select(Purchase)
                .where(*filters)
                .order_by(Purchase.created_at.desc(), Purchase.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = list(result.scalars().all())
        return Result.success(PurchasePage(items=items, total=total or 0, page=page, page_size=page_size))

    async def get_balance(self, user_id: int) -> Result[int]:
        async with self._ledger.transaction() as db:
            balance = await db.scalar(select(User.credit_balance).where(User.id == user_id))
        if balance is None:
            return Result.failure(ErrorKind.NOT_FOUND, "User not found")
        return Result.success(balance)

    @staticmethod
    def credit_packages() -> tuple[CreditPackage, ...]:
        return CREDIT_PACKAGES

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _purchase_by_checkout(db: AsyncSession, checkout_session_id: str) -> Optional[Purchase]:
        result = await db.execute(
            select(Purchase).where(Purchase.checkout_session_id == checkout_session_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _purchase_by_intent(db: AsyncSession, payment_intent_id: str) -> Optional[Purchase]:
        result = await db.execute(
            select(Purchase)
            .where(Purchase.payment_intent_id == payment_intent_id)
            .order_by(Purchase.created_at.desc(), Purchase.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
