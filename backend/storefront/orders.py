"""
Order / Payment State Machine
=============================

    cart --checkout--> Order(pending) + Payment(pending)
                         |
        admin status --> processing --> shipped --> delivered --> completed
                         |                                          ^
        verify(completed) ------------------------------------------+
        verify(failed) / cancel --> cancelled   (stock restored, payment failed)

Every operation here is ONE database transaction. If any step fails the
session is rolled back and nothing (order, items, stock, payment, cart) is
persisted. Notifications go out only after commit.

Stock is never checked-then-written. Each decrement is a guarded UPDATE:

    UPDATE products SET stock = stock - :qty WHERE id = :id AND stock >= :qty

and an affected-row count of 0 aborts the whole checkout. Status changes use
the same pattern (WHERE status IN (...)), so a double cancel cannot restore
stock twice.
"""

import random
import time
from datetime import datetime, timezone
from typing import Optional

import structlog
from opentelemetry import trace
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront import config, crud, metrics, models, notifications, pricing, schemas
from storefront.cart import get_lines
from storefront.errors import (
    EmptyCart,
    InsufficientStock,
    InvalidStateTransition,
    NotFound,
    PersistenceFailure,
    StorefrontError,
    Unauthorized,
)

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

# ============================================================================
# TRANSITION TABLE
# ============================================================================

TRANSITIONS = {
    models.ORDER_PENDING: {
        models.ORDER_PROCESSING,
        models.ORDER_SHIPPED,
        models.ORDER_DELIVERED,
        models.ORDER_COMPLETED,
        models.ORDER_CANCELLED,
    },
    models.ORDER_PROCESSING: {
        models.ORDER_SHIPPED,
        models.ORDER_DELIVERED,
        models.ORDER_COMPLETED,
        models.ORDER_CANCELLED,
    },
    models.ORDER_SHIPPED: {models.ORDER_DELIVERED, models.ORDER_COMPLETED},
    models.ORDER_DELIVERED: {models.ORDER_COMPLETED},
    models.ORDER_COMPLETED: set(),
    models.ORDER_CANCELLED: set(),
}

CANCELLABLE = (models.ORDER_PENDING, models.ORDER_PROCESSING)
TERMINAL = (models.ORDER_COMPLETED, models.ORDER_CANCELLED)


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, set())


def generate_order_number() -> str:
    """ORD + epoch milliseconds + 3 random digits."""
    return f"ORD{int(time.time() * 1000)}{random.randint(0, 999):03d}"


# ============================================================================
# GUARDED WRITES
# ============================================================================

def reserve_stock(db: Session, product_id: int, quantity: int) -> None:
    """
    Take ``quantity`` units out of stock, or fail.

    Raises:
        InsufficientStock: fewer than ``quantity`` units left (or product gone)
    """
    updated = (
        db.query(models.Product)
        .filter(models.Product.id == product_id, models.Product.stock >= quantity)
        .update({models.Product.stock: models.Product.stock - quantity}, synchronize_session="fetch")
    )
    if updated != 1:
        metrics.stock_rejections_total.inc()
        raise InsufficientStock(f"Insufficient stock for product {product_id}")


def restore_stock(db: Session, order: models.Order) -> None:
    """Put every item of ``order`` back in stock. Items of deleted products are skipped."""
    for item in order.items:
        if item.product_id is None:
            continue
        db.query(models.Product).filter(models.Product.id == item.product_id).update(
            {models.Product.stock: models.Product.stock + item.quantity},
            synchronize_session="fetch",
        )


def _move_order(db: Session, order: models.Order, allowed_from, new_status: str) -> None:
    moved = (
        db.query(models.Order)
        .filter(models.Order.id == order.id, models.Order.status.in_(allowed_from))
        .update({models.Order.status: new_status}, synchronize_session="fetch")
    )
    if moved != 1:
        raise InvalidStateTransition(f"Order {order.order_number} cannot move to {new_status}")


def _move_payment(db: Session, payment: models.Payment, new_status: str, transaction_id: str = None) -> None:
    values = {models.Payment.status: new_status, models.Payment.verified_at: datetime.now(timezone.utc)}
    if transaction_id:
        values[models.Payment.transaction_id] = transaction_id
    moved = (
        db.query(models.Payment)
        .filter(models.Payment.id == payment.id, models.Payment.status == models.PAYMENT_PENDING)
        .update(values, synchronize_session="fetch")
    )
    if moved != 1:
        raise InvalidStateTransition("Payment has already been verified")


def _commit(db: Session, operation: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("transaction_failed", operation=operation, error=str(exc))
        raise PersistenceFailure(f"Could not complete {operation}") from exc


def _get_order(db: Session, order_id: int) -> models.Order:
    order = crud.get_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    return order


# ============================================================================
# CHECKOUT
# ============================================================================

def _is_order_number_collision(exc: IntegrityError) -> bool:
    return "order_number" in str(getattr(exc, "orig", exc))


def _place_order(db: Session, user: models.User, request: schemas.CheckoutRequest,
                 proof: Optional[str], order_number: str) -> models.Order:
    """All checkout writes, unflushed work left for the caller to commit or roll back."""
    with tracer.start_as_current_span("load_cart") as span:
        lines = get_lines(db, user)
        if not lines:
            raise EmptyCart()
        span.set_attribute("cart.line_count", len(lines))

    with tracer.start_as_current_span("price_order") as span:
        applied = db.query(models.AppliedCoupon).filter(models.AppliedCoupon.user_id == user.id).first()
        # the coupon is re-priced against the cart being bought, not the cart it was applied to
        breakdown = pricing.price_with_coupon(
            [(line.quantity, line.product.price) for line in lines],
            applied.coupon if applied else None,
        )
        span.set_attribute("order.total_amount", float(breakdown.total))

    with tracer.start_as_current_span("save_order"):
        order = models.Order(
            user_id=user.id,
            order_number=order_number,
            subtotal=breakdown.subtotal,
            tax_amount=breakdown.tax,
            shipping_fee=breakdown.shipping,
            discount_amount=breakdown.discount,
            total_amount=breakdown.total,
            coupon_code=applied.coupon.code if applied else None,
            status=models.ORDER_PENDING,
            payment_method=request.payment_method,
            payment_proof=proof,
            shipping_address=request.shipping_address,
            phone=request.phone,
        )
        db.add(order)
        # flush now: an order_number collision surfaces before stock is touched
        db.flush()

        for line in lines:
            db.add(models.OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                product_name=line.product.name,
                quantity=line.quantity,
                price_at_purchase=pricing.money(line.product.price),
            ))

    with tracer.start_as_current_span("reserve_stock"):
        for line in lines:
            reserve_stock(db, line.product_id, line.quantity)

    db.add(models.Payment(
        order_id=order.id,
        user_id=user.id,
        amount=breakdown.total,
        payment_method=request.payment_method,
        payment_proof=proof,
        status=models.PAYMENT_PENDING,
    ))

    for line in lines:
        db.delete(line)
    if applied is not None:
        db.delete(applied)

    db.flush()
    return order


def checkout(db: Session, user: models.User, request: schemas.CheckoutRequest,
             proof: Optional[str] = None, notifier: notifications.Notifier = None,
             number_factory=generate_order_number) -> models.Order:
    """
    Turn the user's cart into a pending order with a pending payment.

    In one transaction:
        1. Load cart lines at live prices (EmptyCart if none)
        2. Price: subtotal + tax + shipping - applied coupon re-priced on this cart
        3. Insert Order(pending) and one OrderItem per line (prices frozen)
        4. Decrement stock per line with the guarded UPDATE
        5. Insert Payment(pending), delete cart lines and the applied coupon

    An order-number collision rolls back and retries with a fresh number,
    up to ORDER_NUMBER_ATTEMPTS times.

    Raises:
        EmptyCart, InsufficientStock, PersistenceFailure
        InvalidCoupon: the cart fell below the applied coupon's minimum
    """
    attempts = max(1, config.ORDER_NUMBER_ATTEMPTS)
    with tracer.start_as_current_span("checkout") as span:
        span.set_attribute("order.user_id", user.id)
        for attempt in range(1, attempts + 1):
            order_number = number_factory()
            try:
                order = _place_order(db, user, request, proof, order_number)
                db.commit()
                break
            except IntegrityError as exc:
                db.rollback()
                if _is_order_number_collision(exc) and attempt < attempts:
                    logger.warning("order_number_collision", order_number=order_number, attempt=attempt)
                    continue
                logger.error("checkout_failed", user_id=user.id, error=str(exc))
                raise PersistenceFailure("Could not place order") from exc
            except StorefrontError as exc:
                db.rollback()
                metrics.orders_total.labels(status="rejected").inc()
                logger.warning("checkout_rejected", user_id=user.id, reason=exc.detail)
                span.add_event("checkout_rejected", {"reason": exc.detail})
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("checkout_failed", user_id=user.id, error=str(exc))
                raise PersistenceFailure("Could not place order") from exc

        span.set_attribute("order.id", order.id)
        span.set_attribute("order.total_amount", float(order.total_amount))

    db.refresh(order)
    metrics.orders_total.labels(status="created").inc()
    logger.info("order_created", order_number=order.order_number, user_id=user.id,
                total=str(order.total_amount), items=len(order.items))

    notifications.emit(notifier, notifications.ORDER_CREATED, {
        "summary": f"New order by {user.username}",
        "order_number": order.order_number,
        "total": order.total_amount,
        "payment_method": order.payment_method,
        "items": sum(item.quantity for item in order.items),
        "user": user.username,
    })
    notifications.emit(notifier, notifications.PAYMENT_INITIATED, {
        "summary": f"Payment initiated by {user.username}",
        "order_number": order.order_number,
        "amount": order.total_amount,
        "method": order.payment_method,
        "user": user.username,
    })
    if proof:
        notifications.emit(notifier, notifications.PAYMENT_PROOF_SUBMITTED, {
            "summary": f"{user.username} attached a payment proof",
            "order_number": order.order_number,
            "amount": order.total_amount,
            "proof": proof,
        })
    return order


# ============================================================================
# PAYMENT VERIFICATION
# ============================================================================

def verify_payment(db: Session, admin: models.User, order_id: int, outcome: str,
                   transaction_id: str = None, reason: str = None,
                   notifier: notifications.Notifier = None) -> models.Order:
    """
    Admin decision on a pending manual payment.

    completed: order -> completed, payment -> completed (transaction id kept)
    failed:    order -> cancelled, payment -> failed, stock restored

    Raises:
        Unauthorized: caller is not an admin
        NotFound: no such order
        InvalidStateTransition: payment already verified or order terminal
        PersistenceFailure: the transaction could not commit
    """
    if not admin.is_admin:
        raise Unauthorized("Admin only")

    with tracer.start_as_current_span("verify_payment") as span:
        order = _get_order(db, order_id)
        span.set_attribute("order.id", order.id)
        span.set_attribute("payment.outcome", outcome)
        if order.payment is None:
            raise NotFound("Payment not found")

        try:
            if outcome == models.PAYMENT_COMPLETED:
                _move_order(db, order, [s for s in TRANSITIONS if s not in TERMINAL],
                            models.ORDER_COMPLETED)
                _move_payment(db, order.payment, models.PAYMENT_COMPLETED, transaction_id)
            elif outcome == models.PAYMENT_FAILED:
                _move_order(db, order, CANCELLABLE, models.ORDER_CANCELLED)
                _move_payment(db, order.payment, models.PAYMENT_FAILED, transaction_id)
                restore_stock(db, order)
            else:
                raise InvalidStateTransition(f"Unknown payment outcome {outcome}")
        except StorefrontError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceFailure("Could not verify payment") from exc
        _commit(db, "payment verification")

    db.refresh(order)
    customer = order.user.username if order.user else order.user_id
    logger.info("payment_verified", order_number=order.order_number, outcome=outcome, admin_id=admin.id)

    if outcome == models.PAYMENT_COMPLETED:
        metrics.orders_total.labels(status="completed").inc()
        metrics.revenue_total.inc(float(order.total_amount))
        notifications.emit(notifier, notifications.PAYMENT_SUCCEEDED, {
            "summary": f"Payment verified by {admin.username}",
            "order_number": order.order_number,
            "amount": order.total_amount,
            "method": order.payment_method,
            "transaction_id": transaction_id,
            "proof": order.payment_proof,
            "user": customer,
        })
        notifications.emit(notifier, notifications.ORDER_COMPLETED, {
            "summary": f"Order {order.order_number} completed",
            "order_number": order.order_number,
            "total": order.total_amount,
            "user": customer,
        })
    else:
        metrics.orders_total.labels(status="cancelled").inc()
        notifications.emit(notifier, notifications.PAYMENT_FAILED, {
            "summary": f"Payment rejected by {admin.username}",
            "order_number": order.order_number,
            "amount": order.total_amount,
            "reason": reason or "Payment could not be verified",
            "user": customer,
        })
    return order


# ============================================================================
# CANCELLATION & STATUS UPDATES
# ============================================================================

def cancel(db: Session, actor: models.User, order_id: int, reason: str = None,
           notifier: notifications.Notifier = None) -> models.Order:
    """
    Cancel a pending or processing order: stock restored, payment failed.

    The owner or an admin may cancel. Completed and cancelled orders are
    final, so a second cancel is rejected and stock is restored only once.
    """
    with tracer.start_as_current_span("cancel_order") as span:
        order = _get_order(db, order_id)
        span.set_attribute("order.id", order.id)
        if order.user_id != actor.id and not actor.is_admin:
            raise Unauthorized("This order belongs to another user")

        try:
            _move_order(db, order, CANCELLABLE, models.ORDER_CANCELLED)
            if order.payment is not None and order.payment.status != models.PAYMENT_FAILED:
                order.payment.status = models.PAYMENT_FAILED
            restore_stock(db, order)
        except StorefrontError:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceFailure("Could not cancel order") from exc
        _commit(db, "order cancellation")

    db.refresh(order)
    metrics.orders_total.labels(status="cancelled").inc()
    logger.info("order_cancelled", order_number=order.order_number, actor_id=actor.id)
    notifications.emit(notifier, notifications.ORDER_CANCELLED, {
        "summary": f"Order cancelled by {actor.username}",
        "order_number": order.order_number,
        "total": order.total_amount,
        "reason": reason or "-",
    })
    return order


def update_status(db: Session, admin: models.User, order_id: int, new_status: str,
                  notifier: notifications.Notifier = None) -> models.Order:
    """
    Admin-driven move along the transition table.

    Cancelling goes through ``cancel`` so stock and payment are handled.
    Completing goes through ``verify_payment``: an order is only completed
    together with its payment, so the payment never stays pending behind a
    completed order.
    """
    if not admin.is_admin:
        raise Unauthorized("Admin only")
    if new_status == models.ORDER_CANCELLED:
        return cancel(db, admin, order_id, reason="Cancelled by admin", notifier=notifier)
    if new_status == models.ORDER_COMPLETED:
        return verify_payment(db, admin, order_id, models.PAYMENT_COMPLETED, notifier=notifier)

    order = _get_order(db, order_id)
    old_status = order.status
    if not can_transition(old_status, new_status):
        raise InvalidStateTransition(f"Cannot move order from {old_status} to {new_status}")

    try:
        _move_order(db, order, [old_status], new_status)
    except StorefrontError:
        db.rollback()
        raise
    _commit(db, "order status update")

    db.refresh(order)
    logger.info("order_status_changed", order_number=order.order_number, old=old_status, new=new_status)
    notifications.emit(notifier, notifications.ORDER_UPDATED, {
        "summary": f"Order status updated by {admin.username}",
        "order_number": order.order_number,
        "old_status": old_status,
        "new_status": new_status,
    })
    return order
