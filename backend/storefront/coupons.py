"""
Coupons
=======

apply_coupon validates a code against the user's current cart, spends one
usage slot, and parks the coupon in ``applied_coupons`` where the next
checkout picks it up (and clears it). The discount itself is recomputed from
the cart as it is at checkout, so shrinking the cart below the coupon's
minimum afterwards makes checkout fail with InvalidCoupon.

The usage slot is spent when the coupon is applied, not when the order is
placed: a user who applies a code and never checks out still uses it up.
No per-user redemption limit exists.
"""

from datetime import datetime, timezone
from typing import List

import structlog
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront import models, notifications, pricing, schemas
from storefront.cart import get_lines
from storefront.errors import EmptyCart, InvalidCoupon

logger = structlog.get_logger(__name__)


def _utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; they are stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_coupon(db: Session, coupon: schemas.CouponCreate) -> models.Coupon:
    db_coupon = models.Coupon(**coupon.model_dump())
    db.add(db_coupon)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidCoupon(f"Coupon code {coupon.code} already exists")
    db.refresh(db_coupon)
    return db_coupon


def get_coupons(db: Session) -> List[models.Coupon]:
    return db.query(models.Coupon).order_by(models.Coupon.id.desc()).all()


def find_valid(db: Session, code: str, now: datetime = None) -> models.Coupon:
    """
    An active, in-window, under-cap coupon for ``code`` (case-insensitive).

    Raises:
        InvalidCoupon: unknown, inactive, expired, not yet valid, or used up
    """
    now = now or datetime.now(timezone.utc)
    coupon = (
        db.query(models.Coupon)
        .filter(func.upper(models.Coupon.code) == code.strip().upper())
        .first()
    )
    if coupon is None or not coupon.is_active:
        raise InvalidCoupon("Invalid coupon code")
    if coupon.valid_from is not None and now < _utc(coupon.valid_from):
        raise InvalidCoupon("Coupon is not valid yet")
    if coupon.valid_until is not None and now > _utc(coupon.valid_until):
        raise InvalidCoupon("Coupon has expired")
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise InvalidCoupon("Coupon usage limit reached")
    return coupon


def apply_coupon(db: Session, user: models.User, code: str,
                 notifier: notifications.Notifier = None, now: datetime = None) -> dict:
    """
    Validate ``code`` against the user's cart and hold the discount for checkout.

    Replaces any coupon the user applied earlier.

    Raises:
        EmptyCart: nothing to discount
        InvalidCoupon: see find_valid and pricing.coupon_discount
    """
    lines = get_lines(db, user)
    if not lines:
        raise EmptyCart()
    subtotal = pricing.subtotal((line.quantity, line.product.price) for line in lines)

    coupon = find_valid(db, code, now)
    discount = pricing.coupon_discount(coupon, subtotal)

    # guarded increment: two users racing for the last slot cannot both win
    claimed = (
        db.query(models.Coupon)
        .filter(
            models.Coupon.id == coupon.id,
            or_(models.Coupon.usage_limit.is_(None), models.Coupon.used_count < models.Coupon.usage_limit),
        )
        .update({models.Coupon.used_count: models.Coupon.used_count + 1}, synchronize_session="fetch")
    )
    if claimed != 1:
        db.rollback()
        raise InvalidCoupon("Coupon usage limit reached")

    applied = db.query(models.AppliedCoupon).filter(models.AppliedCoupon.user_id == user.id).first()
    if applied is None:
        applied = models.AppliedCoupon(user_id=user.id, coupon_id=coupon.id, discount_amount=discount)
        db.add(applied)
    else:
        applied.coupon = coupon
        applied.discount_amount = discount
    db.commit()

    logger.info("coupon_applied", user_id=user.id, code=coupon.code, discount=str(discount))
    notifications.emit(notifier, notifications.COUPON_APPLIED, {
        "summary": f"{user.username} applied coupon {coupon.code}",
        "code": coupon.code,
        "subtotal": subtotal,
        "discount": discount,
        "user": user.username,
    })
    return {"code": coupon.code, "discount": discount, "subtotal": subtotal}


def remove_applied(db: Session, user: models.User) -> bool:
    """Drop the held discount. The usage slot already spent is not returned."""
    removed = (
        db.query(models.AppliedCoupon)
        .filter(models.AppliedCoupon.user_id == user.id)
        .delete(synchronize_session="fetch")
    )
    db.commit()
    return bool(removed)
