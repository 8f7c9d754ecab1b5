"""
Cart Service
============

Per-user cart lines, one row per (user, product).

Stock is checked on every mutation (quantity <= product.stock) but not
reserved: the authoritative check happens at checkout with a guarded
UPDATE, see orders.reserve_stock.
"""

from decimal import Decimal
from typing import List

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from storefront import crud, models, notifications, pricing
from storefront.errors import InsufficientStock, InvalidCoupon, NotFound, Unauthorized

logger = structlog.get_logger(__name__)


def get_lines(db: Session, user: models.User) -> List[models.CartItem]:
    """Cart lines joined with their live product rows."""
    return (
        db.query(models.CartItem)
        .join(models.Product, models.Product.id == models.CartItem.product_id)
        .filter(models.CartItem.user_id == user.id)
        .order_by(models.CartItem.id)
        .all()
    )


def _own_line(db: Session, user: models.User, line_id: int) -> models.CartItem:
    line = db.query(models.CartItem).filter(models.CartItem.id == line_id).first()
    if line is None:
        raise NotFound("Item not found")
    if line.user_id != user.id:
        raise Unauthorized("This cart item belongs to another user")
    return line


def _check_stock(product: models.Product, quantity: int) -> None:
    if quantity > product.stock:
        logger.warning("cart_stock_rejected", product_id=product.id, requested=quantity, available=product.stock)
        raise InsufficientStock(f"Only {product.stock} left of {product.name}")


def add_item(db: Session, user: models.User, product_id: int, quantity: int = 1,
             notifier: notifications.Notifier = None) -> models.CartItem:
    """
    Put ``quantity`` of a product in the cart.

    A repeat add increments the existing line; the combined quantity must
    still fit in stock.

    Raises:
        NotFound: product does not exist
        InsufficientStock: existing + quantity > product.stock
    """
    product = crud.require_product(db, product_id)
    line = (
        db.query(models.CartItem)
        .filter(models.CartItem.user_id == user.id, models.CartItem.product_id == product.id)
        .first()
    )
    existing = line.quantity if line else 0
    _check_stock(product, existing + quantity)

    if line is None:
        line = models.CartItem(user_id=user.id, product_id=product.id, quantity=quantity)
        db.add(line)
    else:
        line.quantity = existing + quantity
    db.commit()
    db.refresh(line)

    notifications.emit(notifier, notifications.CART_ADDED, {
        "summary": f"{user.username} added item to cart",
        "product": product.name,
        "quantity": quantity,
        "price": pricing.money(Decimal(product.price) * quantity),
        "user": user.username,
    })
    return line


def update_quantity(db: Session, user: models.User, line_id: int, quantity: int) -> models.CartItem:
    line = _own_line(db, user, line_id)
    _check_stock(line.product, quantity)
    line.quantity = quantity
    db.commit()
    db.refresh(line)
    return line


def remove_item(db: Session, user: models.User, line_id: int,
                notifier: notifications.Notifier = None) -> None:
    line = _own_line(db, user, line_id)
    name = line.product.name
    db.delete(line)
    db.commit()

    notifications.emit(notifier, notifications.CART_REMOVED, {
        "summary": f"{user.username} removed item from cart",
        "product": name,
        "user": user.username,
    })


def clear(db: Session, user: models.User) -> int:
    """Delete every line in the user's cart. Returns the number of lines removed."""
    removed = db.query(models.CartItem).filter(models.CartItem.user_id == user.id).delete(synchronize_session="fetch")
    db.commit()
    return removed


def count(db: Session, user: models.User) -> int:
    """Total quantity across lines, for the cart badge."""
    total = (
        db.query(func.sum(models.CartItem.quantity))
        .filter(models.CartItem.user_id == user.id)
        .scalar()
    )
    return int(total or 0)


def summarize(db: Session, user: models.User) -> dict:
    """
    The cart view: lines at live prices plus a pricing preview.

    An applied coupon is re-priced against the current lines. If the cart no
    longer meets its minimum, the preview carries no discount and
    ``coupon_error`` says why; checkout would be refused the same way.
    """
    lines = get_lines(db, user)
    applied = db.query(models.AppliedCoupon).filter(models.AppliedCoupon.user_id == user.id).first()
    priced = [(line.quantity, line.product.price) for line in lines]
    coupon_error = None
    try:
        breakdown = pricing.price_with_coupon(priced, applied.coupon if applied else None)
    except InvalidCoupon as exc:
        breakdown = pricing.price_order(priced)
        coupon_error = exc.detail
    return {
        "items": [
            {
                "id": line.id,
                "product_id": line.product_id,
                "name": line.product.name,
                "image_url": line.product.image_url,
                "unit_price": pricing.money(line.product.price),
                "quantity": line.quantity,
                "line_total": pricing.money(Decimal(line.product.price) * line.quantity),
            }
            for line in lines
        ],
        "item_count": sum(line.quantity for line in lines),
        "coupon_code": applied.coupon.code if applied else None,
        "coupon_error": coupon_error,
        "pricing": breakdown.as_dict(),
    }
