"""
CRUD Operations
===============

Plain database reads and writes for the catalog, users and order listings.

The cart, coupon and order/payment lifecycles live in their own modules
(cart.py, coupons.py, orders.py) because they enforce invariants across
several tables; everything here touches one aggregate at a time.

Every function takes the request's Session first. Reads return rows or
dicts shaped for the response schemas; writes commit before returning and
raise NotFound when their target row is missing.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from storefront import config, models, schemas
from storefront.errors import NotFound, Unauthorized

# ============================================================================
# PRODUCT CRUD OPERATIONS
# ============================================================================

def get_product(db: Session, product_id: int) -> Optional[models.Product]:
    """
    Retrieve a single product by ID.

    SQL generated:
        SELECT * FROM products WHERE id = product_id LIMIT 1
    """
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def require_product(db: Session, product_id: int) -> models.Product:
    product = get_product(db, product_id)
    if product is None:
        raise NotFound("Product not found")
    return product


def get_products(
    db: Session,
    category: Optional[str] = None,
    brand: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Product]:
    """
    Browse the catalog with optional filters and pagination.

    Args:
        category: Exact category match
        brand: Exact brand match
        search: Case-insensitive substring of name or description
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return

    SQL generated:
        SELECT * FROM products
        WHERE category = ? AND brand = ? AND (name LIKE ? OR description LIKE ?)
        ORDER BY id OFFSET skip LIMIT limit
    """
    query = db.query(models.Product)
    if category:
        query = query.filter(models.Product.category == category)
    if brand:
        query = query.filter(models.Product.brand == brand)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            models.Product.name.ilike(pattern),
            models.Product.description.ilike(pattern),
        ))
    return query.order_by(models.Product.id).offset(skip).limit(limit).all()


def get_related_products(db: Session, product: models.Product, limit: int = 4) -> List[models.Product]:
    """Other products from the same category."""
    if not product.category:
        return []
    return (
        db.query(models.Product)
        .filter(models.Product.category == product.category, models.Product.id != product.id)
        .order_by(models.Product.id)
        .limit(limit)
        .all()
    )


def get_facets(db: Session) -> dict:
    """Distinct categories and brands for the shop filters."""
    categories = db.query(models.Product.category).filter(models.Product.category.isnot(None)).distinct()
    brands = db.query(models.Product.brand).filter(models.Product.brand.isnot(None)).distinct()
    return {
        "categories": sorted(row[0] for row in categories),
        "brands": sorted(row[0] for row in brands),
    }


def create_product(db: Session, product: schemas.ProductCreate) -> models.Product:
    """
    Create a new product.

    Process:
        1. Convert Pydantic schema -> SQLAlchemy model
        2. Add to session, commit, refresh to get id and timestamps
    """
    db_product = models.Product(**product.model_dump())
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


def update_product(db: Session, product_id: int, product_update: schemas.ProductUpdate) -> Tuple[models.Product, List[str]]:
    """
    Update an existing product (partial update).

    Only fields explicitly sent by the client are changed:
        {"price": 899} -> only price updated
    Returns the product and the list of changed field names.
    """
    db_product = require_product(db, product_id)

    changed = []
    for field, value in product_update.model_dump(exclude_unset=True).items():
        if getattr(db_product, field) != value:
            setattr(db_product, field, value)
            changed.append(field)

    db.commit()
    db.refresh(db_product)
    return db_product, changed


def delete_product(db: Session, product_id: int) -> models.Product:
    """
    Delete a product by ID.

    Cart lines holding it go with it; past order items keep their name and
    price snapshot and lose the product link (product_id -> NULL).
    """
    db_product = require_product(db, product_id)
    db.delete(db_product)
    db.commit()
    return db_product


SAMPLE_PRODUCTS = [
    ("Adidas Essential T-Shirt", "Classic adidas t-shirt", "29.99", "T-Shirts", "Adidas", 50),
    ("Adidas Sport Hoodie", "Comfortable hoodie", "59.99", "Hoodies", "Adidas", 30),
    ("Adidas Running Shorts", "Lightweight shorts", "24.99", "Sports Wear", "Adidas", 40),
    ("Puma Training Tee", "DryCELL tech", "32.99", "T-Shirts", "Puma", 55),
    ("Puma Hoodie", "Classic hoodie", "54.99", "Hoodies", "Puma", 35),
    ("Puma Running Shoes", "Lightweight shoes", "79.99", "Sports Wear", "Puma", 25),
    ("UA Tech T-Shirt", "Anti-pill fabric", "27.99", "T-Shirts", "Under Armour", 70),
    ("UA Storm Hoodie", "Water-resistant", "64.99", "Hoodies", "Under Armour", 32),
    ("NB Impact Tee", "NB DRY tech", "32.99", "T-Shirts", "New Balance", 53),
    ("NB Running Shorts", "NB ICE quick-dry", "29.99", "Sports Wear", "New Balance", 42),
    ("Esports Jersey Pro", "Pro esports jersey", "44.99", "Esports", "Custom", 30),
    ("Sticker Print Tee", "Sticker printed", "34.99", "Sticker Printed", "Custom", 40),
]


def seed_products(db: Session) -> int:
    """Insert the sample catalog if the products table is empty. Returns rows created."""
    if db.query(models.Product).count() > 0:
        return 0
    for name, description, price, category, brand, stock in SAMPLE_PRODUCTS:
        db.add(models.Product(
            name=name,
            description=description,
            price=Decimal(price),
            category=category,
            brand=brand,
            image_url="/images/default-product.jpg",
            stock=stock,
        ))
    db.commit()
    return len(SAMPLE_PRODUCTS)


# ============================================================================
# USER OPERATIONS
# ============================================================================

def get_user(db: Session, user_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id).first()


def login_user(db: Session, login: schemas.DiscordLogin):
    """
    Create or refresh the user behind a verified Discord identity.

    Returns (user, created). Banned users are refused; admin rights follow
    ADMIN_DISCORD_IDS on every login.
    """
    user = db.query(models.User).filter(models.User.discord_id == login.discord_id).first()
    if user is not None and user.is_banned:
        raise Unauthorized("You are banned from this site")

    is_admin = login.discord_id in config.ADMIN_DISCORD_IDS
    created = user is None
    if created:
        user = models.User(discord_id=login.discord_id)
        db.add(user)

    user.username = login.username
    user.email = login.email
    user.avatar = login.avatar
    user.is_admin = is_admin
    user.last_login = datetime.now(timezone.utc)

    db.commit()
    db.refresh(user)
    return user, created


def set_banned(db: Session, user_id: int, banned: bool) -> models.User:
    user = get_user(db, user_id)
    if user is None:
        raise NotFound("User not found")
    user.is_banned = banned
    db.commit()
    db.refresh(user)
    return user


def get_users_with_stats(db: Session) -> List[dict]:
    """
    Users with their order count and completed spend.

    SQL generated (2 queries):
        SELECT u.*, COUNT(o.id) FROM users u LEFT JOIN orders o ON o.user_id = u.id
        GROUP BY u.id ORDER BY u.created_at DESC
        SELECT user_id, SUM(total_amount) FROM orders WHERE status = 'completed'
        GROUP BY user_id
    """
    rows = (
        db.query(models.User, func.count(models.Order.id))
        .outerjoin(models.Order, models.Order.user_id == models.User.id)
        .group_by(models.User.id)
        .order_by(models.User.created_at.desc(), models.User.id.desc())
        .all()
    )
    spent = dict(
        db.query(models.Order.user_id, func.sum(models.Order.total_amount))
        .filter(models.Order.status == models.ORDER_COMPLETED)
        .group_by(models.Order.user_id)
        .all()
    )

    result = []
    for user, order_count in rows:
        data = schemas.User.model_validate(user).model_dump()
        data["order_count"] = order_count
        data["total_spent"] = Decimal(spent.get(user.id) or 0)
        result.append(data)
    return result


def get_profile_stats(db: Session, user_id: int) -> dict:
    """
    The profile card: orders placed and money spent on completed orders.

    SQL generated:
        SELECT COUNT(id), SUM(CASE WHEN status = 'completed' THEN total_amount END)
        FROM orders WHERE user_id = user_id
    """
    total_orders, total_spent = (
        db.query(
            func.count(models.Order.id),
            func.sum(case((models.Order.status == models.ORDER_COMPLETED, models.Order.total_amount))),
        )
        .filter(models.Order.user_id == user_id)
        .one()
    )
    return {"total_orders": total_orders, "total_spent": Decimal(total_spent or 0)}


# ============================================================================
# ORDER LISTINGS
# ============================================================================

def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    """
    Retrieve a single order by ID (items and payment load via relationships).
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_for(db: Session, user: models.User, order_id: int) -> models.Order:
    """An order the user may see: their own, or any order for admins."""
    order = get_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    if order.user_id != user.id and not user.is_admin:
        raise Unauthorized("This order belongs to another user")
    return order


def _order_summaries(query) -> List[dict]:
    rows = query.all()
    result = []
    for order, item_count, username in rows:
        data = schemas.OrderSummary.model_validate(order).model_dump()
        data["item_count"] = item_count
        data["username"] = username
        result.append(data)
    return result


def _summary_query(db: Session):
    return (
        db.query(models.Order, func.count(models.OrderItem.id), models.User.username)
        .join(models.User, models.User.id == models.Order.user_id)
        .outerjoin(models.OrderItem, models.OrderItem.order_id == models.Order.id)
        .group_by(models.Order.id, models.User.username)
        .order_by(models.Order.created_at.desc(), models.Order.id.desc())
    )


def get_user_orders(db: Session, user_id: int) -> List[dict]:
    """Order history for one user, newest first, with item counts."""
    return _order_summaries(_summary_query(db).filter(models.Order.user_id == user_id))


def get_orders(db: Session, skip: int = 0, limit: int = 100) -> List[dict]:
    """All orders (admin view) with usernames and item counts."""
    return _order_summaries(_summary_query(db).offset(skip).limit(limit))


def get_dashboard_stats(db: Session) -> dict:
    revenue = (
        db.query(func.sum(models.Order.total_amount))
        .filter(models.Order.status == models.ORDER_COMPLETED)
        .scalar()
    )
    recent_users = (
        db.query(models.User)
        .order_by(models.User.created_at.desc(), models.User.id.desc())
        .limit(10)
        .all()
    )
    return {
        "total_users": db.query(models.User).count(),
        "total_orders": db.query(models.Order).count(),
        "total_products": db.query(models.Product).count(),
        "total_revenue": Decimal(revenue or 0),
        "recent_orders": get_orders(db, limit=10),
        "recent_users": [schemas.User.model_validate(user) for user in recent_users],
    }
