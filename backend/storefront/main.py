"""
Storefront Backend with OpenTelemetry Instrumentation
"""

import time
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError
from sqlalchemy.orm import Session

from storefront import backup, cart, config, coupons, crud, metrics, models, notifications, orders, payments, schemas
from storefront.database import Base, SessionLocal, engine, get_db
from storefront.errors import NotAuthenticated, StorefrontError, Unauthorized
from storefront.logs import configure_logging

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(
    title="Storefront API",
    description="Catalog, cart, manual-payment checkout and admin back office",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)

app.state.notifier = notifications.build_notifier()


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_notifier(request: Request) -> notifications.Notifier:
    return request.app.state.notifier


def _lookup_user(db: Session, x_user_id: Optional[str]) -> Optional[models.User]:
    if not x_user_id:
        return None
    try:
        user_id = int(x_user_id)
    except ValueError:
        return None
    return crud.get_user(db, user_id)


def get_current_user(x_user_id: Optional[str] = Header(None), db: Session = Depends(get_db)) -> models.User:
    user = _lookup_user(db, x_user_id)
    if user is None:
        raise NotAuthenticated()
    if user.is_banned:
        raise Unauthorized("You are banned from this site")
    return user


def get_optional_user(x_user_id: Optional[str] = Header(None), db: Session = Depends(get_db)) -> Optional[models.User]:
    user = _lookup_user(db, x_user_id)
    if user is None or user.is_banned:
        return None
    return user


def require_admin(user: models.User = Depends(get_current_user)) -> models.User:
    if not user.is_admin:
        raise Unauthorized("Access denied. Admin only.")
    return user


# ============================================================================
# ERRORS & METRICS
# ============================================================================

@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path)
    notifications.emit(request.app.state.notifier, notifications.ERROR, {
        "summary": f"{type(exc).__name__}: {exc}",
        "location": request.url.path,
    })
    return JSONResponse(status_code=500, content={"detail": "Something went wrong!"})


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    start_time = time.time()
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    finally:
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        metrics.http_requests_total.labels(method=request.method, endpoint=endpoint, status=status).inc()
        metrics.http_request_duration_seconds.labels(method=request.method, endpoint=endpoint).observe(
            time.time() - start_time
        )


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "storefront-backend"}


@app.get("/metrics")
def metrics_endpoint():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ============================================================================
# AUTH
# ============================================================================

@app.post("/auth/login", response_model=schemas.User)
def login(login: schemas.DiscordLogin, db: Session = Depends(get_db),
          notifier: notifications.Notifier = Depends(get_notifier)):
    user, created = crud.login_user(db, login)
    if created:
        notifications.emit(notifier, notifications.USER_REGISTERED, {
            "summary": f"New user registered: {user.username}",
            "username": user.username,
            "discord_id": user.discord_id,
        })
    notifications.emit(notifier, notifications.USER_LOGIN, {
        "summary": f"{user.username} ({user.discord_id}) logged in",
        "user": user.username,
        "discord_id": user.discord_id,
    })
    return user


@app.post("/auth/logout", status_code=204)
def logout(user: models.User = Depends(get_current_user),
           notifier: notifications.Notifier = Depends(get_notifier)):
    notifications.emit(notifier, notifications.USER_LOGOUT, {
        "summary": f"{user.username} logged out",
        "user": user.username,
        "discord_id": user.discord_id,
    })
    return Response(status_code=204)


@app.get("/me", response_model=schemas.User)
def me(user: models.User = Depends(get_current_user)):
    return user


@app.get("/me/stats", response_model=schemas.ProfileStats)
def my_stats(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.get_profile_stats(db, user.id)


# ============================================================================
# CATALOG
# ============================================================================

@app.get("/products/", response_model=List[schemas.Product])
def list_products(category: Optional[str] = None, brand: Optional[str] = None, search: Optional[str] = None,
                  skip: int = 0, limit: int = 100, db: Session = Depends(get_db)):
    return crud.get_products(db, category=category, brand=brand, search=search, skip=skip, limit=limit)


@app.get("/products/{product_id}", response_model=schemas.ProductDetail)
def get_product(product_id: int, db: Session = Depends(get_db),
                user: Optional[models.User] = Depends(get_optional_user),
                notifier: notifications.Notifier = Depends(get_notifier)):
    product = crud.require_product(db, product_id)
    if user is not None:
        notifications.emit(notifier, notifications.PRODUCT_VIEWED, {
            "summary": f"{user.username} viewed product: {product.name}",
            "product": product.name,
            "price": product.price,
            "user": user.username,
        })
    detail = schemas.ProductDetail.model_validate(product)
    detail.related = [schemas.Product.model_validate(p) for p in crud.get_related_products(db, product)]
    return detail


@app.get("/catalog/facets", response_model=schemas.CatalogFacets)
def catalog_facets(db: Session = Depends(get_db)):
    return crud.get_facets(db)


# ============================================================================
# CART
# ============================================================================

@app.get("/cart/", response_model=schemas.Cart)
def view_cart(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return cart.summarize(db, user)


@app.get("/cart/count", response_model=schemas.CartCount)
def cart_count(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"count": cart.count(db, user)}


@app.post("/cart/items", response_model=schemas.Cart, status_code=201)
def add_to_cart(item: schemas.CartAdd, user: models.User = Depends(get_current_user),
                db: Session = Depends(get_db), notifier: notifications.Notifier = Depends(get_notifier)):
    cart.add_item(db, user, item.product_id, item.quantity, notifier=notifier)
    return cart.summarize(db, user)


@app.patch("/cart/items/{line_id}", response_model=schemas.Cart)
def update_cart_item(line_id: int, body: schemas.CartQuantity, user: models.User = Depends(get_current_user),
                     db: Session = Depends(get_db)):
    cart.update_quantity(db, user, line_id, body.quantity)
    return cart.summarize(db, user)


@app.delete("/cart/items/{line_id}", response_model=schemas.Cart)
def remove_cart_item(line_id: int, user: models.User = Depends(get_current_user),
                     db: Session = Depends(get_db), notifier: notifications.Notifier = Depends(get_notifier)):
    cart.remove_item(db, user, line_id, notifier=notifier)
    return cart.summarize(db, user)


@app.delete("/cart/", status_code=204)
def clear_cart(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    cart.clear(db, user)
    return Response(status_code=204)


@app.post("/cart/coupon", response_model=schemas.AppliedDiscount)
def apply_coupon(body: schemas.CouponApply, user: models.User = Depends(get_current_user),
                 db: Session = Depends(get_db), notifier: notifications.Notifier = Depends(get_notifier)):
    return coupons.apply_coupon(db, user, body.code, notifier=notifier)


@app.delete("/cart/coupon", status_code=204)
def remove_coupon(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    coupons.remove_applied(db, user)
    return Response(status_code=204)


# ============================================================================
# CHECKOUT & ORDERS
# ============================================================================

@app.post("/checkout", response_model=schemas.Order, status_code=201)
def checkout(
    payment_method: str = Form(...),
    shipping_address: str = Form(...),
    phone: Optional[str] = Form(None),
    payment_proof: Optional[UploadFile] = File(None),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: notifications.Notifier = Depends(get_notifier),
):
    try:
        request = schemas.CheckoutRequest(
            payment_method=payment_method,
            shipping_address=shipping_address,
            phone=phone or None,
        )
    except ValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False, include_context=False))

    proof = None
    if payment_proof is not None and payment_proof.filename:
        data = payments.read_upload(payment_proof.file, config.MAX_UPLOAD_BYTES, label="Payment proof")
        proof = payments.save_proof(payment_proof.filename, data)

    try:
        return orders.checkout(db, user, request, proof=proof, notifier=notifier)
    except Exception:
        payments.discard_proof(proof)
        raise


@app.get("/orders/", response_model=List[schemas.OrderSummary])
def order_history(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.get_user_orders(db, user.id)


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(order_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return crud.get_order_for(db, user, order_id)


@app.post("/orders/{order_id}/cancel", response_model=schemas.Order)
def cancel_order(order_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db),
                 notifier: notifications.Notifier = Depends(get_notifier)):
    return orders.cancel(db, user, order_id, reason="Cancelled by customer", notifier=notifier)


@app.get("/orders/{order_id}/payment-link", response_model=schemas.PaymentLink)
def payment_link(order_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    order = crud.get_order_for(db, user, order_id)
    return {
        "order_number": order.order_number,
        "amount": order.total_amount,
        "upi_id": config.UPI_ID,
        "upi_url": payments.upi_url(order.order_number, order.total_amount),
    }


# ============================================================================
# ADMIN
# ============================================================================

@app.get("/admin/dashboard", response_model=schemas.DashboardStats)
def admin_dashboard(admin: models.User = Depends(require_admin), db: Session = Depends(get_db),
                    notifier: notifications.Notifier = Depends(get_notifier)):
    notifications.emit(notifier, notifications.ADMIN_LOGIN, {
        "summary": f"Admin {admin.username} opened the dashboard",
        "admin": admin.username,
        "discord_id": admin.discord_id,
    })
    return crud.get_dashboard_stats(db)


@app.get("/admin/users", response_model=List[schemas.AdminUser])
def admin_users(admin: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    return crud.get_users_with_stats(db)


@app.post("/admin/users/{user_id}/ban", response_model=schemas.User)
def admin_ban_user(user_id: int, body: schemas.BanRequest, admin: models.User = Depends(require_admin),
                   db: Session = Depends(get_db), notifier: notifications.Notifier = Depends(get_notifier)):
    target = crud.set_banned(db, user_id, body.action == "ban")
    verb = "Banned" if target.is_banned else "Unbanned"
    notifications.emit(notifier, notifications.USER_BANNED, {
        "summary": f"{verb} user {target.username}",
        "user": target.username,
        "discord_id": target.discord_id,
        "admin": admin.username,
    })
    notifications.emit(notifier, notifications.ADMIN_ACTION, {
        "summary": f"{verb} user",
        "details": f"User: {target.username} ({target.discord_id})",
        "admin": admin.username,
    })
    return target


@app.post("/admin/products", response_model=schemas.Product, status_code=201)
def admin_create_product(product: schemas.ProductCreate, admin: models.User = Depends(require_admin),
                         db: Session = Depends(get_db), notifier: notifications.Notifier = Depends(get_notifier)):
    db_product = crud.create_product(db, product)
    notifications.emit(notifier, notifications.PRODUCT_ADDED, {
        "summary": f"Product added by admin: {admin.username}",
        "product": db_product.name,
        "price": db_product.price,
        "category": db_product.category,
        "admin": admin.username,
    })
    notifications.emit(notifier, notifications.ADMIN_ACTION, {
        "summary": "Added product",
        "details": f"Product: {db_product.name}",
        "admin": admin.username,
    })
    return db_product


@app.patch("/admin/products/{product_id}", response_model=schemas.Product)
def admin_update_product(product_id: int, product_update: schemas.ProductUpdate,
                         admin: models.User = Depends(require_admin), db: Session = Depends(get_db),
                         notifier: notifications.Notifier = Depends(get_notifier)):
    db_product, changed = crud.update_product(db, product_id, product_update)
    notifications.emit(notifier, notifications.PRODUCT_EDITED, {
        "summary": f"Product edited by admin: {admin.username}",
        "product": db_product.name,
        "changes": ", ".join(changed) or "No changes",
        "admin": admin.username,
    })
    notifications.emit(notifier, notifications.ADMIN_ACTION, {
        "summary": "Edited product",
        "details": f"Product: {db_product.name}",
        "admin": admin.username,
    })
    return db_product


@app.delete("/admin/products/{product_id}", status_code=204)
def admin_delete_product(product_id: int, admin: models.User = Depends(require_admin),
                         db: Session = Depends(get_db), notifier: notifications.Notifier = Depends(get_notifier)):
    product = crud.delete_product(db, product_id)
    notifications.emit(notifier, notifications.PRODUCT_DELETED, {
        "summary": f"Product deleted by admin: {admin.username}",
        "product": product.name,
        "product_id": product_id,
        "admin": admin.username,
    })
    notifications.emit(notifier, notifications.ADMIN_ACTION, {
        "summary": "Deleted product",
        "details": f"Product: {product.name}",
        "admin": admin.username,
    })
    return Response(status_code=204)


@app.get("/admin/orders", response_model=List[schemas.OrderSummary])
def admin_orders(skip: int = 0, limit: int = 100, admin: models.User = Depends(require_admin),
                 db: Session = Depends(get_db)):
    return crud.get_orders(db, skip=skip, limit=limit)


@app.post("/admin/orders/{order_id}/status", response_model=schemas.Order)
def admin_update_order_status(order_id: int, body: schemas.StatusUpdate,
                              admin: models.User = Depends(require_admin), db: Session = Depends(get_db),
                              notifier: notifications.Notifier = Depends(get_notifier)):
    order = orders.update_status(db, admin, order_id, body.status, notifier=notifier)
    notifications.emit(notifier, notifications.ADMIN_ACTION, {
        "summary": "Updated order status",
        "details": f"Order {order.order_number}: -> {order.status}",
        "admin": admin.username,
    })
    return order


@app.post("/admin/orders/{order_id}/verify-payment", response_model=schemas.Order)
def admin_verify_payment(order_id: int, body: schemas.PaymentVerification,
                         admin: models.User = Depends(require_admin), db: Session = Depends(get_db),
                         notifier: notifications.Notifier = Depends(get_notifier)):
    return orders.verify_payment(
        db, admin, order_id, body.outcome,
        transaction_id=body.transaction_id, reason=body.reason, notifier=notifier,
    )


@app.post("/admin/coupons", response_model=schemas.Coupon, status_code=201)
def admin_create_coupon(coupon: schemas.CouponCreate, admin: models.User = Depends(require_admin),
                        db: Session = Depends(get_db), notifier: notifications.Notifier = Depends(get_notifier)):
    db_coupon = coupons.create_coupon(db, coupon)
    notifications.emit(notifier, notifications.ADMIN_ACTION, {
        "summary": "Created coupon",
        "details": f"Coupon: {db_coupon.code}",
        "admin": admin.username,
    })
    return db_coupon


@app.get("/admin/coupons", response_model=List[schemas.Coupon])
def admin_list_coupons(admin: models.User = Depends(require_admin), db: Session = Depends(get_db)):
    return coupons.get_coupons(db)


@app.get("/admin/backup")
def admin_backup(admin: models.User = Depends(require_admin), db: Session = Depends(get_db),
                 notifier: notifications.Notifier = Depends(get_notifier)):
    data = backup.dump(db.get_bind())
    filename = backup.backup_filename(int(time.time() * 1000))
    notifications.emit(notifier, notifications.BACKUP_CREATED, {
        "summary": f"Backup created by {admin.username}",
        "filename": filename,
        "size": f"{len(data) / 1024:.2f} KB",
        "admin": admin.username,
    })
    notifications.emit(notifier, notifications.ADMIN_ACTION, {
        "summary": "Created backup",
        "details": f"Backup file: {filename}",
        "admin": admin.username,
    })
    return Response(
        content=data,
        media_type="application/vnd.sqlite3",
        headers={"Content-Disposition": 'attachment; filename="storefront_backup.db"'},
    )


@app.post("/admin/restore", response_model=schemas.RestoreResult)
def admin_restore(database: UploadFile = File(...), admin: models.User = Depends(require_admin),
                  db: Session = Depends(get_db), notifier: notifications.Notifier = Depends(get_notifier)):
    data = payments.read_upload(database.file, config.MAX_RESTORE_BYTES, label="Backup file")
    db.close()
    backup.restore(db.get_bind(), data)
    notifications.emit(notifier, notifications.ADMIN_ACTION, {
        "summary": "Restored database",
        "details": "Database restored from backup",
        "admin": admin.username,
    })
    return {"success": True, "message": "Database restored successfully"}


FastAPIInstrumentor.instrument_app(app)


@app.on_event("startup")
def startup_event():
    db = SessionLocal()
    try:
        seeded = crud.seed_products(db)
    finally:
        db.close()
    app.state.notifier.start()
    logger.info("storefront_started", seeded_products=seeded)
    notifications.emit(app.state.notifier, notifications.SYSTEM, {"summary": "Storefront backend started"})


@app.on_event("shutdown")
def shutdown_event():
    app.state.notifier.stop()
