"""
Notifications
=============

Best-effort audit trail of storefront activity, delivered to Discord.

Services call ``notifier.notify(kind, payload)`` AFTER their transaction has
committed. ``notify`` only enqueues: it never blocks on the network and never
raises, so a Discord outage cannot fail or slow down a checkout.

    request thread                      worker thread
    --------------                      -------------
    notify(kind, payload) --> queue --> build embed --> POST webhook
                               |                          |
                          full? drop+warn           429/5xx/network? back off, retry
"""

import queue
import threading
import time
from datetime import datetime, timezone

import httpx
import structlog

from storefront import config, metrics

logger = structlog.get_logger(__name__)

# ============================================================================
# EVENT KINDS
# ============================================================================

USER_REGISTERED = "user.registered"
USER_LOGIN = "user.login"
USER_LOGOUT = "user.logout"
PRODUCT_VIEWED = "product.viewed"
PRODUCT_ADDED = "product.added"
PRODUCT_EDITED = "product.edited"
PRODUCT_DELETED = "product.deleted"
CART_ADDED = "cart.added"
CART_REMOVED = "cart.removed"
COUPON_APPLIED = "coupon.applied"
ORDER_CREATED = "order.created"
ORDER_UPDATED = "order.updated"
ORDER_COMPLETED = "order.completed"
ORDER_CANCELLED = "order.cancelled"
PAYMENT_INITIATED = "payment.initiated"
PAYMENT_PROOF_SUBMITTED = "payment.proof_submitted"
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
ADMIN_LOGIN = "admin.login"
ADMIN_ACTION = "admin.action"
USER_BANNED = "user.banned"
ERROR = "error"
SYSTEM = "system"
BACKUP_CREATED = "system.backup"

GREEN = 0x00FF00
ORANGE = 0xFFAA00
RED = 0xFF0000
BLUE = 0x3498DB
PURPLE = 0x9B59B6

# kind -> (message line, embed title, colour)
EVENT_STYLES = {
    USER_REGISTERED: ("📝 **New Registration**", "New Registration", GREEN),
    USER_LOGIN: ("🔐 **Login Event**", "User Login", GREEN),
    USER_LOGOUT: ("🚪 **Logout Event**", "User Logout", ORANGE),
    PRODUCT_VIEWED: ("👀 **Product View**", "Product Viewed", BLUE),
    PRODUCT_ADDED: ("➕ **Product Added**", "Product Added", GREEN),
    PRODUCT_EDITED: ("✏️ **Product Edited**", "Product Edited", ORANGE),
    PRODUCT_DELETED: ("🗑️ **Product Deleted**", "Product Deleted", RED),
    CART_ADDED: ("🛒 **Cart Update**", "Item Added to Cart", GREEN),
    CART_REMOVED: ("🛒 **Cart Update**", "Item Removed from Cart", ORANGE),
    COUPON_APPLIED: ("🏷️ **Coupon Applied**", "Coupon Applied", BLUE),
    ORDER_CREATED: ("📦 **New Order**", "Order Created", GREEN),
    ORDER_UPDATED: ("🔄 **Order Updated**", "Order Status Changed", ORANGE),
    ORDER_COMPLETED: ("✅ **Order Completed**", "Order Completed", GREEN),
    ORDER_CANCELLED: ("🚫 **Order Cancelled**", "Order Cancelled", RED),
    PAYMENT_INITIATED: ("💳 **Payment Initiated**", "Payment Initiated", BLUE),
    PAYMENT_PROOF_SUBMITTED: ("🧾 **Payment Proof**", "Payment Proof Submitted", BLUE),
    PAYMENT_SUCCEEDED: ("💰 **Payment Successful**", "Payment Successful", GREEN),
    PAYMENT_FAILED: ("❌ **Payment Failed**", "Payment Failed", RED),
    ADMIN_LOGIN: ("👑 **Admin Login**", "Admin Login", PURPLE),
    ADMIN_ACTION: ("⚙️ **Admin Action**", "Admin Action", PURPLE),
    USER_BANNED: ("⛔ **Moderation**", "User Ban Status Changed", RED),
    ERROR: ("🚨 **Error**", "Application Error", RED),
    SYSTEM: ("🖥️ **System**", "System Message", BLUE),
    BACKUP_CREATED: ("💾 **Backup Created**", "Database Backup", GREEN),
}

MAX_EMBED_FIELDS = 25
MAX_FIELD_VALUE = 1024
MAX_BACKOFF_SECONDS = 30.0


def build_message(kind, payload, timestamp=None):
    """Discord webhook body for one event: a content line plus a single embed."""
    content, title, colour = EVENT_STYLES.get(kind, ("📣 **Event**", kind, BLUE))
    payload = dict(payload)
    description = str(payload.pop("summary", "") or title)

    fields = []
    for key, value in list(payload.items())[:MAX_EMBED_FIELDS]:
        if value is None:
            value = "-"
        fields.append({
            "name": key.replace("_", " ").title(),
            "value": str(value)[:MAX_FIELD_VALUE] or "-",
            "inline": len(str(value)) <= 40,
        })

    timestamp = timestamp or datetime.now(timezone.utc)
    return {
        "content": content,
        "embeds": [{
            "title": title,
            "description": description,
            "color": colour,
            "fields": fields,
            "timestamp": timestamp.isoformat(),
        }],
    }


# ============================================================================
# NOTIFIERS
# ============================================================================

class Notifier:
    """Sink interface. Implementations must never raise from ``notify``."""

    def notify(self, kind: str, payload: dict) -> None:
        raise NotImplementedError

    def start(self) -> None:
        pass

    def stop(self, timeout: float = 5.0) -> None:
        pass


class LoggingNotifier(Notifier):
    """Used when no webhook is configured: events only reach the local log."""

    def notify(self, kind, payload):
        try:
            logger.info("notification", kind=kind, payload={k: str(v) for k, v in dict(payload).items()})
        except Exception:
            logger.exception("notification_log_failed", kind=kind)


class DiscordNotifier(Notifier):
    """
    Posts events to Discord webhooks from a background worker thread.

    Args:
        webhook_url: Default destination for every event kind
        routes: Optional {kind: url} overrides
        queue_size: Events buffered before new ones are dropped
        max_retries: Extra attempts after the first failed POST
        backoff: First retry delay in seconds, doubled per attempt
        client: httpx.Client to post with (tests pass a MockTransport client)
        sleep: Delay function, replaceable in tests
    """

    def __init__(
        self,
        webhook_url: str = "",
        routes: dict = None,
        queue_size: int = config.NOTIFY_QUEUE_SIZE,
        max_retries: int = config.NOTIFY_MAX_RETRIES,
        backoff: float = config.NOTIFY_BACKOFF_SECONDS,
        client: httpx.Client = None,
        sleep=time.sleep,
    ):
        self.webhook_url = webhook_url
        self.routes = dict(routes or {})
        self.max_retries = max_retries
        self.backoff = backoff
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._queue = queue.Queue(maxsize=queue_size)
        self._thread = None
        self._stop_marker = object()

    @classmethod
    def from_config(cls):
        routes = {
            suffix.lower().replace("_", ".", 1): url
            for suffix, url in config.webhook_overrides().items()
        }
        return cls(webhook_url=config.DISCORD_WEBHOOK_URL, routes=routes)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        if self._client is None:
            self._client = httpx.Client(timeout=config.NOTIFY_TIMEOUT_SECONDS)
        self._thread = threading.Thread(target=self._run, name="discord-notifier", daemon=True)
        self._thread.start()
        logger.info("notifier_started", default_route=bool(self.webhook_url), routes=len(self.routes))

    def stop(self, timeout=5.0):
        """Deliver what is queued, then stop the worker."""
        if self._thread is None:
            return
        try:
            self._queue.put(self._stop_marker, timeout=timeout)
        except queue.Full:
            logger.warning("notifier_stop_timeout", pending=self._queue.qsize())
        self._thread.join(timeout)
        self._thread = None
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # producer side
    # ------------------------------------------------------------------

    def notify(self, kind, payload):
        try:
            self._queue.put_nowait((kind, dict(payload), datetime.now(timezone.utc)))
        except queue.Full:
            logger.warning("notification_dropped", kind=kind, reason="queue_full")
        except Exception:
            logger.exception("notification_enqueue_failed", kind=kind)

    # ------------------------------------------------------------------
    # worker side
    # ------------------------------------------------------------------

    def route_for(self, kind):
        return self.routes.get(kind) or self.webhook_url

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is self._stop_marker:
                    return
                kind, payload, timestamp = item
                self.deliver(kind, payload, timestamp)
            except Exception:
                logger.exception("notification_worker_error")
            finally:
                self._queue.task_done()

    def deliver(self, kind, payload, timestamp=None):
        """POST one event, retrying with backoff. Returns True once Discord accepts it."""
        url = self.route_for(kind)
        if not url:
            logger.info("notification", kind=kind, delivered=False, reason="no_webhook")
            return False

        body = build_message(kind, payload, timestamp)
        delay = self.backoff
        for attempt in range(self.max_retries + 1):
            wait = delay
            try:
                response = self._client.post(url, json=body)
            except httpx.HTTPError as exc:
                logger.warning("notification_post_failed", kind=kind, attempt=attempt + 1, error=str(exc))
            else:
                if response.status_code < 300:
                    return True
                if response.status_code == 429:
                    wait = _retry_after(response, delay)
                    logger.warning("notification_rate_limited", kind=kind, retry_after=wait)
                elif response.status_code < 500:
                    # malformed payload or revoked webhook: retrying cannot help
                    logger.warning("notification_rejected", kind=kind, status=response.status_code)
                    return False
                else:
                    logger.warning("notification_post_failed", kind=kind, attempt=attempt + 1,
                                   status=response.status_code)

            if attempt < self.max_retries:
                self._sleep(min(wait, MAX_BACKOFF_SECONDS))
                delay = min(delay * 2, MAX_BACKOFF_SECONDS)

        logger.warning("notification_dropped", kind=kind, reason="retries_exhausted")
        return False


def _retry_after(response, default):
    try:
        return float(response.json().get("retry_after", default))
    except (TypeError, ValueError, AttributeError):
        pass
    try:
        return float(response.headers.get("Retry-After", default))
    except (TypeError, ValueError):
        return default


def build_notifier():
    if config.DISCORD_WEBHOOK_URL or config.webhook_overrides():
        return DiscordNotifier.from_config()
    return LoggingNotifier()


def emit(notifier, kind, payload):
    """Hand an event to ``notifier`` (if any). Never raises."""
    if notifier is None:
        return
    metrics.notifications_total.labels(kind=kind).inc()
    try:
        notifier.notify(kind, payload)
    except Exception:
        logger.exception("notification_failed", kind=kind)
