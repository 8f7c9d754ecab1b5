from datetime import datetime, timezone

import httpx
import pytest

from storefront import notifications
from storefront.notifications import DiscordNotifier

WEBHOOK = "https://discord.test/api/webhooks/1/default"


class Recorder:
    """MockTransport handler replaying canned responses and keeping every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else httpx.Response(204)
        return response


@pytest.fixture
def sleeps():
    return []


def make_notifier(handler, sleeps, **kwargs):
    kwargs.setdefault("webhook_url", WEBHOOK)
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("backoff", 1.0)
    return DiscordNotifier(client=httpx.Client(transport=httpx.MockTransport(handler)),
                           sleep=sleeps.append, **kwargs)


def test_build_message_uses_summary_and_fields():
    stamp = datetime(2024, 1, 1, tzinfo=timezone.utc)

    body = notifications.build_message(notifications.ORDER_CREATED, {
        "summary": "New order by alice",
        "order_number": "ORD1",
        "coupon": None,
    }, stamp)

    [embed] = body["embeds"]
    assert body["content"] == "📦 **New Order**"
    assert embed["title"] == "Order Created"
    assert embed["description"] == "New order by alice"
    assert embed["timestamp"] == "2024-01-01T00:00:00+00:00"
    assert embed["fields"] == [
        {"name": "Order Number", "value": "ORD1", "inline": True},
        {"name": "Coupon", "value": "-", "inline": True},
    ]


def test_unknown_kinds_still_render():
    body = notifications.build_message("custom.kind", {"a": 1})

    assert body["embeds"][0]["title"] == "custom.kind"


def test_successful_post(sleeps):
    handler = Recorder(httpx.Response(204))

    assert make_notifier(handler, sleeps).deliver(notifications.SYSTEM, {"summary": "hi"}) is True
    assert len(handler.requests) == 1
    assert handler.requests[0].url == WEBHOOK
    assert sleeps == []


def test_server_errors_are_retried_with_backoff(sleeps):
    handler = Recorder(httpx.Response(500), httpx.Response(502), httpx.Response(204))

    assert make_notifier(handler, sleeps).deliver(notifications.SYSTEM, {}) is True
    assert len(handler.requests) == 3
    assert sleeps == [1.0, 2.0]


def test_rate_limit_honours_retry_after(sleeps):
    handler = Recorder(httpx.Response(429, json={"retry_after": 2.5}), httpx.Response(204))

    assert make_notifier(handler, sleeps).deliver(notifications.SYSTEM, {}) is True
    assert sleeps == [2.5]


def test_rate_limit_without_a_usable_retry_after_falls_back_to_backoff(sleeps):
    handler = Recorder(httpx.Response(429, json={"retry_after": None}), httpx.Response(204))

    assert make_notifier(handler, sleeps).deliver(notifications.SYSTEM, {}) is True
    assert sleeps == [1.0]


def test_backoff_is_capped(sleeps):
    handler = Recorder(httpx.Response(429, json={"retry_after": 600}), httpx.Response(204))

    make_notifier(handler, sleeps).deliver(notifications.SYSTEM, {})

    assert sleeps == [notifications.MAX_BACKOFF_SECONDS]


def test_client_errors_are_not_retried(sleeps):
    handler = Recorder(httpx.Response(404))

    assert make_notifier(handler, sleeps).deliver(notifications.SYSTEM, {}) is False
    assert len(handler.requests) == 1


def test_gives_up_after_max_retries(sleeps):
    handler = Recorder(*[httpx.Response(500)] * 10)

    assert make_notifier(handler, sleeps, max_retries=2).deliver(notifications.SYSTEM, {}) is False
    assert len(handler.requests) == 3


def test_transport_errors_are_retried(sleeps):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("boom", request=request)
        return httpx.Response(204)

    assert make_notifier(handler, sleeps).deliver(notifications.SYSTEM, {}) is True
    assert len(calls) == 2


def test_routes_override_default_webhook(sleeps):
    handler = Recorder()
    orders_hook = "https://discord.test/api/webhooks/2/orders"
    notifier = make_notifier(handler, sleeps, routes={notifications.ORDER_CREATED: orders_hook})

    notifier.deliver(notifications.ORDER_CREATED, {})
    notifier.deliver(notifications.CART_ADDED, {})

    assert [str(r.url) for r in handler.requests] == [orders_hook, WEBHOOK]


def test_no_webhook_means_no_post(sleeps):
    handler = Recorder()

    assert make_notifier(handler, sleeps, webhook_url="").deliver(notifications.SYSTEM, {}) is False
    assert handler.requests == []


def test_worker_delivers_in_background_and_drains_on_stop(sleeps):
    handler = Recorder()
    notifier = make_notifier(handler, sleeps)
    notifier.start()

    notifier.notify(notifications.SYSTEM, {"summary": "one"})
    notifier.notify(notifications.SYSTEM, {"summary": "two"})
    notifier.stop(timeout=5)

    bodies = [r.read() for r in handler.requests]
    assert len(bodies) == 2
    assert b'"one"' in bodies[0]


def test_full_queue_drops_instead_of_blocking(sleeps):
    handler = Recorder()
    notifier = make_notifier(handler, sleeps, queue_size=1)

    notifier.notify(notifications.SYSTEM, {"n": 1})
    notifier.notify(notifications.SYSTEM, {"n": 2})

    assert notifier._queue.qsize() == 1


def test_emit_swallows_notifier_failures():
    class Broken(notifications.Notifier):
        def notify(self, kind, payload):
            raise RuntimeError("down")

    notifications.emit(Broken(), notifications.SYSTEM, {})
    notifications.emit(None, notifications.SYSTEM, {})


def test_logging_notifier_accepts_any_payload():
    notifications.LoggingNotifier().notify(notifications.SYSTEM, {"kind": "clash", "amount": 1})


def test_from_config_maps_env_suffixes_to_kinds(monkeypatch):
    monkeypatch.setattr(notifications.config, "DISCORD_WEBHOOK_URL", WEBHOOK)
    monkeypatch.setattr(notifications.config, "webhook_overrides",
                        lambda: {"ORDER_CREATED": "https://discord.test/orders"})

    notifier = notifications.build_notifier()

    assert isinstance(notifier, DiscordNotifier)
    assert notifier.route_for("order.created") == "https://discord.test/orders"
    assert notifier.route_for("cart.added") == WEBHOOK
