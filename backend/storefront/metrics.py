"""Prometheus metrics shared by the routes and the order state machine."""

from prometheus_client import Counter, Histogram

http_requests_total = Counter("http_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
http_request_duration_seconds = Histogram("http_request_duration_seconds", "HTTP request duration", ["method", "endpoint"])
orders_total = Counter("orders_total", "Orders by lifecycle outcome", ["status"])
revenue_total = Counter("revenue_total", "Revenue from verified payments")
stock_rejections_total = Counter("stock_rejections_total", "Checkouts rejected by the stock guard")
notifications_total = Counter("notifications_total", "Notification events emitted", ["kind"])
