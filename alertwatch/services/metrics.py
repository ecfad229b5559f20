from __future__ import annotations

from prometheus_client import Counter, Histogram

# One sample per scheduler tick, by how the tick ended.
alert_monitor_ticks_total = Counter(
    "alert_monitor_ticks_total",
    "Alert monitor ticks grouped by outcome (ran, held, error).",
    ("outcome",),
)

# Ticks skipped past the escalation threshold because the shared cache failed.
alert_monitor_skip_escalations_total = Counter(
    "alert_monitor_skip_escalations_total",
    "Alert monitor ticks skipped after repeated lock infrastructure failures.",
)

alerts_triggered_total = Counter(
    "alerts_triggered_total",
    "Alerts transitioned to triggered, by alert type.",
    ("type",),
)

alert_monitor_tick_latency = Histogram(
    "alert_monitor_tick_latency_seconds",
    "Wall time of one alert monitor tick that held the lock.",
)

notification_send_total = Counter(
    "notification_send_total",
    "Notification deliveries grouped by channel and result.",
    ("channel", "result"),
)

rate_limit_rejected_total = Counter(
    "rate_limit_rejected_total",
    "Requests rejected with HTTP 429, by tier.",
    ("tier",),
)

circuit_breaker_open_total = Counter(
    "circuit_breaker_open_total",
    "Circuit breaker transitions to open, by dependency.",
    ("dependency",),
)

__all__ = [
    "alert_monitor_ticks_total",
    "alert_monitor_skip_escalations_total",
    "alerts_triggered_total",
    "alert_monitor_tick_latency",
    "notification_send_total",
    "rate_limit_rejected_total",
    "circuit_breaker_open_total",
]
