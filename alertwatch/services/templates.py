from __future__ import annotations

from typing import Mapping

from alertwatch.db.models import NotificationEventType

DEFAULT_BODIES = {
    NotificationEventType.PRICE_ALERT: (
        "🚨 {Symbol} price alert\n"
        "Condition: {AlertType} {Operator} {Threshold}\n"
        "Current: {CurrentValue}\n"
        "Time: {Time} UTC\n"
        "{AiExplanation}"
    ),
    NotificationEventType.VOLUME_ALERT: (
        "📊 {Symbol} volume alert\n"
        "Condition: {AlertType} {Operator} {Threshold}\n"
        "Current: {CurrentValue}\n"
        "Time: {Time} UTC\n"
        "{AiExplanation}"
    ),
}


def render_template(body: str, variables: Mapping[str, str]) -> str:
    """Substitute ``{Key}`` placeholders; unknown placeholders are left as-is."""
    rendered = body
    for key, value in variables.items():
        rendered = rendered.replace("{" + key + "}", value)
    return rendered


def validate_template(body: str) -> bool:
    return body.count("{") == body.count("}")


def default_body(event_type: NotificationEventType) -> str:
    return DEFAULT_BODIES.get(event_type, DEFAULT_BODIES[NotificationEventType.PRICE_ALERT])
