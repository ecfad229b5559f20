"""Condition evaluation for alerts.

Each alert type maps to one pure comparator. Types without a comparator fall
through to ``_never`` so evaluation is total: it returns "not triggered" for
unknown kinds, missing market data, or malformed condition payloads, and
never raises.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from alertwatch.db.models import Alert, AlertType, StockTicker

logger = logging.getLogger(__name__)

PRICE_EQUALITY_TOLERANCE = Decimal("0.01")
DEFAULT_OPERATOR = ">"


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    price: Decimal
    volume: Optional[int] = None

    @classmethod
    def from_ticker(cls, ticker: StockTicker) -> "MarketSnapshot":
        return cls(
            symbol=ticker.symbol,
            price=Decimal(str(ticker.current_price if ticker.current_price is not None else 0)),
            volume=int(ticker.volume) if ticker.volume is not None else None,
        )


@dataclass(frozen=True)
class AlertCondition:
    operator: Optional[str]
    value: Optional[Decimal] = None


@dataclass(frozen=True)
class Evaluation:
    triggered: bool
    current_value: Decimal = Decimal("0")


def _to_decimal(raw: Any) -> Optional[Decimal]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        d = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def parse_condition(raw: Any) -> Optional[AlertCondition]:
    """Parse the stored condition (JSON text or mapping); None if malformed."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError):
            return None
    if not isinstance(raw, dict):
        return None
    # stored payloads come from several clients; accept either key casing
    op = raw.get("operator", raw.get("Operator"))
    if op is not None and not isinstance(op, str):
        return None
    return AlertCondition(operator=op, value=_to_decimal(raw.get("value", raw.get("Value"))))


def normalize_operator(raw: Optional[str]) -> str:
    """Canonical operator symbol for display; unknown spellings read as ">"."""
    if not raw:
        return DEFAULT_OPERATOR
    op = raw.strip().lower()
    # two-character forms first so ">=" is not read as ">"
    if ">=" in op:
        return ">="
    if "<=" in op:
        return "<="
    if ">" in op or op in ("above", "greater"):
        return ">"
    if "<" in op or op in ("below", "less"):
        return "<"
    if op in ("=", "equals"):
        return "="
    return DEFAULT_OPERATOR


_PRICE_OPS: Dict[str, Callable[[Decimal, Decimal], bool]] = {
    ">": lambda v, t: v > t,
    "above": lambda v, t: v > t,
    "greater": lambda v, t: v > t,
    "<": lambda v, t: v < t,
    "below": lambda v, t: v < t,
    "less": lambda v, t: v < t,
    ">=": lambda v, t: v >= t,
    "<=": lambda v, t: v <= t,
    "=": lambda v, t: abs(v - t) < PRICE_EQUALITY_TOLERANCE,
    "equals": lambda v, t: abs(v - t) < PRICE_EQUALITY_TOLERANCE,
}


def _price(alert: Alert, snap: MarketSnapshot) -> Evaluation:
    threshold = _to_decimal(alert.threshold)
    cond = parse_condition(alert.condition)
    if threshold is None or cond is None or not cond.operator:
        return Evaluation(False, snap.price)
    compare = _PRICE_OPS.get(cond.operator.strip().lower())
    if compare is None:
        return Evaluation(False, snap.price)
    return Evaluation(compare(snap.price, threshold), snap.price)


def _volume(alert: Alert, snap: MarketSnapshot) -> Evaluation:
    threshold = _to_decimal(alert.threshold)
    if threshold is None or snap.volume is None:
        return Evaluation(False, Decimal(snap.volume or 0))
    # volume alerts are always "strictly above", whatever the operator says
    return Evaluation(snap.volume > int(threshold), Decimal(snap.volume))


def _never(alert: Alert, snap: MarketSnapshot) -> Evaluation:
    return Evaluation(False)


COMPARATORS: Dict[AlertType, Callable[[Alert, MarketSnapshot], Evaluation]] = {
    AlertType.PRICE: _price,
    AlertType.VOLUME: _volume,
}


def evaluate(alert: Alert, snapshot: Optional[MarketSnapshot]) -> Evaluation:
    if snapshot is None:
        return Evaluation(False)
    kind = alert.alert_type
    comparator = COMPARATORS.get(kind, _never) if kind is not None else _never
    try:
        return comparator(alert, snapshot)
    except Exception:
        logger.warning("condition evaluation failed for alert %s", alert.id, exc_info=True)
        return Evaluation(False)


def describe_condition(alert: Alert, operator: str) -> str:
    kind = alert.alert_type
    label = kind.name.replace("_", " ").title().replace(" ", "") if kind is not None else str(alert.type)
    threshold = _to_decimal(alert.threshold)
    shown = format(threshold.normalize(), "f") if threshold is not None else "?"
    return f"{label} {operator} {shown}"
