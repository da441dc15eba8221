"""
Alert evaluation engine.
"""

import logging
from typing import Optional

from cryptalert.data.fetcher import MarketSnapshot
from cryptalert.database.models import Alert, AlertType

logger = logging.getLogger(__name__)

__all__ = ["AlertEvaluator", "evaluate", "effective_average_volume"]


def effective_average_volume(alert: Alert, snapshot: MarketSnapshot) -> Optional[float]:
    """Baseline volume for a spike check; the current volume when unset."""
    if alert.average_volume is not None:
        return alert.average_volume
    return snapshot.volume


class AlertEvaluator:
    """Decides whether an alert's condition holds for a snapshot.

    Evaluation is pure: no I/O and no mutation of the alert.
    """

    def evaluate(self, alert: Alert, snapshot: MarketSnapshot) -> bool:
        """
        Evaluate an alert against a market snapshot.

        Args:
            alert: Alert to evaluate
            snapshot: Current market metrics for the alert's coin

        Returns:
            True if the alert's condition is met
        """
        alert_type = alert.type
        target = alert.target_value

        if alert_type == AlertType.PRICE_ABOVE:
            price = self._require(alert, "price", snapshot.price)
            return price is not None and price >= target

        elif alert_type == AlertType.PRICE_BELOW:
            price = self._require(alert, "price", snapshot.price)
            return price is not None and price <= target

        elif alert_type == AlertType.PERCENT_CHANGE:
            change = self._require(alert, "change_24h", snapshot.change_24h)
            if change is None:
                return False
            if alert.direction == "up":
                return change >= target
            return change <= -target

        elif alert_type == AlertType.VOLUME_SPIKE:
            volume = self._require(alert, "volume", snapshot.volume)
            if volume is None:
                return False
            return volume >= effective_average_volume(alert, snapshot) * target

        elif alert_type == AlertType.MARKET_CAP:
            market_cap = self._require(alert, "market_cap", snapshot.market_cap)
            if market_cap is None:
                return False
            if alert.direction == "above":
                return market_cap >= target
            return market_cap <= target

        else:
            logger.warning(f"Unknown alert type for alert {alert.id}: {alert_type}")
            return False

    def _require(
        self, alert: Alert, field_name: str, value: Optional[float]
    ) -> Optional[float]:
        if value is None:
            logger.debug(
                f"Skipping alert {alert.id}: snapshot for {alert.coin_id} "
                f"has no {field_name}"
            )
        return value


_default_evaluator = AlertEvaluator()


def evaluate(alert: Alert, snapshot: MarketSnapshot) -> bool:
    """Evaluate with a shared stateless evaluator."""
    return _default_evaluator.evaluate(alert, snapshot)
