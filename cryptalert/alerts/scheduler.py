"""
Periodic and push-driven alert evaluation.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Optional

from cryptalert.alerts.store import AlertStore
from cryptalert.data.fetcher import MarketDataSource, MarketSnapshot
from cryptalert.database.models import (
    Alert,
    AlertStatus,
    AlertType,
    Notification,
    NotificationAction,
    NotificationPriority,
    NotificationType,
    RepeatOption,
)
from cryptalert.errors import NetworkError, NotFound
from cryptalert.events import EventBus
from cryptalert.notifications.router import NotificationRouter
from cryptalert.rules.engine import AlertEvaluator
from cryptalert.rules.state import reactivation_time, repeat_delay
from cryptalert.scheduling import TaskScheduler

logger = logging.getLogger(__name__)

CHECK_TASK = "alerts.check"
MARKET_UPDATE_TOPIC = "market.price_update"


def _money(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    return f"${value:,.2f}"


def _percent(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    return f"{value:+.2f}%"


def build_alert_notification(alert: Alert, snapshot: MarketSnapshot) -> Notification:
    """Create the price_alert notification for a triggered alert."""
    symbol = alert.coin_symbol.upper()
    target = alert.target_value

    if alert.type == AlertType.PRICE_ABOVE:
        title = f"{symbol} above {_money(target)}"
        description = f"{symbol} rose above {_money(target)}. Current price: {_money(snapshot.price)}"
    elif alert.type == AlertType.PRICE_BELOW:
        title = f"{symbol} below {_money(target)}"
        description = f"{symbol} fell below {_money(target)}. Current price: {_money(snapshot.price)}"
    elif alert.type == AlertType.PERCENT_CHANGE:
        word = "up" if alert.direction == "up" else "down"
        title = f"{symbol} {word} {target}% in 24h"
        description = f"{symbol} changed {_percent(snapshot.change_24h)} in the last 24 hours"
    elif alert.type == AlertType.VOLUME_SPIKE:
        title = f"{symbol} volume spike"
        description = (
            f"{symbol} 24h volume reached {_money(snapshot.volume)}, "
            f"{target}x the baseline of {_money(alert.average_volume)}"
        )
    else:
        word = "above" if alert.direction == "above" else "below"
        title = f"{symbol} market cap {word} {_money(target)}"
        description = f"{symbol} market cap is now {_money(snapshot.market_cap)}"

    return Notification(
        type=NotificationType.PRICE_ALERT,
        title=title,
        description=description,
        data={
            "alertId": alert.id,
            "coinId": alert.coin_id,
            "coinSymbol": alert.coin_symbol,
            "alertType": alert.type.value,
            "targetValue": alert.target_value,
            **snapshot.to_triggered_data(),
        },
        actions=[
            NotificationAction(
                label="View details", action="view", url=f"/crypto/{alert.coin_id}"
            ),
            NotificationAction(
                label="Edit alert", action="edit", url=f"/tools/alerts?edit={alert.id}"
            ),
        ],
        priority=NotificationPriority.HIGH,
        timestamp=alert.triggered_at or datetime.now(),
    )


class AlertScheduler:
    """Drives alert evaluation for one user.

    The periodic tick fetches one snapshot per coin that has evaluable
    alerts. Pushed market updates evaluate a single coin right away
    unless that coin is already being evaluated by the tick.
    """

    def __init__(
        self,
        store: AlertStore,
        data_source: MarketDataSource,
        router: NotificationRouter,
        timers: TaskScheduler,
        evaluator: Optional[AlertEvaluator] = None,
        check_interval: float = 60,
        fetch_timeout: float = 30,
        events: Optional[EventBus] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            store: Alert store of the user
            data_source: Market data provider
            router: Notification router of the user
            timers: Owner of the tick and repeat timers
            evaluator: Condition evaluator
            check_interval: Seconds between periodic checks
            fetch_timeout: Upper bound for one coin fetch in seconds
            events: Bus carrying pushed market updates
        """
        self.store = store
        self.data_source = data_source
        self.router = router
        self.timers = timers
        self.evaluator = evaluator or AlertEvaluator()
        self.check_interval = check_interval
        self.fetch_timeout = fetch_timeout
        self.events = events
        self.online = True
        self.running = False

        self._in_progress: set[str] = set()
        self._last_trigger: dict[str, tuple] = {}
        self._subscriptions: list = []

    def start(self) -> None:
        """Restore repeat timers and begin periodic checks (first one immediately)."""
        if self.running:
            return
        self.running = True

        self.restore_repeat_timers()
        if self.events is not None:
            self._subscriptions = [
                self.events.subscribe(MARKET_UPDATE_TOPIC, self._on_market_event),
                self.events.subscribe("alerts.updated", self._on_alert_updated),
                self.events.subscribe("alerts.deleted", self._on_alert_deleted),
            ]
        if self.online:
            self._start_tick()
        logger.info(f"Alert scheduler started (interval {self.check_interval}s)")

    def stop(self) -> None:
        """Cancel every timer owned by the scheduler.

        A check that is already running finishes its deliveries.
        """
        self.running = False
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []
        self.timers.cancel(CHECK_TASK)
        self.timers.cancel_prefix("repeat:")
        logger.info("Alert scheduler stopped")

    def set_online(self, online: bool) -> None:
        """Pause the tick while offline; resume with an immediate check.

        Going offline only stops future ticks, a check in progress completes.
        """
        if online == self.online:
            return
        self.online = online

        if not self.running:
            return
        if online:
            logger.info("Back online, resuming alert checks")
            self._start_tick()
        else:
            logger.info("Offline, pausing alert checks")
            self.timers.cancel(CHECK_TASK)

    async def check_alerts(self) -> int:
        """
        Run one evaluation pass over every evaluable alert.

        Returns:
            Number of alerts triggered
        """
        for alert in self.store.expire_due():
            self.forget(alert.id)

        by_coin: dict[str, list[Alert]] = defaultdict(list)
        for alert in self.store.list_evaluable():
            by_coin[alert.coin_id].append(alert)

        if not by_coin:
            self.store.update_stats()
            return 0

        logger.debug(f"Checking alerts for {len(by_coin)} coins")
        results = await asyncio.gather(
            *(self._check_coin(coin_id) for coin_id in by_coin)
        )
        self.store.update_stats()

        triggered = sum(results)
        if triggered:
            logger.info(f"{triggered} alerts triggered")
        return triggered

    async def on_market_update(self, coin_id: str, snapshot: MarketSnapshot) -> int:
        """Evaluate one coin's alerts against a pushed snapshot."""
        for alert in self.store.expire_due():
            self.forget(alert.id)

        if coin_id in self._in_progress:
            logger.debug(f"Skipping pushed update for {coin_id}: check in progress")
            return 0

        self._in_progress.add(coin_id)
        try:
            triggered = await self._evaluate_coin(coin_id, snapshot)
        finally:
            self._in_progress.discard(coin_id)

        if triggered:
            self.store.update_stats()
        return triggered

    async def _check_coin(self, coin_id: str) -> int:
        if coin_id in self._in_progress:
            return 0

        self._in_progress.add(coin_id)
        try:
            snapshot = await self._fetch(coin_id)
            if snapshot is None:
                return 0
            return await self._evaluate_coin(coin_id, snapshot)
        finally:
            self._in_progress.discard(coin_id)

    async def _fetch(self, coin_id: str) -> Optional[MarketSnapshot]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.data_source.get_coin_data, coin_id),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Timed out fetching {coin_id}, skipped this check")
        except NotFound as e:
            logger.warning(f"No market data for {coin_id}: {e}")
        except NetworkError as e:
            logger.warning(f"Failed to fetch {coin_id}: {e}")
        except Exception:
            logger.exception(f"Unexpected error fetching {coin_id}, skipped this check")
        return None

    async def _evaluate_coin(self, coin_id: str, snapshot: MarketSnapshot) -> int:
        # Re-read so alerts changed since the fetch started are honoured
        triggered = 0
        for alert in self.store.list_evaluable(coin_id):
            try:
                if await self._evaluate_alert(alert, snapshot):
                    triggered += 1
            except Exception:
                logger.exception(f"Failed to evaluate alert {alert.id}")
        return triggered

    async def _evaluate_alert(self, alert: Alert, snapshot: MarketSnapshot) -> bool:
        if alert.type == AlertType.VOLUME_SPIKE and alert.average_volume is None:
            if snapshot.volume is not None and snapshot.volume > 0:
                alert = self.store.set_average_volume(alert.id, snapshot.volume) or alert
                logger.info(f"Baseline volume for alert {alert.id} set to {snapshot.volume}")

        if self._last_trigger.get(alert.id) == snapshot.key:
            return False
        if not self.evaluator.evaluate(alert, snapshot):
            return False

        triggered = self.store.mark_triggered(alert.id, snapshot)
        if triggered is None:
            return False
        self._last_trigger[alert.id] = snapshot.key

        self.store.record_trigger(triggered, snapshot)
        logger.info(f"Alert {triggered.id} triggered for {triggered.coin_id}")

        self._schedule_repeat(triggered)

        await self.router.dispatch(
            build_alert_notification(triggered, snapshot),
            channels=triggered.notification_channels,
        )
        return True

    def _schedule_repeat(self, alert: Alert) -> None:
        if alert.repeat == RepeatOption.ONCE:
            return
        if alert.repeat == RepeatOption.ALWAYS:
            self.store.reactivate(alert.id)
            return

        delay = repeat_delay(alert.repeat)
        self.timers.call_later(
            f"repeat:{alert.id}",
            delay.total_seconds(),
            lambda: self._reactivate(alert.id),
        )

    def forget(self, alert_id: str) -> None:
        """Drop the duplicate-trigger guard kept for an alert."""
        self._last_trigger.pop(alert_id, None)

    def _reactivate(self, alert_id: str) -> None:
        self.forget(alert_id)
        if self.store.reactivate(alert_id):
            logger.info(f"Alert {alert_id} reactivated")

    def restore_repeat_timers(self) -> None:
        """Schedule the re-arm of every triggered repeating alert, or re-arm it if overdue."""
        now = self.store.clock()
        for alert in self.store.list(status="triggered"):
            due = reactivation_time(alert)
            if due is None:
                continue
            if due <= now:
                self._reactivate(alert.id)
            else:
                self.timers.call_later(
                    f"repeat:{alert.id}",
                    (due - now).total_seconds(),
                    lambda alert_id=alert.id: self._reactivate(alert_id),
                )

    def _start_tick(self) -> None:
        self.timers.every(CHECK_TASK, self.check_interval, self.check_alerts)

    def _on_market_event(self, payload: dict):
        return self.on_market_update(payload["coinId"], payload["snapshot"])

    def _on_alert_updated(self, payload: dict) -> None:
        alert, previous = payload["alert"], payload["previous"]
        if alert.status != previous.status and alert.status != AlertStatus.TRIGGERED:
            self.forget(alert.id)

    def _on_alert_deleted(self, payload: dict) -> None:
        self.forget(payload["alert"].id)
