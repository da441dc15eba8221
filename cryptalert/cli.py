"""
CLI commands for CryptAlert.
"""

import argparse
import asyncio
import json
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()

from cryptalert.alerts.store import SORT_OPTIONS, AlertStore
from cryptalert.database.connection import Database
from cryptalert.database.models import (
    Alert,
    AlertStatus,
    AlertType,
    NotificationStatus,
    RepeatOption,
)
from cryptalert.database.repository import NotificationRepository, PreferencesRepository
from cryptalert.errors import CryptAlertError
from cryptalert.notifications.router import NotificationRouter


def add_alert(
    store: AlertStore,
    coin_id: str,
    coin_symbol: str,
    alert_type: str,
    target_value: float,
    direction: Optional[str] = None,
    repeat: str = "once",
    name: Optional[str] = None,
    channels: Optional[list[str]] = None,
) -> Alert:
    """Create an alert from command line values."""
    data: dict[str, Any] = {
        "coinId": coin_id,
        "coinSymbol": coin_symbol,
        "type": alert_type,
        "targetValue": target_value,
        "repeat": repeat,
    }
    if direction:
        data["direction"] = direction
    if name:
        data["name"] = name
    if channels:
        data["notificationChannels"] = channels
    return store.create(data)


def format_alert(alert: Alert) -> str:
    direction = f" {alert.direction}" if alert.direction else ""
    label = f" \"{alert.name}\"" if alert.name else ""
    return (
        f"{alert.id}{label}: {alert.coin_symbol.upper()} {alert.type.value}{direction} "
        f"{alert.target_value} [{alert.status.value}, repeat={alert.repeat.value}]"
    )


def export_alerts(store: AlertStore, output: Optional[str] = None) -> str:
    """Export alerts to a file, or return the JSON when no file is given."""
    snapshot = store.export_alerts()
    if output:
        with open(output, "w") as f:
            f.write(snapshot)
    return snapshot


def import_alerts(store: AlertStore, path: str, replace: bool = False) -> dict:
    """Import alerts from an export file."""
    with open(path) as f:
        return store.import_alerts(f.read(), merge=not replace)


def main(argv: Optional[list[str]] = None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="CryptAlert CLI")
    parser.add_argument("--db", default="data/cryptalert.db", help="Database path")
    parser.add_argument("--user", default="default", help="User ID")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Alert commands
    alerts_parser = subparsers.add_parser("alerts", help="Alert management")
    alerts_subparsers = alerts_parser.add_subparsers(dest="action")

    add_parser = alerts_subparsers.add_parser("add", help="Add alert")
    add_parser.add_argument("--coin", required=True, help="Coin ID (e.g. bitcoin)")
    add_parser.add_argument("--symbol", required=True, help="Coin symbol (e.g. BTC)")
    add_parser.add_argument(
        "--type", required=True, choices=[t.value for t in AlertType]
    )
    add_parser.add_argument("--target", type=float, required=True, help="Target value")
    add_parser.add_argument("--direction", help="up/down or above/below")
    add_parser.add_argument(
        "--repeat", default="once", choices=[r.value for r in RepeatOption]
    )
    add_parser.add_argument("--name", help="Alert label")
    add_parser.add_argument("--channels", help="Comma-separated delivery channels")

    list_parser = alerts_subparsers.add_parser("list", help="List alerts")
    list_parser.add_argument("--status", choices=[s.value for s in AlertStatus])
    list_parser.add_argument("--coin", help="Coin ID filter")
    list_parser.add_argument("--type", choices=[t.value for t in AlertType])
    list_parser.add_argument("--sort", default="created_desc", choices=list(SORT_OPTIONS))

    for action in ("delete", "enable", "disable"):
        action_parser = alerts_subparsers.add_parser(action, help=f"{action.title()} alert")
        action_parser.add_argument("alert_id", help="Alert ID")

    export_parser = alerts_subparsers.add_parser("export", help="Export alerts")
    export_parser.add_argument("--output", help="Output file (stdout if omitted)")

    import_parser = alerts_subparsers.add_parser("import", help="Import alerts")
    import_parser.add_argument("path", help="Export file")
    import_parser.add_argument(
        "--replace", action="store_true", help="Replace all alerts instead of merging"
    )

    alerts_subparsers.add_parser("stats", help="Alert counts by status")

    # History commands
    history_parser = subparsers.add_parser("history", help="Trigger history")
    history_subparsers = history_parser.add_subparsers(dest="action")
    history_list_parser = history_subparsers.add_parser("list", help="List history")
    history_list_parser.add_argument("--coin", help="Coin ID filter")
    history_list_parser.add_argument("--limit", type=int, help="Max entries")
    history_list_parser.add_argument("--oldest", action="store_true", help="Oldest first")
    history_subparsers.add_parser("clear", help="Clear history")

    # Notification commands
    notif_parser = subparsers.add_parser("notifications", help="Notification management")
    notif_subparsers = notif_parser.add_subparsers(dest="action")
    notif_list_parser = notif_subparsers.add_parser("list", help="List notifications")
    notif_list_parser.add_argument(
        "--status", choices=[s.value for s in NotificationStatus]
    )
    notif_list_parser.add_argument("--limit", type=int, default=50)
    read_parser = notif_subparsers.add_parser("read", help="Mark notification read")
    read_parser.add_argument("notification_id", help="Notification ID")
    notif_subparsers.add_parser("read-all", help="Mark all notifications read")
    notif_subparsers.add_parser("clear", help="Delete all notifications")
    prefs_parser = notif_subparsers.add_parser("prefs", help="Show or update preferences")
    prefs_parser.add_argument("--set", help="JSON patch, e.g. '{\"groupSimilar\": false}'")

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("status", help="Check database status")
    db_subparsers.add_parser("migrate", help="Create missing tables")

    args = parser.parse_args(argv)

    # Initialize database
    db = Database(args.db)
    db.initialize()

    store = AlertStore(db, user_id=args.user)
    router = NotificationRouter(
        NotificationRepository(db, args.user), PreferencesRepository(db, args.user)
    )

    try:
        if args.command == "alerts":
            if args.action == "add":
                alert = add_alert(
                    store,
                    coin_id=args.coin,
                    coin_symbol=args.symbol,
                    alert_type=args.type,
                    target_value=args.target,
                    direction=args.direction,
                    repeat=args.repeat,
                    name=args.name,
                    channels=[c.strip() for c in args.channels.split(",")] if args.channels else None,
                )
                print(f"Created alert with ID: {alert.id}")
            elif args.action == "list":
                alerts = store.list(
                    status=args.status, coin_id=args.coin, alert_type=args.type, sort=args.sort
                )
                for alert in alerts:
                    print(format_alert(alert))
                if not alerts:
                    print("No alerts")
            elif args.action == "delete":
                if store.delete(args.alert_id):
                    print(f"Deleted alert {args.alert_id}")
                else:
                    print(f"Alert not found: {args.alert_id}")
            elif args.action == "enable":
                print(format_alert(store.enable(args.alert_id)))
            elif args.action == "disable":
                print(format_alert(store.disable(args.alert_id)))
            elif args.action == "export":
                snapshot = export_alerts(store, args.output)
                if args.output:
                    print(f"Exported alerts to {args.output}")
                else:
                    print(snapshot)
            elif args.action == "import":
                result = import_alerts(store, args.path, replace=args.replace)
                print(f"Imported: {result['imported']}, invalid: {result['invalid']}")
                for item in result["invalidAlerts"]:
                    print(f"  {item['error']}")
            elif args.action == "stats":
                print(json.dumps(store.get_stats()))

        elif args.command == "history":
            if args.action == "list":
                entries = store.list_history(
                    coin_id=args.coin,
                    sort="oldest" if args.oldest else "newest",
                    limit=args.limit,
                )
                for entry in entries:
                    print(
                        f"{entry.triggered_at:%Y-%m-%d %H:%M:%S} {entry.coin_symbol.upper()} "
                        f"{entry.type.value} {entry.target_value} (price {entry.price})"
                    )
            elif args.action == "clear":
                store.clear_history()
                print("History cleared")

        elif args.command == "notifications":
            if args.action == "list":
                status = NotificationStatus(args.status) if args.status else None
                for n in router.get_all_notifications(status=status, limit=args.limit):
                    count = f" (x{n.group.count})" if n.group else ""
                    print(f"{n.id} [{n.status.value}] {n.title}{count}")
            elif args.action == "read":
                if asyncio.run(router.mark_as_read(args.notification_id)):
                    print(f"Marked {args.notification_id} as read")
                else:
                    print(f"Notification not found: {args.notification_id}")
            elif args.action == "read-all":
                changed = asyncio.run(router.mark_all_as_read())
                print(f"Marked {changed} notifications as read")
            elif args.action == "clear":
                print(f"Deleted {router.clear_notifications()} notifications")
            elif args.action == "prefs":
                if args.set:
                    preferences = router.update_preferences(json.loads(args.set))
                else:
                    preferences = router.get_preferences()
                print(json.dumps(preferences.to_dict(), indent=2))

        elif args.command == "db":
            if args.action == "status":
                print(f"Database initialized ({store.get_stats()['total']} alerts)")
            elif args.action == "migrate":
                db.initialize()
                print("Migrations applied")

        else:
            parser.print_help()

    except CryptAlertError as e:
        print(f"Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
