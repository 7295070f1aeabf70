"""
Main Entry Point for the Shift Bidding core

Wires the components together and exposes the maintenance commands an
operator or scheduled job runs: metrics recalculation, period activation,
rank repair, assignment and calendar export and the recent activity feed.
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .activity_feed import ActivityFeed
from .claim_state_machine import ClaimStateMachine
from .config import Settings, load_settings
from .data_manager import BidLineError, DataManager
from .event_broadcaster import InMemoryEventBroadcaster
from .holiday_resolver import build_holiday_resolver
from .metrics_calculator import MetricsCalculator, MetricWeights, ShiftCategorizer
from .metrics_manager import MetricsManager
from .rank_ledger import RankLedger
from .reporting import EXPORT_FORMATS, ExportManager


def setup_logging(level: int = logging.INFO):
    """Setup application logging"""
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)

    log_file = log_dir / f"shift_bidding_{datetime.now().strftime('%Y%m%d')}.log"

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )

    return logging.getLogger(__name__)


def handle_exception(exc_type, exc_value, exc_traceback):
    """Global exception handler"""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    logging.getLogger(__name__).error(
        "Uncaught exception",
        exc_info=(exc_type, exc_value, exc_traceback)
    )


class ShiftBiddingApp:
    """Owns one instance of every component, built from settings"""

    def __init__(self, settings: Settings):
        self.logger = logging.getLogger(__name__)
        self.settings = settings
        self.data_manager = None
        self.holiday_resolver = None
        self.metrics_manager = None
        self.rank_ledger = None
        self.claims = None
        self.broadcaster = None
        self.activity_feed = None
        self.export_manager = None

    def initialize(self):
        """Initialize application components"""
        self.logger.info("Initializing Shift Bidding core")

        self.data_manager = DataManager(self.settings.database_url, cycle_length=self.settings.cycle_length)

        self.holiday_resolver = build_holiday_resolver(self.settings.holiday_filter)
        calculator = MetricsCalculator(ShiftCategorizer(self.settings.category_boundaries))
        self.metrics_manager = MetricsManager(
            self.data_manager,
            self.holiday_resolver,
            calculator,
            MetricWeights.from_dict(self.settings.metric_weights),
        )

        self.rank_ledger = RankLedger(
            self.data_manager,
            retry_attempts=self.settings.rank_retry_attempts,
            retry_delay=self.settings.rank_retry_delay,
        )
        self.broadcaster = InMemoryEventBroadcaster()
        self.claims = ClaimStateMachine(
            self.data_manager,
            broadcaster=self.broadcaster,
            can_claim_lines=self.settings.can_claim_lines,
        )
        self.activity_feed = ActivityFeed(
            self.data_manager,
            default_limit=self.settings.activity_feed_limit,
            default_hours=self.settings.activity_feed_hours,
        )
        self.export_manager = ExportManager(self.data_manager)
        self.logger.info("All components initialized")

    def cleanup(self):
        """Cleanup application resources"""
        if self.data_manager:
            self.data_manager.dispose()

    # Commands
    def recalculate_metrics(self, bid_period_id: Optional[int] = None) -> int:
        if bid_period_id is None:
            period = self.data_manager.get_active_bid_period()
            if period is None:
                print("No active bid period; pass --period")
                return 1
            bid_period_id = period.id

        summary = self.metrics_manager.recalculate_period(bid_period_id)
        print(f"Period {bid_period_id}: {summary.updated} updated, {summary.skipped} skipped")
        if summary.skipped_lines:
            print(f"Skipped lines: {', '.join(summary.skipped_lines)}")
        return 0

    def activate_period(self, bid_period_id: int) -> int:
        summary = self.metrics_manager.activate_bid_period(bid_period_id)
        print(f"Activated period {bid_period_id}: {summary.updated} metrics updated, {summary.skipped} skipped")
        return 0

    def repair_ranks(self, user_id: Optional[int] = None) -> int:
        repaired = self.rank_ledger.repair_ranks(user_id)
        if not repaired:
            print("All favorite ranks are already dense")
        for uid, changed in sorted(repaired.items()):
            print(f"User {uid}: renumbered {changed} favorite(s)")
        return 0

    def export_assignments(self, bid_period_id: int, output_path: str, format_type: str) -> int:
        ok = self.export_manager.export("assignments", format_type, bid_period_id, output_path)
        print(f"Exported assignments to {output_path}" if ok else "Export failed, see the log for details")
        return 0 if ok else 1

    def export_calendar(self, bid_line_id: int, output_path: str) -> int:
        ok = self.export_manager.export_ical(bid_line_id, output_path)
        print(f"Exported calendar for line {bid_line_id} to {output_path}" if ok
              else "Export failed, see the log for details")
        return 0 if ok else 1

    def show_activity(self, limit: Optional[int] = None, hours: Optional[int] = None) -> int:
        entries = self.activity_feed.recent(limit=limit, hours=hours)
        if not entries:
            print("No recent activity")
        for entry in entries:
            print(f"{entry.timestamp:%Y-%m-%d %H:%M} {entry.type:<8} {entry.operation_name} "
                  f"line {entry.line_number} -> {entry.status} ({entry.actor_name})")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shift-bidding", description="Shift bidding maintenance commands")
    parser.add_argument("--config", help="Path to a JSON settings file")
    parser.add_argument("--database", help="Database URL, overrides the settings file")
    parser.add_argument("--verbose", action="store_true", help="Log debug output")

    commands = parser.add_subparsers(dest="command", required=True)

    recalc = commands.add_parser("recalculate-metrics", help="Recompute cached metrics for a bid period")
    recalc.add_argument("--period", type=int, help="Bid period id (defaults to the active period)")

    activate = commands.add_parser("activate-period", help="Activate a bid period and recompute its metrics")
    activate.add_argument("period", type=int)

    repair = commands.add_parser("repair-ranks", help="Renumber favorite ranks densely")
    repair.add_argument("--user", type=int, help="Only repair this user")

    export = commands.add_parser("export-assignments", help="Export line assignments for a bid period")
    export.add_argument("period", type=int)
    export.add_argument("output")
    export.add_argument("--format", choices=EXPORT_FORMATS, default="excel")

    calendar = commands.add_parser("export-calendar", help="Export a bid line's schedule as an iCalendar file")
    calendar.add_argument("bid_line", type=int)
    calendar.add_argument("output", help="File path, or an existing directory for the default filename")

    activity = commands.add_parser("activity", help="Show recent bid line activity")
    activity.add_argument("--limit", type=int)
    activity.add_argument("--hours", type=int)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    sys.excepthook = handle_exception
    logger = setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        settings = load_settings(args.config)
        if args.database:
            settings.database_url = args.database

        app = ShiftBiddingApp(settings)
        app.initialize()
    except BidLineError as e:
        logger.error(f"Failed to initialize: {e}")
        return 2

    try:
        if args.command == "recalculate-metrics":
            return app.recalculate_metrics(args.period)
        if args.command == "activate-period":
            return app.activate_period(args.period)
        if args.command == "repair-ranks":
            return app.repair_ranks(args.user)
        if args.command == "export-assignments":
            return app.export_assignments(args.period, args.output, args.format)
        if args.command == "export-calendar":
            return app.export_calendar(args.bid_line, args.output)
        if args.command == "activity":
            return app.show_activity(args.limit, args.hours)
        return 2
    except BidLineError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    finally:
        app.cleanup()


if __name__ == "__main__":
    sys.exit(main())
