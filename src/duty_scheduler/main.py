"""
Main Entry Point for the Duty Scheduler

Command-line access to the fairness engine against a JSON data file:
auto-distribution, turn order previews, fairness snapshots and exports.
"""

import argparse
import json
import sys
import logging
from pathlib import Path
from datetime import datetime
from typing import List, Optional

from .constraints import AssignmentLoad, week_key, month_key
from .data_manager import DataManager, DutySchedulerError, WorkInstance, TERMINAL_INSTANCE_STATUSES
from .fairness import FairnessScorer
from .scheduler_logic import AutoDistributor
from .selection_process import SelectionProcessService
from .turn_order import SelectionAlgorithm
from .reporting import ExportManager, REPORT_DISTRIBUTION, REPORT_FAIRNESS, REPORT_TURN_ORDER


def setup_logging(log_dir: str = "logs"):
    """Setup application logging"""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    log_file = log_path / f"duty_scheduler_{datetime.now().strftime('%Y%m%d')}.log"

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )

    return logging.getLogger(__name__)


def _parse_date(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date: {value!r} (expected YYYY-MM-DD or ISO datetime)")


def _split_ids(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="duty-scheduler",
        description="Balance recurring duties fairly across a roster."
    )
    parser.add_argument("--data-file", type=Path, default=Path("duty_data.json"),
                        help="JSON data file (default: duty_data.json).")
    parser.add_argument("--log-dir", default="logs", help="Directory for dated log files (default: logs).")
    subparsers = parser.add_subparsers(dest="command", required=True)

    distribute = subparsers.add_parser("distribute", help="Auto-assign a group's instances in a date range.")
    distribute.add_argument("--group", required=True, help="Roster group id.")
    distribute.add_argument("--start", type=_parse_date, default=None, help="First scheduled date to include.")
    distribute.add_argument("--end", type=_parse_date, default=None, help="Last scheduled date to include.")
    distribute.add_argument("--apply", action="store_true", help="Persist the assignments to the data file.")
    distribute.add_argument("--export", type=Path, default=None, help="Write the result to this file as well.")
    distribute.add_argument("--format", choices=["pdf", "excel", "csv"], default="excel")

    preview = subparsers.add_parser("preview-order", help="Preview the turn order of a selection occasion.")
    preview.add_argument("--group", required=True, help="Roster group id.")
    preview.add_argument("--algorithm", required=True, choices=[a.value for a in SelectionAlgorithm])
    preview.add_argument("--members", type=_split_ids, default=None,
                         help="Comma-separated participant ids (default: active roster).")
    preview.add_argument("--instances", type=_split_ids, default=None,
                         help="Comma-separated instance ids (default: unassigned instances of the group).")

    fairness = subparsers.add_parser("fairness", help="Show how evenly points are spread across a group.")
    fairness.add_argument("--group", required=True, help="Roster group id.")
    fairness.add_argument("--horizon-days", type=int, default=None, help="Override the memory horizon.")
    fairness.add_argument("--json", action="store_true", help="Print the full snapshot as JSON.")

    export = subparsers.add_parser("export", help="Export a fairness snapshot or an occasion's turn order.")
    export.add_argument("--report", required=True, choices=[REPORT_FAIRNESS, REPORT_TURN_ORDER])
    export.add_argument("--format", choices=["pdf", "excel", "csv"], default="excel")
    export.add_argument("--output", type=Path, required=True, help="Destination file.")
    export.add_argument("--group", help="Roster group id (fairness report).")
    export.add_argument("--occasion", help="Selection occasion id (turn order report).")

    return parser


def _scorer_for(data_manager: DataManager, group_id: str) -> FairnessScorer:
    return FairnessScorer(data_manager.get_fairness_config(group_id), data_manager.get_completions(group_id) or None)


def _stored_load(data_manager: DataManager, group_id: str, batch: List[WorkInstance]) -> AssignmentLoad:
    """Assignments outside the batch that share a week or month with it"""
    batch_ids = {instance.id for instance in batch}
    weeks = {week_key(instance.scheduled_at) for instance in batch}
    months = {month_key(instance.scheduled_at) for instance in batch}
    return AssignmentLoad.from_instances(
        instance for instance in data_manager.get_instances(group_id)
        if instance.id not in batch_ids and (
            week_key(instance.scheduled_at) in weeks or month_key(instance.scheduled_at) in months
        )
    )


def cmd_distribute(args, data_manager: DataManager) -> int:
    logger = logging.getLogger(__name__)
    # Finished work is already in the completion log
    instances = [
        instance for instance in data_manager.get_instances(args.group, start=args.start, end=args.end)
        if instance.status not in TERMINAL_INSTANCE_STATUSES
    ]
    if not instances:
        print(f"No open instances found for group {args.group}")
        return 0

    distributor = AutoDistributor(_scorer_for(data_manager, args.group))
    result = distributor.distribute(
        instances, data_manager.get_members(args.group), load=_stored_load(data_manager, args.group, instances)
    )

    exports = ExportManager(data_manager)
    print(exports.report_generator.create_distribution_summary(result))

    if args.apply:
        applied = data_manager.apply_distribution(result)
        logger.info(f"Saved {applied} new assignments to {data_manager.data_file}")

    if args.export is not None:
        if not exports.export_report(REPORT_DISTRIBUTION, args.format, str(args.export), result):
            print(f"Export to {args.export} failed; see the log for details", file=sys.stderr)
            return 1
    return 0


def cmd_preview_order(args, data_manager: DataManager) -> int:
    member_ids = args.members
    if member_ids is None:
        member_ids = [member.id for member in data_manager.get_members(args.group, active_only=True)]
    instance_ids = args.instances
    if instance_ids is None:
        instance_ids = [instance.id for instance in data_manager.get_instances(args.group, unassigned_only=True)]

    service = SelectionProcessService(data_manager)
    result = service.preview(args.group, member_ids, args.algorithm, instance_ids)

    print(f"Turn order ({result.algorithm.value}):")
    for index, member_id in enumerate(result.order, start=1):
        line = f"{index}. {result.display_names.get(member_id, member_id)}"
        if result.quotas:
            line += f" (quota {result.quotas[member_id]} pts)"
        print(line)
    if result.metadata.get("previous_occasion_id"):
        print(f"Based on occasion {result.metadata['previous_occasion_id']}")
    return 0


def cmd_fairness(args, data_manager: DataManager) -> int:
    scorer = _scorer_for(data_manager, args.group)
    distribution = scorer.distribution_summary(data_manager.get_members(args.group), args.horizon_days)

    if args.json:
        print(json.dumps(distribution.to_dict(), indent=2, ensure_ascii=False))
        return 0

    print(f"Fairness index: {distribution.fairness_index:.1f} | Gini: {distribution.gini_coefficient:.2f}")
    for member in distribution.members:
        print(f"• {member.display_name}: {member.total_points:.1f} pts "
              f"({member.percentage_of_total}%), {member.deviation_flag['description']}")
    return 0


def cmd_export(args, data_manager: DataManager) -> int:
    exports = ExportManager(data_manager)
    if args.report == REPORT_FAIRNESS:
        if not args.group:
            print("--group is required for the fairness report", file=sys.stderr)
            return 2
        subject = _scorer_for(data_manager, args.group).distribution_summary(data_manager.get_members(args.group))
    else:
        if not args.occasion:
            print("--occasion is required for the turn order report", file=sys.stderr)
            return 2
        subject = data_manager.get_occasion(args.occasion)
        if subject is None:
            print(f"Selection occasion {args.occasion} not found", file=sys.stderr)
            return 1

    if not exports.export_report(args.report, args.format, str(args.output), subject):
        print(f"Export to {args.output} failed; see the log for details", file=sys.stderr)
        return 1
    print(f"Exported {args.report} report to {args.output}")
    return 0


COMMANDS = {
    "distribute": cmd_distribute,
    "preview-order": cmd_preview_order,
    "fairness": cmd_fairness,
    "export": cmd_export,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logger = setup_logging(args.log_dir)
    logger.info(f"Running duty-scheduler {args.command}")

    try:
        data_manager = DataManager(str(args.data_file))
        return COMMANDS[args.command](args, data_manager)
    except DutySchedulerError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
