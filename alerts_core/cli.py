"""
CLI interface for the Alerts Engine
"""
import sys
import argparse
import logging

from alerts_core.config import AlertsConfig, setup_logging
from alerts_core.engine import AlertRunOrchestrator
from alerts_core.exceptions import AlertsEngineError
from alerts_core.repository import create_repository
from alerts_core.rules import create_rule_store
from services.alert_engine import validate_condition

logger = logging.getLogger(__name__)


def cmd_run(args):
    """Run the alert evaluation once"""
    config = AlertsConfig()
    orchestrator = AlertRunOrchestrator.from_config(config)

    try:
        summary = orchestrator.run_once()
    except AlertsEngineError as e:
        print("\n" + "=" * 60)
        print("ALERT RUN FAILED")
        print("=" * 60)
        print(f"Stage: {e.stage or 'unknown'}")
        print(f"Error: {e.message}")
        print("=" * 60)
        return 1

    print("\n" + "=" * 60)
    print("ALERT RUN RESULTS")
    print("=" * 60)
    print(f"Run ID: {summary.run_id}")
    print(f"Rules evaluated: {summary.rules_evaluated}")
    print(f"Rules skipped: {summary.rules_skipped}")
    print(f"Alerts triggered: {summary.alert_count}")
    print(f"  Inserted: {summary.inserted}")
    print(f"  Updated: {summary.updated}")
    print(f"Duration: {summary.duration_seconds:.2f}s")

    if summary.alerts_by_level:
        print("\nAlerts by level:")
        for level, count in summary.alerts_by_level.items():
            print(f"  {level}: {count}")

    if summary.errors:
        print("\nSkipped rules:")
        for error in summary.errors:
            print(f"  {error['alert_id']}: {error['error']}")

    print("=" * 60)
    return 0


def cmd_recent(args):
    """Show the most recent alerts"""
    config = AlertsConfig()
    repo = create_repository(config)
    alerts = repo.get_recent(limit=args.limit)

    print("\n" + "=" * 60)
    print(f"RECENT ALERTS ({len(alerts)})")
    print("=" * 60)
    for alert in alerts:
        print(f"{alert.ts.isoformat()}  [{alert.level.value.upper():5}]  {alert.alert_id}: {alert.message}")
    print("=" * 60)
    return 0


def cmd_rules(args):
    """List active rules"""
    config = AlertsConfig()
    rules = create_rule_store(config).get_active_rules()

    print("\n" + "=" * 60)
    print(f"ACTIVE RULES ({len(rules)})")
    print("=" * 60)
    for rule in rules:
        print(f"{rule.alert_id} [{rule.level.value}] {rule.type.value}: {rule.metric_id} {rule.condition}")
    print("=" * 60)
    return 0


def cmd_validate_rules(args):
    """Parse every rule condition and report the invalid ones"""
    config = AlertsConfig()
    rules = create_rule_store(config).get_active_rules()

    invalid = [rule for rule in rules if not validate_condition(rule.condition)]

    print("\n" + "=" * 60)
    print("RULE VALIDATION")
    print("=" * 60)
    print(f"Rules checked: {len(rules)}")
    print(f"Invalid conditions: {len(invalid)}")
    for rule in invalid:
        print(f"  {rule.alert_id}: {rule.condition}")
    print("=" * 60)

    return 0 if not invalid else 1


def cmd_init_db(args):
    """Create the alert store schema"""
    config = AlertsConfig()
    repo = create_repository(config)
    repo.initialize()
    print(f"Alert store initialized ({config.describe_database()})")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description='Alerts Engine CLI')
    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # run command
    run_parser = subparsers.add_parser('run', help='Evaluate all active rules once')
    run_parser.set_defaults(func=cmd_run)

    # recent command
    recent_parser = subparsers.add_parser('recent', help='Show recent alerts')
    recent_parser.add_argument('--limit', type=int, default=20, help='Number of alerts to show')
    recent_parser.set_defaults(func=cmd_recent)

    # rules command
    rules_parser = subparsers.add_parser('rules', help='List active rules')
    rules_parser.set_defaults(func=cmd_rules)

    # validate-rules command
    validate_parser = subparsers.add_parser('validate-rules', help='Check every rule condition parses')
    validate_parser.set_defaults(func=cmd_validate_rules)

    # init-db command
    init_parser = subparsers.add_parser('init-db', help='Create the alert store schema')
    init_parser.set_defaults(func=cmd_init_db)

    args = parser.parse_args(argv)

    setup_logging()

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except Exception as e:
        logger.error(f"Command failed: {e}", exc_info=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
