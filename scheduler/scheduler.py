#!/usr/bin/env python3
"""
Alerts Scheduler
Triggers the daily alert run on a cron schedule in the configured timezone

Schedules:
- Daily: alert run (ALERTS_SCHEDULE_CRON, default 25 8 * * * in APP_TIMEZONE)

A failed run is logged and left for the next tick; the job never retries on its own.
"""

import sys
import logging
import argparse
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from alerts_core.config import AlertsConfig, setup_logging
from alerts_core.engine import AlertRunOrchestrator
from alerts_core.exceptions import AlertsEngineError, RunInProgressError

logger = logging.getLogger(__name__)

JOB_ID = 'daily_alerts'

# Job tracking
metrics = {
    'last_run': None,
    'last_status': None,
    'runs_count': 0,
    'last_error': None,
}


def update_metrics(status, error=None):
    """Update job tracking after each run"""
    metrics['last_run'] = datetime.now(timezone.utc).isoformat()
    metrics['last_status'] = status
    metrics['runs_count'] += 1
    metrics['last_error'] = str(error) if error else None


def run_alerts_job(orchestrator: AlertRunOrchestrator) -> bool:
    """Run alerts once; fatal errors are logged, never raised into the scheduler"""
    logger.info("Starting scheduled alert run")
    try:
        summary = orchestrator.run_once()
    except RunInProgressError as e:
        logger.warning(f"Skipping tick, run already in progress: {e}")
        update_metrics('skipped', e)
        return False
    except AlertsEngineError as e:
        logger.error(f"Scheduled alert run failed at stage {e.stage}: {e.message}", exc_info=True)
        update_metrics('failed', e)
        return False

    logger.info(f"Scheduled alert run {summary.run_id} finished: {summary.alert_count} alerts "
                f"({summary.inserted} inserted, {summary.updated} updated)")
    update_metrics('success')
    return True


def build_scheduler(config: AlertsConfig, orchestrator: AlertRunOrchestrator) -> BlockingScheduler:
    """Scheduler with the single daily alerts job registered"""
    scheduler = BlockingScheduler(timezone=config.app_timezone)
    scheduler.add_job(
        run_alerts_job,
        CronTrigger.from_crontab(config.schedule_cron, timezone=config.app_timezone),
        args=[orchestrator],
        id=JOB_ID,
        name='Daily Alerts',
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    return scheduler


def main(argv=None, orchestrator: Optional[AlertRunOrchestrator] = None):
    """Main scheduler entry point"""
    parser = argparse.ArgumentParser(description='Alerts Scheduler')
    parser.add_argument('--run-once', action='store_true',
                        help='Run the alert job once and exit')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show scheduled jobs without starting scheduler')
    args = parser.parse_args(argv)

    config = AlertsConfig()
    setup_logging(config.log_level)

    if not config.enable_scheduler and not args.run_once:
        logger.info("Scheduler disabled (ENABLE_SCHEDULER=false), exiting")
        return 0

    orchestrator = orchestrator or AlertRunOrchestrator.from_config(config)

    if args.run_once:
        logger.info("RUN ONCE: Running alert job and exiting")
        return 0 if run_alerts_job(orchestrator) else 1

    scheduler = build_scheduler(config, orchestrator)

    if args.dry_run:
        logger.info("=" * 60)
        logger.info("DRY RUN MODE - Scheduled Jobs")
        logger.info("=" * 60)
        for job in scheduler.get_jobs():
            logger.info(f"{job.name} ({job.id}): {job.trigger}")
        logger.info("=" * 60)
        return 0

    logger.info("=" * 60)
    logger.info("Alerts Scheduler started")
    logger.info(f"Daily alerts: '{config.schedule_cron}' ({config.app_timezone})")
    logger.info("=" * 60)

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
    return 0


if __name__ == '__main__':
    sys.exit(main())
