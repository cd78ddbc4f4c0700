"""Scheduler エントリポイント: python -m app.scheduler で起動"""
import signal
import sys
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.scheduler.catalog_sync import catalog_sync_job
from app.scheduler.stale_schedule_checker import check_stale_scheduled_changes

setup_logging(debug=settings.DEBUG)
logger = get_logger("scheduler")

scheduler = BlockingScheduler(timezone="UTC")


def signal_handler(sig, frame):
    logger.info("Scheduler停止シグナル受信")
    scheduler.shutdown(wait=False)
    sys.exit(0)


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def main():
    logger.info("Scheduler起動")

    # 毎時: カタログ同期
    scheduler.add_job(
        catalog_sync_job,
        CronTrigger(minute=settings.CATALOG_SYNC_CRON_MINUTE, timezone="UTC"),
        id="catalog_sync",
        max_instances=1,
    )

    # 30分ごと: 予約プラン変更の取りこぼし検知 (ログのみ)
    scheduler.add_job(
        check_stale_scheduled_changes,
        CronTrigger(minute="*/30", timezone="UTC"),
        id="stale_schedule_checker",
        max_instances=1,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler終了")


if __name__ == "__main__":
    main()
