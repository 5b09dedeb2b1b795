"""
Weekly review reminder run

Meant for cron, e.g. every Monday morning:

    0 8 * * 1  python -m reminders
"""
import argparse
import logging
import sys
from datetime import date

from config import AppConfig
from database import DocumentStore, db
from emails import EmailDispatcher, SmtpTransport

logger = logging.getLogger("reminders")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Send the weekly goal review digest to supervisors")
    parser.add_argument("--today", type=date.fromisoformat, default=None,
                        help="Pretend today is this date (YYYY-MM-DD)")
    args = parser.parse_args(argv)

    config = AppConfig.from_env()
    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if db is None:
        logger.error("DATABASE_URL and DATABASE_NAME must be set")
        return 1
    dispatcher = EmailDispatcher(DocumentStore(db), SmtpTransport(config.email), config.email)
    summary = dispatcher.run_weekly_reminders(today=args.today)
    print(summary)
    return 0 if summary["failed"] == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
