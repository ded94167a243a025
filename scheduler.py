# scheduler.py
from apscheduler.schedulers.background import BackgroundScheduler
from utils.backup import backup_database
from utils.cleanup import cleanup_old_logs
from utils.reports import generate_daily_report


def _in_context(app, func, *args):
    def job():
        with app.app_context():
            try:
                func(*args)
            except Exception as e:
                app.logger.error(f"Scheduled job {func.__name__} failed: {e}")
    job.__name__ = func.__name__
    return job


def start_scheduler(app):
    scheduler = BackgroundScheduler()

    scheduler.add_job(_in_context(app, backup_database, app.config['BACKUP_DIR']), 'interval', hours=6)
    scheduler.add_job(_in_context(app, generate_daily_report, app.config['REPORT_DIR']), 'cron', hour=20, minute=0)  # 8 PM
    scheduler.add_job(_in_context(app, cleanup_old_logs, app.config['LOG_DIR']), 'cron', hour=2, minute=0)  # 2 AM

    scheduler.start()
    app.logger.info("Maintenance scheduler started")
    return scheduler
