# utils/backup.py
import logging
import os
import shutil
import subprocess
from datetime import datetime

from models import db

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "walkflow_backup"


def backup_database(backup_dir="backups", keep=10):
    os.makedirs(backup_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_path = os.path.join(backup_dir, f"{BACKUP_PREFIX}_{timestamp}.db")
    url = db.engine.url

    if url.drivername == 'sqlite':
        if not url.database or url.database == ':memory:':
            logger.warning("In-memory database, nothing to back up")
            return None
        shutil.copy2(url.database, backup_path)

    elif url.drivername.startswith('postgresql'):
        backup_path = f"{backup_path}.sql"
        cmd = [
            "pg_dump",
            f"--dbname={url.database}",
            f"--username={url.username}",
            f"--host={url.host}",
            f"--port={url.port or 5432}",
            f"--file={backup_path}"
        ]
        subprocess.run(cmd, env={**os.environ, "PGPASSWORD": url.password or ""}, check=True)

    else:
        logger.warning(f"Backup not supported for {url.drivername}")
        return None

    logger.info(f"Backup created: {backup_path}")
    keep_last_n_backups(backup_dir, keep=keep)
    return backup_path


def keep_last_n_backups(directory, keep=10):
    files = sorted(
        [f for f in os.listdir(directory) if f.startswith(BACKUP_PREFIX)],
        key=lambda x: os.path.getmtime(os.path.join(directory, x)),
        reverse=True
    )
    for old in files[keep:]:
        os.remove(os.path.join(directory, old))
