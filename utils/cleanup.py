# utils/cleanup.py
import os
from datetime import datetime, timedelta


def cleanup_old_logs(log_dir="logs", days=30):
    if not os.path.isdir(log_dir):
        return []
    cutoff = datetime.now() - timedelta(days=days)
    removed = []
    for f in os.listdir(log_dir):
        path = os.path.join(log_dir, f)
        if os.path.isfile(path) and os.path.getmtime(path) < cutoff.timestamp():
            os.remove(path)
            removed.append(f)
    return removed
