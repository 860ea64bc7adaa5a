#!/usr/bin/env python3
# backend/run_celery_worker.py
"""
Development Celery worker with an embedded beat scheduler.

Consumes the sync and payments queues so availability sync, capture retries
and the reconciliation sweep all run locally.
"""
import os
from pathlib import Path
import subprocess
import sys

backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("SITE_MODE", "local")

if __name__ == "__main__":
    queues = os.getenv("CELERY_QUEUES") or "celery,sync,payments"
    print(f"Starting Celery worker (SITE_MODE={os.environ['SITE_MODE']}), queues: {queues}")

    cmd = [
        sys.executable,
        "-m",
        "celery",
        "-A",
        "bloom_booking.tasks.celery_app",
        "worker",
        "--beat",
        "--loglevel=info",
        "--concurrency=2",
        "--max-tasks-per-child=100",
        "-Q",
        queues,
    ]

    subprocess.run(cmd)
