# college_election/operations/health_monitor.py
# Liveness/Readiness health checks (DB, disk, time)

import os, shutil
from typing import Dict
import logging

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from college_election import db
from college_election.operations.time_sync import check_time_sync

logger = logging.getLogger(__name__)

MIN_FREE_DISK_GB = float(os.getenv("MIN_FREE_DISK_GB", "1"))


def _check_db() -> Dict:
    try:
        db.session.execute(text("SELECT 1"))
        return {"ok": True, "detail": f"{db.engine.dialect.name} ok"}
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error("Database health check failed: %s", e)
        return {"ok": False, "error": str(e)}


def _check_disk() -> Dict:
    total, used, free = shutil.disk_usage(".")
    free_gb = free / (1024**3)
    return {"ok": free_gb >= MIN_FREE_DISK_GB, "free_gb": round(free_gb, 2), "min_required_gb": MIN_FREE_DISK_GB}


def _check_time() -> Dict:
    if not current_app.config.get("HEALTH_CHECK_NTP"):
        return {"overall_ok": True, "skipped": True}
    return check_time_sync(max_offset=current_app.config.get("MAX_TIME_OFFSET_S", 0.5))


def check_health() -> Dict:
    """Aggregate overall system health."""
    database = _check_db()
    disk = _check_disk()
    tm = _check_time()
    overall = database["ok"] and disk["ok"] and tm["overall_ok"]
    return {"db": database, "disk": disk, "time": tm, "overall_ok": overall}


def check_ready() -> Dict:
    # readiness: DB + disk only
    database = _check_db()
    disk = _check_disk()
    return {"db": database, "disk": disk, "overall_ok": database["ok"] and disk["ok"]}
