# college_election/audit/audit_logger.py

import json
import hashlib
import logging

from flask import has_request_context
from sqlalchemy.exc import SQLAlchemyError

from college_election import client_info, db
from college_election.database.models import LogAction, LogStatus, SystemLog, utcnow
from college_election.database.queries import paginate

logger = logging.getLogger(__name__)

# Append-only audit trail stored in system_logs, with hash chaining so that
# edited or removed rows break verify_log_integrity().


def _coerce(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    return enum_cls(value)


class AuditLogger:
    def _last_hash(self):
        return db.session.query(SystemLog.entry_hash).order_by(SystemLog.id.desc()).limit(1).scalar()

    @staticmethod
    def compute_hash(entry, previous_hash):
        payload = dict(entry, previous_hash=previous_hash)
        entry_json = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(entry_json.encode()).hexdigest()

    @staticmethod
    def _hashable(log):
        return {
            "action": log.action.value,
            "user_id": log.user_id,
            "details": log.details,
            "ip": log.ip,
            "user_agent": log.user_agent,
            "status": log.status.value,
            "timestamp": log.timestamp.isoformat(),
        }

    def create_log(self, action, user_id=None, details=None, ip=None, user_agent=None, status=LogStatus.INFO):
        """Append one entry and commit it. Returns None instead of raising on failure."""
        if ip is None and has_request_context():
            ip, user_agent = client_info()
        try:
            log = SystemLog(
                action=_coerce(LogAction, action),
                user_id=user_id,
                details=json.loads(json.dumps(details, default=str)) if details is not None else None,
                ip=ip,
                user_agent=(user_agent or '')[:512] or None,
                status=_coerce(LogStatus, status),
                timestamp=utcnow(),
            )
            previous_hash = self._last_hash()
            log.previous_hash = previous_hash
            log.entry_hash = self.compute_hash(self._hashable(log), previous_hash)
            db.session.add(log)
            db.session.commit()
            return log
        except (SQLAlchemyError, ValueError, TypeError) as e:
            db.session.rollback()
            logger.error("Audit log error: %s", e)
            return None

    def query_logs(self, action=None, status=None, user_id=None, start=None, end=None, page=1, per_page=50):
        query = db.session.query(SystemLog)
        if action:
            query = query.filter(SystemLog.action == _coerce(LogAction, action))
        if status:
            query = query.filter(SystemLog.status == _coerce(LogStatus, status))
        if user_id is not None:
            query = query.filter(SystemLog.user_id == user_id)
        if start is not None:
            query = query.filter(SystemLog.timestamp >= start)
        if end is not None:
            query = query.filter(SystemLog.timestamp <= end)

        return paginate(query.order_by(SystemLog.timestamp.desc(), SystemLog.id.desc()),
                        page, per_page, max_per_page=500)

    def recent_logs(self, limit=100):
        return (db.session.query(SystemLog)
                .order_by(SystemLog.timestamp.desc(), SystemLog.id.desc())
                .limit(limit).all())

    def distinct_actions(self):
        rows = db.session.query(SystemLog.action).distinct().all()
        return sorted(row[0].value for row in rows)

    def verify_log_integrity(self):
        previous_hash = None
        for log in db.session.query(SystemLog).order_by(SystemLog.id).yield_per(500):
            if log.previous_hash != previous_hash:
                return False
            if self.compute_hash(self._hashable(log), previous_hash) != log.entry_hash:
                return False
            previous_hash = log.entry_hash
        return True


audit_logger = AuditLogger()
