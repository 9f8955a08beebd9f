import logging
import time

logger = logging.getLogger("AuditService")


class AuditService:
    def __init__(self, db):
        self.db = db

    def log_action(self, action, user_id, target_id=None, details=None):
        """
        Append an action to the audit log. Failures are logged, never raised:
        the audit trail must not block the operation it records.
        """
        try:
            self._log_sync(action, user_id, target_id, details)
        except Exception as e:
            logger.error(f"Failed to log action {action}: {e}")

    def _log_sync(self, action, user_id, target_id, details):
        p = self.db.p
        with self.db.cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO audit_logs (action, user_id, target_id, details, timestamp)
                VALUES ({p}, {p}, {p}, {p}, {p})
            """, (action, str(user_id), str(target_id) if target_id else None, details, time.time()))

    def history(self, target_id, limit=50):
        p = self.db.p
        with self.db.cursor() as cursor:
            cursor.execute(f"""
                SELECT action, user_id, details, timestamp FROM audit_logs
                WHERE target_id = {p} ORDER BY id DESC LIMIT {int(limit)}
            """, (str(target_id),))
            rows = cursor.fetchall()
        return [
            {"action": r[0], "user_id": r[1], "details": r[2], "timestamp": r[3]}
            for r in rows
        ]
