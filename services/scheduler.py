import asyncio
import logging
import time

logger = logging.getLogger("Scheduler")

JOIN_TIMEOUT = "join_timeout"
RECYCLE = "recycle"


def job_key(kind, trade_id):
    return f"{kind}:{trade_id}"


class Scheduler:
    """One cancellable timer per key, with the deadline persisted.

    Deadlines live in `scheduled_jobs`; `reconcile()` re-arms them after a
    restart and fires overdue ones immediately. A job is claimed by deleting
    its row, so it runs at most once even if armed twice.
    """

    def __init__(self, db):
        self.db = db
        self._handlers = {}
        self._tasks = {}

    def register(self, kind, handler):
        self._handlers[kind] = handler

    def schedule(self, key, delay, kind, trade_id):
        due_at = time.time() + delay
        p = self.db.p
        with self.db.cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO scheduled_jobs (job_key, kind, trade_id, due_at) VALUES ({p}, {p}, {p}, {p})
                ON CONFLICT (job_key) DO UPDATE SET kind = EXCLUDED.kind, trade_id = EXCLUDED.trade_id, due_at = EXCLUDED.due_at
            """, (key, kind, trade_id, due_at))
        self._arm(key, kind, trade_id, due_at)
        logger.info(f"[SCHED] {key} due in {delay}s")
        return due_at

    def cancel(self, key):
        """Returns True if a pending job was removed."""
        task = self._tasks.pop(key, None)
        if task and not task.done():
            task.cancel()
        with self.db.cursor() as cursor:
            cursor.execute(f"DELETE FROM scheduled_jobs WHERE job_key = {self.db.p}", (key,))
            removed = cursor.rowcount == 1
        if removed:
            logger.info(f"[SCHED] {key} cancelled")
        return removed

    def is_pending(self, key):
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT 1 FROM scheduled_jobs WHERE job_key = {self.db.p}", (key,))
            return cursor.fetchone() is not None

    def _arm(self, key, kind, trade_id, due_at):
        existing = self._tasks.get(key)
        if existing and not existing.done():
            existing.cancel()
        self._tasks[key] = asyncio.create_task(self._run(key, kind, trade_id, due_at))

    def _claim(self, key, due_at):
        p = self.db.p
        with self.db.cursor() as cursor:
            cursor.execute(f"DELETE FROM scheduled_jobs WHERE job_key = {p} AND due_at = {p}", (key, due_at))
            return cursor.rowcount == 1

    async def _run(self, key, kind, trade_id, due_at):
        delay = due_at - time.time()
        if delay > 0:
            await asyncio.sleep(delay)
        if not self._claim(key, due_at):
            # Cancelled or rescheduled meanwhile
            return
        if self._tasks.get(key) is asyncio.current_task():
            self._tasks.pop(key, None)

        handler = self._handlers.get(kind)
        if handler is None:
            logger.error(f"[SCHED] No handler registered for {kind} ({key})")
            return
        try:
            await handler(trade_id)
        except Exception as e:
            logger.error(f"[SCHED] {key} failed: {e}", exc_info=True)

    def reconcile(self):
        """Re-arm persisted jobs not tracked in memory. Returns how many were armed."""
        with self.db.cursor() as cursor:
            cursor.execute("SELECT job_key, kind, trade_id, due_at FROM scheduled_jobs")
            rows = cursor.fetchall()
        armed = 0
        now = time.time()
        for key, kind, trade_id, due_at in rows:
            task = self._tasks.get(key)
            if task and not task.done():
                continue
            self._arm(key, kind, trade_id, due_at)
            armed += 1
            if due_at <= now:
                logger.info(f"[SCHED] {key} overdue by {now - due_at:.0f}s, firing now")
        return armed

    async def close(self):
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
