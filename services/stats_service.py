import logging
import time
from decimal import Decimal

from models import TradeStatus
from services.errors import NotificationError

logger = logging.getLogger("StatsService")


class StatsService:
    """Per-user deal counters, recorded once per settled trade."""

    def __init__(self, db, trades):
        self.db = db
        self.trades = trades

    def record_settlement(self, trade_id, volume):
        """Bump counters for both participants. No-op if this trade was already counted."""
        claimed = []

        def _claim(trade):
            claimed.clear()
            if trade.stats_recorded or not trade.is_terminal:
                return False
            trade.stats_recorded = True
            claimed.append(trade)

        try:
            self.trades.update(trade_id, _claim, retries=2)
        except Exception as e:
            raise NotificationError(f"Could not claim stats for {trade_id}: {e}")
        if not claimed:
            return False

        trade = claimed[0]
        refunded = trade.status == TradeStatus.REFUNDED
        for user_id in {trade.buyer_id, trade.seller_id} - {None}:
            self._bump(user_id, Decimal(str(volume or 0)), refunded)
        logger.info(f"[STATS] Recorded {trade.status.value} deal {trade_id} ({volume})")
        return True

    def _bump(self, user_id, volume, refunded):
        p = self.db.p
        now = time.time()
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT deals_completed, deals_refunded, volume FROM user_stats WHERE user_id = {p}", (str(user_id),))
            row = cursor.fetchone()
            if row is None:
                cursor.execute(f"""
                    INSERT INTO user_stats (user_id, deals_completed, deals_refunded, volume, first_seen, last_active)
                    VALUES ({p}, {p}, {p}, {p}, {p}, {p})
                """, (str(user_id), 0 if refunded else 1, 1 if refunded else 0, str(volume if not refunded else 0), now, now))
                return
            completed, refunds, total = row
            if refunded:
                refunds += 1
            else:
                completed += 1
                total = str(Decimal(total or "0") + volume)
            cursor.execute(f"""
                UPDATE user_stats SET deals_completed = {p}, deals_refunded = {p}, volume = {p}, last_active = {p}
                WHERE user_id = {p}
            """, (completed, refunds, total, now, str(user_id)))

    def get_stats(self, user_id):
        with self.db.cursor() as cursor:
            cursor.execute(
                f"SELECT deals_completed, deals_refunded, volume FROM user_stats WHERE user_id = {self.db.p}",
                (str(user_id),),
            )
            row = cursor.fetchone()
        if not row:
            return {"deals_completed": 0, "deals_refunded": 0, "volume": Decimal("0")}
        return {"deals_completed": row[0], "deals_refunded": row[1], "volume": Decimal(row[2] or "0")}
