import logging

from models import FUNDED_STATUSES
from services.errors import EscrowError

logger = logging.getLogger("Reconciliation")


class ReconciliationService:
    """Finalizes settlements whose confirmation was not observed in time."""

    def __init__(self, trades, chain, fund, engine=None):
        self.trades = trades
        self.chain = chain
        self.fund = fund
        self.engine = engine

    async def sweep(self):
        """One pass over parked settlements. Returns {"finalized", "reverted", "pending"} counts."""
        counts = {"finalized": 0, "reverted": 0, "pending": 0}
        for trade in self.trades.list_by_status(FUNDED_STATUSES):
            pending = trade.pending_settlement
            if not pending:
                continue
            tx_hash = pending.get("tx_hash")
            try:
                receipt = await self.chain.get_receipt(trade.chain, tx_hash)
            except EscrowError as e:
                logger.warning(f"[RECONCILE] Receipt lookup for {tx_hash} failed: {e}")
                counts["pending"] += 1
                continue

            if receipt is None:
                counts["pending"] += 1
                continue
            if receipt["status"] != 1:
                await self.fund.abandon(trade.trade_id)
                counts["reverted"] += 1
                continue

            result = await self.fund.finalize(trade.trade_id)
            if result is None:
                continue
            counts["finalized"] += 1
            if self.engine is not None:
                await self.engine.after_settlement(result)

        if counts["finalized"] or counts["reverted"]:
            logger.info(f"[RECONCILE] Sweep: {counts}")
        return counts
