import logging
from dataclasses import dataclass
from decimal import Decimal

import config
from models import TradeStatus, from_units
from services.errors import ChainError, ValidationError

logger = logging.getLogger("DepositWatcher")

WATCHED_STATUSES = frozenset({TradeStatus.AWAITING_DEPOSIT, TradeStatus.DEPOSITED})


def transfer_id(transfer):
    """Dedupe key shared by the RPC and explorer sources."""
    return f"{transfer['tx_hash'].lower()}:{int(transfer['value_wei'])}"


@dataclass
class DepositResult:
    found: bool
    new_amount: Decimal = Decimal("0")
    new_wei: int = 0
    balance: Decimal = Decimal("0")
    expected: Decimal = None
    tx_hashes: tuple = ()

    @property
    def complete(self):
        if self.expected is None:
            return self.found
        return self.balance + config.AMOUNT_EPSILON >= self.expected


class DepositWatcher:
    """Accumulates confirmed inbound token transfers to a trade's deposit address."""

    def __init__(self, trades, chain, explorer, notifications=None, audit=None):
        self.trades = trades
        self.chain = chain
        self.explorer = explorer
        self.notifications = notifications
        self.audit = audit

    async def _collect(self, trade, from_block, head):
        address = trade.deposit_address.lower()
        transfers = []
        try:
            transfers = await self.chain.get_transfer_logs(trade.token, trade.chain, address, from_block, head)
        except ChainError as e:
            logger.warning(f"[DEPOSIT] Log scan failed for {trade.trade_id}: {e}")

        if not transfers:
            fallback = await self.explorer.token_transfers(trade.token, trade.chain, address, start_block=from_block)
            transfers = [
                t for t in fallback
                if t["to"].lower() == address and from_block <= t["block"] <= head
            ]
            if transfers:
                logger.info(f"[DEPOSIT] Explorer fallback found {len(transfers)} transfer(s) for {trade.trade_id}")
        return transfers

    async def check(self, trade_id):
        """Scan (lastCheckedBlock, head] once. Returns a DepositResult; found=False leaves state untouched."""
        trade = self.trades.require(trade_id)
        if trade.status not in WATCHED_STATUSES:
            raise ValidationError(f"Trade {trade_id} is not awaiting a deposit.")
        if not trade.deposit_address or not trade.token or not trade.chain:
            raise ValidationError(f"Trade {trade_id} has no deposit address yet.")

        head = await self.chain.get_block_number(trade.chain)
        if trade.last_checked_block:
            from_block = trade.last_checked_block + 1
        else:
            from_block = max(0, head - config.LOG_SCAN_LOOKBACK)
        if from_block > head:
            return DepositResult(found=False, balance=trade.balance, expected=trade.quantity)

        transfers = await self._collect(trade, from_block, head)

        batch = {}
        for transfer in transfers:
            if transfer["value_wei"] > 0:
                batch.setdefault(transfer_id(transfer), transfer)

        applied = {}

        def _accumulate(record):
            applied.clear()
            seen = set(record.seen_transfer_ids)
            fresh = {key: t for key, t in batch.items() if key not in seen}
            if not fresh:
                return False
            new_wei = sum(t["value_wei"] for t in fresh.values())
            record.seen_transfer_ids.extend(fresh.keys())
            for t in fresh.values():
                if t["tx_hash"] not in record.deposit_tx_hashes:
                    record.deposit_tx_hashes.append(t["tx_hash"])
            record.balance_wei = (record.balance_wei or 0) + new_wei
            record.balance = record.balance + from_units(new_wei, record.decimals)
            record.last_checked_block = max(record.last_checked_block, head)
            if record.status == TradeStatus.AWAITING_DEPOSIT:
                record.status = TradeStatus.DEPOSITED
            applied.update(fresh)

        trade = self.trades.update(trade_id, _accumulate, expected_statuses=WATCHED_STATUSES, retries=2)
        if not applied:
            return DepositResult(found=False, balance=trade.balance, expected=trade.quantity)

        new_wei = sum(t["value_wei"] for t in applied.values())
        result = DepositResult(
            found=True,
            new_amount=from_units(new_wei, trade.decimals),
            new_wei=new_wei,
            balance=trade.balance,
            expected=trade.quantity,
            tx_hashes=tuple(sorted({t["tx_hash"] for t in applied.values()})),
        )
        logger.info(
            f"[DEPOSIT] {trade_id}: +{result.new_amount} {trade.token} "
            f"(total {trade.balance}, block {trade.last_checked_block})"
        )
        if self.audit:
            self.audit.log_action("deposit_detected", "system", trade_id, f"{result.new_amount} {trade.token} {','.join(result.tx_hashes)}")
        if self.notifications:
            if result.complete:
                await self.notifications.deposit_confirmed(trade, result)
            else:
                await self.notifications.partial_deposit(trade, result)
        return result
