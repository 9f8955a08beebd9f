"""
Fund movement: computes and submits wei-exact release/refund transfers.

Nothing is written to the trade before the chain call. The record changes only
once a receipt is observed (or, on a verification timeout, to park the
submitted tx hash for reconciliation).
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal

import config
from models import SETTLEABLE_STATUSES, SETTLED_STATUS, SettlementKind, to_units
from services.errors import InsufficientContractBalance, ValidationError, VerificationTimeout

logger = logging.getLogger("FundMovement")


def resolve_settlement_amount(balance, balance_wei, requested, decimals):
    """Returns (amount, wei, is_full) for a settlement of `requested` out of `balance`.

    requested=None means the full balance. A full settlement pays balance_wei
    verbatim; a partial one is scaled from balance_wei with integer math only.
    """
    balance = Decimal(str(balance or 0))
    amount = balance if requested is None else Decimal(str(requested))

    if amount <= 0:
        raise ValidationError("Settlement amount must be greater than zero.")
    if amount > balance + config.AMOUNT_EPSILON:
        raise ValidationError(f"Requested {amount} exceeds the escrowed balance of {balance}.")

    if abs(amount - balance) < config.AMOUNT_EPSILON:
        wei = balance_wei if balance_wei is not None else to_units(balance, decimals)
        return balance, int(wei), True

    balance_units = to_units(balance, decimals)
    if balance_wei is not None and balance_units > 0:
        wei = int(balance_wei) * to_units(amount, decimals) // balance_units
    else:
        wei = to_units(amount, decimals)
    if wei <= 0:
        raise ValidationError("Settlement amount is below the token's smallest unit.")
    return amount, wei, False


def settlement_target(trade, kind):
    if SettlementKind(kind) == SettlementKind.RELEASE:
        return trade.buyer_address
    return trade.seller_address


def resolve_contract_address(trade, venue=None):
    """Custodial contract for the trade: its deposit address, else venue-scoped, else global."""
    if trade.deposit_address:
        return trade.deposit_address
    if venue is not None:
        scoped = venue.contract_for(trade.token, trade.chain)
        if scoped:
            return scoped
    return config.get_contract_address(trade.token, trade.chain)


@dataclass
class SettlementResult:
    kind: SettlementKind
    tx_hash: str
    amount: Decimal
    wei: int
    is_full: bool
    trade: object = None


def apply_settlement(trade, kind, tx_hash, amount, wei):
    """In-place post-success update. Returns False if this tx was already applied.

    Full versus partial is judged against the re-read record, so a deposit
    credited while the transaction was confirming stays escrowed.
    """
    kind = SettlementKind(kind)
    hashes = trade.release_tx_hashes if kind == SettlementKind.RELEASE else trade.refund_tx_hashes
    if tx_hash in hashes:
        return False
    hashes.append(tx_hash)
    setattr(trade, f"{kind.value}_tx_hash", tx_hash)
    trade.pending_settlement = None

    remaining = trade.balance - Decimal(str(amount))
    remaining_wei = None if trade.balance_wei is None else trade.balance_wei - int(wei)
    if remaining < config.AMOUNT_EPSILON and (remaining_wei is None or remaining_wei <= 0):
        trade.balance = Decimal("0")
        trade.balance_wei = 0
        for k in SettlementKind:
            trade.set_pending_amount(k, None)
            trade.set_approvals(k, False, False)
        trade.status = SETTLED_STATUS[kind]
        trade.completed_at = time.time()
    else:
        trade.balance = max(Decimal("0"), remaining)
        if remaining_wei is not None:
            trade.balance_wei = max(0, remaining_wei)
        trade.set_pending_amount(kind, None)
        trade.set_approvals(kind, False, False)
    return True


class FundMovementEngine:
    def __init__(self, trades, venues, chain, audit=None):
        self.trades = trades
        self.venues = venues
        self.chain = chain
        self.audit = audit
        self._locks = {}

    def _get_lock(self, trade_id):
        if trade_id not in self._locks:
            self._locks[trade_id] = asyncio.Lock()
        return self._locks[trade_id]

    async def execute(self, trade_id, kind, actor_id=None):
        """Settle once both approval flags for `kind` are set.

        Returns a SettlementResult, or None when there is nothing to do (the
        trade already settled, or approvals were consumed by a concurrent run).
        """
        kind = SettlementKind(kind)
        tag = f"[{kind.value.upper()}]"
        async with self._get_lock(trade_id):
            trade = self.trades.require(trade_id)
            if trade.status not in SETTLEABLE_STATUSES[kind]:
                if trade.is_terminal:
                    logger.info(f"{tag} {trade_id} already {trade.status.value}; ignoring duplicate trigger")
                    return None
                raise ValidationError(f"Trade {trade_id} cannot be settled while {trade.status.value}.")
            if trade.pending_settlement:
                raise ValidationError(
                    f"A {trade.pending_settlement.get('kind')} transaction "
                    f"({trade.pending_settlement.get('tx_hash')}) is still awaiting confirmation."
                )
            if not all(trade.approvals(kind)):
                logger.info(f"{tag} {trade_id} approvals not complete; nothing to execute")
                return None

            amount, wei, _ = resolve_settlement_amount(
                trade.balance, trade.balance_wei, trade.pending_amount(kind), trade.decimals
            )
            target = settlement_target(trade, kind)
            if not target:
                raise ValidationError(f"No {'buyer' if kind == SettlementKind.RELEASE else 'seller'} address on file.")

            venue = self.venues.get(trade.venue_id) if trade.venue_id else None
            contract = resolve_contract_address(trade, venue)
            if not contract:
                raise ValidationError(f"No escrow contract configured for {trade.token} on {trade.chain}.")

            available = await self.chain.get_contract_token_balance(trade.token, trade.chain, contract)
            if available < wei:
                raise InsufficientContractBalance(contract, available, wei)

            logger.info(f"{tag} {trade_id}: {amount} {trade.token} ({wei} units) -> {target} via {contract}")
            try:
                tx_hash = await self.chain.submit_settlement(kind, trade.token, trade.chain, contract, target, wei)
                await self.chain.wait_for_receipt(trade.chain, tx_hash)
            except VerificationTimeout as e:
                # Signed and possibly broadcast: park it, reconciliation decides
                self._park(trade_id, kind, e.tx_hash, amount, wei, actor_id)
                raise

            trade = self.trades.update(
                trade_id,
                lambda t: apply_settlement(t, kind, tx_hash, amount, wei),
                retries=3,
            )
            if self.audit:
                self.audit.log_action(f"{kind.value}_settled", actor_id or "system", trade_id, f"{amount} {trade.token} tx={tx_hash}")
            if trade.is_terminal:
                self._locks.pop(trade_id, None)
            return SettlementResult(kind, tx_hash, amount, wei, trade.is_terminal, trade)

    def _park(self, trade_id, kind, tx_hash, amount, wei, actor_id):
        logger.warning(f"[{kind.value.upper()}] {trade_id}: {tx_hash} unconfirmed; parked for reconciliation")

        def _mark(t):
            t.pending_settlement = {
                "kind": kind.value,
                "tx_hash": tx_hash,
                "amount": str(amount),
                "wei": str(wei),
                "actor_id": actor_id,
                "submitted_at": time.time(),
            }
            t.set_approvals(kind, False, False)

        self.trades.update(trade_id, _mark, retries=3)
        if self.audit:
            self.audit.log_action(f"{kind.value}_unconfirmed", actor_id or "system", trade_id, f"tx={tx_hash}")

    async def finalize(self, trade_id):
        """Apply a parked settlement whose receipt has since been observed."""
        async with self._get_lock(trade_id):
            trade = self.trades.require(trade_id)
            pending = trade.pending_settlement
            if not pending:
                return None
            kind = SettlementKind(pending["kind"])
            amount = Decimal(pending["amount"])
            wei = int(pending["wei"])
            tx_hash = pending["tx_hash"]
            trade = self.trades.update(
                trade_id,
                lambda t: apply_settlement(t, kind, tx_hash, amount, wei),
                retries=3,
            )
            logger.info(f"[RECONCILE] {trade_id}: {kind.value} {tx_hash} confirmed late, state finalized")
            if self.audit:
                self.audit.log_action(f"{kind.value}_settled", pending.get("actor_id") or "system", trade_id, f"{amount} {trade.token} tx={tx_hash} (reconciled)")
            if trade.is_terminal:
                self._locks.pop(trade_id, None)
            return SettlementResult(kind, tx_hash, amount, wei, trade.is_terminal, trade)

    async def abandon(self, trade_id):
        """Clear a parked settlement whose transaction reverted. No funds moved."""
        async with self._get_lock(trade_id):
            def _clear(t):
                if not t.pending_settlement:
                    return False
                t.pending_settlement = None

            trade = self.trades.update(trade_id, _clear, retries=3)
            logger.warning(f"[RECONCILE] {trade_id}: parked settlement reverted; cleared for admin retry")
            return trade
