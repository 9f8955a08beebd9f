import asyncio
import logging

logger = logging.getLogger("NonceManager")


class NonceManager:
    """
    Hands out transaction sequence numbers for the shared signing key.

    Every settlement on a chain races on the same key, so the pending count is
    read immediately before each submission under a per-address lock. This
    narrows the window for "nonce too low" collisions but cannot close it
    against other processes using the same key.
    """
    def __init__(self):
        self._locks = {}
        self._nonces = {}

    def _get_lock(self, address):
        """Get or create an async lock for a specific address"""
        if address not in self._locks:
            self._locks[address] = asyncio.Lock()
        return self._locks[address]

    async def get_next_nonce(self, w3, address, refresh=False):
        """
        Next nonce for address: pending count, falling back to the confirmed
        count when the node rejects the pending tag. If local nonce is ahead
        (our own unmined txs), it uses local unless refresh is requested.
        """
        lock = self._get_lock(address)
        async with lock:
            try:
                chain_nonce = await w3.eth.get_transaction_count(address, "pending")
            except Exception as e:
                logger.warning(f"[NONCE] Pending count failed for {address}: {e}; using confirmed count")
                chain_nonce = await w3.eth.get_transaction_count(address)

            if refresh or address not in self._nonces or self._nonces[address] < chain_nonce:
                self._nonces[address] = chain_nonce

            nonce_to_use = self._nonces[address]
            # Increment so the next caller gets the next one
            self._nonces[address] += 1
            return nonce_to_use

    def forget(self, address):
        self._nonces.pop(address, None)


# Global instance
nonce_manager = NonceManager()
