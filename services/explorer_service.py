import asyncio
import logging

import aiohttp

import config

logger = logging.getLogger("ExplorerService")


class ExplorerService:
    """Etherscan-compatible block explorer API, used as the deposit fallback source."""

    def __init__(self, timeout=10):
        self.timeout = timeout

    async def token_transfers(self, token, chain, address, start_block=0):
        """Incoming and outgoing token transfers for address since start_block.

        Returns normalized dicts: tx_hash, block, from, to, value_wei.
        Explorer failures yield an empty list; the caller treats that as "nothing seen".
        """
        chain_info = config.get_chain(chain)
        token_address = config.get_token_address(token, chain)
        if not chain_info or not token_address or not chain_info.get("explorer_api"):
            return []

        params = {
            "module": "account",
            "action": "tokentx",
            "contractaddress": token_address,
            "address": address,
            "startblock": start_block,
            "endblock": 999999999,
            "sort": "asc",
        }
        if chain_info.get("explorer_key"):
            params["apikey"] = chain_info["explorer_key"]

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(chain_info["explorer_api"], params=params) as resp:
                    if resp.status != 200:
                        logger.warning(f"[EXPLORER] {chain} returned status {resp.status}")
                        return []
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"[EXPLORER] {chain} request failed: {e}")
            return []

        if str(data.get("status")) != "1" or not isinstance(data.get("result"), list):
            return []

        transfers = []
        for tx in data["result"]:
            try:
                transfers.append({
                    "tx_hash": tx["hash"].lower(),
                    "block": int(tx["blockNumber"]),
                    "from": (tx.get("from") or "").lower(),
                    "to": (tx.get("to") or "").lower(),
                    "value_wei": int(tx["value"]),
                })
            except (KeyError, ValueError, TypeError):
                logger.debug(f"[EXPLORER] Skipping malformed entry {tx}")
        return transfers


explorer_service = ExplorerService()
