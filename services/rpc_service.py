import asyncio
import logging
from typing import List

import aiohttp

from services.errors import ChainError

logger = logging.getLogger("RPCManager")


class RPCManager:
    """Raw JSON-RPC reads with failover across a chain's endpoint list."""

    def __init__(self, timeout=10):
        self.timeout = timeout

    async def call_json_rpc(self, urls: List[str], method: str, params: list = None, id: int = 1):
        """
        Attempt JSON-RPC call against a list of URLs with failover.
        Raises ChainError once every endpoint has failed.
        """
        if params is None:
            params = []

        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": id
        }

        last_error = None
        for url in urls:
            try:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    async with session.post(url, json=payload) as resp:
                        if resp.status == 200:
                            data = await resp.json(content_type=None)
                            if "result" in data:
                                return data["result"]
                            if "error" in data:
                                last_error = data["error"]
                                logger.warning(f"RPC Error from {url}: {data['error']}")
                        else:
                            last_error = f"HTTP {resp.status}"
                            logger.warning(f"RPC {url} returned status {resp.status}")
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = e
                logger.warning(f"RPC connection failed ({url}): {e}")

            # Simple rotation delay
            await asyncio.sleep(0.5)

        logger.error(f"All RPCs failed for method {method}")
        raise ChainError(f"All RPC endpoints failed for {method}: {last_error}")

    async def block_number(self, urls):
        return int(await self.call_json_rpc(urls, "eth_blockNumber"), 16)

    async def get_logs(self, urls, address, topics, from_block, to_block):
        return await self.call_json_rpc(urls, "eth_getLogs", [{
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "address": address,
            "topics": topics,
        }])

    async def get_transaction_receipt(self, urls, tx_hash):
        return await self.call_json_rpc(urls, "eth_getTransactionReceipt", [tx_hash])


rpc_manager = RPCManager()
