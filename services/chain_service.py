import asyncio
import logging

from eth_account import Account
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError
from web3.middleware import ExtraDataToPOAMiddleware

import config
from services.errors import ChainError, VerificationTimeout
from services.nonce_manager import nonce_manager
from services.rpc_service import rpc_manager

logger = logging.getLogger("ChainService")

# Chains that need the POA extraData middleware for block fetches
POA_CHAINS = {"BSC", "POLYGON"}


def pad_topic_address(address):
    """Left-pad a 20-byte address into a 32-byte log topic."""
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


def _is_nonce_error(error):
    message = str(error).lower()
    return "nonce" in message or "underpriced" in message or "already known" in message


class ChainService:
    """Reads and settlement writes against EVM chains, with RPC failover."""

    def __init__(self, private_key=None):
        self.private_key = private_key if private_key is not None else config.HOT_WALLET_PRIVATE_KEY

    def _chain(self, chain):
        info = config.get_chain(chain)
        if not info or not info.get("rpc_urls"):
            raise ChainError(f"Unsupported chain {chain}.")
        return info

    def _web3(self, chain, rpc, timeout=10):
        w3 = AsyncWeb3(AsyncHTTPProvider(rpc, request_kwargs={"timeout": timeout}))
        if (chain or "").upper() in POA_CHAINS:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return w3

    @property
    def signer_address(self):
        if not self.private_key:
            raise ChainError("Hot wallet key is not configured.")
        return Account.from_key(self.private_key).address

    # --- reads ---
    async def get_block_number(self, chain):
        return await rpc_manager.block_number(self._chain(chain)["rpc_urls"])

    async def get_transfer_logs(self, token, chain, to_address, from_block, to_block):
        """Token Transfer logs to `to_address` in [from_block, to_block], scanned in bounded chunks."""
        info = self._chain(chain)
        token_address = config.get_token_address(token, chain)
        if not token_address:
            raise ChainError(f"No token contract for {token} on {chain}.")

        topics = [config.TRANSFER_TOPIC, None, pad_topic_address(to_address)]
        transfers = []
        start = from_block
        while start <= to_block:
            end = min(start + config.LOG_SCAN_CHUNK - 1, to_block)
            logs = await rpc_manager.get_logs(info["rpc_urls"], token_address, topics, start, end)
            for log in logs or []:
                try:
                    transfers.append({
                        "tx_hash": log["transactionHash"].lower(),
                        "block": int(log["blockNumber"], 16),
                        "log_index": int(log.get("logIndex") or "0x0", 16),
                        "to": "0x" + log["topics"][2][-40:].lower(),
                        "value_wei": int(log["data"], 16) if log.get("data") not in (None, "0x") else 0,
                    })
                except (KeyError, IndexError, ValueError, TypeError):
                    logger.debug(f"[LOGS] Skipping malformed log {log}")
            start = end + 1
        return transfers

    async def get_contract_token_balance(self, token, chain, contract_address):
        info = self._chain(chain)
        token_address = config.get_token_address(token, chain)
        if not token_address:
            raise ChainError(f"No token contract for {token} on {chain}.")

        last_error = None
        for rpc in info["rpc_urls"]:
            try:
                w3 = self._web3(chain, rpc, timeout=5)
                erc20 = w3.eth.contract(AsyncWeb3.to_checksum_address(token_address), abi=config.ERC20_ABI)
                return await erc20.functions.balanceOf(AsyncWeb3.to_checksum_address(contract_address)).call()
            except Exception as e:
                last_error = e
                logger.warning(f"[BALANCE] RPC {rpc} failed: {e}")
        raise ChainError(f"Could not read contract balance on {chain}: {last_error}")

    async def get_receipt(self, chain, tx_hash):
        """Receipt as {"status", "block"} or None when the tx is not yet mined."""
        receipt = await rpc_manager.get_transaction_receipt(self._chain(chain)["rpc_urls"], tx_hash)
        if not receipt:
            return None
        return {
            "status": int(receipt.get("status") or "0x0", 16),
            "block": int(receipt.get("blockNumber") or "0x0", 16),
        }

    # --- writes ---
    async def submit_settlement(self, kind, token, chain, contract_address, to_address, amount_wei):
        """Call release(to, amount) or refund(to, amount) on the vault. Returns the tx hash.

        A rejected nonce gets one retry with a refreshed pending nonce, unless
        the node already knows the first transaction. Once a transaction is
        signed, a send that fails or times out raises VerificationTimeout with
        its hash, since it may still land.
        """
        info = self._chain(chain)
        method = "release" if str(kind).endswith("release") else "refund"
        if amount_wei <= 0:
            raise ChainError("Settlement amount must be positive.")

        signer = self.signer_address
        last_error = None
        for attempt in range(2):
            for rpc in info["rpc_urls"]:
                w3 = self._web3(chain, rpc)
                signed = None
                try:
                    vault = w3.eth.contract(AsyncWeb3.to_checksum_address(contract_address), abi=config.ESCROW_VAULT_ABI)
                    call = getattr(vault.functions, method)(AsyncWeb3.to_checksum_address(to_address), int(amount_wei))

                    nonce = await nonce_manager.get_next_nonce(w3, signer, refresh=attempt > 0)
                    estimated_gas = await call.estimate_gas({"from": signer})

                    # Increase gas price by 20% to ensure fast inclusion
                    gas_price = int(await w3.eth.gas_price * 1.2)

                    tx = await call.build_transaction({
                        "chainId": info["chain_id"],
                        "from": signer,
                        "gas": int(estimated_gas * 1.5),
                        "gasPrice": gas_price,
                        "nonce": nonce,
                    })
                    signed = w3.eth.account.sign_transaction(tx, self.private_key)
                    tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
                    tx_hex = AsyncWeb3.to_hex(tx_hash)
                    logger.info(f"[{method.upper()}] Submitted {tx_hex} on {chain} ({amount_wei} units to {to_address})")
                    return tx_hex
                except ContractLogicError as e:
                    raise ChainError(f"{method} would revert on {chain}: {e}")
                except (asyncio.TimeoutError, ValueError, Web3RPCError) as e:
                    last_error = e
                    if signed is not None and await self._is_known(w3, signed.hash):
                        tx_hex = AsyncWeb3.to_hex(signed.hash)
                        logger.warning(f"[{method.upper()}] Send errored but node has {tx_hex}; treating as submitted")
                        return tx_hex
                    if signed is not None and isinstance(e, asyncio.TimeoutError):
                        tx_hex = AsyncWeb3.to_hex(signed.hash)
                        raise VerificationTimeout(tx_hex, f"{method} broadcast of {tx_hex} on {chain} timed out")
                    if isinstance(e, asyncio.TimeoutError) or _is_nonce_error(e):
                        logger.warning(f"[{method.upper()}] Nonce/timeout error on {rpc}: {e}")
                        nonce_manager.forget(signer)
                        break
                    # Reverts and other business errors are not retried
                    raise ChainError(f"{method} call rejected on {chain}: {e}")
                except Exception as e:
                    last_error = e
                    if signed is not None:
                        # Broadcast state unknown; never fall through to another submission
                        tx_hex = AsyncWeb3.to_hex(signed.hash)
                        logger.error(f"[{method.upper()}] Broadcast of {tx_hex} on {chain} ended with unknown outcome: {e}")
                        raise VerificationTimeout(tx_hex, f"{method} broadcast of {tx_hex} on {chain} has an unknown outcome: {e}")
                    logger.warning(f"[{method.upper()}] RPC {rpc} failed before signing: {e}")
            else:
                break
        raise ChainError(f"{method} submission failed on {chain}: {last_error}")

    async def _is_known(self, w3, tx_hash):
        try:
            await w3.eth.get_transaction(tx_hash)
            return True
        except TransactionNotFound:
            return False
        except Exception as e:
            logger.warning(f"[TX] Could not look up {AsyncWeb3.to_hex(tx_hash)}: {e}")
            return False

    async def wait_for_receipt(self, chain, tx_hash):
        """Poll for confirmation in bounded rounds.

        Returns {"status", "block"}. Raises ChainError on a reverted tx and
        VerificationTimeout if nothing was observed within the budget.
        """
        info = self._chain(chain)
        urls = info["rpc_urls"]
        for attempt in range(config.VERIFY_ATTEMPTS):
            rpc = urls[attempt % len(urls)]
            try:
                w3 = self._web3(chain, rpc, timeout=10)
                receipt = await w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=config.VERIFY_TIMEOUT_SECONDS, poll_latency=2
                )
            except TimeExhausted:
                logger.info(f"[VERIFY] {tx_hash} not mined yet (round {attempt + 1}/{config.VERIFY_ATTEMPTS})")
                continue
            except Exception as e:
                logger.warning(f"[VERIFY] RPC {rpc} failed while waiting for {tx_hash}: {e}")
                continue

            if receipt["status"] != 1:
                raise ChainError(f"Transaction {tx_hash} reverted.")
            return {"status": 1, "block": receipt["blockNumber"]}

        raise VerificationTimeout(tx_hash)


chain_service = ChainService()
