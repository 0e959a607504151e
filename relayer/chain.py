"""
Chain Client - RPC + Signer for the Migration Relayer

The only module that talks to the chain. Everything above it (poller,
oracle, executor) goes through these coroutines, so tests swap in a fake.

Design:
- Sync Web3 calls wrapped in run_in_executor() (web3.py async is fragile)
- Every call bounded by asyncio.wait_for(rpc_timeout) so a hung provider
  fails the poll instead of stalling the loop forever
- Embedded minimal ABI: only the functions and events we use
- Gas estimation + 20% buffer, nonce from chain (pending)
- Write failures come back as ChainTxResult(success=False), never raise
- Tx hash taken from the signed tx, so a broadcast that never confirms
  is still traceable
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import ConfigurationError

logger = logging.getLogger("migration.chain")


# ============================================================
# MINIMAL ABI
# ============================================================

ERC20_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
]

# Migration contract: read-only view of the allocation snapshot
MIGRATOR_ABI = [
    {
        "inputs": [{"name": "", "type": "address"}],
        "name": "allocation",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "", "type": "address"}],
        "name": "claimed",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "paused",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

DEFAULT_GAS_LIMIT = 200_000
GAS_BUFFER = 1.2
CONFIRMATION_POLL_SECONDS = 2.0


# ============================================================
# TYPES
# ============================================================

class Asset(Enum):
    V1 = "v1"
    V2 = "v2"


@dataclass(frozen=True)
class TransferEvent:
    """One V1 Transfer log into the relayer address."""
    tx_hash: str
    log_index: int
    block_number: int
    sender: str
    recipient: str
    amount: int


@dataclass
class ChainTxResult:
    """
    Result of an on-chain transaction attempt.

    tx_hash is set whenever the signed tx may have reached the network.
    A failure with a hash and no revert is an unknown outcome: the transfer
    may still land.
    """
    success: bool
    tx_hash: str = ""
    error: str = ""
    reverted: bool = False

    @property
    def outcome_unknown(self) -> bool:
        return not self.success and bool(self.tx_hash) and not self.reverted


# ============================================================
# CHAIN CLIENT
# ============================================================

class ChainClient:
    """
    Web3 client bound to one relayer wallet and the three migration
    contracts (V1 token, V2 token, migrator).

    Usage:
        chain = ChainClient.from_config(config)
        head = await chain.get_block_number()
        result = await chain.transfer(Asset.V2, sender, amount)
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        relayer_address: str,
        v1_token_address: str,
        v2_token_address: str,
        migrator_address: str,
        rpc_timeout_seconds: float = 30.0,
        receipt_timeout_seconds: float = 120.0,
        tx_confirmations: int = 1,
        w3=None,
    ):
        from web3 import Web3
        from eth_account import Account

        self._private_key = private_key
        account = Account.from_key(private_key)
        if account.address.lower() != relayer_address.lower():
            raise ConfigurationError(
                f"Wallet address {account.address} does not match relayer address {relayer_address}"
            )
        self.address: str = account.address

        self._w3 = w3 or Web3(Web3.HTTPProvider(
            rpc_url, request_kwargs={"timeout": rpc_timeout_seconds},
        ))
        self._rpc_timeout = rpc_timeout_seconds
        self._receipt_timeout = receipt_timeout_seconds
        self._tx_confirmations = tx_confirmations

        self._tokens = {
            Asset.V1: self._w3.eth.contract(
                address=Web3.to_checksum_address(v1_token_address), abi=ERC20_ABI),
            Asset.V2: self._w3.eth.contract(
                address=Web3.to_checksum_address(v2_token_address), abi=ERC20_ABI),
        }
        self._migrator = self._w3.eth.contract(
            address=Web3.to_checksum_address(migrator_address), abi=MIGRATOR_ABI,
        )

        logger.info(
            f"Chain client ready | relayer={self.address[:10]}... | "
            f"v1={v1_token_address[:10]}... | v2={v2_token_address[:10]}..."
        )

    @classmethod
    def from_config(cls, config) -> "ChainClient":
        return cls(
            rpc_url=config.rpc_url,
            private_key=config.private_key,
            relayer_address=config.relayer_address,
            v1_token_address=config.v1_token_address,
            v2_token_address=config.v2_token_address,
            migrator_address=config.migrator_address,
            rpc_timeout_seconds=config.rpc_timeout_seconds,
            receipt_timeout_seconds=config.receipt_timeout_seconds,
            tx_confirmations=config.tx_confirmations,
        )

    async def _call(self, fn, timeout: Optional[float] = None):
        """Run a blocking web3 call in the default executor with a deadline."""
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, fn),
            timeout=timeout or self._rpc_timeout,
        )

    # ============================================================
    # READS
    # ============================================================

    async def get_block_number(self) -> int:
        return int(await self._call(lambda: self._w3.eth.block_number))

    async def get_transfers_to(self, from_block: int, to_block: int) -> list[TransferEvent]:
        """V1 Transfer(*, relayer) logs in [from_block, to_block], chain order."""
        v1 = self._tokens[Asset.V1]

        def _fetch():
            return v1.events.Transfer.get_logs(
                from_block=from_block,
                to_block=to_block,
                argument_filters={"to": self.address},
            )

        logs = await self._call(_fetch)
        events = []
        for log in logs:
            args = log["args"]
            # Some providers ignore topic filters; double-check the recipient
            if args["to"].lower() != self.address.lower():
                continue
            events.append(TransferEvent(
                tx_hash=self._w3.to_hex(log["transactionHash"]),
                log_index=int(log["logIndex"]),
                block_number=int(log["blockNumber"]),
                sender=args["from"],
                recipient=args["to"],
                amount=int(args["value"]),
            ))
        return events

    async def allocation(self, account: str) -> int:
        fn = self._migrator.functions.allocation(self._checksum(account))
        return int(await self._call(fn.call))

    async def claimed(self, account: str) -> int:
        fn = self._migrator.functions.claimed(self._checksum(account))
        return int(await self._call(fn.call))

    async def paused(self) -> bool:
        return bool(await self._call(self._migrator.functions.paused().call))

    async def token_balance(self, asset: Asset, account: str) -> int:
        fn = self._tokens[asset].functions.balanceOf(self._checksum(account))
        return int(await self._call(fn.call))

    def _checksum(self, account: str) -> str:
        from web3 import Web3
        return Web3.to_checksum_address(account)

    # ============================================================
    # WRITES
    # ============================================================

    async def transfer(self, asset: Asset, to: str, amount: int) -> ChainTxResult:
        """
        ERC20 transfer(to, amount) from the relayer wallet.

        Three steps, each with its own deadline: build + sign, broadcast,
        then wait for the receipt and tx_confirmations blocks. The tx hash
        is known once signed, so every failure after signing reports it:

        - node rejected the broadcast (RPC error): failed, no hash
        - broadcast or confirmation did not finish: outcome unknown, hash set
        - receipt status 0: reverted, hash set
        """
        from web3.exceptions import Web3RPCError

        w3 = self._w3
        tx_fn = self._tokens[asset].functions.transfer(self._checksum(to), amount)

        def _sign():
            nonce = w3.eth.get_transaction_count(self.address, "pending")
            tx = tx_fn.build_transaction({
                "from": self.address,
                "nonce": nonce,
                "gasPrice": w3.eth.gas_price,
                "chainId": w3.eth.chain_id,
            })

            # Gas estimation + 20% buffer
            try:
                gas_estimate = w3.eth.estimate_gas(tx)
                tx["gas"] = int(gas_estimate * GAS_BUFFER)
            except Exception as gas_err:
                logger.warning(f"Gas estimation failed, using default {DEFAULT_GAS_LIMIT}: {gas_err}")
                tx["gas"] = DEFAULT_GAS_LIMIT

            return w3.eth.account.sign_transaction(tx, self._private_key)

        try:
            signed = await self._call(_sign)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX ERROR [{asset.value}]: {error}")
            return ChainTxResult(success=False, error=error)

        tx_hash_hex = w3.to_hex(signed.hash)

        try:
            await self._call(lambda: w3.eth.send_raw_transaction(signed.raw_transaction))
        except (Web3RPCError, ValueError) as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX REJECTED [{asset.value}]: {error}")
            return ChainTxResult(success=False, error=error)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"TX UNKNOWN [{asset.value}]: {tx_hash_hex} broadcast did not complete: {error}")
            return ChainTxResult(success=False, tx_hash=tx_hash_hex, error=error)

        def _confirm():
            receipt = w3.eth.wait_for_transaction_receipt(
                signed.hash, timeout=self._receipt_timeout,
            )
            if receipt["status"] != 1:
                return receipt

            # receipt = 1 confirmation; wait for the rest
            target = receipt["blockNumber"] + self._tx_confirmations - 1
            deadline = time.monotonic() + self._receipt_timeout
            while w3.eth.block_number < target:
                if time.monotonic() > deadline:
                    raise TimeoutError(
                        f"{tx_hash_hex} not confirmed {self._tx_confirmations}x in time"
                    )
                time.sleep(CONFIRMATION_POLL_SECONDS)
            return receipt

        # Receipt wait + confirmation wait, plus one RPC round trip
        budget = self._rpc_timeout + 2 * self._receipt_timeout

        try:
            receipt = await self._call(_confirm, timeout=budget)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error(f"TX UNKNOWN [{asset.value}]: {tx_hash_hex} not confirmed: {error}")
            return ChainTxResult(success=False, tx_hash=tx_hash_hex, error=error)

        if receipt["status"] == 1:
            logger.info(
                f"TX SUCCESS [{asset.value}]: {tx_hash_hex[:16]}... | "
                f"block={receipt['blockNumber']} | gas={receipt.get('gasUsed', 0)}"
            )
            return ChainTxResult(success=True, tx_hash=tx_hash_hex)

        error = f"TX reverted: {tx_hash_hex}"
        logger.warning(f"TX FAILED [{asset.value}]: {error}")
        return ChainTxResult(success=False, tx_hash=tx_hash_hex, error=error, reverted=True)
