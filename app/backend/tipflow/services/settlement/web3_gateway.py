"""
Web3 gateway to the deployed batch tip contract on Base.

Sync Web3 calls run in the default executor. Transactions are signed locally
with the executor key so the hash and raw bytes can be persisted before
broadcast. Fees follow EIP-1559 with configured caps; gas is estimated and
padded by ``gas_estimate_buffer_percent``.
"""

import asyncio
from functools import partial
from typing import Any, Callable, List, Optional

import structlog
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError

from tipflow.core.config import settings, ChainConfig
from tipflow.core.exceptions import ChainError, ConfigurationError, TransientExternalError
from tipflow.services.settlement.gateway import BatchTransfer, SignedBatch, TxReceipt
from tipflow.utils.validation import normalize_address


logger = structlog.get_logger(__name__)

ALREADY_KNOWN_MESSAGES = ("already known", "known transaction")
TRANSIENT_RPC_MESSAGES = ("rate limit", "too many requests", "header not found", "timeout")


BATCH_TIP_ABI = [
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "executor", "type": "address"}],
        "name": "isExecutor",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "executor", "type": "address"}],
        "name": "addExecutor",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "executor", "type": "address"}],
        "name": "removeExecutor",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "froms", "type": "address[]"},
            {"name": "tos", "type": "address[]"},
            {"name": "tokens", "type": "address[]"},
            {"name": "amounts", "type": "uint256[]"},
        ],
        "name": "batchTip",
        "outputs": [{"name": "", "type": "bool[]"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": True, "name": "token", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "Tip",
        "type": "event",
    },
]


ERC20_ABI = [
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

class Web3BatchTipGateway:
    """BatchTipGateway backed by a JSON-RPC node with ordered fallbacks."""

    def __init__(
        self,
        private_key: Optional[str] = None,
        contract_address: Optional[str] = None,
        rpc_urls: Optional[List[str]] = None,
        chain_id: Optional[int] = None
    ):
        self.logger = logger.bind(service="web3_gateway")
        key = private_key or settings.executor_private_key
        if not key:
            raise ConfigurationError("EXECUTOR_PRIVATE_KEY is not configured")

        self._account = Account.from_key(key)
        self.executor_address = self._account.address.lower()
        self.contract_address = normalize_address(contract_address or settings.batch_contract_address)
        self.rpc_urls = rpc_urls or settings.rpc_urls
        self.chain_id = chain_id or settings.chain_id
        self._w3: Optional[Web3] = None

    # Connection

    def _connect(self) -> Web3:
        if self._w3 is not None and self._w3.is_connected():
            return self._w3

        for url in self.rpc_urls:
            w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": 30}))
            if w3.is_connected():
                if self._w3 is not None:
                    self.logger.warning("Switched RPC endpoint", rpc_url=url)
                self._w3 = w3
                return w3
            self.logger.warning("RPC endpoint unreachable", rpc_url=url)

        raise TransientExternalError("No RPC endpoint reachable", {"endpoints": self.rpc_urls})

    def _contract(self, w3: Web3):
        return w3.eth.contract(
            address=Web3.to_checksum_address(self.contract_address),
            abi=BATCH_TIP_ABI
        )

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args))
        except (TransientExternalError, ChainError, TimeExhausted, TransactionNotFound):
            raise
        except (ContractLogicError, Web3RPCError) as e:
            raise rpc_error(e)
        except (OSError, asyncio.TimeoutError) as e:
            # requests' connection and timeout errors are OSErrors
            self._w3 = None
            raise TransientExternalError(f"RPC call failed: {e}")

    # Contract reads

    async def owner(self) -> str:
        def _call():
            return self._contract(self._connect()).functions.owner().call()
        return (await self._run(_call)).lower()

    async def is_executor(self, address: str) -> bool:
        def _call():
            contract = self._contract(self._connect())
            return contract.functions.isExecutor(Web3.to_checksum_address(address)).call()
        return bool(await self._run(_call))

    async def get_nonce(self, address: str) -> int:
        def _call():
            return self._connect().eth.get_transaction_count(
                Web3.to_checksum_address(address), "latest"
            )
        return await self._run(_call)

    async def available_funds(self, token_address: str, owner: str) -> int:
        """Lower of the owner's token balance and its allowance to the batch contract."""
        def _call():
            token = self._connect().eth.contract(
                address=Web3.to_checksum_address(token_address), abi=ERC20_ABI
            )
            holder = Web3.to_checksum_address(owner)
            balance = token.functions.balanceOf(holder).call()
            allowance = token.functions.allowance(
                holder, Web3.to_checksum_address(self.contract_address)
            ).call()
            return min(balance, allowance)
        return await self._run(_call)

    # Transactions

    def _fees(self, w3: Web3) -> dict:
        caps = ChainConfig.get_fee_caps()
        block = w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas") or w3.eth.gas_price
        priority = min(w3.eth.max_priority_fee, caps["max_priority_fee_per_gas"])
        max_fee = min(base_fee * 2 + priority, caps["max_fee_per_gas"])
        return {"maxFeePerGas": max_fee, "maxPriorityFeePerGas": min(priority, max_fee)}

    def _sign(self, w3: Web3, function_call, account, nonce: Optional[int] = None) -> SignedBatch:
        if nonce is None:
            nonce = w3.eth.get_transaction_count(account.address, "pending")
        tx = function_call.build_transaction({
            "from": account.address,
            "nonce": nonce,
            "chainId": self.chain_id,
            "gas": settings.settlement_gas_limit,
            **self._fees(w3),
        })
        try:
            estimate = w3.eth.estimate_gas(tx)
        except ContractLogicError as e:
            raise ChainError(f"Transaction would revert: {e}", {"nonce": nonce})
        tx["gas"] = estimate * settings.gas_estimate_buffer_percent // 100

        signed = account.sign_transaction(tx)
        return SignedBatch(
            tx_hash=Web3.to_hex(signed.hash),
            nonce=nonce,
            raw_transaction=Web3.to_hex(signed.raw_transaction),
        )

    async def build_batch_tip(self, transfer: BatchTransfer) -> SignedBatch:
        def _build():
            w3 = self._connect()
            call = self._contract(w3).functions.batchTip(
                [Web3.to_checksum_address(a) for a in transfer.froms],
                [Web3.to_checksum_address(a) for a in transfer.tos],
                [Web3.to_checksum_address(a) for a in transfer.tokens],
                [int(a) for a in transfer.amounts],
            )
            return self._sign(w3, call, self._account)

        signed = await self._run(_build)
        self.logger.info(
            "✍️ batchTip signed",
            tx_hash=signed.tx_hash,
            nonce=signed.nonce,
            transfers=len(transfer)
        )
        return signed

    async def broadcast(self, raw_transaction: str) -> str:
        tx_hash = Web3.to_hex(Web3.keccak(hexstr=raw_transaction))

        def _send():
            try:
                return Web3.to_hex(self._connect().eth.send_raw_transaction(raw_transaction))
            except Web3RPCError as e:
                if any(m in str(e).lower() for m in ALREADY_KNOWN_MESSAGES):
                    return tx_hash
                raise rpc_error(e, "Broadcast rejected", {"tx_hash": tx_hash})

        return await self._run(_send)

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        def _get():
            try:
                return self._connect().eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = await self._run(_get)
        return self._to_receipt(tx_hash, receipt) if receipt else None

    async def is_known(self, tx_hash: str) -> bool:
        """True while the node still has the transaction, mined or in its mempool."""
        def _get():
            try:
                self._connect().eth.get_transaction(tx_hash)
                return True
            except TransactionNotFound:
                return False

        return await self._run(_get)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[TxReceipt]:
        def _wait():
            try:
                return self._connect().eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
            except TimeExhausted:
                return None

        receipt = await self._run(_wait)
        return self._to_receipt(tx_hash, receipt) if receipt else None

    # Role management (owner key required)

    async def add_executor(self, address: str, owner_private_key: Optional[str] = None) -> str:
        return await self._owner_call("addExecutor", address, owner_private_key)

    async def remove_executor(self, address: str, owner_private_key: Optional[str] = None) -> str:
        return await self._owner_call("removeExecutor", address, owner_private_key)

    async def _owner_call(self, method: str, address: str, owner_private_key: Optional[str]) -> str:
        owner_account = Account.from_key(owner_private_key) if owner_private_key else self._account
        owner = await self.owner()
        if owner_account.address.lower() != owner:
            raise ChainError(
                f"{owner_account.address} is not the contract owner",
                {"owner": owner}
            )

        def _send():
            w3 = self._connect()
            call = getattr(self._contract(w3).functions, method)(Web3.to_checksum_address(address))
            signed = self._sign(w3, call, owner_account)
            w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(signed.tx_hash, timeout=120)
            if receipt["status"] != 1:
                raise ChainError(f"{method} reverted", {"tx_hash": signed.tx_hash})
            return signed.tx_hash

        tx_hash = await self._run(_send)
        self.logger.info(f"✅ {method} confirmed", executor=address, tx_hash=tx_hash)
        return tx_hash

    @staticmethod
    def _to_receipt(tx_hash: str, receipt) -> TxReceipt:
        return TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )


def rpc_error(error: Exception, context: str = "RPC call failed", details: Optional[dict] = None) -> Exception:
    """Map a node error to TransientExternalError (retry later) or ChainError (rejected)."""
    message = f"{context}: {error}"
    if any(m in str(error).lower() for m in TRANSIENT_RPC_MESSAGES):
        return TransientExternalError(message, details)
    return ChainError(message, details)
