"""
In-process batch tip contract and gateway.

Mirrors the deployed contract's rules: an owner manages a set of executor
addresses, only executors may call batchTip, and a batch either performs
every transfer (one Tip event each) or reverts as a whole. Used for
``chain_mode=local`` development and throughout the test suite.
"""

import json
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

import structlog
from eth_account import Account
from web3 import Web3

from tipflow.core.exceptions import AuthorizationError, ChainError
from tipflow.services.settlement.gateway import BatchTransfer, SignedBatch, TxReceipt
from tipflow.utils.validation import normalize_address


logger = structlog.get_logger(__name__)

LOCAL_CONTRACT_ADDRESS = "0x0000000000000000000000000000000000007ea1"
MAX_UINT256 = 2 ** 256 - 1


class ExecutorRoles:
    """Two-tier role set: one owner, any number of executors."""

    def __init__(self, owner: str):
        self.owner = normalize_address(owner)
        self._executors: Set[str] = set()

    def is_owner(self, address: str) -> bool:
        return normalize_address(address) == self.owner

    def is_executor(self, address: str) -> bool:
        return normalize_address(address) in self._executors

    def add_executor(self, caller: str, address: str) -> None:
        self._require_owner(caller)
        self._executors.add(normalize_address(address))

    def remove_executor(self, caller: str, address: str) -> None:
        self._require_owner(caller)
        self._executors.discard(normalize_address(address))

    @property
    def executors(self) -> List[str]:
        return sorted(self._executors)

    def _require_owner(self, caller: str) -> None:
        if not self.is_owner(caller):
            raise AuthorizationError("Only the owner can manage executors", {"caller": caller})


@dataclass(frozen=True)
class TipEvent:
    from_address: str
    to_address: str
    token_address: str
    amount: int


class LocalBatchTipContract:
    """
    Token ledger with allowance-based, all-or-nothing batch transfers.

    With ``enforce_balances=False`` every transfer succeeds, which is what a
    local development stack wants.
    """

    def __init__(self, owner: str, enforce_balances: bool = True):
        self.roles = ExecutorRoles(owner)
        self.enforce_balances = enforce_balances
        self._balances: Dict[Tuple[str, str], int] = {}
        self._allowances: Dict[Tuple[str, str], int] = {}
        self.events: List[TipEvent] = []

    def mint(self, token: str, holder: str, amount: int) -> None:
        key = (normalize_address(token), normalize_address(holder))
        self._balances[key] = self._balances.get(key, 0) + amount

    def approve(self, token: str, holder: str, amount: int) -> None:
        self._allowances[(normalize_address(token), normalize_address(holder))] = amount

    def balance_of(self, token: str, holder: str) -> int:
        return self._balances.get((normalize_address(token), normalize_address(holder)), 0)

    def spendable(self, token: str, holder: str) -> int:
        """What a batch may move out of ``holder``: the lower of balance and allowance."""
        if not self.enforce_balances:
            return MAX_UINT256
        key = (normalize_address(token), normalize_address(holder))
        return min(self._balances.get(key, 0), self._allowances.get(key, 0))

    def batch_tip(self, caller: str, transfer: BatchTransfer) -> List[TipEvent]:
        if not self.roles.is_executor(caller):
            raise AuthorizationError("Caller is not an executor", {"caller": caller})

        balances = dict(self._balances)
        allowances = dict(self._allowances)
        emitted: List[TipEvent] = []

        for index, (from_, to, token, amount) in enumerate(
            zip(transfer.froms, transfer.tos, transfer.tokens, transfer.amounts)
        ):
            from_, to, token = (normalize_address(a) for a in (from_, to, token))
            if self.enforce_balances:
                source = (token, from_)
                if allowances.get(source, 0) < amount:
                    raise ChainError(f"Transfer {index} failed: insufficient allowance")
                if balances.get(source, 0) < amount:
                    raise ChainError(f"Transfer {index} failed: insufficient balance")
                allowances[source] -= amount
                balances[source] -= amount
                balances[(token, to)] = balances.get((token, to), 0) + amount
            emitted.append(TipEvent(from_, to, token, amount))

        self._balances = balances
        self._allowances = allowances
        self.events.extend(emitted)
        return emitted


class LocalChainGateway:
    """
    BatchTipGateway over a LocalBatchTipContract.

    Transactions mine on broadcast unless ``auto_mine`` is off, in which case
    they wait in a mempool until ``mine()`` or ``drop_pending()``.
    """

    def __init__(
        self,
        contract: LocalBatchTipContract,
        executor_address: str,
        auto_mine: bool = True
    ):
        self.contract = contract
        self.contract_address = LOCAL_CONTRACT_ADDRESS
        self.executor_address = normalize_address(executor_address)
        self.auto_mine = auto_mine

        self._nonces: Dict[str, int] = {}
        self._mempool: Dict[str, dict] = {}
        self._receipts: Dict[str, TxReceipt] = {}
        self._block_number = 0

        self.broadcasts: List[str] = []
        self.fail_next_broadcast: Optional[Exception] = None

    async def owner(self) -> str:
        return self.contract.roles.owner

    async def is_executor(self, address: str) -> bool:
        return self.contract.roles.is_executor(address)

    async def add_executor(self, address: str, owner_private_key: Optional[str] = None) -> str:
        caller = self._caller(owner_private_key)
        self.contract.roles.add_executor(caller, address)
        return self._admin_hash("addExecutor", caller, address)

    async def remove_executor(self, address: str, owner_private_key: Optional[str] = None) -> str:
        caller = self._caller(owner_private_key)
        self.contract.roles.remove_executor(caller, address)
        return self._admin_hash("removeExecutor", caller, address)

    async def build_batch_tip(self, transfer: BatchTransfer) -> SignedBatch:
        nonce = self._nonces.get(self.executor_address, 0) + sum(
            1 for tx in self._mempool.values() if tx["from"] == self.executor_address
        )
        tx = {
            "from": self.executor_address,
            "nonce": nonce,
            "froms": transfer.froms,
            "tos": transfer.tos,
            "tokens": transfer.tokens,
            "amounts": [str(a) for a in transfer.amounts],
        }
        raw = "0x" + json.dumps(tx, sort_keys=True).encode().hex()
        return SignedBatch(tx_hash=self._hash(raw), nonce=nonce, raw_transaction=raw)

    async def broadcast(self, raw_transaction: str) -> str:
        self.broadcasts.append(raw_transaction)
        if self.fail_next_broadcast is not None:
            error, self.fail_next_broadcast = self.fail_next_broadcast, None
            raise error

        tx_hash = self._hash(raw_transaction)
        if tx_hash in self._receipts or tx_hash in self._mempool:
            return tx_hash

        tx = json.loads(bytes.fromhex(raw_transaction[2:]).decode())
        if tx["nonce"] < self._nonces.get(tx["from"], 0):
            raise ChainError("nonce too low", {"tx_hash": tx_hash})

        self._mempool[tx_hash] = tx
        if self.auto_mine:
            self.mine()
        return tx_hash

    def mine(self) -> List[TxReceipt]:
        """Execute every mempool transaction in nonce order."""
        mined = []
        for tx_hash, tx in sorted(self._mempool.items(), key=lambda item: item[1]["nonce"]):
            self._block_number += 1
            transfer = BatchTransfer(
                tx["froms"], tx["tos"], tx["tokens"], [int(a) for a in tx["amounts"]]
            )
            try:
                self.contract.batch_tip(tx["from"], transfer)
                status = 1
            except (AuthorizationError, ChainError) as e:
                logger.info("Local batchTip reverted", tx_hash=tx_hash, reason=e.message)
                status = 0
            self._nonces[tx["from"]] = tx["nonce"] + 1
            receipt = TxReceipt(tx_hash=tx_hash, status=status, block_number=self._block_number)
            self._receipts[tx_hash] = receipt
            mined.append(receipt)
        self._mempool.clear()
        return mined

    def drop_pending(self) -> None:
        """Forget the mempool as if another transaction consumed each nonce."""
        for tx in self._mempool.values():
            self._nonces[tx["from"]] = max(self._nonces.get(tx["from"], 0), tx["nonce"] + 1)
        self._mempool.clear()

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        return self._receipts.get(tx_hash)

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[TxReceipt]:
        return self._receipts.get(tx_hash)

    async def get_nonce(self, address: str) -> int:
        return self._nonces.get(normalize_address(address), 0)

    async def is_known(self, tx_hash: str) -> bool:
        return tx_hash in self._mempool or tx_hash in self._receipts

    async def available_funds(self, token_address: str, owner: str) -> int:
        return self.contract.spendable(token_address, owner)

    def _caller(self, private_key: Optional[str]) -> str:
        if private_key:
            return Account.from_key(private_key).address.lower()
        return self.contract.roles.owner

    def _admin_hash(self, method: str, caller: str, address: str) -> str:
        self._block_number += 1
        return self._hash(f"{method}:{caller}:{address}:{self._block_number}")

    @staticmethod
    def _hash(data: str) -> str:
        return Web3.to_hex(Web3.keccak(text=data))
