"""
Test how node errors surface from the web3 gateway (node stubbed).
"""

from types import SimpleNamespace

import pytest
from eth_account import Account
from web3 import Web3
from web3.exceptions import Web3RPCError

from tipflow.core.exceptions import ChainError, TransientExternalError
from tipflow.services.settlement.web3_gateway import Web3BatchTipGateway

from conftest import EXECUTOR


RAW_TRANSACTION = "0x02f86b8221050180843b9aca00"


def make_gateway(**eth_methods):
    gateway = Web3BatchTipGateway(
        private_key=Account.create().key.hex(),
        contract_address=EXECUTOR,
        rpc_urls=["http://rpc.invalid"],
        chain_id=8453,
    )
    node = SimpleNamespace(eth=SimpleNamespace(**eth_methods))
    gateway._connect = lambda: node
    return gateway


def rejecting(message):
    def _call(*args, **kwargs):
        raise Web3RPCError(message)
    return _call


@pytest.mark.asyncio
async def test_already_known_rebroadcast_returns_hash():
    gateway = make_gateway(send_raw_transaction=rejecting("already known"))

    tx_hash = await gateway.broadcast(RAW_TRANSACTION)

    assert tx_hash == Web3.to_hex(Web3.keccak(hexstr=RAW_TRANSACTION))


@pytest.mark.asyncio
async def test_rejected_broadcast_is_a_chain_error():
    gateway = make_gateway(send_raw_transaction=rejecting("nonce too low"))

    with pytest.raises(ChainError) as exc_info:
        await gateway.broadcast(RAW_TRANSACTION)

    assert "nonce too low" in exc_info.value.message
    assert exc_info.value.details["tx_hash"] == Web3.to_hex(Web3.keccak(hexstr=RAW_TRANSACTION))


@pytest.mark.asyncio
async def test_rate_limited_broadcast_is_transient():
    gateway = make_gateway(send_raw_transaction=rejecting("429 Too Many Requests"))

    with pytest.raises(TransientExternalError):
        await gateway.broadcast(RAW_TRANSACTION)


@pytest.mark.asyncio
async def test_rpc_errors_on_reads_are_chain_errors():
    gateway = make_gateway(get_transaction_count=rejecting("insufficient funds for gas * price + value"))

    with pytest.raises(ChainError):
        await gateway.get_nonce(gateway.executor_address)
