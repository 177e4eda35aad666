"""Tests for the JSON-RPC chain client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import TimeExhausted, TransactionNotFound

from launchpad_indexer.chain.client import (
    ChainClient,
    RateLimiter,
    RPCError,
    TransactionRevertedError,
    to_hex,
)

FACTORY = "0x5fbdb2315678afecb367f032d93f642f64180aa3"
TOPIC = "0x" + "11" * 32
SENDER = "0xDdDdDdDdDdDdDdDdDdDdDdDdDdDdDdDdDdDdDdDd"


@pytest.fixture
def client() -> ChainClient:
    chain = ChainClient(
        "https://rpc.example.org",
        fallback_rpc_url="https://rpc-backup.example.org",
        max_requests_per_second=1000,
        max_retries=2,
        retry_delay_seconds=0.0,
    )
    chain._w3 = MagicMock()
    chain._w3_fallback = MagicMock()
    return chain


class TestToHex:
    def test_bytes(self) -> None:
        assert to_hex(b"\xab\xcd") == "0xabcd"

    def test_strings_are_lowercased_and_prefixed(self) -> None:
        assert to_hex("0xABCD") == "0xabcd"
        assert to_hex("abcd") == "0xabcd"


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_acquire_within_budget_does_not_wait(self) -> None:
        limiter = RateLimiter.create(10)

        for _ in range(10):
            await limiter.acquire()

        assert limiter.tokens < 1


class TestChainClient:
    @pytest.mark.asyncio
    async def test_current_height(self, client: ChainClient) -> None:
        height = asyncio.get_running_loop().create_future()
        height.set_result(1234)
        client._w3.eth.block_number = height

        assert await client.current_height() == 1234

    @pytest.mark.asyncio
    async def test_get_logs_retries_primary(self, client: ChainClient) -> None:
        client._w3.eth.get_logs = AsyncMock(side_effect=[OSError("connection reset"), [{"logIndex": 0}]])

        logs = await client.get_logs(FACTORY, TOPIC, from_block=10, to_block=20)

        assert logs == [{"logIndex": 0}]
        assert client._w3.eth.get_logs.await_count == 2
        params = client._w3.eth.get_logs.await_args.args[0]
        assert params["topics"] == [TOPIC]
        assert params["fromBlock"] == 10
        assert params["toBlock"] == 20
        assert params["address"].lower() == FACTORY

    @pytest.mark.asyncio
    async def test_get_logs_fails_over(self, client: ChainClient) -> None:
        client._w3.eth.get_logs = AsyncMock(side_effect=OSError("down"))
        client._w3_fallback.eth.get_logs = AsyncMock(return_value=[])

        assert await client.get_logs(FACTORY, TOPIC, from_block=10, to_block=20) == []
        assert client._primary_healthy is False

    @pytest.mark.asyncio
    async def test_get_logs_raises_after_all_endpoints_fail(self, client: ChainClient) -> None:
        client._w3.eth.get_logs = AsyncMock(side_effect=TimeoutError())
        client._w3_fallback.eth.get_logs = AsyncMock(side_effect=OSError("down"))

        with pytest.raises(RPCError):
            await client.get_logs(FACTORY, TOPIC, from_block=10, to_block=20)

    @pytest.mark.asyncio
    async def test_get_logs_rejects_inverted_range(self, client: ChainClient) -> None:
        with pytest.raises(ValueError):
            await client.get_logs(FACTORY, TOPIC, from_block=20, to_block=10)

    @pytest.mark.asyncio
    async def test_transaction_sender_is_cached(self, client: ChainClient) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=None)
        redis.set = AsyncMock()
        client._redis = redis
        client._w3.eth.get_transaction = AsyncMock(return_value={"from": SENDER})

        sender = await client.get_transaction_sender("0x" + "AA" * 32)

        assert sender == SENDER.lower()
        key = redis.set.await_args.args[0]
        assert key == "launchpad:tx_from:0x" + "aa" * 32
        assert redis.set.await_args.args[1] == SENDER.lower()

    @pytest.mark.asyncio
    async def test_transaction_sender_cache_hit(self, client: ChainClient) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=SENDER.lower().encode())
        client._redis = redis
        client._w3.eth.get_transaction = AsyncMock()

        sender = await client.get_transaction_sender("0x" + "aa" * 32)

        assert sender == SENDER.lower()
        client._w3.eth.get_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_transaction(self, client: ChainClient) -> None:
        client._w3.eth.get_transaction = AsyncMock(return_value=None)

        with pytest.raises(RPCError):
            await client.get_transaction_sender("0x" + "aa" * 32)

    @pytest.mark.asyncio
    async def test_unknown_transaction_is_none(self, client: ChainClient) -> None:
        client._w3.eth.get_transaction = AsyncMock(side_effect=TransactionNotFound("Transaction not found"))

        assert await client.get_transaction("0x" + "aa" * 32) is None
        client._w3.eth.get_transaction.assert_awaited_once()
        client._w3_fallback.eth.get_transaction.assert_not_called()

        with pytest.raises(RPCError):
            await client.get_transaction_sender("0x" + "aa" * 32)

    @pytest.mark.asyncio
    async def test_wait_for_receipt_success(self, client: ChainClient) -> None:
        client._w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 1, "blockNumber": 5})

        receipt = await client.wait_for_receipt("0x" + "aa" * 32, timeout_seconds=1)

        assert receipt["blockNumber"] == 5

    @pytest.mark.asyncio
    async def test_wait_for_receipt_reverted(self, client: ChainClient) -> None:
        client._w3.eth.wait_for_transaction_receipt = AsyncMock(return_value={"status": 0})

        with pytest.raises(TransactionRevertedError):
            await client.wait_for_receipt("0x" + "aa" * 32, timeout_seconds=1)

    @pytest.mark.asyncio
    async def test_wait_for_receipt_timeout(self, client: ChainClient) -> None:
        client._w3.eth.wait_for_transaction_receipt = AsyncMock(side_effect=TimeExhausted("not mined"))

        with pytest.raises(RPCError):
            await client.wait_for_receipt("0x" + "aa" * 32, timeout_seconds=1)

    @pytest.mark.asyncio
    async def test_health_check(self, client: ChainClient) -> None:
        client._w3.eth.block_number = MagicMock(side_effect=OSError("down"))
        client._w3_fallback.eth.block_number = MagicMock(side_effect=OSError("down"))

        assert await client.health_check() is False
