"""Node JSON-RPC access for the indexer and the competition scheduler.

Reads (block height, logs, transaction senders, view calls) go through a
token bucket and are retried with exponential backoff, first against the
primary endpoint and then against the optional fallback. Transaction senders
are immutable and may be cached in Redis. Writes are signed locally.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 7 * 24 * 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
PRIMARY_RECOVERY_SECONDS = 60.0

# Headroom applied on top of the node's gas estimate.
GAS_LIMIT_MULTIPLIER_PERCENT = 120

TRANSIENT_RPC_ERRORS: tuple[type[BaseException], ...] = (Web3Exception, OSError, TimeoutError)

SENDER_CACHE_PREFIX = "launchpad:tx_from:"


def to_hex(value: Any) -> str:
    """Render bytes-like or hex string values as lowercase 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """An RPC call failed on every endpoint; callers treat this as transient."""


class TransactionRevertedError(ChainClientError):
    """A mined transaction reported status 0."""


@dataclass
class RateLimiter:
    """Token bucket shared by every outbound RPC call."""

    max_tokens: float
    refill_rate: float
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    async def acquire(self, tokens: float = 1.0) -> None:
        while True:
            now = time.monotonic()
            self.tokens = min(self.max_tokens, self.tokens + (now - self.last_refill) * self.refill_rate)
            self.last_refill = now
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            await asyncio.sleep((tokens - self.tokens) / self.refill_rate)


def _connect(rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
    w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
    # Sidechains such as BSC and Polygon carry oversized extraData in headers.
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


class ChainClient:
    """JSON-RPC client for one EVM chain.

    Example:
        ```python
        client = ChainClient("https://rpc.example.org", fallback_rpc_url="https://rpc-2.example.org")
        height = await client.current_height()
        logs = await client.get_logs(factory, topic, from_block=100, to_block=199)
        trader = await client.get_transaction_sender(logs[0]["transactionHash"])
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        chain_id: int | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint.
            fallback_rpc_url: Endpoint used once the primary exhausts its retries.
            redis: Cache for transaction senders; caching is off when None.
            chain_id: Chain ID used when signing; read from the node when None.
            cache_ttl_seconds: Expiry of cached senders.
            max_requests_per_second: Token bucket size and refill rate.
            max_retries: Attempts per endpoint before moving on.
            retry_delay_seconds: First backoff delay, doubled after each failure.
            request_timeout_seconds: Upper bound for a single RPC call.
        """
        self._redis = redis
        self._chain_id = chain_id
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._request_timeout = request_timeout_seconds

        self._w3 = _connect(rpc_url)
        self._w3_fallback = _connect(fallback_rpc_url) if fallback_rpc_url else None
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._primary_failed_at = 0.0

    def _endpoints(self) -> list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]]:
        endpoints: list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]] = []
        # An unhealthy primary is tried again once the recovery window has passed.
        if self._primary_healthy or time.monotonic() - self._primary_failed_at > PRIMARY_RECOVERY_SECONDS:
            endpoints.append(("primary", self._w3))
        if self._w3_fallback is not None:
            endpoints.append(("fallback", self._w3_fallback))
        return endpoints

    async def _invoke(self, w3: AsyncWeb3[AsyncHTTPProvider], method: str, *args: Any) -> Any:
        # block_number, chain_id and gas_price are awaitable properties, not methods.
        member = getattr(w3.eth, method)
        call = member if inspect.isawaitable(member) else member(*args)
        return await asyncio.wait_for(call, timeout=self._request_timeout)

    async def _rpc(self, method: str, *args: Any) -> Any:
        """Call ``web3.eth.<method>`` with retries, backoff and failover.

        Raises:
            RPCError: If every attempt on every endpoint failed.
            TransactionNotFound: The node answered that the hash is unknown.
        """
        await self._rate_limiter.acquire()

        last_error: BaseException | None = None
        for label, w3 in self._endpoints():
            delay = self._retry_delay
            for attempt in range(1, self._max_retries + 1):
                try:
                    result = await self._invoke(w3, method, *args)
                except TransactionNotFound:
                    raise
                except TRANSIENT_RPC_ERRORS as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s", label, method, attempt, self._max_retries, e
                    )
                    if attempt < self._max_retries:
                        await asyncio.sleep(delay)
                        delay *= 2
                    continue
                if w3 is self._w3:
                    self._primary_healthy = True
                return result
            if w3 is self._w3:
                self._primary_healthy = False
                self._primary_failed_at = time.monotonic()

        raise RPCError(f"RPC call {method} failed on all endpoints: {last_error}")

    def _active_web3(self) -> AsyncWeb3[AsyncHTTPProvider]:
        if self._primary_healthy or self._w3_fallback is None:
            return self._w3
        return self._w3_fallback

    async def current_height(self) -> int:
        return int(await self._rpc("block_number"))

    async def get_logs(
        self,
        address: str,
        topic: str,
        *,
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        """Logs of one event topic emitted by ``address`` in [from_block, to_block]."""
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"Invalid block range [{from_block}, {to_block}]")
        logs = await self._rpc(
            "get_logs",
            {
                "address": AsyncWeb3.to_checksum_address(address),
                "topics": [topic],
                "fromBlock": from_block,
                "toBlock": to_block,
            },
        )
        return [dict(log) for log in logs]

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        """The transaction, or None when the node does not know the hash."""
        try:
            tx = await self._rpc("get_transaction", to_hex(tx_hash))
        except TransactionNotFound:
            return None
        return dict(tx) if tx is not None else None

    async def _cached_sender(self, tx_hash: str) -> str | None:
        if self._redis is None:
            return None
        try:
            value = await self._redis.get(SENDER_CACHE_PREFIX + tx_hash)
        except Exception as e:
            logger.warning("Sender cache lookup failed for %s: %s", tx_hash, e)
            return None
        if value is None:
            return None
        return value.decode() if isinstance(value, bytes) else str(value)

    async def _cache_sender(self, tx_hash: str, sender: str) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(SENDER_CACHE_PREFIX + tx_hash, sender, ex=self._cache_ttl)
        except Exception as e:
            logger.warning("Sender cache store failed for %s: %s", tx_hash, e)

    async def get_transaction_sender(self, tx_hash: str) -> str:
        """Lowercased ``from`` address of a transaction.

        Trade events do not carry the trader, so buys and sells resolve it here.
        """
        tx_hash = to_hex(tx_hash)
        cached = await self._cached_sender(tx_hash)
        if cached is not None:
            return cached

        tx = await self.get_transaction(tx_hash)
        if tx is None:
            raise RPCError(f"Transaction {tx_hash} not found")
        sender = str(tx["from"]).lower()
        await self._cache_sender(tx_hash, sender)
        return sender

    async def call_view(
        self,
        address: str,
        abi: Sequence[dict[str, Any]],
        function_name: str,
        *args: Any,
    ) -> Any:
        """Call a read-only contract function against the latest block."""
        await self._rate_limiter.acquire()
        contract = self._active_web3().eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=list(abi))
        try:
            return await asyncio.wait_for(
                contract.functions[function_name](*args).call(), timeout=self._request_timeout
            )
        except TRANSIENT_RPC_ERRORS as e:
            raise RPCError(f"Failed to call {function_name} on {address}: {e}") from e

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self._rpc("chain_id"))
        return self._chain_id

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return int(await self._rpc("estimate_gas", tx))

    def sign_transaction(self, tx: dict[str, Any], private_key: str) -> bytes:
        signed = self._w3.eth.account.sign_transaction(tx, private_key)
        return bytes(signed.raw_transaction)

    async def send_signed_transaction(self, raw_tx: bytes) -> str:
        return to_hex(await self._rpc("send_raw_transaction", raw_tx))

    async def submit_contract_call(
        self,
        address: str,
        abi: Sequence[dict[str, Any]],
        function_name: str,
        args: Sequence[Any],
        *,
        private_key: str,
    ) -> str:
        """Build, sign and broadcast a state-changing contract call.

        Returns:
            Transaction hash (0x-prefixed).
        """
        account = self._w3.eth.account.from_key(private_key)
        contract = self._w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=list(abi))

        tx: dict[str, Any] = {
            "from": account.address,
            "to": contract.address,
            "data": contract.encode_abi(function_name, args=list(args)),
            "value": 0,
            "chainId": await self.get_chain_id(),
            "nonce": await self._rpc("get_transaction_count", account.address, "pending"),
            "gasPrice": await self._rpc("gas_price"),
        }
        tx["gas"] = await self.estimate_gas(tx) * GAS_LIMIT_MULTIPLIER_PERCENT // 100

        tx_hash = await self.send_signed_transaction(self.sign_transaction(tx, private_key))
        logger.info(
            "Submitted %s to %s: tx=%s, nonce=%d, gas=%d",
            function_name,
            address,
            tx_hash,
            tx["nonce"],
            tx["gas"],
        )
        return tx_hash

    async def wait_for_receipt(
        self,
        tx_hash: str,
        *,
        timeout_seconds: float,
        poll_seconds: float = 2.0,
    ) -> dict[str, Any]:
        """Wait until a transaction is mined.

        Raises:
            RPCError: If no receipt appeared within the timeout.
            TransactionRevertedError: If the transaction was mined but failed.
        """
        try:
            receipt = await self._active_web3().eth.wait_for_transaction_receipt(
                tx_hash,  # type: ignore[arg-type]
                timeout=timeout_seconds,
                poll_latency=poll_seconds,
            )
        except TimeExhausted as e:
            raise RPCError(f"Transaction {tx_hash} not mined within {timeout_seconds}s") from e
        except TRANSIENT_RPC_ERRORS as e:
            raise RPCError(f"Failed to fetch receipt for {tx_hash}: {e}") from e

        receipt = dict(receipt)
        if int(receipt.get("status", 0)) != 1:
            raise TransactionRevertedError(f"Transaction {tx_hash} reverted")
        return receipt

    async def health_check(self) -> bool:
        """True if any endpoint answers a block-height query."""
        try:
            await self._rpc("block_number")
        except RPCError:
            return False
        return True

    async def aclose(self) -> None:
        """Close the HTTP sessions held by the providers."""
        for w3 in (self._w3, self._w3_fallback):
            if w3 is None:
                continue
            disconnect = getattr(w3.provider, "disconnect", None)
            if disconnect is None:
                continue
            try:
                await disconnect()
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
