"""Chain access - JSON-RPC client and token factory event decoding."""

from launchpad_indexer.chain.client import (
    ChainClient,
    ChainClientError,
    RateLimiter,
    RPCError,
    TransactionRevertedError,
)
from launchpad_indexer.chain.events import (
    EVENT_ABIS,
    EVENT_TOPICS,
    FACTORY_FUNCTION_ABIS,
    ZERO_ADDRESS,
    BurnTokenAndMintWinner,
    ChainEvent,
    DecodedEvent,
    EventDecodeError,
    EventDecoder,
    EventKind,
    NewCompetitionStarted,
    SetWinner,
    TokenBuy,
    TokenCreated,
    TokenSell,
    WinnerLiquidityAdded,
)

__all__ = [
    "EVENT_ABIS",
    "EVENT_TOPICS",
    "FACTORY_FUNCTION_ABIS",
    "ZERO_ADDRESS",
    "BurnTokenAndMintWinner",
    "ChainClient",
    "ChainClientError",
    "ChainEvent",
    "DecodedEvent",
    "EventDecodeError",
    "EventDecoder",
    "EventKind",
    "NewCompetitionStarted",
    "RPCError",
    "RateLimiter",
    "SetWinner",
    "TokenBuy",
    "TokenCreated",
    "TokenSell",
    "TransactionRevertedError",
    "WinnerLiquidityAdded",
]
