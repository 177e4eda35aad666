"""Token factory ABI, event topics and typed event decoding.

Raw logs returned by `eth_getLogs` are decoded into frozen dataclasses, one
per event kind. Every decoded event carries its chain position
(block number, transaction index, log index) so that events fetched by
separate queries can be put back into chain order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3._utils.events import get_event_data
from web3.exceptions import Web3Exception

from launchpad_indexer.chain.client import to_hex

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class EventKind(str, Enum):
    """Token factory events consumed by the indexer."""

    TOKEN_CREATED = "TokenCreated"
    TOKEN_BUY = "TokenBuy"
    TOKEN_SELL = "TokenSell"
    NEW_COMPETITION_STARTED = "NewCompetitionStarted"
    SET_WINNER = "SetWinner"
    BURN_TOKEN_AND_MINT_WINNER = "BurnTokenAndMintWinner"
    WINNER_LIQUIDITY_ADDED = "WinnerLiquidityAdded"


def _input(name: str, abi_type: str, *, indexed: bool = False) -> dict[str, Any]:
    return {"name": name, "type": abi_type, "indexed": indexed}


def _event(name: str, *inputs: dict[str, Any]) -> dict[str, Any]:
    return {"type": "event", "name": name, "anonymous": False, "inputs": list(inputs)}


_TRADE_INPUTS = (
    _input("token", "address", indexed=True),
    _input("amount0In", "uint256"),
    _input("amount0Out", "uint256"),
    _input("fee", "uint256"),
    _input("timestamp", "uint256"),
)

EVENT_ABIS: dict[EventKind, dict[str, Any]] = {
    EventKind.TOKEN_CREATED: _event(
        "TokenCreated",
        _input("token", "address", indexed=True),
        _input("name", "string"),
        _input("symbol", "string"),
        _input("uri", "string"),
        _input("creator", "address"),
        _input("competitionId", "uint256"),
        _input("timestamp", "uint256"),
    ),
    EventKind.TOKEN_BUY: _event("TokenBuy", *_TRADE_INPUTS),
    EventKind.TOKEN_SELL: _event("TokenSell", *_TRADE_INPUTS),
    EventKind.NEW_COMPETITION_STARTED: _event(
        "NewCompetitionStarted",
        _input("competitionId", "uint256"),
        _input("timestamp", "uint256"),
    ),
    EventKind.SET_WINNER: _event(
        "SetWinner",
        _input("winner", "address"),
        _input("competitionId", "uint256"),
        _input("timestamp", "uint256"),
    ),
    EventKind.BURN_TOKEN_AND_MINT_WINNER: _event(
        "BurnTokenAndMintWinner",
        _input("sender", "address"),
        _input("token", "address"),
        _input("winnerToken", "address"),
        _input("burnedAmount", "uint256"),
        _input("fee", "uint256"),
        _input("mintedAmount", "uint256"),
        _input("timestamp", "uint256"),
    ),
    EventKind.WINNER_LIQUIDITY_ADDED: _event(
        "WinnerLiquidityAdded",
        _input("tokenAddress", "address"),
        _input("tokenCreator", "address"),
        _input("pool", "address"),
        _input("sender", "address"),
        _input("tokenId", "uint256"),
        _input("liquidity", "uint128"),
        _input("actualTokenAmount", "uint256"),
        _input("actualAssetAmount", "uint256"),
        _input("timestamp", "uint256"),
    ),
}

# Functions the competition scheduler reads and calls on the factory.
FACTORY_FUNCTION_ABIS: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "collateral",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "startNewCompetition",
        "stateMutability": "nonpayable",
        "inputs": [],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "setWinnerByCompetitionId",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "competitionId", "type": "uint256"}],
        "outputs": [],
    },
]


def event_signature(abi: dict[str, Any]) -> str:
    """Canonical `Name(type,...)` signature of an event ABI entry."""
    types = ",".join(item["type"] for item in abi["inputs"])
    return f"{abi['name']}({types})"


def event_topic(abi: dict[str, Any]) -> str:
    """Keccak topic hash of an event ABI entry (0x-prefixed)."""
    return to_hex(bytes(Web3.keccak(text=event_signature(abi))))


EVENT_TOPICS: dict[EventKind, str] = {kind: event_topic(abi) for kind, abi in EVENT_ABIS.items()}


@dataclass(frozen=True)
class ChainEvent:
    """Position of a decoded event in the chain plus the source that emitted it."""

    kind: ClassVar[EventKind]

    source_address: str
    block_number: int
    transaction_index: int
    log_index: int
    tx_hash: str

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (self.block_number, self.transaction_index, self.log_index)


@dataclass(frozen=True)
class TokenCreated(ChainEvent):
    kind: ClassVar[EventKind] = EventKind.TOKEN_CREATED

    token: str
    name: str
    symbol: str
    uri: str
    creator: str
    competition_id: int
    timestamp: int


@dataclass(frozen=True)
class TokenBuy(ChainEvent):
    """amount_in is quote paid, amount_out is tokens minted to the buyer."""

    kind: ClassVar[EventKind] = EventKind.TOKEN_BUY

    token: str
    amount_in: int
    amount_out: int
    fee: int
    timestamp: int


@dataclass(frozen=True)
class TokenSell(ChainEvent):
    """amount_in is tokens burned, amount_out is quote received."""

    kind: ClassVar[EventKind] = EventKind.TOKEN_SELL

    token: str
    amount_in: int
    amount_out: int
    fee: int
    timestamp: int


@dataclass(frozen=True)
class NewCompetitionStarted(ChainEvent):
    kind: ClassVar[EventKind] = EventKind.NEW_COMPETITION_STARTED

    competition_id: int
    timestamp: int


@dataclass(frozen=True)
class SetWinner(ChainEvent):
    kind: ClassVar[EventKind] = EventKind.SET_WINNER

    winner: str
    competition_id: int
    timestamp: int


@dataclass(frozen=True)
class BurnTokenAndMintWinner(ChainEvent):
    kind: ClassVar[EventKind] = EventKind.BURN_TOKEN_AND_MINT_WINNER

    sender: str
    token: str
    winner_token: str
    burned_amount: int
    fee: int
    minted_amount: int
    timestamp: int


@dataclass(frozen=True)
class WinnerLiquidityAdded(ChainEvent):
    kind: ClassVar[EventKind] = EventKind.WINNER_LIQUIDITY_ADDED

    token: str
    token_creator: str
    pool: str
    sender: str
    position_token_id: int
    liquidity: int
    actual_token_amount: int
    actual_asset_amount: int
    timestamp: int


DecodedEvent = (
    TokenCreated
    | TokenBuy
    | TokenSell
    | NewCompetitionStarted
    | SetWinner
    | BurnTokenAndMintWinner
    | WinnerLiquidityAdded
)


class EventDecodeError(ValueError):
    """Raised when a log does not match the ABI of the kind it was fetched for."""


def _addr(value: Any) -> str:
    return str(value).lower()


class EventDecoder:
    """Decodes raw `eth_getLogs` entries into typed events."""

    def __init__(self) -> None:
        self._codec = Web3().codec

    def decode(self, kind: EventKind, log: dict[str, Any], *, source_address: str) -> DecodedEvent:
        try:
            event_data = get_event_data(self._codec, EVENT_ABIS[kind], log)
        except (Web3Exception, DecodingError, KeyError, ValueError, TypeError) as e:
            raise EventDecodeError(
                f"Cannot decode {kind.value} log at block {log.get('blockNumber')}, "
                f"tx {to_hex(log.get('transactionHash', b''))}: {e}"
            ) from e

        args = event_data["args"]
        position = {
            "source_address": source_address.lower(),
            "block_number": int(log["blockNumber"]),
            "transaction_index": int(log["transactionIndex"]),
            "log_index": int(log["logIndex"]),
            "tx_hash": to_hex(log["transactionHash"]),
        }

        match kind:
            case EventKind.TOKEN_CREATED:
                return TokenCreated(
                    **position,
                    token=_addr(args["token"]),
                    name=args["name"],
                    symbol=args["symbol"],
                    uri=args["uri"],
                    creator=_addr(args["creator"]),
                    competition_id=int(args["competitionId"]),
                    timestamp=int(args["timestamp"]),
                )
            case EventKind.TOKEN_BUY:
                return TokenBuy(
                    **position,
                    token=_addr(args["token"]),
                    amount_in=int(args["amount0In"]),
                    amount_out=int(args["amount0Out"]),
                    fee=int(args["fee"]),
                    timestamp=int(args["timestamp"]),
                )
            case EventKind.TOKEN_SELL:
                return TokenSell(
                    **position,
                    token=_addr(args["token"]),
                    amount_in=int(args["amount0In"]),
                    amount_out=int(args["amount0Out"]),
                    fee=int(args["fee"]),
                    timestamp=int(args["timestamp"]),
                )
            case EventKind.NEW_COMPETITION_STARTED:
                return NewCompetitionStarted(
                    **position,
                    competition_id=int(args["competitionId"]),
                    timestamp=int(args["timestamp"]),
                )
            case EventKind.SET_WINNER:
                return SetWinner(
                    **position,
                    winner=_addr(args["winner"]),
                    competition_id=int(args["competitionId"]),
                    timestamp=int(args["timestamp"]),
                )
            case EventKind.BURN_TOKEN_AND_MINT_WINNER:
                return BurnTokenAndMintWinner(
                    **position,
                    sender=_addr(args["sender"]),
                    token=_addr(args["token"]),
                    winner_token=_addr(args["winnerToken"]),
                    burned_amount=int(args["burnedAmount"]),
                    fee=int(args["fee"]),
                    minted_amount=int(args["mintedAmount"]),
                    timestamp=int(args["timestamp"]),
                )
            case EventKind.WINNER_LIQUIDITY_ADDED:
                return WinnerLiquidityAdded(
                    **position,
                    token=_addr(args["tokenAddress"]),
                    token_creator=_addr(args["tokenCreator"]),
                    pool=_addr(args["pool"]),
                    sender=_addr(args["sender"]),
                    position_token_id=int(args["tokenId"]),
                    liquidity=int(args["liquidity"]),
                    actual_token_amount=int(args["actualTokenAmount"]),
                    actual_asset_amount=int(args["actualAssetAmount"]),
                    timestamp=int(args["timestamp"]),
                )
        raise EventDecodeError(f"Unsupported event kind {kind!r}")
