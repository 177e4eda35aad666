"""Application of decoded token factory events to relational state.

Each event kind has one handler. Handlers run sequentially inside the
sweep's transaction, so a later handler sees everything written by earlier
ones in the same sweep. Any broken invariant raises
`IndexerInconsistencyError`; the caller must roll back the whole sweep.

Token amounts are uint256 values and are handled as Python ints. Prices and
market caps are exact decimals with PRICE_SCALE fractional digits.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import TYPE_CHECKING, Any

from launchpad_indexer.chain.events import (
    ZERO_ADDRESS,
    BurnTokenAndMintWinner,
    DecodedEvent,
    EventKind,
    NewCompetitionStarted,
    SetWinner,
    TokenBuy,
    TokenCreated,
    TokenSell,
    WinnerLiquidityAdded,
)
from launchpad_indexer.storage.models import PRICE_SCALE
from launchpad_indexer.storage.repos import (
    CompetitionDTO,
    CompetitionRepository,
    LiquidityProvisionDTO,
    LiquidityProvisionRepository,
    TokenBalanceRepository,
    TokenBurnDTO,
    TokenBurnRepository,
    TokenDTO,
    TokenRepository,
    TradeDTO,
    TradeRepository,
    UserRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from launchpad_indexer.chain.client import ChainClient
    from launchpad_indexer.indexer.metadata import MetadataFetcher

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_DECIMALS = 18

# Enough significant digits for uint256 products without rounding before quantize.
_DECIMAL_PRECISION = 200
_PRICE_QUANTUM = Decimal(1).scaleb(-PRICE_SCALE)


class FatalIndexerError(Exception):
    """An error the indexer must not retry; the process should stop."""


class IndexerInconsistencyError(FatalIndexerError):
    """The event stream contradicts the state accumulated so far."""


def exchange_rate(numerator: int, denominator: int) -> Decimal:
    """numerator / denominator rounded to PRICE_SCALE fractional digits."""
    if denominator == 0:
        raise ZeroDivisionError("exchange rate with zero denominator")
    with localcontext() as ctx:
        ctx.prec = _DECIMAL_PRECISION
        return (Decimal(numerator) / Decimal(denominator)).quantize(_PRICE_QUANTUM)


def market_cap(price: Decimal, total_supply: int, token_decimals: int) -> Decimal:
    """price * total_supply / 10**token_decimals rounded to PRICE_SCALE digits."""
    with localcontext() as ctx:
        ctx.prec = _DECIMAL_PRECISION
        return (price * Decimal(total_supply) / Decimal(10) ** token_decimals).quantize(_PRICE_QUANTUM)


@dataclass
class _Repos:
    users: UserRepository
    tokens: TokenRepository
    trades: TradeRepository
    balances: TokenBalanceRepository
    competitions: CompetitionRepository
    burns: TokenBurnRepository
    liquidity: LiquidityProvisionRepository

    @classmethod
    def for_session(cls, session: AsyncSession) -> _Repos:
        return cls(
            users=UserRepository(session),
            tokens=TokenRepository(session),
            trades=TradeRepository(session),
            balances=TokenBalanceRepository(session),
            competitions=CompetitionRepository(session),
            burns=TokenBurnRepository(session),
            liquidity=LiquidityProvisionRepository(session),
        )


Handler = Callable[[_Repos, Any], Awaitable[None]]


class EventProcessor:
    """Applies chain-ordered events through a per-kind handler table."""

    def __init__(
        self,
        chain_client: ChainClient,
        metadata_fetcher: MetadataFetcher,
        *,
        token_decimals: int = DEFAULT_TOKEN_DECIMALS,
    ) -> None:
        self._chain = chain_client
        self._metadata = metadata_fetcher
        self._token_decimals = token_decimals

        self._handlers: dict[EventKind, Handler] = {
            EventKind.TOKEN_CREATED: self._on_token_created,
            EventKind.TOKEN_BUY: self._on_buy,
            EventKind.TOKEN_SELL: self._on_sell,
            EventKind.NEW_COMPETITION_STARTED: self._on_competition_started,
            EventKind.SET_WINNER: self._on_set_winner,
            EventKind.BURN_TOKEN_AND_MINT_WINNER: self._on_burn_and_mint,
            EventKind.WINNER_LIQUIDITY_ADDED: self._on_liquidity_added,
        }
        missing = set(EventKind) - self._handlers.keys()
        if missing:
            raise RuntimeError(f"No handler for event kinds: {sorted(k.value for k in missing)}")

    async def apply(self, session: AsyncSession, events: Sequence[DecodedEvent]) -> Counter[EventKind]:
        """Apply `events` in order within `session`; returns per-kind counts."""
        repos = _Repos.for_session(session)
        counts: Counter[EventKind] = Counter()
        for event in events:
            await self._handlers[event.kind](repos, event)
            counts[event.kind] += 1
        return counts

    async def _require_token(self, repos: _Repos, address: str, event: DecodedEvent) -> TokenDTO:
        token = await repos.tokens.get_by_address(address)
        if token is None or token.id is None:
            raise IndexerInconsistencyError(
                f"{event.kind.value} references unknown token {address} (tx {event.tx_hash})"
            )
        return token

    async def _on_token_created(self, repos: _Repos, event: TokenCreated) -> None:
        if await repos.tokens.get_by_address(event.token) is not None:
            raise IndexerInconsistencyError(f"Token {event.token} created twice (tx {event.tx_hash})")

        competition_pk: int | None = None
        if event.competition_id > 0:
            competition = await repos.competitions.get_open(event.source_address)
            if competition is None or competition.competition_id != event.competition_id:
                raise IndexerInconsistencyError(
                    f"Token {event.token} joins competition {event.competition_id} "
                    f"but open competition is {competition.competition_id if competition else None}"
                )
            competition_pk = competition.id

        snapshot = await self._metadata.fetch(event.uri)
        creator = await repos.users.find_or_create(event.creator)

        await repos.tokens.insert(
            TokenDTO(
                source_address=event.source_address,
                address=event.token,
                creation_tx_hash=event.tx_hash,
                creation_block=event.block_number,
                name=event.name,
                symbol=event.symbol,
                metadata_uri=event.uri,
                metadata_snapshot=snapshot,
                creator_id=creator.id,
                competition_id=competition_pk,
                timestamp=event.timestamp,
            )
        )
        logger.info(
            "Created token: address=%s, name=%s, symbol=%s, creator=%s, competition=%s, tx=%s",
            event.token,
            event.name,
            event.symbol,
            event.creator,
            event.competition_id or None,
            event.tx_hash,
        )

    async def _update_token(
        self,
        repos: _Repos,
        token: TokenDTO,
        *,
        price: Decimal,
        total_supply: int,
        event: TokenBuy | TokenSell,
    ) -> Decimal:
        if total_supply < 0:
            raise IndexerInconsistencyError(
                f"Total supply of {token.address} would become {total_supply} (tx {event.tx_hash})"
            )
        cap = market_cap(price, total_supply, self._token_decimals)
        if cap < 0:
            raise IndexerInconsistencyError(f"Market cap of {token.address} would become {cap} (tx {event.tx_hash})")
        assert token.id is not None
        await repos.tokens.update_aggregates(
            token.id,
            total_supply=Decimal(total_supply),
            price=price,
            market_cap=cap,
        )
        return cap

    def _trade_price(self, token: TokenDTO, numerator: int, denominator: int, event: TokenBuy | TokenSell) -> Decimal:
        if denominator == 0:
            logger.warning(
                "%s on %s moved zero tokens; keeping price %s (tx %s)",
                event.kind.value,
                token.address,
                token.price,
                event.tx_hash,
            )
            return token.price
        return exchange_rate(numerator, denominator)

    async def _on_buy(self, repos: _Repos, event: TokenBuy) -> None:
        token = await self._require_token(repos, event.token, event)
        assert token.id is not None
        trader = await self._chain.get_transaction_sender(event.tx_hash)
        user = await repos.users.find_or_create(trader)

        balance = await repos.balances.get(user_id=user.id, token_id=token.id)
        if balance is None:
            balance = await repos.balances.create(user_id=user.id, token_id=token.id)
        new_balance = int(balance.balance) + event.amount_out
        await repos.balances.set_balance(balance.id, balance=Decimal(new_balance))

        price = self._trade_price(token, event.amount_in, event.amount_out, event)
        total_supply = int(token.total_supply) + event.amount_out
        await self._update_token(repos, token, price=price, total_supply=total_supply, event=event)
        await self._insert_trade(repos, event, "buy", user_id=user.id, token_id=token.id, price=price)

        logger.debug(
            "Buy: token=%s, user=%s, in=%d, out=%d, balance=%d, supply=%d, tx=%s",
            token.address,
            trader,
            event.amount_in,
            event.amount_out,
            new_balance,
            total_supply,
            event.tx_hash,
        )

    async def _on_sell(self, repos: _Repos, event: TokenSell) -> None:
        token = await self._require_token(repos, event.token, event)
        assert token.id is not None
        trader = await self._chain.get_transaction_sender(event.tx_hash)
        user = await repos.users.find_or_create(trader)

        balance = await repos.balances.get(user_id=user.id, token_id=token.id)
        if balance is None:
            raise IndexerInconsistencyError(
                f"Sell of {token.address} by {trader} without a prior balance (tx {event.tx_hash})"
            )
        new_balance = int(balance.balance) - event.amount_in
        if new_balance < 0:
            raise IndexerInconsistencyError(
                f"Balance of {trader} in {token.address} would become {new_balance} (tx {event.tx_hash})"
            )
        await repos.balances.set_balance(balance.id, balance=Decimal(new_balance))

        price = self._trade_price(token, event.amount_out, event.amount_in, event)
        total_supply = int(token.total_supply) - event.amount_in
        await self._update_token(repos, token, price=price, total_supply=total_supply, event=event)
        await self._insert_trade(repos, event, "sell", user_id=user.id, token_id=token.id, price=price)

        logger.debug(
            "Sell: token=%s, user=%s, in=%d, out=%d, balance=%d, supply=%d, tx=%s",
            token.address,
            trader,
            event.amount_in,
            event.amount_out,
            new_balance,
            total_supply,
            event.tx_hash,
        )

    async def _insert_trade(
        self,
        repos: _Repos,
        event: TokenBuy | TokenSell,
        trade_type: str,
        *,
        user_id: int,
        token_id: int,
        price: Decimal,
    ) -> None:
        await repos.trades.insert(
            TradeDTO(
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                block_number=event.block_number,
                trade_type=trade_type,
                user_id=user_id,
                token_id=token_id,
                amount_in=Decimal(event.amount_in),
                amount_out=Decimal(event.amount_out),
                price=price,
                fee=Decimal(event.fee),
                timestamp=event.timestamp,
            )
        )

    async def _on_competition_started(self, repos: _Repos, event: NewCompetitionStarted) -> None:
        source = event.source_address
        number = event.competition_id
        if await repos.competitions.get_by_competition_id(source, number) is not None:
            raise IndexerInconsistencyError(f"Competition {number} of {source} started twice (tx {event.tx_hash})")

        previous = await repos.competitions.get_by_competition_id(source, number - 1) if number > 1 else None
        if previous is None and number > 2:
            raise IndexerInconsistencyError(
                f"Competition {number} of {source} started but competition {number - 1} is unknown"
            )
        if previous is not None and not previous.is_completed:
            assert previous.id is not None
            await repos.competitions.complete(previous.id, timestamp_end=event.timestamp)
            logger.info("Completed competition %d of %s at %d", previous.competition_id, source, event.timestamp)

        await repos.competitions.insert(
            CompetitionDTO(
                source_address=source,
                competition_id=number,
                start_tx_hash=event.tx_hash,
                start_block=event.block_number,
                timestamp_start=event.timestamp,
            )
        )
        logger.info("Started competition %d of %s at %d (tx %s)", number, source, event.timestamp, event.tx_hash)

    async def _on_set_winner(self, repos: _Repos, event: SetWinner) -> None:
        if event.winner == ZERO_ADDRESS:
            logger.info("Competition %d has no winner (tx %s)", event.competition_id, event.tx_hash)
            return

        token = await self._require_token(repos, event.winner, event)
        competition = await repos.competitions.get_by_competition_id(event.source_address, event.competition_id)
        if competition is None:
            raise IndexerInconsistencyError(
                f"Winner set for unknown competition {event.competition_id} (tx {event.tx_hash})"
            )
        assert token.id is not None and competition.id is not None

        if competition.winner_token_id is not None:
            if competition.winner_token_id == token.id:
                return
            raise IndexerInconsistencyError(
                f"Competition {event.competition_id} already has a different winner (tx {event.tx_hash})"
            )

        await repos.tokens.mark_winner(token.id)
        await repos.competitions.set_winner(competition.id, token_id=token.id)
        logger.info("Competition %d winner: %s (tx %s)", event.competition_id, token.address, event.tx_hash)

    async def _on_burn_and_mint(self, repos: _Repos, event: BurnTokenAndMintWinner) -> None:
        token = await self._require_token(repos, event.token, event)
        winner = await self._require_token(repos, event.winner_token, event)
        sender = await repos.users.find_or_create(event.sender)
        assert token.id is not None and winner.id is not None

        await repos.burns.insert(
            TokenBurnDTO(
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                block_number=event.block_number,
                sender_id=sender.id,
                token_id=token.id,
                winner_token_id=winner.id,
                burned_amount=Decimal(event.burned_amount),
                fee=Decimal(event.fee),
                minted_amount=Decimal(event.minted_amount),
                timestamp=event.timestamp,
            )
        )
        logger.info(
            "Burn: sender=%s, token=%s, winner=%s, burned=%d, minted=%d, tx=%s",
            event.sender,
            event.token,
            event.winner_token,
            event.burned_amount,
            event.minted_amount,
            event.tx_hash,
        )

    async def _on_liquidity_added(self, repos: _Repos, event: WinnerLiquidityAdded) -> None:
        token = await self._require_token(repos, event.token, event)
        creator = await repos.users.find_or_create(event.token_creator)
        assert token.id is not None

        await repos.liquidity.insert(
            LiquidityProvisionDTO(
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                block_number=event.block_number,
                token_id=token.id,
                token_creator_id=creator.id,
                pool=event.pool,
                sender=event.sender,
                position_token_id=Decimal(event.position_token_id),
                liquidity=Decimal(event.liquidity),
                actual_token_amount=Decimal(event.actual_token_amount),
                actual_asset_amount=Decimal(event.actual_asset_amount),
                timestamp=event.timestamp,
            )
        )
        logger.info(
            "Liquidity added: token=%s, pool=%s, liquidity=%d, tx=%s",
            event.token,
            event.pool,
            event.liquidity,
            event.tx_hash,
        )
