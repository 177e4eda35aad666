"""Storage layer - Database schemas and repositories."""

from launchpad_indexer.storage.database import DatabaseManager, async_database_url
from launchpad_indexer.storage.models import (
    PRICE_SCALE,
    Base,
    CompetitionModel,
    IndexerStateModel,
    LiquidityProvisionModel,
    TokenBalanceModel,
    TokenBurnModel,
    TokenModel,
    TradeModel,
    UserModel,
)
from launchpad_indexer.storage.repos import (
    CompetitionDTO,
    CompetitionRepository,
    CursorDTO,
    CursorRepository,
    LiquidityProvisionDTO,
    LiquidityProvisionRepository,
    TokenBalanceDTO,
    TokenBalanceRepository,
    TokenBurnDTO,
    TokenBurnRepository,
    TokenDTO,
    TokenRepository,
    TradeDTO,
    TradeRepository,
    UserDTO,
    UserRepository,
)
from launchpad_indexer.storage.types import BigNumeric

__all__ = [
    "PRICE_SCALE",
    "Base",
    "BigNumeric",
    "CompetitionDTO",
    "CompetitionModel",
    "CompetitionRepository",
    "CursorDTO",
    "CursorRepository",
    "DatabaseManager",
    "IndexerStateModel",
    "LiquidityProvisionDTO",
    "LiquidityProvisionModel",
    "LiquidityProvisionRepository",
    "TokenBalanceDTO",
    "TokenBalanceModel",
    "TokenBalanceRepository",
    "TokenBurnDTO",
    "TokenBurnModel",
    "TokenBurnRepository",
    "TokenDTO",
    "TokenModel",
    "TokenRepository",
    "TradeDTO",
    "TradeModel",
    "TradeRepository",
    "UserDTO",
    "UserModel",
    "UserRepository",
    "async_database_url",
]
