from typing import Optional
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import select
from contextlib import asynccontextmanager

from padel_bot.config import Config
from padel_bot.database.models import Base, Player
from padel_bot.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url
        connect_args = {}
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        if database_url.startswith('sqlite+aiosqlite'):
            # Wait for concurrent writers instead of failing straight away
            connect_args = {'timeout': 30}

        self.engine = create_async_engine(
            database_url,
            echo=Config.SQL_ECHO,
            connect_args=connect_args
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @property
    def session_factory(self):
        return self.async_session

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context are committed together on success,
        or rolled back together on failure. Exceptions must be allowed to
        propagate out of the context for rollback to occur.

        Usage:
            async with db.transaction() as session:
                await match_ops.record_match_result(..., session=session)
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()

    # ========================================================================
    # Player profiles
    # ========================================================================

    async def get_player_by_discord_id(self, discord_id: int) -> Optional[Player]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Player).where(Player.discord_id == discord_id)
            )
            return result.scalar_one_or_none()

    async def create_player(self, username: str, discord_id: Optional[int] = None,
                            display_name: str = None, glicko_rating: float = None,
                            glicko_rd: float = None, glicko_vol: float = None) -> Player:
        """Create a new player profile with default Glicko-2 values unless given"""
        async with self.get_session() as session:
            player = Player(
                discord_id=discord_id,
                username=username,
                display_name=display_name or username,
                glicko_rating=Config.STARTING_RATING if glicko_rating is None else glicko_rating,
                glicko_rd=Config.STARTING_RD if glicko_rd is None else glicko_rd,
                glicko_vol=Config.STARTING_VOL if glicko_vol is None else glicko_vol
            )
            session.add(player)
            await session.commit()
            await session.refresh(player)
            self.logger.info(f"Created player {player.id} ({username})")
            return player

    async def get_or_create_player(self, discord_id: int, username: str, display_name: str = None) -> Player:
        player = await self.get_player_by_discord_id(discord_id)
        if player:
            return player
        return await self.create_player(username, discord_id=discord_id, display_name=display_name)

