import asyncio
import copy
import json
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from topscores.config import Config
from topscores.constants import TransactionConstants
from topscores.database.models import Base, LeaderboardNode
from topscores.database.transaction import TransactionFunction, TransactionOutcome
from topscores.utils.leaderboard_exceptions import CorruptDataError, TransactionError
from topscores.utils.logger import setup_logger

ChangeListener = Callable[..., None]
CommitHook = Callable[[str, int], None]

class Database:
    """Versioned JSON store with optimistic transactions and change notification"""
    
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None
        self._change_listeners: Dict[str, List[ChangeListener]] = {}
        self._commit_hooks: List[CommitHook] = []
    
    @property
    def session_factory(self):
        return self.async_session
    
    @property
    def is_initialized(self) -> bool:
        return self.engine is not None
        
    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")
        
        # Convert sqlite URL to async if needed
        database_url = self.database_url
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        
        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
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
            self.engine = None
            self.async_session = None
            self.logger.info("Database connection closed")
    
    # Value operations
    async def read_value(self, path: str) -> Tuple[Any, int]:
        """Read the decoded value and version at a path. An absent path is (None, 0)."""
        async with self.get_session() as session:
            result = await session.execute(
                select(LeaderboardNode.value, LeaderboardNode.version).where(LeaderboardNode.path == path)
            )
            row = result.one_or_none()
        
        if row is None:
            return None, 0
        return self._decode(path, row.value), row.version
    
    async def run_transaction(
        self,
        path: str,
        update_fn: TransactionFunction,
        max_retries: int = TransactionConstants.DEFAULT_MAX_RETRIES,
        operation: str = "leaderboard update",
    ) -> TransactionOutcome:
        """
        Apply ``update_fn`` to the value at ``path`` with optimistic concurrency.
        
        Each attempt reads the current value and version, computes the new
        value and commits only if the version is still the one that was read.
        A conflicting writer or a database error consumes one attempt; the
        function is then re-run against the latest value.
        
        Raises:
            TransactionError: the retry budget is exhausted, or the stored
                value cannot be decoded.
        """
        last_error: Optional[Exception] = None
        
        for attempt in range(max_retries):
            try:
                current, version = await self.read_value(path)
                decision = update_fn(copy.deepcopy(current))
                
                if decision.aborted:
                    return TransactionOutcome(
                        committed=False, value=current, version=version, attempts=attempt + 1
                    )
                
                if await self._compare_and_set(path, version, decision.value):
                    new_version = version + 1
                    self._after_commit(path, decision.value, new_version)
                    return TransactionOutcome(
                        committed=True, value=decision.value, version=new_version, attempts=attempt + 1
                    )
                
                last_error = None
                self.logger.debug(f"Transaction conflict on '{path}' at version {version}, attempt {attempt + 1}")
            except CorruptDataError as e:
                raise TransactionError(operation, attempt + 1, e) from e
            except IntegrityError as e:
                # Another writer created the path first
                last_error = None
                self.logger.debug(f"Transaction conflict creating '{path}', attempt {attempt + 1}: {e}")
            except SQLAlchemyError as e:
                last_error = e
                self.logger.warning(f"Transaction attempt {attempt + 1} on '{path}' failed: {e}")
            
            if attempt < max_retries - 1:
                # Exponential backoff with cap
                await asyncio.sleep(min(
                    TransactionConstants.BACKOFF_BASE_SECONDS * (2 ** attempt),
                    TransactionConstants.BACKOFF_MAX_SECONDS,
                ))
        
        self.logger.error(f"Transaction on '{path}' failed after {max_retries} attempts")
        raise TransactionError(operation, max_retries, last_error)
    
    async def _compare_and_set(self, path: str, expected_version: int, value: Any) -> bool:
        """Write ``value`` only if the stored version still equals ``expected_version``."""
        encoded = json.dumps(value)
        async with self.transaction() as session:
            if expected_version == 0:
                session.add(LeaderboardNode(path=path, value=encoded, version=1))
                await session.flush()
                return True
            
            result = await session.execute(
                update(LeaderboardNode)
                .where(
                    LeaderboardNode.path == path,
                    LeaderboardNode.version == expected_version,
                )
                .values(value=encoded, version=expected_version + 1, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
    
    def _decode(self, path: str, raw: Optional[str]) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptDataError(path, f"value is not valid JSON ({e.msg})")
    
    # Change notification
    def add_change_listener(self, path: str, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener(path, value, version, error=None)`` for every observed change at ``path``.
        
        Returns an unregister function.
        """
        self._change_listeners.setdefault(path, []).append(listener)
        
        def remove():
            listeners = self._change_listeners.get(path, [])
            if listener in listeners:
                listeners.remove(listener)
        
        return remove
    
    def add_commit_hook(self, hook: CommitHook) -> Callable[[], None]:
        """Register a callback for commits made through this Database. Returns an unregister function."""
        self._commit_hooks.append(hook)
        
        def remove():
            if hook in self._commit_hooks:
                self._commit_hooks.remove(hook)
        
        return remove
    
    async def refresh(self, path: str):
        """Re-read ``path`` and notify change listeners, for changes committed elsewhere.
        
        Read failures are delivered to the listeners instead of being raised.
        """
        try:
            value, version = await self.read_value(path)
        except CorruptDataError as e:
            self._notify(path, None, -1, error=e)
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to re-read '{path}': {e}")
            self._notify(path, None, -1, error=TransactionError("leaderboard read", 1, e))
        else:
            self._notify(path, value, version)
    
    def watched_paths(self) -> List[str]:
        """Paths that currently have at least one change listener."""
        return [path for path, listeners in self._change_listeners.items() if listeners]
    
    def broadcast_error(self, error: Exception):
        """Deliver ``error`` to the change listeners of every watched path."""
        for path in self.watched_paths():
            self._notify(path, None, -1, error=error)
    
    def _after_commit(self, path: str, value: Any, version: int):
        for hook in list(self._commit_hooks):
            try:
                hook(path, version)
            except Exception as e:
                self.logger.warning(f"Commit hook failed for '{path}': {e}")
        self._notify(path, value, version)
    
    def _notify(self, path: str, value: Any, version: int, error: Optional[Exception] = None):
        for listener in list(self._change_listeners.get(path, [])):
            try:
                listener(path, copy.deepcopy(value), version, error=error)
            except Exception as e:
                self.logger.warning(f"Change listener failed for '{path}': {e}")
