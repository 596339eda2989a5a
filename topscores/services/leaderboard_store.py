"""
Leaderboard store: the authoritative bounded top-N set.

Score submissions run as optimistic transactions against the backing store,
so any number of processes may submit concurrently without a client-side
lock. Committed changes are fanned out to subscriptions.
"""

import asyncio
import logging
from collections import deque
from functools import partial
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from topscores.constants import LeaderboardConstants, TransactionConstants
from topscores.data_models.leaderboard import (
    ORDER_KEYS,
    Leaderboard,
    PendingSubmission,
    ScoreEntry,
    SubmitResult,
    SubmitStatus,
    ValueChangedEvent,
    decode_leaderboard,
    is_valid_identity,
    split_records,
)
from topscores.database.database import Database
from topscores.database.transaction import TransactionResult
from topscores.utils.leaderboard_exceptions import (
    CorruptDataError,
    InvalidInputError,
    LeaderboardException,
    StoreClosedError,
    TransactionError,
)

logger = logging.getLogger(__name__)


def validate_submission(identity: str, score: int) -> PendingSubmission:
    """Check a submission before any store round-trip."""
    if not is_valid_identity(identity):
        raise InvalidInputError("email must not be empty")
    if isinstance(score, bool) or not isinstance(score, int):
        raise InvalidInputError(f"score must be a whole number, got {score!r}")
    if score == LeaderboardConstants.UNSET_SCORE:
        raise InvalidInputError("score must not be zero")
    return PendingSubmission(identity=identity, score=score)


def _min_index(entries: List[ScoreEntry]) -> int:
    """Index of the lowest score; the earliest stored entry wins ties."""
    min_index = 0
    for index, entry in enumerate(entries):
        if entry.score < entries[min_index].score:
            min_index = index
    return min_index


def add_score_transaction(current: Any, entry: ScoreEntry, max_entries: int) -> TransactionResult:
    """
    Decide how ``entry`` changes the stored list of records.
    
    Below capacity the entry is appended. At capacity the lowest entry is
    replaced unless it is strictly higher than the new score, in which case
    the transaction aborts. Records that fail to decode are not written back.
    
    Pure: the same ``current`` and ``entry`` always give the same decision.
    """
    leaders, _ = split_records(current) if isinstance(current, list) else ([], [])
    
    # Capacity may have been lowered since the surplus was written
    while len(leaders) > max_entries:
        leaders.pop(_min_index(leaders))
    
    if len(leaders) >= max_entries:
        min_index = _min_index(leaders)
        if leaders[min_index].score > entry.score:
            return TransactionResult.abort()
        leaders.pop(min_index)
    
    leaders.append(entry)
    return TransactionResult.success([leader.to_record() for leader in leaders])


class LeaderboardSubscription:
    """Stream of ValueChangedEvents for one subscriber.
    
    Snapshots collapse to the latest one not yet read; errors are queued and
    never collapsed. Iteration ends after ``close()``.
    """
    
    def __init__(self, store: "LeaderboardStore", order_by: str = "score"):
        self._store = store
        self.order_by = order_by
        self._latest: Optional[ValueChangedEvent] = None
        self._latest_version = -1
        self._errors = deque()
        self._wakeup = asyncio.Event()
        self._closed = False
    
    @property
    def closed(self) -> bool:
        return self._closed
    
    def push_value(self, value: Any, version: int):
        if self._closed or version < self._latest_version:
            return
        try:
            snapshot = decode_leaderboard(
                value,
                max_entries=self._store.max_entries,
                version=version,
                order_by=self.order_by,
                path=self._store.path,
            )
        except CorruptDataError as e:
            self.push_error(e)
            return
        self._latest_version = version
        self._latest = ValueChangedEvent(snapshot=snapshot)
        self._wakeup.set()
    
    def push_error(self, error: LeaderboardException):
        if self._closed:
            return
        self._errors.append(error)
        self._wakeup.set()
    
    def close(self):
        if self._closed:
            return
        self._closed = True
        self._wakeup.set()
        self._store._discard(self)
    
    def __aiter__(self):
        return self
    
    async def __anext__(self) -> ValueChangedEvent:
        while True:
            if self._errors:
                return ValueChangedEvent(error=self._errors.popleft())
            if self._latest is not None:
                event, self._latest = self._latest, None
                return event
            if self._closed:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()
    
    async def __aenter__(self):
        return self
    
    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class LeaderboardStore:
    """Owns the leaderboard at one path of the backing store."""
    
    def __init__(
        self,
        database: Database,
        path: str = LeaderboardConstants.DEFAULT_PATH,
        max_entries: int = LeaderboardConstants.DEFAULT_MAX_ENTRIES,
        max_retries: int = TransactionConstants.DEFAULT_MAX_RETRIES,
        relay=None,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.database = database
        self.path = path
        self.max_entries = max_entries
        self.max_retries = max_retries
        self.relay = relay
        self._subscriptions: set = set()
        # In-flight submissions run to completion, even across close()
        self._background_tasks: set = set()
        self._remove_listener = None
        self._open = False
    
    @property
    def is_open(self) -> bool:
        return self._open
    
    async def open(self):
        """Connect to the backing store and start listening for changes."""
        if self._open:
            return
        if not self.database.is_initialized:
            await self.database.initialize()
        self._remove_listener = self.database.add_change_listener(self.path, self._on_change)
        if self.relay is not None:
            await self.relay.start(self.database)
        self._open = True
        logger.info(f"Leaderboard store opened at '{self.path}' (top {self.max_entries})")
    
    async def close(self):
        """Wait for in-flight submissions, end all subscriptions and stop listening."""
        if not self._open:
            return
        self._open = False
        
        if self._background_tasks:
            logger.info(f"Waiting for {len(self._background_tasks)} submissions to complete...")
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        
        for subscription in list(self._subscriptions):
            subscription.close()
        
        if self.relay is not None:
            await self.relay.stop()
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        logger.info(f"Leaderboard store at '{self.path}' closed")
    
    async def __aenter__(self):
        await self.open()
        return self
    
    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
    
    def submit_score(self, identity: str, score: int) -> "asyncio.Task[SubmitResult]":
        """
        Start a transactional score submission.
        
        Validation happens immediately; the returned task resolves to a
        SubmitResult and never raises for store-side failures.
        
        Raises:
            InvalidInputError: empty identity, non-integer or zero score.
            StoreClosedError: the store is not open.
        """
        submission = validate_submission(identity, score)
        if not self._open:
            raise StoreClosedError()
        
        task = asyncio.create_task(self._run_submission(submission))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task
    
    async def _run_submission(self, submission: PendingSubmission) -> SubmitResult:
        entry = ScoreEntry(identity=submission.identity, score=submission.score)
        update_fn = partial(add_score_transaction, entry=entry, max_entries=self.max_entries)
        
        try:
            outcome = await self.database.run_transaction(
                self.path, update_fn, max_retries=self.max_retries, operation="score submission"
            )
        except TransactionError as e:
            logger.error(f"Score submission failed for {submission.identity}: {e}")
            return SubmitResult(SubmitStatus.FAILED, submission, error=e)
        
        # The committed value was written by this transaction, so it decodes cleanly
        leaderboard = self._decode(outcome.value, outcome.version)
        status = SubmitStatus.COMMITTED if outcome.committed else SubmitStatus.ABORTED
        return SubmitResult(status, submission, leaderboard=leaderboard)
    
    def _decode(self, value: Any, version: int) -> Leaderboard:
        if not isinstance(value, list):
            value = None
        return decode_leaderboard(value, max_entries=self.max_entries, version=version, path=self.path)
    
    async def get_leaderboard(self) -> Leaderboard:
        """One-shot read of the current leaderboard, best score first."""
        value, version = await self.database.read_value(self.path)
        return decode_leaderboard(value, max_entries=self.max_entries, version=version, path=self.path)
    
    async def subscribe(self, order_by: str = "score") -> LeaderboardSubscription:
        """
        Subscribe to leaderboard changes.
        
        The first event carries the current state (or the read error); later
        events follow committed changes.
        """
        if order_by not in ORDER_KEYS:
            raise ValueError(f"order_by must be one of {ORDER_KEYS}, got {order_by!r}")
        if not self._open:
            raise StoreClosedError()
        
        subscription = LeaderboardSubscription(self, order_by)
        self._subscriptions.add(subscription)
        
        try:
            value, version = await self.database.read_value(self.path)
        except CorruptDataError as e:
            subscription.push_error(e)
        except SQLAlchemyError as e:
            logger.error(f"Failed to read leaderboard at '{self.path}': {e}")
            subscription.push_error(TransactionError("leaderboard read", 1, e))
        else:
            subscription.push_value(value, version)
        
        return subscription
    
    def _on_change(self, path: str, value: Any, version: int, error: Optional[LeaderboardException] = None):
        for subscription in list(self._subscriptions):
            if error is not None:
                subscription.push_error(error)
            else:
                subscription.push_value(value, version)
    
    def _discard(self, subscription: LeaderboardSubscription):
        self._subscriptions.discard(subscription)
