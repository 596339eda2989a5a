"""
Leaderboard client: validates input, submits scores and renders pushed snapshots.

The client never writes the leaderboard itself. Submissions go through the
store's transaction, and the displayed text is rebuilt in full from whatever
snapshot the store pushes next, which may reflect another writer's commit.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from topscores.constants import LeaderboardConstants
from topscores.data_models.leaderboard import Leaderboard, PendingSubmission, ScoreEntry, SubmitResult
from topscores.services.leaderboard_store import LeaderboardStore, LeaderboardSubscription, validate_submission
from topscores.utils.leaderboard_exceptions import InvalidInputError, StoreClosedError
from topscores.utils.logger import RollingLogBuffer

logger = logging.getLogger(__name__)

DisplayCallback = Callable[[str], Any]


def format_entry(entry: ScoreEntry) -> str:
    return f"{entry.score}{LeaderboardConstants.LINE_SEPARATOR}{entry.identity}"


def render_leaderboard(snapshot: Leaderboard, title: str) -> str:
    """Header line followed by one line per entry, in snapshot order."""
    lines: List[str] = [title]
    lines.extend(format_entry(entry) for entry in snapshot.entries)
    return "\n".join(lines)


def parse_score(raw_score: str) -> int:
    """Parse user-entered score text."""
    if raw_score is None:
        raise InvalidInputError("score is required")
    try:
        return int(str(raw_score).strip())
    except ValueError:
        raise InvalidInputError(f"score must be a whole number, got {raw_score!r}")


class LeaderboardClient:
    """Submits scores to a LeaderboardStore and keeps a rendered view of it."""
    
    def __init__(
        self,
        store: LeaderboardStore,
        display: Optional[DisplayCallback] = None,
        title: Optional[str] = None,
        log_buffer: Optional[RollingLogBuffer] = None,
    ):
        self.store = store
        self.display = display
        self.title = title or LeaderboardConstants.TITLE_TEMPLATE.format(max_entries=store.max_entries)
        self.log_buffer = log_buffer or RollingLogBuffer()
        self.text = self.title
        self._pending: Dict[asyncio.Task, PendingSubmission] = {}
        self._display_tasks: set = set()
        self._subscription: Optional[LeaderboardSubscription] = None
        self._listener_task: Optional[asyncio.Task] = None
    
    @property
    def log_text(self) -> str:
        return self.log_buffer.text
    
    @property
    def pending_submissions(self) -> List[PendingSubmission]:
        return list(self._pending.values())
    
    def debug_log(self, message: str, level: int = logging.INFO):
        """Log to the module logger and to the rolling in-memory log."""
        logger.log(level, message)
        self.log_buffer.append(message)
    
    def add_score(self, identity: str, raw_score: str) -> Optional["asyncio.Task[SubmitResult]"]:
        """
        Validate user input and submit it as a transaction.
        
        Returns the submission task, or None when the input was rejected
        locally or the store is closed. Nothing reaches the store for
        rejected input.
        """
        try:
            submission = validate_submission(identity, parse_score(raw_score))
        except InvalidInputError as e:
            self.debug_log(f"invalid score or email: {e.reason}", logging.WARNING)
            return None
        
        self.debug_log(f"Attempting to add score {submission.identity} {submission.score}")
        self.debug_log("Running Transaction...")
        
        try:
            task = self.store.submit_score(submission.identity, submission.score)
        except StoreClosedError as e:
            self.debug_log(str(e), logging.ERROR)
            return None
        
        self._pending[task] = submission
        task.add_done_callback(self._on_submission_done)
        return task
    
    def _on_submission_done(self, task: asyncio.Task):
        self._pending.pop(task, None)
        operation = "Transaction"
        
        if task.cancelled():
            self.debug_log(f"{operation} canceled.", logging.WARNING)
            return
        if task.exception() is not None:
            self.debug_log(f"{operation} encountered an error: {task.exception()!r}", logging.ERROR)
            return
        
        result: SubmitResult = task.result()
        if result.committed:
            self.debug_log(f"{operation} complete.")
        elif result.aborted:
            self.debug_log(
                f"Score {result.submission.score} for {result.submission.identity} did not make the top {self.store.max_entries}."
            )
        else:
            self.debug_log(f"{operation} encountered an error: {result.error}", logging.ERROR)
    
    def render(self, snapshot: Leaderboard) -> str:
        return render_leaderboard(snapshot, self.title)
    
    def on_leaderboard_changed(self, snapshot: Leaderboard) -> str:
        """Replace the displayed text with a full rendering of ``snapshot``."""
        self.debug_log(f"Received values for {self.store.path}.", logging.DEBUG)
        
        for record in snapshot.corrupt_records:
            self.debug_log(str(record.to_error(self.store.path)), logging.ERROR)
        for entry in snapshot.entries:
            self.debug_log(f"{self.store.path} entry : {entry.identity} - {entry.score}", logging.DEBUG)
        
        self.text = self.render(snapshot)
        self._show(self.text)
        return self.text
    
    def _show(self, text: str):
        if self.display is None:
            return
        try:
            result = self.display(text)
        except Exception as e:
            logger.error(f"Display callback failed: {e}", exc_info=True)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._display_tasks.add(task)
            task.add_done_callback(self._on_display_done)
    
    def _on_display_done(self, task: asyncio.Task):
        self._display_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Display update failed: {task.exception()!r}")
    
    async def start(self, order_by: str = "score"):
        """Subscribe to the store and render every pushed snapshot."""
        if self._listener_task is not None:
            return
        self._subscription = await self.store.subscribe(order_by=order_by)
        self._listener_task = asyncio.create_task(self._listen(self._subscription))
    
    async def _listen(self, subscription: LeaderboardSubscription):
        async for event in subscription:
            if event.error is not None:
                self.debug_log(str(event.error), logging.ERROR)
                continue
            self.on_leaderboard_changed(event.snapshot)
    
    async def stop(self):
        """Wait for in-flight submissions and display updates, then unsubscribe."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._listener_task is not None:
            await asyncio.gather(self._listener_task, return_exceptions=True)
            self._listener_task = None
        if self._display_tasks:
            await asyncio.gather(*self._display_tasks, return_exceptions=True)
