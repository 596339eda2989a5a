"""
Leaderboard data models.

Immutable value objects for score entries, leaderboard snapshots and the
outcome of a score submission, plus the strict decoder that turns raw stored
records into typed entries.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple, Union

from topscores.constants import LeaderboardConstants
from topscores.utils.leaderboard_exceptions import CorruptDataError, LeaderboardException

ORDER_KEYS = ("score", "identity")


@dataclass(frozen=True)
class ScoreEntry:
    """Single leaderboard row."""
    identity: str
    score: int
    
    def to_record(self) -> dict:
        return {
            LeaderboardConstants.IDENTITY_FIELD: self.identity,
            LeaderboardConstants.SCORE_FIELD: self.score,
        }


@dataclass(frozen=True)
class CorruptRecord:
    """A stored record that could not be decoded into a ScoreEntry."""
    index: int
    reason: str
    raw: Any = field(default=None, compare=False)
    
    def to_error(self, path: str) -> CorruptDataError:
        return CorruptDataError(path, self.reason, index=self.index)


@dataclass(frozen=True)
class Leaderboard:
    """Point-in-time view of the top-N set, best score first."""
    entries: Tuple[ScoreEntry, ...] = ()
    max_entries: int = LeaderboardConstants.DEFAULT_MAX_ENTRIES
    version: int = 0
    corrupt_records: Tuple[CorruptRecord, ...] = ()
    
    def size(self) -> int:
        return len(self.entries)
    
    def __len__(self) -> int:
        return len(self.entries)
    
    def __iter__(self):
        return iter(self.entries)
    
    @property
    def is_full(self) -> bool:
        return len(self.entries) >= self.max_entries
    
    @property
    def min_score(self) -> Optional[int]:
        if not self.entries:
            return None
        return min(entry.score for entry in self.entries)


@dataclass(frozen=True)
class PendingSubmission:
    """Validated input held between capture and transaction resolution."""
    identity: str
    score: int


class SubmitStatus(Enum):
    COMMITTED = "committed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of one score submission."""
    status: SubmitStatus
    submission: PendingSubmission
    leaderboard: Optional[Leaderboard] = None
    error: Optional[LeaderboardException] = None
    
    @property
    def committed(self) -> bool:
        return self.status == SubmitStatus.COMMITTED
    
    @property
    def aborted(self) -> bool:
        return self.status == SubmitStatus.ABORTED
    
    @property
    def failed(self) -> bool:
        return self.status == SubmitStatus.FAILED


@dataclass(frozen=True)
class ValueChangedEvent:
    """One delivery on a leaderboard subscription: a snapshot or an error."""
    snapshot: Optional[Leaderboard] = None
    error: Optional[LeaderboardException] = None


def is_valid_identity(identity: Any) -> bool:
    """An identity is a string with at least one non-blank character."""
    return isinstance(identity, str) and bool(identity.strip())


def classify_record(index: int, raw: Any) -> Union[ScoreEntry, CorruptRecord]:
    """Decode one stored record, never trusting field presence."""
    if not isinstance(raw, dict):
        return CorruptRecord(index, f"expected an object, got {type(raw).__name__}", raw)
    
    score = raw.get(LeaderboardConstants.SCORE_FIELD)
    identity = raw.get(LeaderboardConstants.IDENTITY_FIELD)
    
    if score is None:
        return CorruptRecord(index, "missing score", raw)
    # bool is an int subclass and never a valid score
    if isinstance(score, bool) or not isinstance(score, int):
        return CorruptRecord(index, f"score is not an integer: {score!r}", raw)
    if identity is None:
        return CorruptRecord(index, "missing email", raw)
    if not is_valid_identity(identity):
        return CorruptRecord(index, f"email is not a non-empty string: {identity!r}", raw)
    
    return ScoreEntry(identity=identity, score=score)


def split_records(value: Any) -> Tuple[List[ScoreEntry], List[CorruptRecord]]:
    """Split a stored list into well-formed entries and corrupt records, keeping stored order."""
    entries = []
    corrupt = []
    for index, raw in enumerate(value):
        item = classify_record(index, raw)
        if isinstance(item, ScoreEntry):
            entries.append(item)
        else:
            corrupt.append(item)
    return entries, corrupt


def decode_leaderboard(
    value: Any,
    max_entries: int = LeaderboardConstants.DEFAULT_MAX_ENTRIES,
    version: int = 0,
    order_by: str = "score",
    path: str = LeaderboardConstants.DEFAULT_PATH,
) -> Leaderboard:
    """Build a Leaderboard snapshot from a raw stored value.
    
    An absent value is an empty board. Stored order is insertion order and
    breaks ties for both order keys. A stored list longer than ``max_entries``
    is cut to the entries a committed write would keep.
    
    Raises:
        CorruptDataError: the value is present but is not a list of records.
        ValueError: unknown order key.
    """
    if order_by not in ORDER_KEYS:
        raise ValueError(f"order_by must be one of {ORDER_KEYS}, got {order_by!r}")
    if value is None:
        return Leaderboard(max_entries=max_entries, version=version)
    if not isinstance(value, list):
        raise CorruptDataError(path, f"expected a list of records, got {type(value).__name__}")
    
    entries, corrupt = split_records(value)
    ranked = list(enumerate(entries))
    if len(ranked) > max_entries:
        # Keep the survivors a write would keep: lowest scores go first, earliest first on ties
        ranked.sort(key=lambda item: (item[1].score, item[0]))
        ranked = ranked[len(ranked) - max_entries:]
    if order_by == "score":
        ranked.sort(key=lambda item: (-item[1].score, item[0]))
    else:
        ranked.sort(key=lambda item: (item[1].identity, item[0]))
    
    return Leaderboard(
        entries=tuple(entry for _, entry in ranked),
        max_entries=max_entries,
        version=version,
        corrupt_records=tuple(corrupt),
    )
