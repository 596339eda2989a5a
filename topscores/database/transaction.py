"""
Result types for optimistic transactions against the backing store.

A transaction function receives the current value at a path and returns
either ``TransactionResult.success(new_value)`` or ``TransactionResult.abort()``.
It may run several times for one logical update, so it must not touch
anything outside its arguments.
"""

from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class TransactionResult:
    """Decision of a transaction function for one attempt."""
    value: Any = None
    aborted: bool = False
    
    @classmethod
    def success(cls, value: Any) -> "TransactionResult":
        return cls(value=value)
    
    @classmethod
    def abort(cls) -> "TransactionResult":
        return cls(aborted=True)


@dataclass(frozen=True)
class TransactionOutcome:
    """Final result of running a transaction.
    
    On commit ``value`` and ``version`` are the newly written state; on abort
    they are the state the function declined to change.
    """
    committed: bool
    value: Any
    version: int
    attempts: int


TransactionFunction = Callable[[Any], TransactionResult]
