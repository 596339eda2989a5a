"""
Custom exceptions for the leaderboard with user-friendly error messages.
"""

class LeaderboardException(Exception):
    """Base exception for leaderboard-related errors."""
    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message

class InvalidInputError(LeaderboardException):
    """Raised when a submission fails local validation."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(
            f"Invalid submission: {reason}",
            f"❌ {reason}"
        )

class TransactionError(LeaderboardException):
    """Raised when a transaction could not be committed."""
    def __init__(self, operation: str, attempts: int, cause: Exception = None):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        details = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Transaction failed for {operation} after {attempts} attempts{details}",
            "❌ Failed to save score. Please try again."
        )

class CorruptDataError(LeaderboardException):
    """Raised when stored leaderboard data cannot be decoded."""
    def __init__(self, path: str, reason: str, index: int = None):
        self.path = path
        self.reason = reason
        self.index = index
        where = f"'{path}' record {index}" if index is not None else f"'{path}'"
        super().__init__(
            f"Bad data in {where}: {reason}",
            "❌ The leaderboard contains unreadable data."
        )

class StoreClosedError(LeaderboardException):
    """Raised when a closed store is used."""
    def __init__(self):
        super().__init__(
            "Leaderboard store is closed",
            "❌ The leaderboard is not available right now."
        )

class ChangeFeedError(LeaderboardException):
    """Raised when changes from other processes can no longer be observed."""
    def __init__(self, cause: Exception = None):
        self.cause = cause
        details = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Lost the change feed from other processes{details}",
            "❌ The leaderboard may be out of date."
        )
