"""
Leaderboard-wide constants.

Magic numbers and record field names shared by the store, the client and
the Discord front-end.
"""

class LeaderboardConstants:
    """Constants for the bounded top-N leaderboard."""
    
    # Default capacity of the leaderboard
    DEFAULT_MAX_ENTRIES = 5
    
    # Location of the leaderboard in the backing store
    DEFAULT_PATH = "Leaders"
    
    # Field names of a stored record
    IDENTITY_FIELD = "email"
    SCORE_FIELD = "score"
    
    # Zero marks an unset score and is never accepted
    UNSET_SCORE = 0
    
    # Header line of the rendered board
    TITLE_TEMPLATE = "Top {max_entries} Scores"
    
    # Separator between score and identity on a rendered line
    LINE_SEPARATOR = "  "

class TransactionConstants:
    """Constants for optimistic transactions against the backing store."""
    
    # Retry budget of the realtime-database SDK transaction primitive
    DEFAULT_MAX_RETRIES = 25
    
    # Exponential backoff between conflicting attempts, capped
    BACKOFF_BASE_SECONDS = 0.01
    BACKOFF_MAX_SECONDS = 1.0

class LogConstants:
    """Constants for the in-memory debug log."""
    
    # Character budget of the rolling debug log
    MAX_LOG_SIZE = 16382

class RelayConstants:
    """Constants for cross-process change notification."""
    
    CHANNEL_PREFIX = "topscores:changes:"
    
    # Backoff between attempts to resubscribe after the connection drops, capped
    RECONNECT_BASE_SECONDS = 0.5
    RECONNECT_MAX_SECONDS = 30.0
