"""
Services package for the top scores leaderboard.
"""

from .leaderboard_store import LeaderboardStore, LeaderboardSubscription
from .leaderboard_client import LeaderboardClient
from .change_relay import RedisChangeRelay

__all__ = ['LeaderboardStore', 'LeaderboardSubscription', 'LeaderboardClient', 'RedisChangeRelay']
