import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Leaderboard configuration settings"""
    
    # Discord settings
    DISCORD_TOKEN = os.getenv('DISCORD_TOKEN')
    DISCORD_GUILD_ID = int(os.getenv('DISCORD_GUILD_ID', 0))
    DISCORD_GUILD_IDS = os.getenv('DISCORD_GUILD_IDS', '')  # Comma-separated for multi-guild support
    LEADERBOARD_CHANNEL_ID = int(os.getenv('LEADERBOARD_CHANNEL_ID', 0))
    COMMAND_PREFIX = os.getenv('COMMAND_PREFIX', '!')
    
    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///leaderboard.db')
    REDIS_URL = os.getenv('REDIS_URL')
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    
    # Leaderboard settings
    LEADERBOARD_PATH = os.getenv('LEADERBOARD_PATH', 'Leaders')
    MAX_ENTRIES = int(os.getenv('MAX_ENTRIES', 5))
    TRANSACTION_MAX_RETRIES = int(os.getenv('TRANSACTION_MAX_RETRIES', 25))
    
    @classmethod
    def get_guild_ids(cls):
        """Get list of guild IDs for command syncing"""
        if cls.DISCORD_GUILD_IDS:
            try:
                return [int(guild_id.strip()) for guild_id in cls.DISCORD_GUILD_IDS.split(',') if guild_id.strip()]
            except ValueError:
                raise ValueError("DISCORD_GUILD_IDS must be comma-separated integers")
        elif cls.DISCORD_GUILD_ID:
            return [cls.DISCORD_GUILD_ID]
        else:
            # Global sync
            return []
    
    @classmethod
    def validate(cls):
        """Validate that required configuration is present"""
        if not cls.DISCORD_TOKEN:
            raise ValueError("DISCORD_TOKEN is required")
        if cls.MAX_ENTRIES < 1:
            raise ValueError("MAX_ENTRIES must be at least 1")
        if cls.TRANSACTION_MAX_RETRIES < 1:
            raise ValueError("TRANSACTION_MAX_RETRIES must be at least 1")
