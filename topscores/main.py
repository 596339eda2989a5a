import asyncio
import logging
import traceback
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from topscores.config import Config
from topscores.database.database import Database
from topscores.services.change_relay import RedisChangeRelay
from topscores.services.leaderboard_store import LeaderboardStore
from topscores.utils.logger import setup_logger
from topscores.utils.redis_utils import RedisUtils

class LeaderboardBot(commands.Bot):
    def __init__(self):
        intents = discord.Intents.default()
        intents.guilds = True
        
        super().__init__(
            command_prefix=Config.COMMAND_PREFIX,
            intents=intents,
            help_command=None
        )
        
        # Attach app command error handler
        self.tree.on_error = self.on_app_command_error
        
        self.db: Optional[Database] = None
        self.store: Optional[LeaderboardStore] = None
        self.logger = setup_logger(__name__)
        
    async def setup_hook(self):
        """Called when the bot is starting up"""
        self.logger.info("Setting up Leaderboard Bot...")
        
        self.db = Database()
        await self.db.initialize()
        
        relay = None
        redis_client = await RedisUtils.create_redis_client()
        if redis_client is not None:
            relay = RedisChangeRelay(redis_client)
        
        self.store = LeaderboardStore(
            self.db,
            path=Config.LEADERBOARD_PATH,
            max_entries=Config.MAX_ENTRIES,
            max_retries=Config.TRANSACTION_MAX_RETRIES,
            relay=relay,
        )
        await self.store.open()
        
        await self.load_extension('topscores.cogs.leaderboard')
        self.logger.info("Loaded cog: topscores.cogs.leaderboard")
        
        await self._sync_commands()
        
        self.logger.info("Leaderboard Bot setup complete!")
    
    async def _sync_commands(self):
        """Sync slash commands with Discord"""
        try:
            guild_ids = Config.get_guild_ids()
            
            if guild_ids:
                for guild_id in guild_ids:
                    try:
                        guild = discord.Object(id=guild_id)
                        self.tree.copy_global_to(guild=guild)
                        synced = await self.tree.sync(guild=guild)
                        self.logger.info(f"Successfully synced {len(synced)} command(s) to guild {guild_id}")
                    except discord.errors.Forbidden:
                        self.logger.error(f"Permission error syncing to guild {guild_id}. Ensure the bot has the 'application.commands' scope and is in the guild.", exc_info=True)
                    except discord.errors.HTTPException as e:
                        self.logger.error(f"HTTP error syncing to guild {guild_id}. Status: {e.status}, Response: {e.text}", exc_info=True)
            else:
                # Global sync (can take up to 1 hour, works everywhere)
                self.logger.info("Attempting to sync commands globally... (Note: This can take up to an hour to propagate)")
                synced = await self.tree.sync()
                self.logger.info(f"Successfully synced {len(synced)} command(s) globally")
        except discord.errors.HTTPException as e:
            self.logger.error(f"Failed to sync commands: {e}", exc_info=True)
            # Don't raise - the board still updates without slash commands
                
    async def on_ready(self):
        """Called when the bot is ready"""
        self.logger.info(f'{self.user} has connected to Discord!')
        await self.change_presence(activity=discord.Game(name="Top scores | /submit-score"))
    
    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        """Global error handler for slash commands"""
        command_name = interaction.command.name if interaction.command else 'Unknown'
        if isinstance(error, app_commands.CommandOnCooldown):
            error_message = f"❌ Command is on cooldown. Try again in {error.retry_after:.2f} seconds."
        else:
            self.logger.error(f"Error in app command '{command_name}': {error}", exc_info=True)
            error_message = "❌ An unexpected error occurred while processing your command."
        
        try:
            if interaction.response.is_done():
                await interaction.followup.send(error_message, ephemeral=True)
            else:
                await interaction.response.send_message(error_message, ephemeral=True)
        except discord.HTTPException as e:
            self.logger.error(f"Failed to send error response: {e}")
        
    async def close(self):
        """Cleanup when bot is shutting down"""
        self.logger.info("Shutting down Leaderboard Bot...")
        
        # Unloads the cog, which waits for its in-flight submissions
        await super().close()
        
        if self.store:
            await self.store.close()
        if self.db:
            await self.db.close()

async def main():
    """Main entry point"""
    Config.validate()
    
    bot = LeaderboardBot()
    
    try:
        await bot.start(Config.DISCORD_TOKEN)
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        traceback.print_exc()
    finally:
        await bot.close()

def run():
    asyncio.run(main())

if __name__ == "__main__":
    run()
