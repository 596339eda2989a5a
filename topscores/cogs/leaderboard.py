import asyncio
import discord
from discord import app_commands
from discord.ext import commands
import logging

from topscores.config import Config
from topscores.services.leaderboard_client import LeaderboardClient

logger = logging.getLogger(__name__)

class LeaderboardCog(commands.Cog):
    """Top scores submission and live leaderboard display"""
    
    def __init__(self, bot):
        self.bot = bot
        self.client = LeaderboardClient(bot.store, display=self.publish_board)
        self._board_message = None
        # Board updates go out one at a time, newest text first
        self._board_lock = asyncio.Lock()
        self._queued_board = None
    
    async def cog_load(self):
        await self.client.start()
    
    async def cog_unload(self):
        await self.client.stop()
    
    @commands.Cog.listener()
    async def on_ready(self):
        # The channel cache is empty until the gateway is ready
        await self.publish_board(self.client.text)
    
    @app_commands.command(name="submit-score", description="Submit a score to the top scores board")
    @app_commands.describe(score="Your score (a whole number other than 0)")
    @app_commands.checks.cooldown(rate=1, per=10.0, key=lambda i: i.user.id)
    async def submit_score(self, interaction: discord.Interaction, score: str):
        """Submit a score under the invoking user's name."""
        await interaction.response.defer(ephemeral=True)
        
        task = self.client.add_score(interaction.user.name, score)
        if task is None:
            await interaction.followup.send(
                "❌ Invalid score. Use a whole number other than 0.", ephemeral=True
            )
            return
        
        try:
            result = await task
        except Exception as e:
            logger.error(f"Unexpected error in score submission for user {interaction.user.id}: {e}")
            await interaction.followup.send(
                "❌ An unexpected error occurred. Please try again later.", ephemeral=True
            )
            return
        
        if result.committed:
            message = f"✅ Score **{result.submission.score}** added to the top {self.client.store.max_entries}!"
        elif result.aborted:
            message = (
                f"Score **{result.submission.score}** did not make the top "
                f"{self.client.store.max_entries}. Lowest qualifying score is {result.leaderboard.min_score}."
            )
        else:
            message = result.error.user_message
        await interaction.followup.send(message, ephemeral=True)
    
    @app_commands.command(name="leaderboard", description="View the top scores")
    async def leaderboard(self, interaction: discord.Interaction):
        """Show the most recently rendered leaderboard."""
        await interaction.response.send_message(f"```\n{self.client.text}\n```")
    
    async def publish_board(self, text: str):
        """Keep a single message in the leaderboard channel in sync with the rendered board."""
        channel_id = Config.LEADERBOARD_CHANNEL_ID
        if not channel_id:
            return
        
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            logger.warning(f"Leaderboard channel {channel_id} not found")
            return
        
        self._queued_board = text
        async with self._board_lock:
            text, self._queued_board = self._queued_board, None
            if text is None:
                # A later update already published newer text
                return
            
            content = f"```\n{text}\n```"
            try:
                if self._board_message is None:
                    self._board_message = await channel.send(content)
                else:
                    await self._board_message.edit(content=content)
            except discord.HTTPException as e:
                logger.error(f"Failed to update leaderboard message: {e}")
                # Post a fresh message next time
                self._board_message = None

async def setup(bot):
    await bot.add_cog(LeaderboardCog(bot))
