"""
Cross-process change relay over Redis pub/sub.

Commits made through the local Database are announced on a per-path
channel; announcements from other processes trigger a re-read of the path
so local subscribers see the new state.
"""

import asyncio
import json
import logging
import uuid
from typing import Optional

from redis.exceptions import RedisError

from topscores.constants import RelayConstants
from topscores.utils.leaderboard_exceptions import ChangeFeedError

logger = logging.getLogger(__name__)


class RedisChangeRelay:
    """Publishes local commits and replays remote ones into a Database."""
    
    def __init__(self, redis_client, channel_prefix: str = RelayConstants.CHANNEL_PREFIX):
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix
        self.instance_id = uuid.uuid4().hex
        self._database = None
        self._pubsub = None
        self._remove_hook = None
        self._listener_task: Optional[asyncio.Task] = None
        self._background_tasks: set = set()
    
    def channel_for(self, path: str) -> str:
        return f"{self.channel_prefix}{path}"
    
    async def start(self, database):
        """Hook into ``database`` commits and start listening for remote changes."""
        if self._database is not None:
            return
        self._database = database
        self._remove_hook = database.add_commit_hook(self._on_local_commit)
        self._pubsub = self.redis_client.pubsub()
        await self._pubsub.psubscribe(f"{self.channel_prefix}*")
        self._listener_task = asyncio.create_task(self._listen())
        logger.info(f"Change relay listening on {self.channel_prefix}*")
    
    async def stop(self):
        if self._database is None:
            return
        if self._remove_hook is not None:
            self._remove_hook()
            self._remove_hook = None
        if self._listener_task is not None:
            self._listener_task.cancel()
            await asyncio.gather(self._listener_task, return_exceptions=True)
            self._listener_task = None
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        if self._pubsub is not None:
            try:
                await self._pubsub.punsubscribe()
                await self._pubsub.aclose()
            except RedisError as e:
                logger.warning(f"Failed to close Redis subscription cleanly: {e}")
            self._pubsub = None
        self._database = None
        logger.info("Change relay stopped")
    
    def _on_local_commit(self, path: str, version: int):
        task = asyncio.create_task(self.publish(path, version))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
    
    async def publish(self, path: str, version: int):
        payload = json.dumps({"origin": self.instance_id, "version": version})
        try:
            await self.redis_client.publish(self.channel_for(path), payload)
        except RedisError as e:
            logger.warning(f"Failed to announce change at '{path}' v{version}: {e}")
    
    async def _listen(self):
        """Dispatch announcements, resubscribing with capped backoff when the connection drops.
        
        Losing the subscription is reported to every watched path. Once
        resubscribed, the watched paths are re-read so commits missed in
        between reach subscribers.
        """
        attempt = 0
        while True:
            try:
                if attempt:
                    await self._resubscribe()
                    logger.info(f"Change relay resubscribed after {attempt} attempts")
                    attempt = 0
                    for path in self._database.watched_paths():
                        await self._database.refresh(path)
                
                async for message in self._pubsub.listen():
                    if message.get("type") != "pmessage":
                        continue
                    await self.handle_message(message["channel"], message["data"])
                return
            except RedisError as e:
                if attempt == 0:
                    logger.error(f"Change relay lost its Redis subscription: {e}")
                    self._database.broadcast_error(ChangeFeedError(e))
                else:
                    logger.warning(f"Change relay resubscribe attempt {attempt} failed: {e}")
            
            # Exponential backoff with cap
            await asyncio.sleep(min(
                RelayConstants.RECONNECT_BASE_SECONDS * (2 ** attempt),
                RelayConstants.RECONNECT_MAX_SECONDS,
            ))
            attempt += 1
    
    async def _resubscribe(self):
        broken, self._pubsub = self._pubsub, None
        if broken is not None:
            try:
                await broken.aclose()
            except RedisError as e:
                logger.debug(f"Closing the broken Redis subscription failed: {e}")
        self._pubsub = self.redis_client.pubsub()
        await self._pubsub.psubscribe(f"{self.channel_prefix}*")
    
    async def handle_message(self, channel, data):
        """Re-read the announced path unless the announcement came from this process."""
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        
        try:
            payload = json.loads(data)
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"Ignoring malformed change announcement on {channel}: {data!r}")
            return
        if not isinstance(payload, dict) or payload.get("origin") == self.instance_id:
            return
        if not channel.startswith(self.channel_prefix):
            return
        
        path = channel[len(self.channel_prefix):]
        logger.debug(f"Remote change at '{path}' v{payload.get('version')}")
        await self._database.refresh(path)
