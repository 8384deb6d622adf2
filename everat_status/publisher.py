import io
import logging
from typing import Optional

import discord


class PublishError(RuntimeError):
    pass


class DiscordPublisher:
    """Owns the report channel: wipes it and posts fresh report images."""

    def __init__(self, client: discord.Client, server_id: int, channel_id: int,
                 logger: Optional[logging.Logger] = None):
        self.client = client
        self.server_id = server_id
        self.channel_id = channel_id
        self.logger = logger or logging.getLogger("everat_status")

    def channel(self) -> discord.TextChannel:
        guild = self.client.get_guild(self.server_id)
        if guild is None:
            raise PublishError(f"Guild {self.server_id} is not available")
        channel = guild.get_channel(self.channel_id)
        if not isinstance(channel, discord.TextChannel):
            raise PublishError(f"Channel {self.channel_id} is not a text channel of guild {self.server_id}")
        return channel

    async def clear_channel(self):
        channel = self.channel()
        deleted = await channel.purge(limit=None, reason="Ratting report refresh")
        self.logger.info("[publish] Cleared %d messages from #%s", len(deleted), channel.name)

    async def post_image(self, png: bytes, filename: str):
        channel = self.channel()
        msg = await channel.send(file=discord.File(io.BytesIO(png), filename=filename))
        self.logger.info("[publish] Posted %s as message %s", filename, msg.id)
        return msg
