"""Tests for DiscordPublisher against stub guild and channel objects."""

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from everat_status.publisher import DiscordPublisher, PublishError

SERVER_ID = 111
CHANNEL_ID = 222


def make_channel():
    channel = MagicMock(spec=discord.TextChannel)
    channel.name = "ratting"
    channel.purge = AsyncMock(return_value=[object(), object(), object()])
    channel.send = AsyncMock(return_value=MagicMock(id=999))
    return channel


def make_publisher(guild=None, channel=None):
    client = MagicMock()
    if guild is None and channel is not None:
        guild = MagicMock()
        guild.get_channel.return_value = channel
    client.get_guild.return_value = guild
    return DiscordPublisher(client, SERVER_ID, CHANNEL_ID), client


def test_channel_lookup_uses_configured_ids():
    channel = make_channel()
    publisher, client = make_publisher(channel=channel)

    assert publisher.channel() is channel
    client.get_guild.assert_called_once_with(SERVER_ID)
    client.get_guild.return_value.get_channel.assert_called_once_with(CHANNEL_ID)


def test_missing_guild_raises():
    publisher, _ = make_publisher(guild=None)
    with pytest.raises(PublishError, match=str(SERVER_ID)):
        publisher.channel()


def test_non_text_channel_raises():
    guild = MagicMock()
    guild.get_channel.return_value = MagicMock(spec=discord.VoiceChannel)
    publisher, _ = make_publisher(guild=guild)
    with pytest.raises(PublishError, match="not a text channel"):
        publisher.channel()


def test_unknown_channel_raises():
    guild = MagicMock()
    guild.get_channel.return_value = None
    publisher, _ = make_publisher(guild=guild)
    with pytest.raises(PublishError):
        publisher.channel()


@pytest.mark.asyncio
async def test_clear_channel_purges_everything():
    channel = make_channel()
    publisher, _ = make_publisher(channel=channel)

    await publisher.clear_channel()

    channel.purge.assert_awaited_once()
    assert channel.purge.await_args.kwargs["limit"] is None


@pytest.mark.asyncio
async def test_post_image_sends_one_file_with_name():
    channel = make_channel()
    publisher, _ = make_publisher(channel=channel)

    msg = await publisher.post_image(b"\x89PNG-data", "discordMessage.png")

    assert msg.id == 999
    channel.send.assert_awaited_once()
    sent = channel.send.await_args.kwargs["file"]
    assert isinstance(sent, discord.File)
    assert sent.filename == "discordMessage.png"
    assert sent.fp.read() == b"\x89PNG-data"


@pytest.mark.asyncio
async def test_clear_channel_without_guild_does_not_touch_discord():
    publisher, client = make_publisher(guild=None)
    with pytest.raises(PublishError):
        await publisher.clear_channel()
    client.get_guild.assert_called_once_with(SERVER_ID)
