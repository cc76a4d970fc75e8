# pitwall/core/dispatcher.py
from __future__ import annotations
import logging
import discord

from pitwall.core.config import settings
from pitwall.domain.errors import SendFailed

log = logging.getLogger(__name__)

class DiscordDispatcher:
    """
    Transport unique vers Discord: send(channel_id, content) -> message_id, edit() et retract().
    Les channels sont résolus au boot; un channel inaccessible est simplement ignoré (log).
    """
    client: discord.Client | None = None
    channels: dict[int, discord.abc.Messageable] = {}

    @classmethod
    async def init(cls, client: discord.Client) -> None:
        cls.client = client
        cls.channels = {}
        for series, cid in settings.series_channels.items():
            ch = await cls._resolve(cid)
            if ch is None:
                log.warning("Notify channel for %s (%s) is unreachable.", series, cid)
                continue

            guild = getattr(ch, "guild", None)
            if guild is not None:
                me = guild.me
                if me is not None and not ch.permissions_for(me).send_messages:  # type: ignore
                    log.warning("Missing send_messages in channel %s (%s).", cid, series)
                    continue

            cls.channels[int(cid)] = ch
            log.info("Notify ready: series=%s channel=%s", series, cid)

    @classmethod
    async def _resolve(cls, channel_id: int):
        if cls.client is None:
            return None
        ch = cls.client.get_channel(int(channel_id))
        if ch is None:
            try:
                ch = await cls.client.fetch_channel(int(channel_id))
            except discord.HTTPException as e:
                log.warning("Channel fetch failed for %s: %s", channel_id, e)
                return None
        return ch

    @classmethod
    async def send(cls, channel_id: int, content: str) -> str:
        ch = cls.channels.get(int(channel_id)) or await cls._resolve(channel_id)
        if ch is None:
            raise SendFailed(channel_id, "channel unavailable")
        try:
            msg = await ch.send(content=content, allowed_mentions=discord.AllowedMentions(roles=True))
        except discord.HTTPException as e:
            raise SendFailed(channel_id, str(e)) from e
        cls.channels[int(channel_id)] = ch
        return str(msg.id)

    @classmethod
    async def retract(cls, channel_id: int | str, message_id: int | str) -> None:
        """Supprime un rappel expiré. Déjà supprimé = OK."""
        ch = cls.channels.get(int(channel_id)) or await cls._resolve(int(channel_id))
        if ch is None:
            raise SendFailed(channel_id, "channel unavailable")
        try:
            await ch.get_partial_message(int(message_id)).delete()  # type: ignore
        except discord.NotFound:
            log.info("Message %s already gone from %s", message_id, channel_id)
        except discord.HTTPException as e:
            raise SendFailed(channel_id, str(e)) from e

    @classmethod
    async def edit(cls, channel_id: int | str, message_id: int | str, content: str) -> bool:
        """Réécrit un message en place. False si le message n'existe plus."""
        ch = cls.channels.get(int(channel_id)) or await cls._resolve(int(channel_id))
        if ch is None:
            raise SendFailed(channel_id, "channel unavailable")
        try:
            await ch.get_partial_message(int(message_id)).edit(content=content)  # type: ignore
        except discord.NotFound:
            return False
        except discord.HTTPException as e:
            raise SendFailed(channel_id, str(e)) from e
        return True
