from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import discord

log = logging.getLogger("rs-trialgate.dm")


@dataclass(frozen=True)
class DeliveryResult:
    member_id: int
    ok: bool
    error: Optional[str] = None


class Notifier(Protocol):
    async def send(self, member_id: int, text: str) -> DeliveryResult: ...


class DiscordNotifier:
    """Best-effort DMs. Closed DMs or API errors never affect entitlements."""

    def __init__(self, client: discord.Client):
        self.client = client

    async def send(self, member_id: int, text: str) -> DeliveryResult:
        try:
            user = self.client.get_user(member_id) or await self.client.fetch_user(member_id)
            await user.send(text)
        except discord.Forbidden:
            log.info(f"[DM] Couldn't DM {member_id}: user has DMs disabled")
            return DeliveryResult(member_id, False, "forbidden")
        except discord.HTTPException as e:
            log.warning(f"[DM] Couldn't DM {member_id}: {e}")
            return DeliveryResult(member_id, False, str(e))
        return DeliveryResult(member_id, True)
