from __future__ import annotations

import logging
from typing import Callable, Optional, Set

import discord

from RSTrialGate.gate_roles import MembershipUnavailable, RoleResult

log = logging.getLogger("rs-trialgate.discord")


class DiscordMembership:
    """MembershipGateway backed by a live discord.Guild."""

    def __init__(self, get_guild: Callable[[], Optional[discord.Guild]]):
        # Resolved lazily: the guild object is only available once the gateway is ready.
        self._get_guild = get_guild

    async def _member(self, member_id: int) -> Optional[discord.Member]:
        """Cached member, then fetch. None only when Discord says the member is gone."""
        guild = self._get_guild()
        if guild is None:
            log.warning(f"[Discord] Guild not available while resolving member {member_id}")
            raise MembershipUnavailable("guild not available")
        member = guild.get_member(member_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(member_id)
        except discord.NotFound:
            return None
        except discord.HTTPException as e:
            log.warning(f"[Discord] fetch_member({member_id}) failed: {e}")
            raise MembershipUnavailable(f"fetch_member failed: {e}") from e

    async def held_roles(self, member_id: int) -> Optional[Set[int]]:
        member = await self._member(member_id)
        if member is None:
            return None
        return {r.id for r in member.roles}

    async def grant(self, member_id: int, role_id: int, reason: str) -> RoleResult:
        try:
            member = await self._member(member_id)
        except MembershipUnavailable as e:
            return RoleResult(member_id, role_id, "grant", False, str(e))
        if member is None:
            return RoleResult(member_id, role_id, "grant", False, "member not in guild")
        if any(r.id == role_id for r in member.roles):
            return RoleResult(member_id, role_id, "grant", True)
        try:
            await member.add_roles(discord.Object(id=role_id), reason=reason)
        except discord.HTTPException as e:
            return RoleResult(member_id, role_id, "grant", False, str(e))
        return RoleResult(member_id, role_id, "grant", True)

    async def revoke(self, member_id: int, role_id: int, reason: str) -> RoleResult:
        try:
            member = await self._member(member_id)
        except MembershipUnavailable as e:
            return RoleResult(member_id, role_id, "revoke", False, str(e))
        if member is None:
            return RoleResult(member_id, role_id, "revoke", False, "member not in guild")
        if not any(r.id == role_id for r in member.roles):
            return RoleResult(member_id, role_id, "revoke", True)
        try:
            await member.remove_roles(discord.Object(id=role_id), reason=reason)
        except discord.HTTPException as e:
            return RoleResult(member_id, role_id, "revoke", False, str(e))
        return RoleResult(member_id, role_id, "revoke", True)
