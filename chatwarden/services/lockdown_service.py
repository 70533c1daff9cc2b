"""
Tenant lockdown.
Denies SEND_MESSAGES for the default role on every text channel and restores it on unlock.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from chatwarden.lib.metrics import metrics
from chatwarden.lib.platform import PlatformClient

logger = logging.getLogger(__name__)


LOCKDOWN_CHANNEL_NAME = "server-lockdown"
NIGHT_LOCKDOWN_CHANNEL_NAME = "night-lockdown"


@dataclass
class LockdownState:
    """What a lockdown changed, so unlock can put it back."""
    prior_overwrites: Dict[str, Optional[bool]] = field(default_factory=dict)
    announcement_channel_id: Optional[str] = None
    reason: str = ""


class LockdownService:
    """
    Locks and unlocks tenants.
    Locking an already-locked tenant is a no-op.
    """

    def __init__(self, platform: PlatformClient):
        self.platform = platform
        self._states: Dict[str, LockdownState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def is_locked(self, tenant_id: str) -> bool:
        return tenant_id in self._states

    async def lock(self, tenant_id: str, reason: str, night_mode: bool = False) -> bool:
        """Lock a tenant. Returns True if this call started the lockdown."""
        async with self._lock_for(tenant_id):
            if tenant_id in self._states:
                logger.info(f"Tenant {tenant_id} already locked down")
                return False

            prefix = "Anti-Nuke [NIGHT MODE]" if night_mode else "Anti-Nuke"
            audit_reason = f"{prefix} Lockdown: {reason}"
            logger.warning(f"Initiating lockdown of tenant {tenant_id}{' (night mode)' if night_mode else ''}: {reason}")

            try:
                channels = await self.platform.list_text_channels(tenant_id)
            except Exception as e:
                logger.error(f"Lockdown of {tenant_id} failed, could not list channels: {e}")
                return False

            state = LockdownState(reason=reason)
            for channel in channels:
                try:
                    await self.platform.edit_channel_permission_overwrite(
                        tenant_id, channel.id, False, audit_reason,
                    )
                    state.prior_overwrites[channel.id] = channel.default_send_messages
                except Exception as e:
                    logger.error(f"Could not lock channel {channel.id} in {tenant_id}: {e}")

            name = NIGHT_LOCKDOWN_CHANNEL_NAME if night_mode else LOCKDOWN_CHANNEL_NAME
            topic = f"Server lockdown activated: {reason}. Administrators can lift it with unlock."
            try:
                state.announcement_channel_id = await self.platform.create_channel(
                    tenant_id, name, topic, f"{prefix}: Lockdown notification channel",
                )
            except Exception as e:
                logger.error(f"Could not create lockdown channel in {tenant_id}: {e}")

            self._states[tenant_id] = state
            metrics.set_lockdowns(len(self._states))
            return True

    async def unlock(self, tenant_id: str) -> int:
        """Lift a lockdown. Returns the number of channels restored."""
        async with self._lock_for(tenant_id):
            state = self._states.pop(tenant_id, None)
            metrics.set_lockdowns(len(self._states))
            reason = "Anti-Nuke: Lockdown lifted"
            restored = 0

            if state is not None:
                for channel_id, prior in state.prior_overwrites.items():
                    try:
                        await self.platform.edit_channel_permission_overwrite(tenant_id, channel_id, prior, reason)
                        restored += 1
                    except Exception as e:
                        logger.error(f"Could not restore channel {channel_id} in {tenant_id}: {e}")
                if state.announcement_channel_id:
                    try:
                        await self.platform.delete_channel(
                            tenant_id, state.announcement_channel_id, "Anti-Nuke: Removing lockdown channel",
                        )
                    except Exception as e:
                        logger.error(f"Could not delete lockdown channel in {tenant_id}: {e}")
                logger.info(f"Unlocked tenant {tenant_id}, {restored} channels restored")
                return restored

            # No remembered state (e.g. after a restart): clear overwrites everywhere
            try:
                channels = await self.platform.list_text_channels(tenant_id)
            except Exception as e:
                logger.error(f"Unlock of {tenant_id} failed, could not list channels: {e}")
                return 0
            for channel in channels:
                try:
                    if channel.name in (LOCKDOWN_CHANNEL_NAME, NIGHT_LOCKDOWN_CHANNEL_NAME):
                        await self.platform.delete_channel(
                            tenant_id, channel.id, "Anti-Nuke: Removing lockdown channel",
                        )
                        continue
                    await self.platform.edit_channel_permission_overwrite(tenant_id, channel.id, None, reason)
                    restored += 1
                except Exception as e:
                    logger.error(f"Could not unlock channel {channel.id} in {tenant_id}: {e}")
            logger.info(f"Unlocked tenant {tenant_id} without saved state, {restored} channels cleared")
            return restored

    def locked_tenants(self) -> List[str]:
        return list(self._states)
