"""
Authoritative-store flag.

Which representation is the source of truth is a process-wide setting.
Readers take an immutable AuthoritySnapshot at the start of an operation
and use it for the whole operation. Exactly one component, the Cutover
Gate, holds the AuthorityWriter that may change it.

Example:
    >>> flag = AuthoritativeStoreFlag(settings_store)
    >>> snapshot = await flag.snapshot()
    >>> snapshot.normalized_is_authoritative
    False
    >>> writer = flag.claim_writer()
    >>> flag.claim_writer()  # raises RuntimeError
"""

from __future__ import annotations

import logging

from recordsync.models import AuthoritativeStore, AuthoritySnapshot
from recordsync.stores.interface import (
    SETTING_AUTHORITATIVE_STORE,
    SETTING_SYNC_ENABLED,
    SettingsStore,
)

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"yes", "true", "1", "on"})


def _encode_bool(value: bool) -> str:
    return "yes" if value else "no"


class AuthoritativeStoreFlag:
    """
    Reads the authoritative-store settings and hands out the single writer.

    Args:
        settings: Settings store holding the flag.
    """

    def __init__(self, settings: SettingsStore) -> None:
        self._settings = settings
        self._writer: AuthorityWriter | None = None

    async def snapshot(self) -> AuthoritySnapshot:
        """
        Read the current settings.

        Missing settings mean the legacy store is authoritative and sync
        is off. An unrecognized store value is treated the same way.

        Raises:
            StoreUnavailableError: If the settings store cannot be reached.
        """
        values = await self._settings.get_settings()
        raw_store = values.get(
            SETTING_AUTHORITATIVE_STORE, AuthoritativeStore.LEGACY_AUTHORITATIVE.value
        )
        try:
            store = AuthoritativeStore(raw_store)
        except ValueError:
            logger.warning(
                "Unrecognized %s setting %r, assuming %s",
                SETTING_AUTHORITATIVE_STORE,
                raw_store,
                AuthoritativeStore.LEGACY_AUTHORITATIVE.value,
            )
            store = AuthoritativeStore.LEGACY_AUTHORITATIVE
        sync_enabled = values.get(SETTING_SYNC_ENABLED, "no").strip().lower() in _TRUE_VALUES
        return AuthoritySnapshot(store=store, sync_enabled=sync_enabled)

    def claim_writer(self) -> AuthorityWriter:
        """
        Claim the right to change the flag.

        Raises:
            RuntimeError: If the writer has already been claimed.
        """
        if self._writer is not None:
            raise RuntimeError("The authoritative-store flag already has a writer")
        self._writer = AuthorityWriter(self)
        return self._writer

    def _release(self, writer: AuthorityWriter) -> None:
        if self._writer is writer:
            self._writer = None

    @property
    def has_writer(self) -> bool:
        return self._writer is not None


class AuthorityWriter:
    """
    The only handle that may change the authoritative-store settings.

    Obtained from AuthoritativeStoreFlag.claim_writer().
    """

    def __init__(self, flag: AuthoritativeStoreFlag) -> None:
        self._flag = flag
        self._released = False

    async def write(self, target: AuthoritySnapshot) -> AuthoritySnapshot:
        """
        Persist both settings in one write and read them back.

        Args:
            target: Desired store and sync setting.

        Returns:
            The snapshot read back after the write.

        Raises:
            RuntimeError: If this writer has been released.
            StoreUnavailableError: If the settings store cannot be reached.
        """
        if self._released:
            raise RuntimeError("AuthorityWriter has been released")
        await self._flag._settings.put_settings(
            {
                SETTING_AUTHORITATIVE_STORE: target.store.value,
                SETTING_SYNC_ENABLED: _encode_bool(target.sync_enabled),
            }
        )
        return await self._flag.snapshot()

    async def snapshot(self) -> AuthoritySnapshot:
        return await self._flag.snapshot()

    def release(self) -> None:
        """Give up the writer so another owner can claim it."""
        self._released = True
        self._flag._release(self)


__all__ = [
    "AuthoritativeStoreFlag",
    "AuthorityWriter",
]
