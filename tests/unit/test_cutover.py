"""
Unit tests for CutoverGate.

Tests cover:
- Enable preconditions (backlog, extensions, new install, schema)
- Fail-closed behaviour: a refused transition changes nothing
- Enable and disable transitions, with and without sync
- Read-back verification of the flag
- Exclusive ownership of the flag writer
"""

from collections.abc import Iterator, Mapping

import pytest

from recordsync.authority import AuthoritativeStoreFlag
from recordsync.backlog import SyncBacklogTracker
from recordsync.config import SyncConfig
from recordsync.cutover import CutoverGate
from recordsync.migrator import BatchMigrator
from recordsync.models import AuthoritativeStore, AuthoritySnapshot, ExtensionCompatibility
from recordsync.results import Failure, FailureKind, Success, Warning
from recordsync.stores.in_memory import (
    InMemoryExtensionRegistry,
    InMemoryLegacyStore,
    InMemoryNormalizedStore,
    InMemorySettingsStore,
)
from recordsync.stores.interface import SETTING_AUTHORITATIVE_STORE, SETTING_SYNC_ENABLED
from tests.fixtures import populate

NORMALIZED_WITH_SYNC = AuthoritySnapshot(AuthoritativeStore.NORMALIZED_AUTHORITATIVE, True)
NORMALIZED_NO_SYNC = AuthoritySnapshot(AuthoritativeStore.NORMALIZED_AUTHORITATIVE, False)
LEGACY_WITH_SYNC = AuthoritySnapshot(AuthoritativeStore.LEGACY_AUTHORITATIVE, True)
LEGACY_NO_SYNC = AuthoritySnapshot(AuthoritativeStore.LEGACY_AUTHORITATIVE, False)


def make_gate(
    settings: InMemorySettingsStore,
    legacy: InMemoryLegacyStore,
    normalized: InMemoryNormalizedStore,
    extensions: InMemoryExtensionRegistry | None = None,
    config: SyncConfig | None = None,
) -> tuple[CutoverGate, AuthoritativeStoreFlag]:
    flag = AuthoritativeStoreFlag(settings)
    tracker = SyncBacklogTracker(legacy, normalized, config=config, enable_tracing=False)
    gate = CutoverGate(
        flag, tracker, legacy, normalized, extensions, config=config, enable_tracing=False
    )
    return gate, flag


@pytest.fixture
def gate(
    authority_flag: AuthoritativeStoreFlag,
    tracker: SyncBacklogTracker,
    legacy_store: InMemoryLegacyStore,
    normalized_store: InMemoryNormalizedStore,
    extensions: InMemoryExtensionRegistry,
    sync_config: SyncConfig,
) -> Iterator[CutoverGate]:
    gate = CutoverGate(
        authority_flag,
        tracker,
        legacy_store,
        normalized_store,
        extensions,
        config=sync_config,
        enable_tracing=False,
    )
    yield gate
    gate.close()


async def set_authority(settings: InMemorySettingsStore, snapshot: AuthoritySnapshot) -> None:
    await settings.put_settings(
        {
            SETTING_AUTHORITATIVE_STORE: snapshot.store.value,
            SETTING_SYNC_ENABLED: "yes" if snapshot.sync_enabled else "no",
        }
    )


class TestEnablePreconditions:
    """Enable is refused unless every check passes."""

    @pytest.mark.asyncio
    async def test_pending_entities_block(
        self,
        gate: CutoverGate,
        authority_flag: AuthoritativeStoreFlag,
        legacy_store: InMemoryLegacyStore,
    ) -> None:
        await populate(legacy_store, range(1, 6))

        result = await gate.enable()

        assert isinstance(result, Failure)
        assert result.kind == FailureKind.PRECONDITION_FAILED
        assert "5 entities are pending sync; run `recordsync sync` first" in result.detail
        assert await authority_flag.snapshot() == LEGACY_NO_SYNC

    @pytest.mark.asyncio
    async def test_incompatible_extension_blocks(
        self,
        gate: CutoverGate,
        authority_flag: AuthoritativeStoreFlag,
        extensions: InMemoryExtensionRegistry,
    ) -> None:
        extensions.register("legacy-reports", ExtensionCompatibility.INCOMPATIBLE)
        extensions.register("payments", ExtensionCompatibility.COMPATIBLE)

        result = await gate.enable()

        assert isinstance(result, Failure)
        assert result.detail.endswith("normalized store: legacy-reports")
        assert await authority_flag.snapshot() == LEGACY_NO_SYNC

    @pytest.mark.asyncio
    async def test_uncertain_extension_blocks_by_default(
        self, gate: CutoverGate, extensions: InMemoryExtensionRegistry
    ) -> None:
        extensions.register("shipping-labels")

        result = await gate.enable()

        assert isinstance(result, Failure)
        assert "shipping-labels" in result.detail

    @pytest.mark.asyncio
    async def test_uncertain_extension_can_be_allowed(
        self,
        settings_store: InMemorySettingsStore,
        legacy_store: InMemoryLegacyStore,
        normalized_store: InMemoryNormalizedStore,
        extensions: InMemoryExtensionRegistry,
    ) -> None:
        extensions.register("shipping-labels")
        gate, _ = make_gate(
            settings_store,
            legacy_store,
            normalized_store,
            extensions,
            SyncConfig(allow_uncertain_extensions=True),
        )

        assert isinstance(await gate.enable(), Success)

    @pytest.mark.asyncio
    async def test_every_failed_check_is_listed(
        self,
        gate: CutoverGate,
        legacy_store: InMemoryLegacyStore,
        extensions: InMemoryExtensionRegistry,
    ) -> None:
        await populate(legacy_store, [1, 2])
        extensions.register("legacy-reports", ExtensionCompatibility.INCOMPATIBLE)

        result = await gate.enable(for_new_install=True)

        assert isinstance(result, Failure)
        assert result.detail.startswith("Pre-enable checks failed: ")
        assert "not a new install (2 legacy entities exist)" in result.detail
        assert "legacy-reports" in result.detail
        assert "2 entities are pending sync" in result.detail

    @pytest.mark.asyncio
    async def test_for_new_install_on_populated_store(
        self,
        gate: CutoverGate,
        authority_flag: AuthoritativeStoreFlag,
        legacy_store: InMemoryLegacyStore,
        migrator: BatchMigrator,
    ) -> None:
        await populate(legacy_store, [1])
        await migrator.process([1])

        result = await gate.enable(for_new_install=True)

        assert isinstance(result, Failure)
        assert "not a new install" in result.detail
        assert await authority_flag.snapshot() == LEGACY_NO_SYNC


class TestEnableSchema:
    """Schema handling during enable."""

    @pytest.mark.asyncio
    async def test_fresh_install_creates_schema(
        self, settings_store: InMemorySettingsStore, legacy_store: InMemoryLegacyStore
    ) -> None:
        normalized = InMemoryNormalizedStore(with_schema=False, enable_tracing=False)
        gate, flag = make_gate(settings_store, legacy_store, normalized)

        result = await gate.enable(for_new_install=True)

        assert isinstance(result, Success)
        assert result.message == "The normalized store is now authoritative."
        assert await normalized.schema_exists()
        assert await flag.snapshot() == NORMALIZED_NO_SYNC

    @pytest.mark.asyncio
    async def test_populated_store_without_schema(
        self, settings_store: InMemorySettingsStore, legacy_store: InMemoryLegacyStore
    ) -> None:
        await populate(legacy_store, [1, 2, 3])
        normalized = InMemoryNormalizedStore(with_schema=False, enable_tracing=False)
        gate, flag = make_gate(settings_store, legacy_store, normalized)

        result = await gate.enable()

        assert isinstance(result, Failure)
        assert "recordsync create-schema" in result.detail
        assert "3 entities are pending sync" in result.detail
        assert not await normalized.schema_exists()
        assert await flag.snapshot() == LEGACY_NO_SYNC

    @pytest.mark.asyncio
    async def test_schema_not_created_when_another_check_fails(
        self,
        settings_store: InMemorySettingsStore,
        legacy_store: InMemoryLegacyStore,
        extensions: InMemoryExtensionRegistry,
    ) -> None:
        extensions.register("legacy-reports", ExtensionCompatibility.INCOMPATIBLE)
        normalized = InMemoryNormalizedStore(with_schema=False, enable_tracing=False)
        gate, _ = make_gate(settings_store, legacy_store, normalized, extensions)

        result = await gate.enable()

        assert isinstance(result, Failure)
        assert "was not created" in result.detail
        assert not await normalized.schema_exists()


class TestEnableTransitions:
    """Successful and no-op enables."""

    @pytest.mark.asyncio
    async def test_enable_after_full_sync(
        self,
        gate: CutoverGate,
        authority_flag: AuthoritativeStoreFlag,
        legacy_store: InMemoryLegacyStore,
        migrator: BatchMigrator,
    ) -> None:
        await populate(legacy_store, range(1, 6))
        await migrator.process(list(range(1, 6)))

        result = await gate.enable()

        assert isinstance(result, Success)
        assert await authority_flag.snapshot() == NORMALIZED_NO_SYNC

    @pytest.mark.asyncio
    async def test_enable_with_sync(
        self, gate: CutoverGate, authority_flag: AuthoritativeStoreFlag
    ) -> None:
        result = await gate.enable(with_sync=True)

        assert isinstance(result, Success)
        assert result.message == "The normalized store is now authoritative. Sync enabled."
        assert await authority_flag.snapshot() == NORMALIZED_WITH_SYNC

    @pytest.mark.asyncio
    async def test_already_authoritative(
        self, gate: CutoverGate, settings_store: InMemorySettingsStore
    ) -> None:
        await set_authority(settings_store, NORMALIZED_NO_SYNC)

        result = await gate.enable()

        assert isinstance(result, Warning)
        assert result.message == "The normalized store is already authoritative."

    @pytest.mark.asyncio
    async def test_already_authoritative_turns_sync_on(
        self,
        gate: CutoverGate,
        settings_store: InMemorySettingsStore,
        authority_flag: AuthoritativeStoreFlag,
    ) -> None:
        await set_authority(settings_store, NORMALIZED_NO_SYNC)

        result = await gate.enable(with_sync=True)

        assert isinstance(result, Success)
        assert result.message == "The normalized store is already authoritative. Sync enabled."
        assert await authority_flag.snapshot() == NORMALIZED_WITH_SYNC

    @pytest.mark.asyncio
    async def test_existing_sync_setting_is_kept(
        self,
        gate: CutoverGate,
        settings_store: InMemorySettingsStore,
        authority_flag: AuthoritativeStoreFlag,
    ) -> None:
        await set_authority(settings_store, LEGACY_WITH_SYNC)

        result = await gate.enable(with_sync=True)

        assert result.message == (
            "The normalized store is now authoritative. Sync is already enabled."
        )
        assert await authority_flag.snapshot() == NORMALIZED_WITH_SYNC

    @pytest.mark.asyncio
    async def test_settings_outage(
        self, gate: CutoverGate, settings_store: InMemorySettingsStore
    ) -> None:
        settings_store.available = False

        result = await gate.enable()

        assert isinstance(result, Failure)
        assert result.kind == FailureKind.STORE_UNAVAILABLE


class TestDisable:
    """Tests for disable()."""

    @pytest.mark.asyncio
    async def test_disable(
        self,
        gate: CutoverGate,
        settings_store: InMemorySettingsStore,
        authority_flag: AuthoritativeStoreFlag,
    ) -> None:
        await set_authority(settings_store, NORMALIZED_WITH_SYNC)

        result = await gate.disable()

        assert isinstance(result, Success)
        assert result.message == "The legacy store is now authoritative."
        assert await authority_flag.snapshot() == LEGACY_WITH_SYNC

    @pytest.mark.asyncio
    async def test_disable_with_sync(
        self,
        gate: CutoverGate,
        settings_store: InMemorySettingsStore,
        authority_flag: AuthoritativeStoreFlag,
    ) -> None:
        await set_authority(settings_store, NORMALIZED_WITH_SYNC)

        result = await gate.disable(with_sync=True)

        assert result.message == "The legacy store is now authoritative. Sync disabled."
        assert await authority_flag.snapshot() == LEGACY_NO_SYNC

    @pytest.mark.asyncio
    async def test_already_legacy(self, gate: CutoverGate) -> None:
        result = await gate.disable()

        assert isinstance(result, Warning)
        assert result.message == "The legacy store is already authoritative."

    @pytest.mark.asyncio
    async def test_only_sync_is_turned_off(
        self,
        gate: CutoverGate,
        settings_store: InMemorySettingsStore,
        authority_flag: AuthoritativeStoreFlag,
    ) -> None:
        await set_authority(settings_store, LEGACY_WITH_SYNC)

        result = await gate.disable(with_sync=True)

        assert isinstance(result, Success)
        assert result.message == "The legacy store is already authoritative. Sync disabled."
        assert await authority_flag.snapshot() == LEGACY_NO_SYNC

    @pytest.mark.asyncio
    async def test_pending_entities_block(
        self,
        gate: CutoverGate,
        settings_store: InMemorySettingsStore,
        authority_flag: AuthoritativeStoreFlag,
        legacy_store: InMemoryLegacyStore,
    ) -> None:
        await set_authority(settings_store, NORMALIZED_NO_SYNC)
        await populate(legacy_store, [1, 2])

        result = await gate.disable()

        assert isinstance(result, Failure)
        assert result.kind == FailureKind.PRECONDITION_FAILED
        assert result.detail == "2 entities are pending sync; run `recordsync sync` first"
        assert await authority_flag.snapshot() == NORMALIZED_NO_SYNC


class _StickySettingsStore(InMemorySettingsStore):
    """Settings store that silently refuses to store the normalized store."""

    async def put_settings(self, values: Mapping[str, str]) -> None:
        if values.get(SETTING_AUTHORITATIVE_STORE) == "normalized":
            values = {k: v for k, v in values.items() if k != SETTING_AUTHORITATIVE_STORE}
        await super().put_settings(values)


class TestReadBack:
    """The flag is read back after every write."""

    @pytest.mark.asyncio
    async def test_mismatch_restores_previous_settings(
        self, legacy_store: InMemoryLegacyStore, normalized_store: InMemoryNormalizedStore
    ) -> None:
        settings = _StickySettingsStore(enable_tracing=False)
        gate, flag = make_gate(settings, legacy_store, normalized_store)

        result = await gate.enable(with_sync=True)

        assert isinstance(result, Failure)
        assert result.kind == FailureKind.ERROR
        assert result.detail == (
            "The authoritative store could not be set to normalized; previous settings restored"
        )
        assert await flag.snapshot() == LEGACY_NO_SYNC


class TestWriterOwnership:
    """Only one gate may hold the writer at a time."""

    def test_second_gate_is_rejected(
        self,
        gate: CutoverGate,
        authority_flag: AuthoritativeStoreFlag,
        tracker: SyncBacklogTracker,
        legacy_store: InMemoryLegacyStore,
        normalized_store: InMemoryNormalizedStore,
    ) -> None:
        with pytest.raises(RuntimeError):
            CutoverGate(authority_flag, tracker, legacy_store, normalized_store)

    def test_close_releases_the_writer(
        self,
        authority_flag: AuthoritativeStoreFlag,
        tracker: SyncBacklogTracker,
        legacy_store: InMemoryLegacyStore,
        normalized_store: InMemoryNormalizedStore,
    ) -> None:
        gate = CutoverGate(
            authority_flag, tracker, legacy_store, normalized_store, enable_tracing=False
        )
        gate.close()

        assert not authority_flag.has_writer
