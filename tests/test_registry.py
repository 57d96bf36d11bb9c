from __future__ import annotations

import pytest
from conftest import ListProcess

from batchwork.config import Settings
from batchwork.models import ProcessConfig
from batchwork.registry import DuplicateRegistrationError, ProcessRegistry, UnknownRegistrationError
from batchwork.storage import MemoryKeyValueStore


def test_create_shares_collaborators(registry, store, scheduler) -> None:
    process = registry.create(ListProcess, ProcessConfig(action="rows"))

    assert registry.get("bw_rows") is process
    assert process.store is store
    assert process.scheduler is scheduler
    assert process.tokens is registry.tokens
    assert registry.snapshot() == ["bw_rows"]


def test_duplicate_and_unknown_identifiers(registry) -> None:
    registry.create(ListProcess, ProcessConfig(action="rows"))

    with pytest.raises(DuplicateRegistrationError):
        registry.create(ListProcess, ProcessConfig(action="rows"))
    with pytest.raises(UnknownRegistrationError):
        registry.get("bw_missing")


def test_unregister_clears_health_check_but_keeps_batches(registry, scheduler) -> None:
    process = registry.create(ListProcess, ProcessConfig(action="rows"))
    process.push("a").save()
    process.dispatch()

    registry.unregister("bw_rows")

    assert process.cron_hook_identifier not in scheduler.schedules
    assert registry.snapshot() == []
    assert process.is_queued()


def test_rearm_schedules_only_queued_processes(registry, scheduler) -> None:
    busy = registry.create(ListProcess, ProcessConfig(action="busy"))
    registry.create(ListProcess, ProcessConfig(action="idle"))
    busy.push("a").save()

    assert registry.rearm() == 1
    assert list(scheduler.schedules) == [busy.cron_hook_identifier]


def test_from_settings_fills_defaults() -> None:
    settings = Settings(secret_key="k", store_backend="memory")
    registry = ProcessRegistry.from_settings(settings)
    try:
        assert isinstance(registry.store, MemoryKeyValueStore)
        assert registry.tokens.max_age == settings.token_max_age
    finally:
        registry.shutdown()
