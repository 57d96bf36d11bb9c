"""Trigger construction, dispatch results and the health check."""
from __future__ import annotations

import time

import pytest
from conftest import TEST_BASE_URL, RecordingTransport, run_worker

from batchwork.async_request import AlreadyProcessingError, TransportError
from batchwork.constants import (
    ERROR_ALREADY_PROCESSING,
    FILTER_CRON_INTERVAL,
    FILTER_POST_ARGS,
    FILTER_QUERY_ARGS,
    FILTER_QUERY_URL,
)
from batchwork.models import HandleOutcome
from batchwork.security import TokenError, identity_scope


def test_dispatch_builds_fire_and_forget_trigger(make_process, transport) -> None:
    process = make_process()
    process.data({"source": "import"})

    with identity_scope({"session": "abc"}):
        result = process.dispatch()

    assert result.ok
    request = transport.last
    assert request.url == f"{TEST_BASE_URL}/async"
    assert request.params["action"] == "bw_import_rows"
    assert request.params["nonce"]
    assert request.blocking is False
    assert request.timeout == pytest.approx(0.01)
    assert request.cookies == {"session": "abc"}
    assert request.body == {"source": "import"}


def test_dispatch_while_locked_issues_no_trigger(make_process, transport) -> None:
    process = make_process()
    process.lock_process()

    result = process.dispatch()

    assert not result.ok
    assert isinstance(result.error, AlreadyProcessingError)
    assert result.code == ERROR_ALREADY_PROCESSING
    assert transport.requests == []
    with pytest.raises(AlreadyProcessingError):
        result.raise_for_error()


def test_transport_failure_is_reported(registry, make_process) -> None:
    registry.transport = RecordingTransport(ok=False, error="connection refused")
    process = make_process()

    result = process.dispatch()

    assert not result.ok
    assert isinstance(result.error, TransportError)
    assert "connection refused" in str(result.error)


def test_filters_rewrite_trigger(make_process, transport) -> None:
    process = make_process()
    process.hooks.add_filter(FILTER_QUERY_URL, lambda url, proc: url.replace("worker.test", "internal:9000"))
    process.hooks.add_filter(FILTER_QUERY_ARGS, lambda args, proc: {**args, "tenant": "acme"})
    process.hooks.add_filter(FILTER_POST_ARGS, lambda args, proc: {**args, "blocking": True, "timeout": 30})

    process.dispatch()

    request = transport.last
    assert request.url == "http://internal:9000/async"
    assert request.params["tenant"] == "acme"
    assert request.blocking is True
    assert request.timeout == 30


def test_config_overrides_bypass_filters(make_process, transport) -> None:
    process = make_process(query_url="http://fixed/hook", query_args={"action": "bw_import_rows", "nonce": "x"})
    process.hooks.add_filter(FILTER_QUERY_URL, lambda url, proc: "http://ignored")

    process.dispatch()

    assert transport.last.url == "http://fixed/hook"
    assert transport.last.params == {"action": "bw_import_rows", "nonce": "x"}


def test_worker_rejects_bad_nonce_when_work_is_queued(make_process) -> None:
    process = make_process()
    process.push("a").save()

    with pytest.raises(TokenError):
        process.maybe_handle("forged")
    with pytest.raises(TokenError):
        process.maybe_handle(None)
    assert process.seen == []


def test_nonce_is_single_use(make_process, transport) -> None:
    process = make_process(time_limit=0)
    process.push("a").push("b").save()
    process.dispatch()
    nonce = transport.last.params["nonce"]

    assert process.maybe_handle(nonce) is HandleOutcome.handled
    with pytest.raises(TokenError):
        process.maybe_handle(nonce)


def test_dispatch_arms_health_check_once(make_process, scheduler) -> None:
    process = make_process(cron_interval=2)
    process.dispatch()
    process.dispatch()

    interval, _ = scheduler.schedules[process.cron_hook_identifier]
    assert interval == 120
    assert process.cron_interval_seconds() == 120


def test_cron_interval_filter_has_one_minute_floor(make_process) -> None:
    process = make_process()
    process.hooks.add_filter(FILTER_CRON_INTERVAL, lambda minutes, proc: 0)

    assert process.cron_interval_seconds() == 60


def test_health_check_redispatches_lost_trigger(make_process, transport, scheduler) -> None:
    process = make_process()
    process.push("a").save()
    process.dispatch()
    assert len(transport.requests) == 1

    scheduler.fire(process.cron_hook_identifier)

    assert len(transport.requests) == 2
    assert run_worker(process, transport) is HandleOutcome.handled


def test_health_check_skips_while_processing(make_process, transport, scheduler) -> None:
    process = make_process()
    process.push("a").save()
    process.dispatch()
    process.lock_process()

    scheduler.fire(process.cron_hook_identifier)

    assert len(transport.requests) == 1
    assert process.cron_hook_identifier in scheduler.schedules


def test_health_check_retires_itself_on_empty_queue(make_process, transport, scheduler) -> None:
    process = make_process()
    process.schedule_event()

    scheduler.fire(process.cron_hook_identifier)

    assert transport.requests == []
    assert process.cron_hook_identifier not in scheduler.schedules


def test_health_check_recovers_after_task_failure(make_process, transport, scheduler) -> None:
    calls = {"n": 0}

    def flaky(item):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionError("upstream down")
        return None

    process = make_process(handler=flaky)
    process.push("a").save()
    process.dispatch()
    assert run_worker(process, transport) is HandleOutcome.failed

    scheduler.fire(process.cron_hook_identifier)

    assert run_worker(process, transport) is HandleOutcome.handled
    assert process.seen == ["a", "a"]
    assert process.is_queue_empty()


def test_health_check_purges_spent_tokens(make_process, scheduler, store) -> None:
    process = make_process()
    process.push("a").save()
    process.dispatch()
    store.add(f"{process.identifier}_nonce_spent", 1, ttl=0.01)
    time.sleep(0.05)

    scheduler.fire(process.cron_hook_identifier)

    assert store.purge_expired() == 0
