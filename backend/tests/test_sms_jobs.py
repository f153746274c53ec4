"""Periodic SMS workers: queue drains, scheduled sweep, bulk campaigns, cleanup."""
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from config import WORKER_INTERVAL_MINUTES
from conftest import Pipeline, make_settings
from models import CampaignJob, ProviderMode, ProviderSendResult, encode_job
from services.sms_errors import PersistenceError, ProviderError
from services.sms_jobs import chunk_recipients


def _provider(fail_times=0):
    """Mock-mode provider that fails the first `fail_times` sends."""
    provider = MagicMock()
    provider.mode = ProviderMode.MOCK
    provider.provider_name = "SMSnotifyGh"
    state = {"calls": 0}

    async def send(phone, message, record_id, bulk=False):
        state["calls"] += 1
        if state["calls"] <= fail_times:
            raise ProviderError("SMS provider error 503: unavailable", status_code=503)
        return ProviderSendResult(external_id=f"ext_{record_id}", provider_status="sent", mode=ProviderMode.MOCK)

    provider.send = AsyncMock(side_effect=send)
    return provider


async def _queue_record(pipeline, priority="immediate", message="Hello", phone="+233244000000"):
    record = pipeline.dispatch.build_record(phone, message, priority)
    await pipeline.store.insert(record)
    queued = await pipeline.store.transition(record.record_id, "pending", "queued", {"queued_at": pipeline.clock()})
    await pipeline.queues.enqueue(pipeline.dispatch.build_job(queued))
    return record


def test_chunk_recipients_23_into_10_10_3():
    assert [len(b) for b in chunk_recipients(list(range(23)), 10)] == [10, 10, 3]
    assert chunk_recipients([], 10) == []


# ---------------------------------------------------------------------------
# single-flight
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_worker_skips_while_previous_run_in_progress(pipeline):
    await _queue_record(pipeline)
    lock = pipeline.jobs.supervisor._lock("immediate")

    async with lock:
        result = await pipeline.jobs.process_immediate_queue()

    assert result == {"skipped": True}
    assert await pipeline.queues.cache.length("sms:immediate") == 1

    result = await pipeline.jobs.process_immediate_queue()
    assert result["successful"] == 1


# ---------------------------------------------------------------------------
# queue drains
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_immediate_drain_sends_queued_records(pipeline):
    records = [await _queue_record(pipeline, message=f"msg {i}") for i in range(3)]

    stats = await pipeline.jobs.process_immediate_queue()

    assert stats["processed"] == 3
    assert stats["successful"] == 3
    for record in records:
        stored = pipeline.store.record(record.record_id)
        assert stored.status == "sent"
        assert stored.external_id == f"mock_{record.record_id}"
    assert await pipeline.cache.length("sms:immediate") == 0


@pytest.mark.asyncio
async def test_immediate_drain_caps_batch_at_50(pipeline):
    for i in range(55):
        await _queue_record(pipeline, message=f"m{i}")
    stats = await pipeline.jobs.process_immediate_queue()
    assert stats["processed"] == 50
    assert await pipeline.cache.length("sms:immediate") == 5


@pytest.mark.asyncio
async def test_failed_job_is_retried_after_backoff():
    pipeline = Pipeline(provider=_provider(fail_times=1))
    record = await _queue_record(pipeline)

    stats = await pipeline.jobs.process_immediate_queue()
    assert stats["retried"] == 1
    stored = pipeline.store.record(record.record_id)
    assert stored.status == "queued"
    assert stored.retry_count == 1
    assert stored.failure_reason.startswith("SMS provider error 503")

    # not due yet
    stats = await pipeline.jobs.process_immediate_queue()
    assert stats["processed"] == 0

    pipeline.clock.advance(60)
    stats = await pipeline.jobs.process_immediate_queue()
    assert stats["successful"] == 1
    assert pipeline.store.record(record.record_id).status == "sent"


@pytest.mark.asyncio
async def test_job_failing_every_attempt_ends_failed():
    pipeline = Pipeline(provider=_provider(fail_times=100))
    record = await _queue_record(pipeline)

    outcomes = []
    for delay in (0, 60, 120, 240):
        pipeline.clock.advance(delay)
        stats = await pipeline.jobs.process_immediate_queue()
        outcomes.append((stats["retried"], stats["failed"]))

    assert outcomes == [(1, 0), (1, 0), (1, 0), (0, 1)]
    stored = pipeline.store.record(record.record_id)
    assert stored.status == "failed"
    assert stored.retry_count == 3
    assert pipeline.provider.send.await_count == 4


@pytest.mark.asyncio
async def test_exhausted_queue_job_with_past_schedule_is_not_swept_again():
    pipeline = Pipeline(provider=_provider(fail_times=100))
    result = await pipeline.dispatch.send_sms(
        "+233244000000", "Hi", priority="normal", scheduled_at=pipeline.clock() - timedelta(seconds=1)
    )

    for delay in (0, 60, 120, 240):
        pipeline.clock.advance(delay)
        await pipeline.jobs.process_standard_queues()

    stored = pipeline.store.record(result.record_id)
    assert stored.status == "failed"
    assert stored.next_retry_at is None

    pipeline.clock.advance(600)
    stats = await pipeline.jobs.process_scheduled()

    assert stats["processed"] == 0
    assert pipeline.provider.send.await_count == 4
    assert pipeline.store.record(result.record_id).status == "failed"


@pytest.mark.asyncio
async def test_expired_job_fails_record_without_send(pipeline):
    record = await _queue_record(pipeline, priority="normal")
    pipeline.clock.advance(24 * 3600 - 1)
    # keep the list alive past its own TTL to reach the expired job
    await pipeline.cache.expire("sms:normal", 3600)
    pipeline.clock.advance(1)

    stats = await pipeline.jobs.process_standard_queues()

    assert stats["expired"] == 1
    stored = pipeline.store.record(record.record_id)
    assert stored.status == "failed"
    assert stored.failure_reason == "expired in queue"
    assert stored.sent_at is None


@pytest.mark.asyncio
async def test_malformed_entry_dropped(pipeline):
    await pipeline.cache.push("sms:immediate", '{"kind": "sms", "phone": 1}')
    await _queue_record(pipeline)
    stats = await pipeline.jobs.process_immediate_queue()
    assert stats["malformed"] == 1
    assert stats["successful"] == 1


@pytest.mark.asyncio
async def test_standard_drain_order_high_normal_low():
    provider = _provider()
    pipeline = Pipeline(provider=provider)
    await _queue_record(pipeline, priority="low", phone="+233244000003")
    await _queue_record(pipeline, priority="normal", phone="+233244000002")
    await _queue_record(pipeline, priority="high", phone="+233244000001")

    stats = await pipeline.jobs.process_standard_queues()

    assert stats["successful"] == 3
    phones = [c.args[0] for c in provider.send.await_args_list]
    assert phones == ["+233244000001", "+233244000002", "+233244000003"]


@pytest.mark.asyncio
async def test_record_moved_elsewhere_is_skipped(pipeline):
    record = await _queue_record(pipeline)
    await pipeline.store.transition(record.record_id, "queued", "cancelled")
    stats = await pipeline.jobs.process_immediate_queue()
    assert stats["skipped"] == 1
    assert pipeline.store.record(record.record_id).status == "cancelled"


# ---------------------------------------------------------------------------
# scheduled sweep
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_sweep_cancels_when_event_gone():
    provider = _provider()
    pipeline = Pipeline(provider=provider)
    pipeline.entities.event_is_active = AsyncMock(return_value=False)
    scheduled = await pipeline.dispatch.schedule_sms(
        "+233244000000", "Reminder", pipeline.clock() + timedelta(minutes=10), metadata={"event_id": "evt-1"}
    )

    pipeline.clock.advance(11 * 60)
    stats = await pipeline.jobs.process_scheduled()

    assert stats["cancelled"] == 1
    record = pipeline.store.record(scheduled.record_id)
    assert record.status == "cancelled"
    assert record.failure_reason == "Associated event cancelled or deleted"
    pipeline.entities.event_is_active.assert_awaited_once_with("evt-1")
    provider.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_sweep_cancels_inactive_user(pipeline):
    pipeline.entities.user_is_active = AsyncMock(return_value=False)
    scheduled = await pipeline.dispatch.schedule_sms(
        "+233244000000", "Hi", pipeline.clock() + timedelta(minutes=1), metadata={"userId": "u1"}
    )
    pipeline.clock.advance(120)
    await pipeline.jobs.process_scheduled()
    assert pipeline.store.record(scheduled.record_id).failure_reason == "Recipient user inactive or deleted"


@pytest.mark.asyncio
async def test_sweep_suppresses_duplicate_within_24h(pipeline):
    first = await pipeline.dispatch.schedule_sms("+233244000000", "Same text", pipeline.clock() + timedelta(hours=1))
    second = await pipeline.dispatch.schedule_sms("+233244000000", "Same text", pipeline.clock() + timedelta(hours=2))

    pipeline.clock.advance(3 * 3600)
    stats = await pipeline.jobs.process_scheduled()

    assert stats["successful"] == 1
    assert stats["cancelled"] == 1
    assert pipeline.store.record(first.record_id).status == "sent"
    cancelled = pipeline.store.record(second.record_id)
    assert cancelled.status == "cancelled"
    assert cancelled.failure_reason == "Duplicate message sent recently"


@pytest.mark.asyncio
async def test_sweep_ignores_records_not_yet_due(pipeline):
    scheduled = await pipeline.dispatch.schedule_sms("+233244000000", "Later", pipeline.clock() + timedelta(hours=1))
    stats = await pipeline.jobs.process_scheduled()
    assert stats["processed"] == 0
    assert pipeline.store.record(scheduled.record_id).status == "scheduled"


@pytest.mark.asyncio
async def test_sweep_failure_postpones_then_resends():
    pipeline = Pipeline(provider=_provider(fail_times=1))
    scheduled = await pipeline.dispatch.schedule_sms("+233244000000", "Hi", pipeline.clock() + timedelta(minutes=1))
    pipeline.clock.advance(120)

    stats = await pipeline.jobs.process_scheduled()
    assert stats["postponed"] == 1
    record = pipeline.store.record(scheduled.record_id)
    assert record.status == "failed"
    assert record.retry_count == 1
    assert record.next_retry_at == pipeline.clock() + timedelta(minutes=1)
    assert (await pipeline.queues.retry_sizes())["normal"] == 0

    pipeline.clock.advance(61)
    stats = await pipeline.jobs.process_scheduled()
    assert stats["successful"] == 1
    record = pipeline.store.record(scheduled.record_id)
    assert record.status == "sent"
    assert record.next_retry_at is None


@pytest.mark.asyncio
async def test_sweep_store_outage_does_not_raise(pipeline):
    pipeline.store.find_due_scheduled = AsyncMock(side_effect=PersistenceError("mongo down"))
    result = await pipeline.jobs.process_scheduled()
    assert "mongo down" in result["error"]


# ---------------------------------------------------------------------------
# bulk campaigns
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_campaign_of_23_runs_in_three_batches(pipeline):
    recipients = [{"phone": f"02440{i:05d}", "firstName": f"P{i}"} for i in range(23)]
    bulk = await pipeline.dispatch.send_bulk_sms(recipients, "Hi {{firstName}}", campaign_id="camp-23")

    stats = await pipeline.jobs.process_bulk_queue()

    assert stats["campaigns"] == 1
    assert stats["successful"] == 23
    assert pipeline.sleep.await_args_list == [call(2.0), call(2.0)]

    records = pipeline.store.all()
    assert len(records) == 23
    assert {r.status for r in records} == {"sent"}
    assert {r.priority for r in records} == {"bulk"}
    assert all(r.metadata["campaign_id"] == bulk.campaign_id for r in records)
    assert sorted(r.message for r in records)[:2] == ["Hi P0", "Hi P1"]

    summary = await pipeline.dispatch.get_campaign_status("camp-23")
    assert summary["processed"] == 23
    assert summary["successful"] == 23
    assert summary["failed"] == 0


@pytest.mark.asyncio
async def test_campaign_batches_send_concurrently():
    provider = _provider()
    pipeline = Pipeline(provider=provider)
    await pipeline.dispatch.send_bulk_sms([f"02440{i:05d}" for i in range(12)], "Hi")

    await pipeline.jobs.process_bulk_queue()

    assert provider.send.await_count == 12
    assert all(c.kwargs.get("bulk") is True for c in provider.send.await_args_list)
    pipeline.sleep.assert_awaited_once_with(2.0)


@pytest.mark.asyncio
async def test_campaign_defers_recipients_over_hourly_limit():
    pipeline = Pipeline(make_settings(bulk_per_hour=12))
    await pipeline.dispatch.send_bulk_sms([f"02440{i:05d}" for i in range(23)], "Hi", campaign_id="camp-x")

    stats = await pipeline.jobs.process_bulk_queue()

    assert stats["successful"] == 12
    assert stats["deferred"] == 11
    assert len(pipeline.store.docs) == 12
    entries, _ = await pipeline.queues.pop_batch("bulk", 10)
    assert len(entries) == 1
    assert isinstance(entries[0], CampaignJob)
    assert entries[0].campaign_id == "camp-x"
    assert len(entries[0].recipients) == 11

    summary = await pipeline.dispatch.get_campaign_status("camp-x")
    assert summary["deferred"] == 11


@pytest.mark.asyncio
async def test_campaign_recipient_failure_goes_to_bulk_retry():
    pipeline = Pipeline(provider=_provider(fail_times=1))
    await pipeline.dispatch.send_bulk_sms(["0244000001", "0244000002"], "Hi")

    stats = await pipeline.jobs.process_bulk_queue()

    assert stats["successful"] == 1
    assert stats["retried"] == 1
    assert (await pipeline.queues.retry_sizes())["bulk"] == 1

    pipeline.clock.advance(60)
    stats = await pipeline.jobs.process_bulk_queue()
    assert stats["successful"] == 1
    assert {r.status for r in pipeline.store.all()} == {"sent"}


@pytest.mark.asyncio
async def test_bulk_retry_survives_until_next_bulk_run():
    pipeline = Pipeline(provider=_provider(fail_times=1))
    await pipeline.dispatch.send_bulk_sms(["0244000001", "0244000002"], "Hi")

    stats = await pipeline.jobs.process_bulk_queue()
    assert stats["retried"] == 1

    pipeline.clock.advance(WORKER_INTERVAL_MINUTES["bulk"] * 60)
    assert (await pipeline.queues.retry_sizes())["bulk"] == 1

    stats = await pipeline.jobs.process_bulk_queue()
    assert stats["processed"] == 1
    assert stats["successful"] == 1
    assert [r.status for r in pipeline.store.all()] == ["sent", "sent"]
    assert pipeline.provider.send.await_count == 3


@pytest.mark.asyncio
async def test_expired_campaign_dropped(pipeline):
    await pipeline.dispatch.send_bulk_sms(["0244000001"], "Hi")
    await pipeline.cache.expire("sms:bulk", 48 * 3600)
    pipeline.clock.advance(24 * 3600)

    stats = await pipeline.jobs.process_bulk_queue()
    assert stats["expired"] == 1
    assert pipeline.store.docs == {}


# ---------------------------------------------------------------------------
# cleanup
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cleanup_fails_expired_records_and_drops_garbage(pipeline):
    record = await _queue_record(pipeline, priority="low")
    await pipeline.cache.push("sms:high:retry", "garbage")
    await pipeline.cache.expire("sms:low", 48 * 3600)
    pipeline.clock.advance(24 * 3600 + 1)

    stats = await pipeline.jobs.cleanup_queues()

    assert stats == {"expired": 1, "malformed": 1, "records_failed": 1}
    stored = pipeline.store.record(record.record_id)
    assert stored.status == "failed"
    assert stored.failure_reason == "expired in queue"
    assert await pipeline.cache.length("sms:low") == 0


@pytest.mark.asyncio
async def test_cleanup_keeps_live_entries(pipeline):
    record = await _queue_record(pipeline, priority="normal")
    short_lived = pipeline.dispatch.build_job(record).model_copy(
        update={"record_id": "other", "expires_at": pipeline.clock() + timedelta(hours=1)}
    )
    await pipeline.cache.push("sms:normal", encode_job(short_lived))

    stats = await pipeline.jobs.cleanup_queues()

    assert stats["expired"] == 0
    assert len(await pipeline.cache.list_range("sms:normal")) == 2
    assert pipeline.store.record(record.record_id).status == "queued"
