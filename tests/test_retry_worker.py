import threading
import time

from conftest import make_event, seed_enrollment
from src.ingestion import orphan_queue, pipeline
from src.ingestion.retry_worker import OrphanRetryWorker


def _immediate_retries(monkeypatch, max_attempts: int = 20):
    monkeypatch.setattr(orphan_queue.settings, "orphan_base_delay_seconds", 0.0)
    monkeypatch.setattr(orphan_queue.settings, "orphan_jitter_ratio", 0.0)
    monkeypatch.setattr(orphan_queue.settings, "orphan_max_attempts", max_attempts)


def test_orphan_converges_once_enrollment_exists(fake_db, monkeypatch):
    _immediate_retries(monkeypatch)
    event = make_event(event_type="opened", contact_id="late-contact")
    result = pipeline.ingest(event)
    assert result.outcome == "queued"

    worker = OrphanRetryWorker(worker_id="worker-test", batch_size=10)
    first = worker.run_cycle()
    assert first.claimed == 1
    assert first.rescheduled == 1
    assert fake_db.rows("webhook_orphan_events")[0]["attempts"] == 1

    seed_enrollment(fake_db, contact_id="late-contact")
    second = worker.run_cycle()

    assert second.resolved == 1
    assert fake_db.rows("webhook_orphan_events") == []
    assert fake_db.find("campaign_instances", id="inst-1")["total_opened"] == 1
    assert fake_db.find("campaign_events", id=result.event_id)["status"] == "applied"
    assert worker.last_successful_poll_at is not None


def test_orphan_is_dead_lettered_exactly_once_after_max_attempts(fake_db, monkeypatch):
    _immediate_retries(monkeypatch, max_attempts=3)
    event = make_event(event_type="clicked", contact_id="never-enrolled")
    result = pipeline.ingest(event)
    worker = OrphanRetryWorker(worker_id="worker-test", batch_size=10)

    reports = [worker.run_cycle() for _ in range(5)]

    assert [r.rescheduled for r in reports] == [1, 1, 0, 0, 0]
    assert [r.dead_lettered for r in reports] == [0, 0, 1, 0, 0]
    assert fake_db.rows("webhook_orphan_events") == []
    dead = fake_db.rows("webhook_dead_letters")
    assert len(dead) == 1
    assert dead[0]["event_id"] == result.event_id
    assert dead[0]["reason"] == "max_attempts_exceeded"
    assert dead[0]["attempts"] == 3
    assert dead[0]["raw_payload"] == event.raw_payload
    assert len(dead[0]["failure_history"]) == 4
    assert fake_db.find("campaign_events", id=result.event_id)["status"] == "dead_letter"


def test_repeated_dead_lettering_keeps_one_entry(fake_db, monkeypatch):
    _immediate_retries(monkeypatch, max_attempts=1)
    result = pipeline.ingest(make_event(contact_id="never-enrolled"))
    record = orphan_queue.claim_due("worker-a", limit=1, lease_seconds=60)[0]
    record.attempts = 1

    orphan_queue.move_to_dead_letter(record, reason="max_attempts_exceeded", error="enrollment_not_found")
    orphan_queue.move_to_dead_letter(record, reason="max_attempts_exceeded", error="enrollment_not_found")

    assert len([r for r in fake_db.rows("webhook_dead_letters") if r["event_id"] == result.event_id]) == 1


def test_cycle_survives_claim_outage_and_keeps_last_poll(fake_db, monkeypatch):
    _immediate_retries(monkeypatch)
    worker = OrphanRetryWorker(worker_id="worker-test")
    worker.run_cycle()
    last_poll = worker.last_successful_poll_at

    fake_db.unavailable.add("claim_orphan_events")
    report = worker.run_cycle()

    assert report.errors
    assert worker.last_successful_poll_at == last_poll


def test_shutdown_releases_leases_held_by_the_worker(fake_db, monkeypatch):
    _immediate_retries(monkeypatch)
    pipeline.ingest(make_event(contact_id="never-enrolled"))
    worker = OrphanRetryWorker(worker_id="worker-drain")
    orphan_queue.claim_due("worker-drain", limit=10, lease_seconds=600)
    assert fake_db.rows("webhook_orphan_events")[0]["lease_owner"] == "worker-drain"

    drained = worker.shutdown(drain_timeout=1.0)

    assert drained is True
    assert fake_db.rows("webhook_orphan_events")[0]["lease_owner"] is None
    assert worker.run_cycle().skipped is True


def test_shutdown_waits_for_in_flight_cycle(fake_db, monkeypatch):
    _immediate_retries(monkeypatch)
    worker = OrphanRetryWorker(worker_id="worker-slow")
    entered = threading.Event()
    release = threading.Event()
    real_flush = orphan_queue.flush_fallback

    def _slow_flush(**kwargs):
        entered.set()
        release.wait(2.0)
        return real_flush(**kwargs)

    monkeypatch.setattr(orphan_queue, "flush_fallback", _slow_flush)
    cycle = threading.Thread(target=worker.run_cycle)
    cycle.start()
    assert entered.wait(2.0)

    assert worker.shutdown(drain_timeout=0.05) is False
    release.set()
    cycle.join(2.0)
    assert not cycle.is_alive()


def test_background_loop_starts_and_stops(fake_db, monkeypatch):
    _immediate_retries(monkeypatch)
    seed_enrollment(fake_db, contact_id="c-loop")
    result = pipeline.ingest(make_event(contact_id="c-loop", event_type="sent"))
    assert result.outcome == "applied"
    worker = OrphanRetryWorker(worker_id="worker-loop", poll_interval_seconds=0.01)

    worker.start()
    assert worker.running is True
    deadline = time.monotonic() + 2.0
    while worker.last_successful_poll_at is None and time.monotonic() < deadline:
        time.sleep(0.01)

    assert worker.shutdown(drain_timeout=2.0) is True
    assert worker.running is False
    assert worker.last_successful_poll_at is not None
