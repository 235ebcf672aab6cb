from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import make_event, seed_enrollment
from src.ingestion import dead_letters, orphan_queue, pipeline
from src.ingestion.dedup import record_event
from src.ingestion.retry_worker import OrphanRetryWorker
from src.main import app


def _dead_letter(db, *, event=None, reason="max_attempts_exceeded", replayable=True):
    event = event or make_event(event_type="bounced", contact_id="contact-dl")
    event_id = record_event(event).event_id
    dead_letters.record_dead_letter(
        reason=reason,
        error="enrollment_not_found",
        raw_payload=event.raw_payload,
        provider_slug=event.provider_slug,
        event_id=event_id,
        event=event,
        attempts=20,
        failure_history=[{"at": "2026-03-01T12:00:00+00:00", "error": "enrollment_not_found", "attempt": 20}],
        replayable=replayable,
    )
    return db.find("webhook_dead_letters", event_id=event_id), event_id


def test_replay_applies_event_once_enrollment_exists(fake_db):
    row, event_id = _dead_letter(fake_db)
    seed_enrollment(fake_db, contact_id="contact-dl")

    result = dead_letters.replay_dead_letter(row["id"])

    assert result.status == "replayed"
    assert result.outcome == "applied"
    stored = fake_db.find("webhook_dead_letters", id=row["id"])
    assert stored["status"] == "replayed"
    assert stored["replay_count"] == 1
    assert fake_db.find("campaign_enrollments", contact_id="contact-dl")["status"] == "bounced"
    assert fake_db.find("campaign_instances", id="inst-1")["total_bounced"] == 1
    assert fake_db.find("campaign_events", id=event_id)["status"] == "applied"


def test_replay_requeues_when_still_unresolved(fake_db):
    row, event_id = _dead_letter(fake_db)

    result = dead_letters.replay_dead_letter(row["id"])

    assert result.status == "requeued"
    orphan = fake_db.find("webhook_orphan_events", event_id=event_id)
    assert orphan is not None
    assert orphan["attempts"] == 0


def test_replay_never_double_counts_an_applied_event(fake_db, monkeypatch):
    monkeypatch.setattr(dead_letters.settings, "dead_letter_replay_cooldown_seconds", 0)
    row, _ = _dead_letter(fake_db)
    seed_enrollment(fake_db, contact_id="contact-dl")

    first = dead_letters.replay_dead_letter(row["id"])
    second = dead_letters.replay_dead_letter(row["id"])

    assert first.outcome == "applied"
    assert second.outcome == "already_applied"
    assert fake_db.find("campaign_instances", id="inst-1")["total_bounced"] == 1


def test_replay_cooldown_blocks_rapid_repeats(fake_db, monkeypatch):
    monkeypatch.setattr(dead_letters.settings, "dead_letter_replay_cooldown_seconds", 60)
    row, _ = _dead_letter(fake_db)
    dead_letters.replay_dead_letter(row["id"])

    with pytest.raises(dead_letters.DeadLetterReplayCooldownError) as exc:
        dead_letters.replay_dead_letter(row["id"])
    assert 1 <= exc.value.retry_after_seconds <= 60

    past = (datetime.now(timezone.utc) - timedelta(seconds=61)).isoformat()
    fake_db.tables["webhook_dead_letters"][0]["last_replay_at"] = past
    assert dead_letters.replay_dead_letter(row["id"]).status == "requeued"


def test_validation_failures_are_not_replayable(fake_db):
    dead_letters.record_dead_letter(
        reason="validation_failed",
        error="Unsupported lemlist event type: 'linkedinVisitDone'",
        raw_payload='{"type": "linkedinVisitDone"}',
        provider_slug="lemlist",
        event_type=None,
        replayable=False,
    )
    row = fake_db.rows("webhook_dead_letters")[0]

    with pytest.raises(dead_letters.DeadLetterNotReplayableError):
        dead_letters.replay_dead_letter(row["id"])


def test_replay_of_unknown_id_raises_not_found(fake_db):
    with pytest.raises(dead_letters.DeadLetterNotFoundError):
        dead_letters.replay_dead_letter("missing")


def test_list_filters_by_status_and_event_type(fake_db, operator):
    _dead_letter(fake_db, event=make_event(event_type="bounced", contact_id="a"))
    _dead_letter(fake_db, event=make_event(event_type="opened", contact_id="b"))
    client = TestClient(app)

    all_rows = client.get("/api/webhooks/dead-letters")
    bounced = client.get("/api/webhooks/dead-letters?event_type=bounced")
    replayed = client.get("/api/webhooks/dead-letters?status_filter=replayed")
    invalid = client.get("/api/webhooks/dead-letters?status_filter=bogus")

    assert all_rows.status_code == 200
    assert len(all_rows.json()) == 2
    assert [row["event_type"] for row in bounced.json()] == ["bounced"]
    assert replayed.json() == []
    assert invalid.status_code == 400


def test_detail_includes_raw_payload_and_history(fake_db, operator):
    row, _ = _dead_letter(fake_db)
    client = TestClient(app)

    response = client.get(f"/api/webhooks/dead-letters/{row['id']}")
    missing = client.get("/api/webhooks/dead-letters/does-not-exist")

    assert response.status_code == 200
    body = response.json()
    assert body["raw_payload"] == row["raw_payload"]
    assert body["failure_history"][0]["attempt"] == 20
    assert body["canonical_event"]["event_type"] == "bounced"
    assert missing.status_code == 404


def test_replay_endpoint_status_codes(fake_db, operator, monkeypatch):
    monkeypatch.setattr(dead_letters.settings, "dead_letter_replay_cooldown_seconds", 60)
    row, _ = _dead_letter(fake_db)
    dead_letters.record_dead_letter(
        reason="validation_failed",
        error="bad payload",
        raw_payload="{}",
        provider_slug="lemlist",
        replayable=False,
    )
    invalid_row = fake_db.find("webhook_dead_letters", reason="validation_failed")
    client = TestClient(app)

    first = client.post(f"/api/webhooks/dead-letters/{row['id']}/replay")
    second = client.post(f"/api/webhooks/dead-letters/{row['id']}/replay")
    not_replayable = client.post(f"/api/webhooks/dead-letters/{invalid_row['id']}/replay")
    missing = client.post("/api/webhooks/dead-letters/nope/replay")

    assert first.status_code == 200
    assert first.json()["status"] == "requeued"
    assert second.status_code == 429
    assert "Retry-After" in second.headers
    assert not_replayable.status_code == 409
    assert missing.status_code == 404


def test_bulk_replay_is_capped_and_reports_each_id(fake_db, operator, monkeypatch):
    monkeypatch.setattr(dead_letters.settings, "dead_letter_replay_max_batch", 2)
    row_a, _ = _dead_letter(fake_db, event=make_event(contact_id="a"))
    seed_enrollment(fake_db, contact_id="a")
    client = TestClient(app)

    too_many = client.post("/api/webhooks/dead-letters/replay", json={"ids": ["1", "2", "3"]})
    empty = client.post("/api/webhooks/dead-letters/replay", json={"ids": []})
    response = client.post("/api/webhooks/dead-letters/replay", json={"ids": [row_a["id"], "missing"]})

    assert too_many.status_code == 400
    assert empty.status_code == 400
    assert response.status_code == 200
    body = response.json()
    assert body["requested"] == 2
    assert body["replayed"] == 1
    assert body["skipped"] == 1
    assert {item["status"] for item in body["results"]} == {"replayed", "not_found"}


def test_requeued_entry_returns_to_pending_when_retries_run_out_again(fake_db, operator, monkeypatch):
    monkeypatch.setattr(orphan_queue.settings, "orphan_base_delay_seconds", 0.0)
    monkeypatch.setattr(orphan_queue.settings, "orphan_jitter_ratio", 0.0)
    monkeypatch.setattr(orphan_queue.settings, "orphan_max_attempts", 1)
    result = pipeline.ingest(make_event(event_type="opened", contact_id="never-enrolled"))
    worker = OrphanRetryWorker(worker_id="worker-dl")

    assert worker.run_cycle().dead_lettered == 1
    row = fake_db.find("webhook_dead_letters", event_id=result.event_id)
    assert dead_letters.replay_dead_letter(row["id"]).status == "requeued"
    assert worker.run_cycle().dead_lettered == 1

    rows = fake_db.rows("webhook_dead_letters")
    assert len(rows) == 1
    assert rows[0]["status"] == "pending"
    assert rows[0]["attempts"] == 1
    assert rows[0]["reason"] == "max_attempts_exceeded"
    assert len(rows[0]["failure_history"]) == 4
    assert fake_db.rows("webhook_orphan_events") == []

    pending = TestClient(app).get("/api/webhooks/dead-letters?status_filter=pending")
    assert [item["id"] for item in pending.json()] == [row["id"]]
