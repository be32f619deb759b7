import logging
import time
from datetime import timedelta
from pathlib import Path

import pytest

from longform_factory.events import EventChannel, QueueSubscriber, heartbeat
from longform_factory.models import EventType, SessionOptions, Stage, utc_now
from longform_factory.session_log import SessionLogAdapter, session_logging
from longform_factory.sessions import SessionRegistry

from conftest import make_parameters


def test_session_ids_sort_by_creation(registry: SessionRegistry) -> None:
    first = registry.create(make_parameters())
    time.sleep(0.001)
    second = registry.create(make_parameters())
    assert first.session_id < second.session_id
    assert [session.session_id for session in registry.list_sessions()] == [first.session_id, second.session_id]


def test_registry_round_trip_and_stage_rules(registry: SessionRegistry) -> None:
    session = registry.create(make_parameters(target_size=3_000), SessionOptions(run_audit=False))
    loaded = registry.get(session.session_id)
    assert loaded.target_size == 3_000
    assert loaded.options.run_audit is False
    assert loaded.stage == Stage.INIT

    with pytest.raises(ValueError):
        loaded.advance(Stage.PACKAGING)
    loaded.advance(Stage.DRAFT_GENERATION)
    loaded.advance(Stage.FAILED)
    loaded.reopen()
    assert loaded.stage == Stage.DRAFT_GENERATION
    assert loaded.resumed_count == 1


def test_corrupt_session_record_is_value_error(registry: SessionRegistry) -> None:
    session = registry.create(make_parameters())
    (registry.root / session.session_id / "session.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        registry.get(session.session_id)
    assert registry.list_sessions() == []


def test_garbage_collection_only_removes_old_terminal_sessions(registry: SessionRegistry) -> None:
    now = utc_now()
    old_done = registry.create(make_parameters())
    old_done.stage = Stage.COMPLETE
    old_done.updated_at = now - timedelta(days=10)
    registry.save(old_done)

    old_running = registry.create(make_parameters())
    old_running.stage = Stage.DRAFT_GENERATION
    old_running.updated_at = now - timedelta(days=10)
    registry.save(old_running)

    fresh_failed = registry.create(make_parameters())
    fresh_failed.stage = Stage.FAILED
    fresh_failed.updated_at = now
    registry.save(fresh_failed)

    removed = registry.collect_garbage(now=now, retention=timedelta(days=7))
    assert removed == [old_done.session_id]
    assert not (registry.root / old_done.session_id).exists()
    assert registry.exists(old_running.session_id)
    assert registry.exists(fresh_failed.session_id)


def test_channel_fans_out_and_isolates_broken_subscribers() -> None:
    channel = EventChannel()
    received: list[EventType] = []

    def broken(event) -> None:
        raise RuntimeError("transport down")

    channel.subscribe(broken)
    unsubscribe = channel.subscribe(lambda event: received.append(event.event))
    channel.emit(EventType.STAGE_START, "LF-a", Stage.DRAFT_GENERATION)
    unsubscribe()
    channel.emit(EventType.STAGE_COMPLETE, "LF-b", Stage.DRAFT_GENERATION)

    assert received == [EventType.STAGE_START]
    assert [event.session_id for event in channel.history("LF-b")] == ["LF-b"]
    assert len(channel.history()) == 2


def test_queue_subscriber_drains_in_order() -> None:
    channel = EventChannel()
    subscriber = QueueSubscriber(channel)
    channel.emit(EventType.INCREMENT_START, "LF-q", Stage.DRAFT_GENERATION, sequence_number=1)
    channel.emit(EventType.INCREMENT_COMPLETE, "LF-q", Stage.DRAFT_GENERATION, sequence_number=1)
    drained = subscriber.drain()
    assert [event.event for event in drained] == [EventType.INCREMENT_START, EventType.INCREMENT_COMPLETE]
    assert drained[0].payload == {"sequence_number": 1}
    subscriber.close()
    channel.emit(EventType.HEARTBEAT, "LF-q", Stage.DRAFT_GENERATION)
    assert subscriber.drain() == []


def test_heartbeat_stops_even_when_block_raises() -> None:
    channel = EventChannel()
    with pytest.raises(RuntimeError):
        with heartbeat(channel, session_id="LF-hb", interval=0.01, stage_fn=lambda: Stage.DRAFT_GENERATION) as thread:
            time.sleep(0.05)
            raise RuntimeError("increment failed")
    assert not thread.is_alive()
    count = len(channel.history("LF-hb"))
    assert count >= 1
    time.sleep(0.05)
    assert len(channel.history("LF-hb")) == count


def test_heartbeat_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        with heartbeat(EventChannel(), session_id="LF-hb", interval=0, stage_fn=lambda: Stage.INIT):
            pass


def test_session_log_only_keeps_matching_records(tmp_path: Path) -> None:
    logger = logging.getLogger("longform_factory.tests")
    adapter = SessionLogAdapter(logger, "LF-log")
    other = SessionLogAdapter(logger, "LF-other")
    with session_logging(tmp_path, "LF-log"):
        adapter.stage = "assembly"
        adapter.increment = 4
        adapter.info("kept %s", "record")
        other.info("dropped record")
        logger.info("untagged record")

    jsonl = (tmp_path / "debug_log.jsonl").read_text(encoding="utf-8")
    text = (tmp_path / "debug_log.txt").read_text(encoding="utf-8")
    assert "kept record" in jsonl
    assert "dropped record" not in jsonl
    assert "untagged record" not in jsonl
    assert "[assembly][#4] kept record" in text
