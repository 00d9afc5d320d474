"""
Tests for EventRetryWorker.

Tests cover:
- Retry pass over failed records
- Early stop on a cancelled context
- Retention purge
"""

import json
from datetime import timedelta

import pytest

from core.config import load_settings
from core.context import OperationContext
from event_ingest.dispatcher import EventDispatcher
from event_ingest.ledger import EventIngestLedger
from event_ingest.retry_worker import EventRetryWorker
from storage.models.event_processing import EventProcessingRecord
from storage.unit_of_work import unit_of_work


@pytest.fixture
def ledger(session_factory, build_repos, clock):
    return EventIngestLedger(session_factory, build_repos, max_retries=3, clock=clock)


@pytest.fixture
def worker(ledger, clock):
    return EventRetryWorker(ledger, EventDispatcher(ledger), retention=timedelta(days=7), clock=clock)


def _signal(seeded, event_id):
    return {
        "event_id": event_id,
        "user_id": str(seeded["user_id"]),
        "exchange_id": str(seeded["trading_id"]),
        "signal_type": "hold",
        "symbol": "BTC",
        "confidence": 0.5,
        "strategy": "mean-reversion",
    }


def _fail(repos):
    raise RuntimeError("transient")


def _status(session_factory, event_id):
    with session_factory() as session:
        return session.query(EventProcessingRecord).filter_by(event_id=event_id).one().status


class TestRunOnce:

    def test_retries_failed_records(self, worker, ledger, seeded, session_factory, clock):
        # failed because the handler raised; the stored payload is valid
        ledger.ingest(
            "evt-ok",
            "trading.signals",
            None,
            _fail,
            payload=_signal(seeded, "evt-ok"),
        )
        clock.advance(seconds=1)
        ledger.record_rejection("evt-empty", "trading.signals", "x")

        summary = worker.run_once()

        assert summary.attempted == 2
        assert summary.processed == 1
        assert summary.failed == 1
        assert _status(session_factory, "evt-ok") == "processed"
        assert _status(session_factory, "evt-empty") == "failed"

    def test_undecodable_payload(self, worker, ledger, seeded):
        ledger.record_rejection("evt-1", "trading.signals", "x", payload={"no_event_id": True})

        summary = worker.run_once()
        assert summary.undecodable == ["evt-1"]
        assert summary.failed == 0

    def test_nothing_to_do(self, worker, seeded):
        summary = worker.run_once()
        assert summary.attempted == 0

    def test_cancelled_context_stops_pass(self, worker, ledger, seeded):
        ledger.record_rejection("evt-1", "trading.signals", "x")
        context = OperationContext.background()
        context.cancel()

        assert worker.run_once(context).attempted == 0

    def test_batch_size(self, ledger, seeded, clock):
        worker = EventRetryWorker(ledger, EventDispatcher(ledger), batch_size=1, clock=clock)
        for n in range(3):
            ledger.record_rejection(f"evt-{n}", "trading.signals", "x")
        assert worker.run_once().attempted == 1


class TestPurge:

    def test_purge_processed(self, worker, ledger, seeded, session_factory, clock, secret_engine):
        dispatcher = EventDispatcher(ledger)
        dispatcher.dispatch("trading.signals", json.dumps(_signal(seeded, "evt-old")))
        clock.advance(days=8)
        dispatcher.dispatch("trading.signals", json.dumps(_signal(seeded, "evt-new")))

        assert worker.purge_processed() == 1
        with unit_of_work(session_factory, secret_engine, clock=clock) as repos:
            assert repos.events.get_by_event_id("evt-old") is None
            assert repos.events.get_by_event_id("evt-new") is not None

    def test_retention_from_settings(self, ledger, seeded, clock):
        settings = load_settings({
            "DATABASE_URL": "sqlite://",
            "ENCRYPTION_MASTER_KEY": "m" * 32,
            "HASH_SIGNING_KEY": "sig-secret-value",
            "EVENT_BUS_SERVERS": "nats://localhost:4222",
            "EVENT_RETENTION_HOURS": "24",
        })
        dispatcher = EventDispatcher(ledger)
        worker = EventRetryWorker.from_settings(ledger, dispatcher, settings, clock=clock)
        dispatcher.dispatch("trading.signals", json.dumps(_signal(seeded, "evt-1")))

        clock.advance(hours=23)
        assert worker.purge_processed() == 0
        clock.advance(hours=2)
        assert worker.purge_processed() == 1
