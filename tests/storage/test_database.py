"""
Tests for engine setup and schema bootstrap.

Tests cover:
- Connection check
- Required tables
- Transaction scope commit/rollback
- Public binding catalogue seeding
- Full initialization
"""

import pytest
from sqlalchemy import select, text

from core.config import DatabaseConfig
from storage.database import (
    PUBLIC_BINDINGS,
    REQUIRED_TABLES,
    create_database_engine,
    get_session_factory,
    initialize_database,
    seed_public_bindings,
    transaction_scope,
    verify_database_connection,
    verify_required_tables,
)
from storage.models.exchange import ExchangeBinding


class TestBootstrap:

    def test_connection(self, db_engine):
        assert verify_database_connection(db_engine) is True

    def test_all_required_tables_exist(self, db_engine):
        assert verify_required_tables(db_engine) == []

    def test_missing_tables_reported(self):
        engine = create_database_engine(DatabaseConfig(url="sqlite://"))
        try:
            assert verify_required_tables(engine) == REQUIRED_TABLES
        finally:
            engine.dispose()

    def test_foreign_keys_enforced(self, db_engine):
        with db_engine.connect() as conn:
            assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1


class TestTransactionScope:

    def test_commit(self, session_factory):
        with transaction_scope(session_factory) as session:
            seed_public_bindings(session, [{"name": "Kraken", "exchange_type": "kraken"}])

        with session_factory() as session:
            assert session.execute(select(ExchangeBinding.name)).scalars().all() == ["Kraken"]

    def test_rollback_reraises(self, session_factory):
        with pytest.raises(KeyError):
            with transaction_scope(session_factory) as session:
                seed_public_bindings(session, [{"name": "Kraken", "exchange_type": "kraken"}])
                raise KeyError("boom")

        with session_factory() as session:
            assert session.execute(select(ExchangeBinding)).first() is None


class TestSeeding:

    def test_catalogue_is_idempotent(self, session_factory):
        with transaction_scope(session_factory) as session:
            assert seed_public_bindings(session) == len(PUBLIC_BINDINGS)
        with transaction_scope(session_factory) as session:
            assert seed_public_bindings(session) == 0

    def test_seeded_bindings_are_public(self, session_factory, repos):
        with transaction_scope(session_factory) as session:
            seed_public_bindings(session)

        public = repos.bindings.get_public()
        assert {b.name for b in public} == {entry["name"] for entry in PUBLIC_BINDINGS}
        assert all(b.user_id is None and b.encrypted_api_key is None for b in public)

    def test_initialize_database(self):
        engine = create_database_engine(DatabaseConfig(url="sqlite://"))
        try:
            initialize_database(engine)
            initialize_database(engine)
            assert verify_required_tables(engine) == []
            with get_session_factory(engine)() as session:
                count = len(session.execute(select(ExchangeBinding)).scalars().all())
            assert count == len(PUBLIC_BINDINGS)
        finally:
            engine.dispose()
