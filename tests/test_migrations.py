"""Tests for the initial schema migration against the model metadata."""
import importlib.util
from pathlib import Path

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

import esign.models  # noqa: F401
from esign.database import Base

MIGRATION = Path(__file__).resolve().parent.parent / "alembic" / "versions" / "000_create_esign_tables.py"


def load_migration():
    spec = importlib.util.spec_from_file_location("migration_000", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def connection():
    engine = create_engine("sqlite://")
    with engine.connect() as conn:
        yield conn
    engine.dispose()


class TestInitialMigration:
    def test_upgrade_matches_models(self, connection):
        migration = load_migration()
        with Operations.context(MigrationContext.configure(connection)):
            migration.upgrade()

        inspector = inspect(connection)
        assert set(inspector.get_table_names()) == set(Base.metadata.tables)
        for name, table in Base.metadata.tables.items():
            columns = {c["name"] for c in inspector.get_columns(name)}
            assert columns == {c.name for c in table.columns}, name

    def test_downgrade_drops_tables(self, connection):
        migration = load_migration()
        with Operations.context(MigrationContext.configure(connection)):
            migration.upgrade()
            migration.downgrade()

        assert inspect(connection).get_table_names() == []
