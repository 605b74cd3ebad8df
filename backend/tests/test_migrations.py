"""Migration tests - the schema migration matches the models"""
import importlib.util
from pathlib import Path

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

from app.models import Base

VERSIONS_DIR = Path(__file__).parent.parent / "migrations" / "versions"


def load_migration(filename):
    spec = importlib.util.spec_from_file_location(filename[:-3], VERSIONS_DIR / filename)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def run(engine, fn):
    with engine.begin() as conn:
        context = MigrationContext.configure(conn)
        with Operations.context(context):
            fn()


@pytest.mark.high
class TestInitialMigration:

    def test_upgrade_creates_model_tables(self):
        engine = create_engine("sqlite:///:memory:")
        migration = load_migration("001_create_reconciliation_tables.py")

        run(engine, migration.upgrade)

        inspector = inspect(engine)
        assert set(Base.metadata.tables) <= set(inspector.get_table_names())
        for name, table in Base.metadata.tables.items():
            migrated = {c["name"] for c in inspector.get_columns(name)}
            assert {c.name for c in table.columns} == migrated, name

    def test_success_key_index_is_unique(self):
        engine = create_engine("sqlite:///:memory:")
        run(engine, load_migration("001_create_reconciliation_tables.py").upgrade)

        indexes = {i["name"]: i for i in inspect(engine).get_indexes("reconciliation_outcomes")}

        assert indexes["uq_reconciliation_outcomes_success_key"]["unique"]

    def test_upgrade_is_idempotent_and_downgrade_drops(self):
        engine = create_engine("sqlite:///:memory:")
        migration = load_migration("001_create_reconciliation_tables.py")

        run(engine, migration.upgrade)
        run(engine, migration.upgrade)
        run(engine, migration.downgrade)

        assert inspect(engine).get_table_names() == []
