"""Tests for the alembic revision."""

import importlib.util
from pathlib import Path

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from payments_recon.database import Base

MIGRATION = (
    Path(__file__).resolve().parents[1]
    / "src" / "payments_recon" / "database" / "migrations" / "versions" / "001_initial.py"
)


def load_migration():
    spec = importlib.util.spec_from_file_location("migration_001_initial", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_initial_migration_matches_models():
    """Test that upgrade creates every model column and downgrade removes every table."""
    migration = load_migration()
    engine = sa.create_engine("sqlite://")

    with engine.begin() as conn:
        context = MigrationContext.configure(conn)
        with Operations.context(context):
            migration.upgrade()

        inspector = sa.inspect(conn)
        for table in Base.metadata.sorted_tables:
            columns = {c["name"] for c in inspector.get_columns(table.name)}
            assert columns == set(table.columns.keys()), table.name

        with Operations.context(context):
            migration.downgrade()

        assert sa.inspect(conn).get_table_names() == []

    engine.dispose()
