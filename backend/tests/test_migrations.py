"""Tests for the Alembic migration files."""

import importlib.util
import os

import pytest

from recovery.core.database import Base

VERSIONS_DIR = os.path.join(os.path.dirname(__file__), "..", "recovery", "alembic", "versions")

MIGRATIONS = [
    ("20261019_1a2b3c4d5e6f_create_events_table.py", "events"),
    ("20261019_2b3c4d5e6f7a_create_recovery_cases_table.py", "recovery_cases"),
    ("20261019_3c4d5e6f7a8b_create_recovery_actions_table.py", "recovery_actions"),
    ("20261019_4d5e6f7a8b9c_create_job_queue_table.py", "job_queue"),
    ("20261019_5e6f7a8b9c0d_create_recovery_settings_table.py", "recovery_settings"),
]


def _load(filename: str):
    spec = importlib.util.spec_from_file_location(filename[:-3], os.path.join(VERSIONS_DIR, filename))
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestMigrations:
    @pytest.mark.parametrize("filename, table", MIGRATIONS)
    def test_migration_exists(self, filename, table):
        """Test each table has its migration file."""
        assert os.path.exists(os.path.join(VERSIONS_DIR, filename))

    def test_revisions_form_a_single_chain(self):
        """Test every migration revises the one before it."""
        modules = [_load(filename) for filename, _ in MIGRATIONS]

        assert modules[0].down_revision is None
        for previous, current in zip(modules, modules[1:], strict=False):
            assert current.down_revision == previous.revision

    def test_every_model_table_is_migrated(self):
        """Test no model table is missing a migration."""
        assert {table for _, table in MIGRATIONS} == set(Base.metadata.tables)

    @pytest.mark.parametrize("filename, table", MIGRATIONS)
    def test_upgrade_and_downgrade_defined(self, filename, table):
        """Test each migration can be applied and reverted."""
        module = _load(filename)
        assert callable(module.upgrade)
        assert callable(module.downgrade)
