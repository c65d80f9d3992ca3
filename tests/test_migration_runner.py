"""
Tests for the startup migration runner.
"""

from unittest.mock import MagicMock, patch

import pytest
from alembic.config import Config

from app.db import migration_runner
from app.db.migration_runner import ALEMBIC_INI_PATH, _get_head_revision, sync_database_url


class TestSyncDatabaseUrl:
    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("postgresql+asyncpg://u:p@db/app", "postgresql+psycopg2://u:p@db/app"),
            ("postgres://u:p@db/app", "postgresql://u:p@db/app"),
            ("postgresql://u:p@db/app", "postgresql://u:p@db/app"),
        ],
    )
    def test_conversion(self, url: str, expected: str):
        assert sync_database_url(url) == expected


class TestRunMigrations:
    def test_single_head(self):
        assert _get_head_revision(Config(str(ALEMBIC_INI_PATH))) == "2026_10_18_0000"

    def test_skips_when_current(self):
        with (
            patch.object(migration_runner, "create_engine", return_value=MagicMock()),
            patch.object(migration_runner, "_get_current_revision", return_value="2026_10_18_0000"),
            patch.object(migration_runner.command, "upgrade") as upgrade,
        ):
            migration_runner.run_migrations()
        upgrade.assert_not_called()

    def test_upgrades_when_behind(self):
        with (
            patch.object(migration_runner, "create_engine", return_value=MagicMock()),
            patch.object(migration_runner, "_get_current_revision", return_value=None),
            patch.object(migration_runner.command, "upgrade") as upgrade,
        ):
            migration_runner.run_migrations()
        upgrade.assert_called_once()

    def test_failure_is_fatal(self):
        with (
            patch.object(migration_runner, "create_engine", return_value=MagicMock()),
            patch.object(migration_runner, "_get_current_revision", return_value=None),
            patch.object(migration_runner.command, "upgrade", side_effect=Exception("boom")),
        ):
            with pytest.raises(RuntimeError, match="Database migration failed"):
                migration_runner.run_migrations()
