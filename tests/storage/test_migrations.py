"""Tests for the Alembic migration."""

from pathlib import Path

import pytest
import sqlalchemy as sa
from alembic import command
from alembic.config import Config

from offline_ledger_sync.storage.models import Base
from offline_ledger_sync.storage.views import VIEW_DEFINITIONS

PROJECT_ROOT = Path(__file__).resolve().parents[2]


@pytest.fixture
def alembic_config(tmp_path, monkeypatch) -> tuple[Config, Path]:
    db_path = tmp_path / "migrated.sqlite"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    return config, db_path


def _objects(db_path: Path, kind: str) -> set[str]:
    engine = sa.create_engine(f"sqlite:///{db_path}")
    try:
        with engine.connect() as conn:
            rows = conn.execute(
                sa.text("SELECT name FROM sqlite_master WHERE type = :kind"), {"kind": kind}
            )
            return {row[0] for row in rows}
    finally:
        engine.dispose()


class TestInitialMigration:
    """Tests for the initial schema revision."""

    def test_upgrade_matches_models(self, alembic_config) -> None:
        config, db_path = alembic_config

        command.upgrade(config, "head")

        assert set(Base.metadata.tables) <= _objects(db_path, "table")
        assert set(VIEW_DEFINITIONS) <= _objects(db_path, "view")

    def test_downgrade_removes_everything(self, alembic_config) -> None:
        config, db_path = alembic_config

        command.upgrade(config, "head")
        command.downgrade(config, "base")

        assert _objects(db_path, "table") <= {"alembic_version"}
        assert _objects(db_path, "view") == set()
