from pathlib import Path

import allure
from sqlalchemy import text

from genqueue.orchestrator.status_store import StatusStore

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Status Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = StatusStore(tmp_path / "migrations.db")
    store.init_schema()
    store.init_schema()

    with store.engine.connect() as connection:
        versions = connection.execute(text("SELECT version_num FROM alembic_version")).all()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN (
                      'job_statuses', 'job_batches', 'job_queue_items', 'rate_limit_windows'
                  )
                ORDER BY name
                """
            )
        ).all()
        batch_columns = {
            row[1] for row in connection.execute(text("PRAGMA table_info(job_batches)")).all()
        }
        queue_columns = {
            row[1] for row in connection.execute(text("PRAGMA table_info(job_queue_items)")).all()
        }
    store.close()

    assert [row[0] for row in versions] == ["20261019_0003"]
    assert [row[0] for row in tables] == [
        "job_batches",
        "job_queue_items",
        "job_statuses",
        "rate_limit_windows",
    ]
    assert "completed_at" in batch_columns
    assert "available_at" in queue_columns
