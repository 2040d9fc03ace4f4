import json
import logging
from pathlib import Path

import pytest

from dbforge.config import Credentials
from dbforge.datasource import QueryResult
from dbforge.errors import QueryError
from dbforge.prober import ORM_ROWS_SQL, ORM_TABLE_EXISTS_SQL


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Keep every test away from the real ~/.config/dbforge."""
    home = tmp_path / "dbforge_home"
    monkeypatch.setenv("DBFORGE_HOME", str(home))
    monkeypatch.delenv("DBFORGE_DB_PASSWORD", raising=False)
    return home


@pytest.fixture
def creds():
    return Credentials(hostname="localhost", port=5432, username="admin", password="secret")


def write_extension(
    root: Path,
    scripts: dict[str, str],
    order: list[str] | None = None,
    orm_library: bool = False,
    with_orm_dir: bool = False,
    manifest_extra: dict | None = None,
) -> Path:
    """Create an extension directory with a manifest and scripts."""
    source_root = root / "source" if orm_library else root / "database" / "source"
    source_root.mkdir(parents=True, exist_ok=True)
    for name, body in scripts.items():
        path = source_root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body)

    manifest = {"name": root.name, "databaseScripts": order if order is not None else list(scripts)}
    manifest.update(manifest_extra or {})
    (source_root / "manifest.js").write_text(json.dumps(manifest))

    if with_orm_dir:
        (root / "database" / "orm").mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def make_extension(tmp_path):
    def _make(name: str, scripts: dict[str, str], **kwargs) -> Path:
        return write_extension(tmp_path / name, scripts, **kwargs)
    return _make


class FakeDataSource:
    """
    In-memory stand-in for DataSource.

    Args:
        registries: database -> list of registry rows; a database missing
            from the mapping has no xt.orm table
        fail_on: database -> QueryError raised by execute()
        fail_query_on: database -> QueryError raised by query()
    """

    def __init__(self, registries=None, fail_on=None, fail_query_on=None):
        self.registries = registries or {}
        self.fail_on = fail_on or {}
        self.fail_query_on = fail_query_on or {}
        self.queries: list[tuple[str, str]] = []
        self.executed: list[tuple[str, str]] = []

    async def query(self, sql, creds):
        self.queries.append((creds.database, sql))
        if creds.database in self.fail_query_on:
            raise self.fail_query_on[creds.database]
        if sql == ORM_TABLE_EXISTS_SQL:
            if creds.database in self.registries:
                return QueryResult(rows=[{"relname": "orm"}])
            return QueryResult(rows=[])
        if sql == ORM_ROWS_SQL:
            return QueryResult(rows=list(self.registries[creds.database]))
        raise QueryError(f"unexpected query: {sql}")

    async def execute(self, sql, creds):
        self.executed.append((creds.database, sql))
        if creds.database in self.fail_on:
            raise self.fail_on[creds.database]
        return "DO"

    def executed_on(self, database):
        return [sql for db, sql in self.executed if db == database]


@pytest.fixture
def fake_datasource():
    return FakeDataSource()


@pytest.fixture(autouse=True)
def reset_dbforge_logger():
    """Undo setup_logging() calls made by CLI tests."""
    yield
    logger = logging.getLogger("dbforge")
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
