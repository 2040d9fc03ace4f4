"""Tests for dbforge.orm module."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from dbforge.build_spec import Registry, SchemaObjectRecord
from dbforge.errors import DbforgeError, QueryError, SchemaObjectInstallError
from dbforge.orm import (
    OrmInstaller,
    OrmInstallResult,
    discover_orm_installers,
    install_schema_objects,
    load_orm_installer,
)


class RecordingInstaller(OrmInstaller):
    """Installer that returns canned results and records what it was given."""

    def __init__(self, query="select 'orm';", orms=None, error=None):
        self.query = query
        self.orms = orms or []
        self.error = error
        self.calls = []

    async def install(self, orm_dir, registry):
        self.calls.append((orm_dir, registry))
        if self.error:
            raise self.error
        return OrmInstallResult(query=self.query, orms=list(self.orms))


class TestInstallSchemaObjects:
    """Tests for install_schema_objects."""

    def test_no_orm_dir_is_a_no_op(self, make_extension):
        ext = make_extension("plain", {"a.sql": "select 1;"})
        installer = RecordingInstaller()
        registry = Registry.from_rows([{"namespace": "XM", "type": "Contact"}])

        sql, result = asyncio.run(install_schema_objects(ext, registry, installer))

        assert sql == ""
        assert result is registry
        assert installer.calls == []

    def test_merges_new_records(self, make_extension):
        ext = make_extension("crm", {"a.sql": "select 1;"}, with_orm_dir=True)
        installer = RecordingInstaller(
            query="select 'crm orm';",
            orms=[SchemaObjectRecord("XM", "Contact"), SchemaObjectRecord("XM", "Incident")],
        )
        registry = Registry.from_rows([{"namespace": "XM", "type": "Contact"}])

        sql, result = asyncio.run(install_schema_objects(ext, registry, installer))

        assert sql == "select 'crm orm';"
        assert len(result) == 2
        assert ("XM", "Incident") in result
        orm_dir, passed_registry = installer.calls[0]
        assert orm_dir == ext / "database" / "orm"
        assert passed_registry is registry

    def test_missing_installer(self, make_extension):
        ext = make_extension("crm", {}, with_orm_dir=True)

        with pytest.raises(SchemaObjectInstallError, match="no ORM installer"):
            asyncio.run(install_schema_objects(ext, Registry.empty(), None))

    def test_unknown_errors_are_wrapped(self, make_extension):
        ext = make_extension("crm", {}, with_orm_dir=True)
        installer = RecordingInstaller(error=RuntimeError("bad orm definition"))

        with pytest.raises(SchemaObjectInstallError) as exc_info:
            asyncio.run(install_schema_objects(ext, Registry.empty(), installer))
        assert str(exc_info.value) == "bad orm definition"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_dbforge_errors_propagate_unchanged(self, make_extension):
        ext = make_extension("crm", {}, with_orm_dir=True)
        error = QueryError("lookup failed")
        installer = RecordingInstaller(error=error)

        with pytest.raises(QueryError) as exc_info:
            asyncio.run(install_schema_objects(ext, Registry.empty(), installer))
        assert exc_info.value is error

    def test_none_query_becomes_empty_string(self, make_extension):
        ext = make_extension("crm", {}, with_orm_dir=True)
        installer = RecordingInstaller(query=None)

        sql, _ = asyncio.run(install_schema_objects(ext, Registry.empty(), installer))
        assert sql == ""


class TestInstallerDiscovery:
    """Tests for entry-point discovery of ORM installers."""

    def _mock_entry_points(self, mock_eps, *entries):
        mock_group = MagicMock()
        mock_group.select.return_value = list(entries)
        mock_eps.return_value = mock_group

    def _entry(self, name, target):
        ep = MagicMock()
        ep.name = name
        ep.load.return_value = target
        return ep

    def test_discover(self):
        with patch("dbforge.orm.entry_points") as mock_eps:
            self._mock_entry_points(mock_eps, self._entry("recording", RecordingInstaller))

            installers = discover_orm_installers()

            assert installers == {"recording": RecordingInstaller}
            mock_eps.return_value.select.assert_called_once_with(group="dbforge.orm_installers")

    def test_load_instantiates(self):
        with patch("dbforge.orm.entry_points") as mock_eps:
            self._mock_entry_points(mock_eps, self._entry("recording", RecordingInstaller))

            assert isinstance(load_orm_installer("recording"), RecordingInstaller)

    def test_load_unknown(self):
        with patch("dbforge.orm.entry_points") as mock_eps:
            self._mock_entry_points(mock_eps)

            with pytest.raises(ValueError, match="Unknown ORM installer"):
                load_orm_installer("xtuple")

    def test_load_rejects_non_installers(self):
        with patch("dbforge.orm.entry_points") as mock_eps:
            self._mock_entry_points(mock_eps, self._entry("broken", lambda: object()))

            with pytest.raises(TypeError):
                load_orm_installer("broken")


def test_schema_object_install_error_is_a_dbforge_error():
    assert issubclass(SchemaObjectInstallError, DbforgeError)
