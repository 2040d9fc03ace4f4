"""
ORM bridge - hands an extension's schema-object definitions to the ORM
installer and folds the result back into the build.

The installer itself lives outside dbforge. Packages register one under the
``dbforge.orm_installers`` entry-point group:

    [project.entry-points."dbforge.orm_installers"]
    xtuple = "xtuple_orm.installer:OrmInstaller"

The entry point must resolve to an OrmInstaller subclass (or a zero-argument
factory returning an instance).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from pathlib import Path
from typing import Callable, Dict, Optional

from dbforge.build_spec import Registry, SchemaObjectRecord
from dbforge.errors import DbforgeError, SchemaObjectInstallError

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "dbforge.orm_installers"

ORM_DIRNAME = Path("database") / "orm"


@dataclass
class OrmInstallResult:
    """
    What an installer returns for one ORM directory.

    Attributes:
        query: SQL installing the generated schema objects
        orms: Records for every schema object the SQL creates
    """
    query: str = ""
    orms: list[SchemaObjectRecord] = field(default_factory=list)


class OrmInstaller(ABC):
    """
    Base class for ORM installers.

    An installer reads the ORM definitions in a directory and generates the
    SQL that installs them. It gets the current Registry so it can skip or
    extend objects that earlier extensions (or the existing database)
    already provide.
    """

    @abstractmethod
    async def install(self, orm_dir: Path, registry: Registry) -> OrmInstallResult:
        """
        Generate SQL for the ORMs in orm_dir.

        Args:
            orm_dir: The extension's database/orm directory
            registry: Schema objects known so far in this build

        Returns:
            OrmInstallResult with the SQL and the new records
        """
        pass


def get_orm_dir(extension: str | Path) -> Path:
    return Path(extension) / ORM_DIRNAME


def discover_orm_installers() -> Dict[str, Callable[[], OrmInstaller]]:
    """
    Discover installer factories from dbforge.orm_installers entrypoints.

    Returns:
        {"xtuple": <OrmInstaller subclass>, ...}
    """
    installers = {}
    for ep in entry_points().select(group=ENTRY_POINT_GROUP):
        installers[ep.name] = ep.load()
    return installers


def load_orm_installer(name: str) -> OrmInstaller:
    """
    Instantiate the named ORM installer.

    Raises:
        ValueError: If no installer is registered under that name
        TypeError: If the entry point doesn't produce an OrmInstaller
    """
    installers = discover_orm_installers()
    if name not in installers:
        available = ", ".join(sorted(installers)) or "none"
        raise ValueError(f"Unknown ORM installer: {name} (available: {available})")

    installer = installers[name]()
    if not isinstance(installer, OrmInstaller):
        raise TypeError(f"ORM installer '{name}' is not an OrmInstaller: {installer!r}")
    return installer


async def install_schema_objects(
    extension: str | Path,
    registry: Registry,
    installer: Optional[OrmInstaller],
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> tuple[str, Registry]:
    """
    Run the ORM installer for one extension.

    Extensions without a database/orm directory are skipped.

    Args:
        extension: Extension root directory
        registry: Registry before this extension
        installer: ORM installer, or None when none is configured

    Returns:
        (generated SQL, registry including the new records)

    Raises:
        SchemaObjectInstallError: If the installer is missing or fails.
            DbforgeErrors raised by the installer propagate unchanged.
    """
    log = log or logger
    orm_dir = get_orm_dir(extension)
    if not orm_dir.is_dir():
        return "", registry

    if installer is None:
        raise SchemaObjectInstallError(
            f"{orm_dir} exists but no ORM installer is configured",
            orm_dir=orm_dir,
        )

    try:
        result = await installer.install(orm_dir, registry)
    except DbforgeError:
        raise
    except Exception as e:
        raise SchemaObjectInstallError(str(e), orm_dir=orm_dir) from e

    merged = registry.merge(result.orms)
    log.info(
        f"ORM install for {extension}: {len(merged) - len(registry)} new schema objects",
        extra={
            "extension": str(extension),
            "event": "orm_installed",
            "metadata": {"registry_size": len(merged)},
        },
    )
    return result.query or "", merged
