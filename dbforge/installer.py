"""Database installer - builds one database's aggregate script and runs it.

For each extension, in the order the BuildSpec lists them:
1. concatenate the extension's scripts in manifest order
2. append the SQL the ORM installer generates for it (if it has ORMs)

The resulting aggregate is submitted to the database in a single call.
Any failure before that point aborts the build without executing anything.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from dbforge.build_spec import BuildSpec, Registry
from dbforge.config import Credentials
from dbforge.datasource import DataSource
from dbforge.manifest import resolve_extension
from dbforge.orm import OrmInstaller, install_schema_objects

logger = logging.getLogger(__name__)


@dataclass
class Aggregate:
    """The full script for one database and the registry it leaves behind."""
    sql: str
    registry: Registry
    script_count: int = 0
    extension_count: int = 0


@dataclass
class DatabaseResult:
    """Outcome of building one database."""
    database: str
    success: bool = False
    status: Optional[str] = None
    extension_count: int = 0
    script_count: int = 0
    registry: Registry = field(default_factory=Registry)
    duration_ms: int = 0
    error: Optional[BaseException] = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "database": self.database,
            "success": self.success,
            "status": self.status,
            "extensions": self.extension_count,
            "scripts": self.script_count,
            "orms": len(self.registry),
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            result["error"] = str(self.error)
            result["error_type"] = type(self.error).__name__
        return result


async def build_aggregate(
    spec: BuildSpec,
    registry: Registry,
    installer: Optional[OrmInstaller] = None,
    notice_language: str = "plpgsql",
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> Aggregate:
    """
    Concatenate every extension's contribution for one database.

    The registry is threaded through the extensions in order, since an
    extension's ORMs may build on those registered by an earlier one.

    Raises:
        DbforgeError: The first manifest, script or ORM failure
    """
    log = log or logger
    parts: list[str] = []
    script_count = 0

    for extension in spec.extensions:
        log.info(
            f"Installing extension {extension}",
            extra={"extension": extension, "event": "extension_started"},
        )
        resolved = await asyncio.to_thread(
            resolve_extension, extension, notice_language, log,
        )
        orm_sql, registry = await install_schema_objects(
            extension, registry, installer, log,
        )
        parts.append(resolved.sql + orm_sql)
        script_count += len(resolved.scripts)

    return Aggregate(
        sql="".join(parts),
        registry=registry,
        script_count=script_count,
        extension_count=len(spec.extensions),
    )


async def install_database(
    spec: BuildSpec,
    registry: Registry,
    datasource: DataSource,
    creds: Credentials,
    installer: Optional[OrmInstaller] = None,
    notice_language: str = "plpgsql",
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> DatabaseResult:
    """
    Build the aggregate for spec.database and execute it.

    Args:
        spec: BuildSpec with at least one extension
        registry: Registry from the pre-install probe
        datasource: Database client
        creds: Credentials already pointing at spec.database

    Returns:
        DatabaseResult for the successful install

    Raises:
        ValueError: If spec.extensions is empty
        DbforgeError: If building or executing the aggregate fails
    """
    log = log or logger
    if not spec.extensions:
        raise ValueError(f"No extensions to install on {spec.database}")

    start_time = time.time()
    log.info(
        f"Installing on database {spec.database}",
        extra={"event": "database_started", "metadata": {"extensions": list(spec.extensions)}},
    )

    aggregate = await build_aggregate(spec, registry, installer, notice_language, log)
    status = await datasource.execute(aggregate.sql, creds)

    result = DatabaseResult(
        database=spec.database,
        success=True,
        status=status,
        extension_count=aggregate.extension_count,
        script_count=aggregate.script_count,
        registry=aggregate.registry,
        duration_ms=int((time.time() - start_time) * 1000),
    )
    log.info(
        f"Installed {result.script_count} scripts on {spec.database} ({result.duration_ms}ms)",
        extra={"event": "database_installed", "metadata": result.to_dict()},
    )
    return result
