"""Build orchestration - runs the install of every requested database.

States of a run:

    IDLE -> RESETTING (optional) -> BUILDING -> DONE

RESETTING happens only when a single database is requested with both
``initialize`` and ``backup`` set: the database is dropped, recreated from
the template, and restored from the backup with pg_restore. A failed drop
or create ends the run. A failed restore is logged as a RestoreWarning and
the build continues; the state of a partially restored database is not
verified. The reset flags are cleared afterwards, so a reset happens at most
once per run.

BUILDING probes and installs every database concurrently. A failing
database does not cancel the others; the run reports the first error in
the order failures were detected, plus every per-database result.

Usage:
    from dbforge.builder import build_databases

    result = await build_databases(specs, config.credentials)
    result.raise_for_error()
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from dbforge.build_spec import BuildSpec
from dbforge.config import Credentials, DbforgeConfig
from dbforge.datasource import DataSource
from dbforge.errors import RestoreWarning
from dbforge.installer import DatabaseResult, install_database
from dbforge.orm import OrmInstaller
from dbforge.prober import probe_registry
from dbforge.utils import database_logger

logger = logging.getLogger(__name__)


class BuildState(Enum):
    IDLE = "idle"
    RESETTING = "resetting"
    BUILDING = "building"
    DONE = "done"


@dataclass
class RunResult:
    """
    Result of a build run.

    - results: one DatabaseResult per built database, in request order
    - first_error: first failure detected across all builds (None on success)
    - reset_performed: true if the database was reset from a backup
    """
    results: list[DatabaseResult] = field(default_factory=list)
    first_error: Optional[BaseException] = None
    reset_performed: bool = False

    @property
    def success(self) -> bool:
        return self.first_error is None

    @property
    def failed(self) -> list[DatabaseResult]:
        return [r for r in self.results if not r.success]

    def raise_for_error(self) -> None:
        if self.first_error is not None:
            raise self.first_error

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "databases": [r.to_dict() for r in self.results],
        }
        if self.first_error is not None:
            result["error"] = str(self.first_error)
        if self.reset_performed:
            result["reset_performed"] = True
        return result


def quote_ident(name: str) -> str:
    """Quote a database name for use in DDL."""
    return '"' + name.replace('"', '""') + '"'


class Builder:
    """
    Runs one build request.

    Args:
        creds: Shared credentials; each build works on its own copy
        datasource: Database client (defaults to an asyncpg DataSource)
        installer: ORM installer for extensions with ORM directories
        notice_language: Language of the per-script notice statements
        maintenance_database: Database used to drop and create targets
        template: Template for CREATE DATABASE
        restore_command: pg_restore executable
        restore_timeout: Deadline for pg_restore in seconds
        logger: Logger for the run
    """

    def __init__(
        self,
        creds: Credentials,
        datasource: Optional[DataSource] = None,
        installer: Optional[OrmInstaller] = None,
        notice_language: str = "plpgsql",
        maintenance_database: str = "postgres",
        template: str = "template1",
        restore_command: str = "pg_restore",
        restore_timeout: Optional[float] = 1800,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ):
        self.creds = creds
        self.logger = logger or logging.getLogger(__name__)
        self.datasource = datasource or DataSource(logger=self.logger)
        self.installer = installer
        self.notice_language = notice_language
        self.maintenance_database = maintenance_database
        self.template = template
        self.restore_command = restore_command
        self.restore_timeout = restore_timeout
        self.state = BuildState.IDLE

    @classmethod
    def from_config(
        cls,
        config: DbforgeConfig,
        installer: Optional[OrmInstaller] = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> "Builder":
        logger = logger or logging.getLogger(__name__)
        return cls(
            creds=config.credentials,
            datasource=DataSource(command_timeout=config.command_timeout, logger=logger),
            installer=installer,
            notice_language=config.notice_language,
            maintenance_database=config.maintenance_database,
            template=config.template,
            restore_command=config.restore_command,
            restore_timeout=config.restore_timeout,
            logger=logger,
        )

    async def run(self, specs: Iterable[BuildSpec]) -> RunResult:
        """
        Reset (if requested) and build every database.

        Raises:
            ValueError: If no specs are given
        """
        specs = list(specs)
        if not specs:
            raise ValueError("No databases to build")

        self.state = BuildState.IDLE
        reset_performed = False

        if len(specs) == 1 and specs[0].wants_reset:
            self.state = BuildState.RESETTING
            try:
                await self.reset_database(specs[0])
            except Exception as e:
                self.logger.error(
                    f"Init database error for {specs[0].database}: {e}",
                    extra={"database": specs[0].database, "event": "reset_failed"},
                )
                self.state = BuildState.DONE
                return RunResult(first_error=e)
            specs = [specs[0].cleared()]
            reset_performed = True
        else:
            ignored = [s.database for s in specs if s.initialize]
            if len(specs) > 1 and ignored:
                self.logger.warning(
                    f"Ignoring initialize for {', '.join(ignored)}: "
                    "reset is only supported when building a single database",
                    extra={"event": "reset_ignored"},
                )

        self.state = BuildState.BUILDING
        self.logger.info(
            f"Building databases: {', '.join(s.database for s in specs)}",
            extra={"event": "run_started", "metadata": {"specs": [s.to_dict() for s in specs]}},
        )

        errors: list[BaseException] = []
        results = await asyncio.gather(*(self._build_one(spec, errors) for spec in specs))

        self.state = BuildState.DONE
        run_result = RunResult(
            results=list(results),
            first_error=errors[0] if errors else None,
            reset_performed=reset_performed,
        )
        if run_result.success:
            self.logger.info("All databases built", extra={"event": "run_finished"})
        else:
            self.logger.error(
                f"{len(errors)} of {len(specs)} database builds failed; first error: {errors[0]}",
                extra={"event": "run_failed"},
            )
        return run_result

    async def _build_one(self, spec: BuildSpec, errors: list[BaseException]) -> DatabaseResult:
        """Probe and install one database; failures are recorded, not raised."""
        log = database_logger(self.logger, spec.database)
        creds = self.creds.for_database(spec.database)
        start_time = time.time()

        try:
            registry = await probe_registry(self.datasource, creds, log)
            return await install_database(
                spec,
                registry,
                self.datasource,
                creds,
                installer=self.installer,
                notice_language=self.notice_language,
                log=log,
            )
        except Exception as e:
            # Appended in completion order: the first entry is the first failure seen
            errors.append(e)
            log.error(
                f"Build failed for {spec.database}: {e}",
                extra={"event": "database_failed", "metadata": {"error_type": type(e).__name__}},
            )
            return DatabaseResult(
                database=spec.database,
                success=False,
                error=e,
                duration_ms=int((time.time() - start_time) * 1000),
            )

    async def reset_database(self, spec: BuildSpec) -> None:
        """
        Drop, recreate and restore spec.database.

        Raises:
            QueryError: If the drop or create fails
        """
        log = database_logger(self.logger, spec.database)
        admin_creds = self.creds.for_database(self.maintenance_database)
        name = quote_ident(spec.database)

        log.info(f"Dropping database {spec.database}", extra={"event": "reset_drop"})
        await self.datasource.execute(f"drop database if exists {name};", admin_creds)

        log.info(
            f"Creating database {spec.database} from {self.template}",
            extra={"event": "reset_create"},
        )
        await self.datasource.execute(
            f"create database {name} template {quote_ident(self.template)};", admin_creds,
        )

        await self.restore_backup(spec, log)

    async def restore_backup(
        self,
        spec: BuildSpec,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> bool:
        """
        Restore spec.backup into spec.database with pg_restore.

        The backup is binary, so it goes through the restore utility rather
        than the database client. Failures are logged, never raised.

        Returns:
            True if pg_restore exited cleanly
        """
        log = log or self.logger
        creds = self.creds.for_database(spec.database)
        cmd = [
            self.restore_command,
            "-U", creds.username,
            "-h", creds.hostname,
            "-p", str(creds.port),
            "-d", spec.database,
            str(spec.backup),
        ]
        env = dict(os.environ)
        if creds.password:
            env["PGPASSWORD"] = creds.password

        log.info(f"Restoring {spec.backup} into {spec.database}", extra={"event": "restore_started"})

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            self._warn_restore(log, spec, f"could not start {self.restore_command}: {e}")
            return False

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.restore_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            self._warn_restore(log, spec, f"timed out after {self.restore_timeout}s")
            return False

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip() if stderr else ""
            self._warn_restore(log, spec, f"exit code {proc.returncode}: {detail}")
            return False

        log.info(f"Restored {spec.backup}", extra={"event": "restore_finished"})
        return True

    def _warn_restore(self, log, spec: BuildSpec, reason: str) -> None:
        warning = RestoreWarning(
            f"Ignoring restore error for {spec.database} ({reason}). "
            "The database may be partially restored."
        )
        log.warning(str(warning), extra={"event": "restore_failed"})


async def build_databases(
    specs: Iterable[BuildSpec],
    creds: Credentials,
    **kwargs: Any,
) -> RunResult:
    """Build every database in specs. Keyword arguments go to Builder."""
    return await Builder(creds, **kwargs).run(specs)
