"""Pre-install probe of the ORM registry table.

A database that was built before already has an xt.orm table listing its
schema objects. The rows not owned by an extension seed the build's
Registry; extension rows are regenerated by the build itself. A brand-new
database has no such table and starts from an empty Registry.
"""

import logging

from dbforge.build_spec import Registry
from dbforge.config import Credentials
from dbforge.datasource import DataSource

logger = logging.getLogger(__name__)

ORM_TABLE_EXISTS_SQL = "select relname from pg_class where relname = 'orm'"

ORM_ROWS_SQL = (
    "select orm_namespace as namespace, "
    " orm_type as type "
    "from xt.orm "
    "where not orm_ext;"
)


async def probe_registry(
    datasource: DataSource,
    creds: Credentials,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> Registry:
    """Load the non-extension ORM registry of the database named in creds.

    Raises:
        QueryError: If either query fails
    """
    log = log or logger

    exists = await datasource.query(ORM_TABLE_EXISTS_SQL, creds)
    if exists.row_count == 0:
        log.info(
            f"No ORM registry in {creds.database}, starting empty",
            extra={"event": "registry_probed", "metadata": {"records": 0}},
        )
        return Registry.empty()

    rows = await datasource.query(ORM_ROWS_SQL, creds)
    registry = Registry.from_rows(rows.rows)
    log.info(
        f"Loaded {len(registry)} pre-installed ORMs from {creds.database}",
        extra={"event": "registry_probed", "metadata": {"records": len(registry)}},
    )
    return registry
