"""
Error classes for dbforge builds.

Every failure inside a database build is raised as a DbforgeError subclass:
- NotFoundError: a script file listed in a manifest does not exist
- FormatError: a script does not end in a statement terminator
- ScriptEncodingError: a script is not UTF-8 text
- MissingManifestError / InvalidManifestError: manifest problems
- QueryError: the database rejected a query or could not be reached
- SchemaObjectInstallError: the ORM installer failed

None of these are retried. An error aborts the build of the database it
belongs to; sibling database builds keep running.

RestoreWarning is never raised by a build. It is logged when pg_restore
fails during a reset, since the reset itself is still considered done.
"""


class DbforgeError(Exception):
    """Base exception for dbforge."""
    pass


class NotFoundError(DbforgeError):
    """A script file referenced by a manifest does not exist."""

    def __init__(self, path):
        self.path = path
        super().__init__(f"{path} does not exist")


class FormatError(DbforgeError):
    """
    A script file is not terminated by a semicolon.

    Concatenating such a file with the next one would produce an ambiguous
    statement and an unhelpful error from the server, so the build stops.
    """

    def __init__(self, path):
        self.path = path
        super().__init__(f"Error: {path} contents do not end in a semicolon.")


class ScriptEncodingError(DbforgeError):
    """A script file is not valid UTF-8 text."""

    def __init__(self, path):
        self.path = path
        super().__init__(f"{path} is not valid UTF-8 text")


class MissingManifestError(DbforgeError):
    """An extension has no manifest file."""

    def __init__(self, path):
        self.path = path
        super().__init__(f"Cannot find manifest {path}")


class InvalidManifestError(DbforgeError):
    """A manifest file exists but is not a usable JSON document."""

    def __init__(self, path, reason: str = "not valid JSON"):
        self.path = path
        self.reason = reason
        super().__init__(f"Manifest is {reason}: {path}")


class QueryError(DbforgeError):
    """A query or script execution failed against the database."""

    def __init__(self, message: str, database: str | None = None):
        self.database = database
        super().__init__(message)


class SchemaObjectInstallError(DbforgeError):
    """The ORM installer failed for an extension."""

    def __init__(self, message: str, orm_dir=None):
        self.orm_dir = orm_dir
        super().__init__(message)


class RestoreWarning(DbforgeError, UserWarning):
    """
    pg_restore failed while resetting a database.

    Logged, not raised: a partially restored backup may still accept the
    script install. The resulting database state is not verified.
    """
    pass
