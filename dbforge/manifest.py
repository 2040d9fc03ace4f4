"""
Extension manifest loading.

An extension keeps its SQL under a source root with a ``manifest.js`` file
(JSON content, despite the extension) listing the scripts to run:

    {
      "name": "crm",
      "version": "1.4.0",
      "comment": "CRM extension",
      "databaseScripts": [
        "create_crm_schema.sql",
        "xm/javascript/crm.sql"
      ]
    }

The ORM library keeps its sources directly under ``source/``; every other
extension uses ``database/source/``.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from dbforge.errors import InvalidManifestError, MissingManifestError
from dbforge.scripts import load_script

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.js"
SCRIPTS_KEY = "databaseScripts"

# Path fragment that identifies the ORM library extension
ORM_LIBRARY_MARKER = "lib/orm"


@dataclass(frozen=True)
class Manifest:
    """Parsed extension manifest."""
    path: Path
    database_scripts: tuple[str, ...]
    name: Optional[str] = None
    version: Optional[str] = None
    comment: Optional[str] = None
    dependencies: tuple[str, ...] = ()
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any, path: Path) -> "Manifest":
        if not isinstance(data, dict):
            raise InvalidManifestError(path, "not a JSON object")

        scripts = data.get(SCRIPTS_KEY, [])
        if not isinstance(scripts, list) or not all(isinstance(s, str) for s in scripts):
            raise InvalidManifestError(path, f"missing a list of strings under '{SCRIPTS_KEY}'")

        dependencies = data.get("dependencies") or []
        if not isinstance(dependencies, list):
            raise InvalidManifestError(path, "using a non-list 'dependencies' value")

        known_keys = {SCRIPTS_KEY, "name", "version", "comment", "dependencies"}
        return cls(
            path=path,
            database_scripts=tuple(scripts),
            name=data.get("name"),
            version=data.get("version"),
            comment=data.get("comment"),
            dependencies=tuple(str(d) for d in dependencies),
            extras={k: v for k, v in data.items() if k not in known_keys},
        )


@dataclass(frozen=True)
class ExtensionScript:
    """The concatenated, validated SQL of one extension."""
    extension: str
    sql: str
    scripts: tuple[Path, ...] = ()


def is_orm_library(extension: str | Path) -> bool:
    return ORM_LIBRARY_MARKER in Path(extension).as_posix()


def get_source_root(extension: str | Path) -> Path:
    """Directory holding an extension's manifest and scripts."""
    extension = Path(extension)
    if is_orm_library(extension):
        return extension / "source"
    return extension / "database" / "source"


def load_manifest(extension: str | Path) -> Manifest:
    """
    Load the manifest of an extension.

    Raises:
        MissingManifestError: If manifest.js doesn't exist
        InvalidManifestError: If it isn't valid JSON or lacks a script list
    """
    manifest_path = get_source_root(extension) / MANIFEST_FILENAME
    if not manifest_path.is_file():
        raise MissingManifestError(manifest_path)

    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidManifestError(manifest_path)

    return Manifest.from_dict(data, manifest_path)


def resolve_extension(
    extension: str | Path,
    notice_language: str = "plpgsql",
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> ExtensionScript:
    """
    Concatenate every script of an extension in manifest order.

    Stops at the first script that fails to load; no partial SQL is returned.

    Raises:
        MissingManifestError, InvalidManifestError: Manifest problems
        NotFoundError, FormatError: Script problems
    """
    log = log or logger
    manifest = load_manifest(extension)
    source_root = manifest.path.parent

    parts: list[str] = []
    paths: list[Path] = []
    for filename in manifest.database_scripts:
        script_path = source_root / filename
        parts.append(load_script(script_path, notice_language))
        paths.append(script_path)

    log.debug(
        f"Resolved {len(paths)} scripts for {extension}",
        extra={"extension": str(extension), "event": "extension_resolved"},
    )
    return ExtensionScript(extension=str(extension), sql="".join(parts), scripts=tuple(paths))
