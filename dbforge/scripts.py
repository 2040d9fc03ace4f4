"""Script loading and validation.

Each script listed in a manifest is read, checked for a trailing
semicolon, and followed by a notice statement naming the file. The notice
shows up in the server log (and in the build log at DEBUG level), which
makes it possible to tell which file was running when a large aggregate
fails.
"""

from pathlib import Path

from dbforge.errors import FormatError, NotFoundError, ScriptEncodingError

TERMINATOR = ";"

# Dollar-quote tag for the notice blocks. The path never appears as part of
# the format string and never contains this tag (see notice_sql).
NOTICE_QUOTE = "$dbforge$"

# Notice statements per procedural language. The first script of a fresh
# plv8 database creates the language itself, so the notice always goes
# after the script body, never before it.
NOTICE_TEMPLATES = {
    "plpgsql": "DO {q} BEGIN RAISE NOTICE '%', 'Just ran file {path}'; END {q};\n",
    "plv8": 'do {q} plv8.elog(NOTICE, "Just ran file {path}"); {q} language plv8;\n',
}


def notice_sql(path: Path | str, notice_language: str = "plpgsql") -> str:
    """Build the notice statement that marks the end of a script.

    The path is passed as a RAISE argument rather than inside the format
    string, so ``%`` in a directory name is printed as is. A ``$`` is split
    out of the literal (plpgsql) or written as a unicode escape (plv8) so
    the path can't close the dollar quote.

    Raises:
        ValueError: If the language has no notice template
    """
    try:
        template = NOTICE_TEMPLATES[notice_language]
    except KeyError:
        raise ValueError(
            f"Unknown notice language '{notice_language}'. "
            f"Expected one of: {', '.join(sorted(NOTICE_TEMPLATES))}"
        )

    path = str(path)
    if notice_language == "plpgsql":
        path = path.replace("'", "''").replace("$", "$' || '")
    else:
        path = path.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\u0024")
    return template.format(q=NOTICE_QUOTE, path=path)


def load_script(path: Path | str, notice_language: str = "plpgsql") -> str:
    """Read one script file and return its validated body plus notice.

    Args:
        path: Full path to the script
        notice_language: Procedural language for the notice statement

    Returns:
        Script text (trailing whitespace stripped) followed by the notice

    Raises:
        NotFoundError: If the file doesn't exist
        FormatError: If the trimmed contents don't end in a semicolon
        ScriptEncodingError: If the file isn't UTF-8 text
    """
    path = Path(path)
    if not path.is_file():
        raise NotFoundError(path)

    try:
        contents = path.read_text(encoding="utf-8").strip()
    except UnicodeDecodeError as e:
        raise ScriptEncodingError(path) from e
    if not contents.endswith(TERMINATOR):
        raise FormatError(path)

    return contents + notice_sql(path, notice_language)
