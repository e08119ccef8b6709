"""Reader for the database.sql dumps inside legacy tar/zip backups.

Only the data statements matter for a restore, so the reader understands
INSERT statements with a column list and skips everything else:

    INSERT INTO teams (id, name, logo_url) VALUES (1, 'India', '/uploads/teams/t1.png');
    INSERT INTO users (id, username) VALUES (1, 'alice'), (2, 'o''brien');

Values may be single-quoted strings ('' escapes a quote, an optional ::type
cast is dropped), NULL, TRUE/FALSE or numbers.
"""
import re
from typing import Any

_INSERT_HEADER = re.compile(
    r"""INSERT\s+INTO\s+
        (?P<table>(?:"[^"]+"|\w+)(?:\.(?:"[^"]+"|\w+))?)\s*
        \((?P<columns>[^)]*)\)\s*
        VALUES\s*""",
    re.IGNORECASE | re.VERBOSE,
)

# pg_dump --inserts without --column-inserts: values follow table column order
_INSERT_WITHOUT_COLUMNS = re.compile(
    r"""INSERT\s+INTO\s+
        (?P<table>(?:"[^"]+"|\w+)(?:\.(?:"[^"]+"|\w+))?)\s*
        VALUES\b""",
    re.IGNORECASE | re.VERBOSE,
)

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<string>'(?:[^']|'')*')(?:::\w+(?:\s+\w+)*)?
      | (?P<null>NULL)\b
      | (?P<bool>TRUE|FALSE)\b
      | (?P<number>[-+]?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)
      | (?P<punct>[(),;])
    )""",
    re.IGNORECASE | re.VERBOSE,
)


class SqlDumpError(ValueError):
    pass


def _unquote_identifier(name: str) -> str:
    name = name.strip()
    if len(name) >= 2 and name[0] == name[-1] == '"':
        return name[1:-1].replace('""', '"')
    return name


def _skip_blank(sql: str, pos: int) -> int:
    """Skip whitespace and -- / /* */ comments."""
    n = len(sql)
    while pos < n:
        if sql[pos].isspace():
            pos += 1
        elif sql.startswith("--", pos):
            end = sql.find("\n", pos)
            pos = n if end == -1 else end + 1
        elif sql.startswith("/*", pos):
            end = sql.find("*/", pos + 2)
            pos = n if end == -1 else end + 2
        else:
            break
    return pos


def _skip_statement(sql: str, pos: int) -> int:
    """Advance past the next ';' that is not inside a string literal."""
    in_string = False
    n = len(sql)
    while pos < n:
        ch = sql[pos]
        if ch == "'":
            in_string = not in_string
        elif ch == ";" and not in_string:
            return pos + 1
        pos += 1
    return n


def _next_token(sql: str, pos: int) -> tuple[str | None, Any, int]:
    pos = _skip_blank(sql, pos)
    if pos >= len(sql):
        return None, None, pos
    m = _TOKEN.match(sql, pos)
    if not m:
        raise SqlDumpError(f"Unexpected input at offset {pos}: {sql[pos:pos + 20]!r}")
    kind = m.lastgroup
    raw = m.group(kind)
    if kind == "string":
        value: Any = raw[1:-1].replace("''", "'")
    elif kind == "null":
        value = None
    elif kind == "bool":
        value = raw.upper() == "TRUE"
    elif kind == "number":
        value = float(raw) if any(c in raw for c in ".eE") else int(raw)
    else:
        value = raw
    return kind, value, m.end()


def _read_tuple(sql: str, pos: int) -> tuple[list[Any], int]:
    kind, value, pos = _next_token(sql, pos)
    if kind != "punct" or value != "(":
        raise SqlDumpError(f"Expected '(' at offset {pos}")
    values: list[Any] = []
    while True:
        kind, value, pos = _next_token(sql, pos)
        if kind is None or kind == "punct":
            raise SqlDumpError(f"Expected a value at offset {pos}")
        values.append(value)
        kind, sep, pos = _next_token(sql, pos)
        if kind == "punct" and sep == ")":
            return values, pos
        if kind != "punct" or sep != ",":
            raise SqlDumpError(f"Expected ',' or ')' at offset {pos}")


def parse_inserts(sql: str, warnings: list[str] | None = None) -> dict[str, list[dict[str, Any]]]:
    """Rows per table from the INSERT statements of a SQL dump, in file order.

    INSERTs without a column list cannot be mapped to columns. They are
    skipped and counted per table in `warnings`.
    """
    tables: dict[str, list[dict[str, Any]]] = {}
    unmapped: dict[str, int] = {}
    pos = 0
    n = len(sql)
    while True:
        pos = _skip_blank(sql, pos)
        if pos >= n:
            break
        header = _INSERT_HEADER.match(sql, pos)
        if not header:
            if bare := _INSERT_WITHOUT_COLUMNS.match(sql, pos):
                table = _unquote_identifier(bare.group("table").split(".")[-1])
                unmapped[table] = unmapped.get(table, 0) + 1
            pos = _skip_statement(sql, pos)
            continue

        table = _unquote_identifier(header.group("table").split(".")[-1])
        columns = [_unquote_identifier(c) for c in header.group("columns").split(",")]
        rows = tables.setdefault(table, [])
        pos = header.end()
        while True:
            values, pos = _read_tuple(sql, pos)
            if len(values) != len(columns):
                raise SqlDumpError(
                    f"INSERT INTO {table}: {len(columns)} columns but {len(values)} values"
                )
            rows.append(dict(zip(columns, values)))
            kind, sep, pos = _next_token(sql, pos)
            if kind == "punct" and sep == ",":
                continue
            if kind is None or (kind == "punct" and sep == ";"):
                break
            raise SqlDumpError(f"Expected ',' or ';' after VALUES tuple at offset {pos}")

    if warnings is not None:
        warnings.extend(
            f"Table {table}: {count} INSERT statement(s) without a column list skipped"
            for table, count in unmapped.items()
        )
    return tables
