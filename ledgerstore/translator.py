"""
SQLite → PostgreSQL CREATE TABLE translation.

Best effort, stateless text transform used by the migration engine for
tables that are not part of the built-in schema:

    INTEGER PRIMARY KEY [AUTOINCREMENT]   -> SERIAL PRIMARY KEY
    BLOB                                  -> BYTEA
    DATETIME                              -> TIMESTAMP
    [name] / `name` / name                -> "name"
    CREATE TABLE                          -> CREATE TABLE IF NOT EXISTS

Identifiers are always double-quoted so mixed-case names keep their case on
PostgreSQL and reserved words (row, column, value, order, ...) stay legal.
Anything that cannot be parsed is returned unchanged; applying the output may
then fail, which the migration engine records against the table.

Usage:
    from ledgerstore.translator import translate
    pg_sql = translate("CREATE TABLE notes (id TEXT PRIMARY KEY, note TEXT)")
"""

import re
from typing import List

_CREATE = re.compile(
    r"""^\s*CREATE\s+(?:TEMP\s+|TEMPORARY\s+)?TABLE\s+
        (?:IF\s+NOT\s+EXISTS\s+)?
        (?P<name>"(?:[^"]|"")+"|\[[^\]]+\]|`[^`]+`|[A-Za-z_][\w$]*)
        \s*\((?P<body>.*)\)
        (?P<options>[^()]*?)
        \s*;?\s*$""",
    re.IGNORECASE | re.DOTALL | re.VERBOSE,
)

_COLUMN_NAME = re.compile(r'^("(?:[^"]|"")+"|\[[^\]]+\]|`[^`]+`|[A-Za-z_][\w$]*)\s*(.*)$', re.DOTALL)

_CONSTRAINT_START = re.compile(
    r"\b(CONSTRAINT|PRIMARY|NOT|NULL|UNIQUE|CHECK|DEFAULT|REFERENCES|COLLATE|GENERATED|AS)\b",
    re.IGNORECASE,
)
_TABLE_CONSTRAINT = re.compile(r"^(CONSTRAINT|PRIMARY|UNIQUE|CHECK|FOREIGN)\b", re.IGNORECASE)
_KEY_LIST = re.compile(r"\b(PRIMARY\s+KEY|UNIQUE|FOREIGN\s+KEY)\s*\(([^)]*)\)", re.IGNORECASE)
_REFERENCES = re.compile(
    r'\bREFERENCES\s+("(?:[^"]|"")+"|\[[^\]]+\]|`[^`]+`|[A-Za-z_][\w$]*)(\s*\(([^)]*)\))?',
    re.IGNORECASE,
)
_PRIMARY_KEY = re.compile(r"\bPRIMARY\s+KEY\b", re.IGNORECASE)
_AUTOINCREMENT = re.compile(r"\s*\bAUTOINCREMENT\b", re.IGNORECASE)
_COLLATE = re.compile(r"\s*\bCOLLATE\s+(NOCASE|BINARY|RTRIM)\b", re.IGNORECASE)
_STRING_LITERAL = re.compile(r"('(?:[^']|'')*')")

TYPE_MAP = {
    "BLOB": "BYTEA",
    "DATETIME": "TIMESTAMP",
}


def _unquote(name: str) -> str:
    name = name.strip()
    if len(name) >= 2 and name[0] == '"' and name[-1] == '"':
        return name[1:-1].replace('""', '"')
    if len(name) >= 2 and (name[0], name[-1]) in (("[", "]"), ("`", "`")):
        return name[1:-1]
    return name


def quote_identifier(name: str) -> str:
    return '"' + _unquote(name).replace('"', '""') + '"'


def _requote(text: str) -> str:
    """[x] and `x` become "x", leaving string literals alone."""
    parts = _STRING_LITERAL.split(text)
    for i in range(0, len(parts), 2):
        parts[i] = re.sub(r"\[([^\]]+)\]", r'"\1"', parts[i])
        parts[i] = re.sub(r"`([^`]+)`", r'"\1"', parts[i])
    return "".join(parts)


def _quote_list(items: str) -> str:
    quoted = []
    for item in items.split(","):
        item = item.strip()
        if not item:
            continue
        m = _COLUMN_NAME.match(item)
        if m:
            rest = m.group(2).strip()
            quoted.append(quote_identifier(m.group(1)) + (f" {rest}" if rest else ""))
        else:
            quoted.append(item)
    return ", ".join(quoted)


def _quote_constraint_lists(text: str) -> str:
    text = _KEY_LIST.sub(lambda m: f"{m.group(1)} ({_quote_list(m.group(2))})", text)

    def _ref(m: "re.Match") -> str:
        out = f"REFERENCES {quote_identifier(m.group(1))}"
        if m.group(2):
            out += f" ({_quote_list(m.group(3))})"
        return out

    return _REFERENCES.sub(_ref, text)


def split_definitions(body: str) -> List[str]:
    """Split a CREATE TABLE body on top-level commas."""
    parts: List[str] = []
    depth = 0
    quote = None
    start = 0
    i = 0
    while i < len(body):
        ch = body[i]
        if quote:
            if ch == quote:
                # Doubled quote is an escaped quote
                if ch in ("'", '"') and i + 1 < len(body) and body[i + 1] == ch:
                    i += 2
                    continue
                quote = None
        elif ch in ("'", '"', "`"):
            quote = ch
        elif ch == "[":
            quote = "]"
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append(body[start:i].strip())
            start = i + 1
        i += 1
    parts.append(body[start:].strip())
    return [p for p in parts if p]


def translate_column(definition: str) -> str:
    m = _COLUMN_NAME.match(definition.strip())
    if not m:
        return definition
    name, rest = quote_identifier(m.group(1)), m.group(2).strip()

    c = _CONSTRAINT_START.search(rest)
    if c:
        col_type, constraints = rest[:c.start()].strip(), rest[c.start():].strip()
    else:
        col_type, constraints = rest, ""

    base = col_type.upper()
    if base in ("INTEGER", "INT") and _PRIMARY_KEY.search(constraints):
        col_type = "SERIAL"
    elif base in TYPE_MAP:
        col_type = TYPE_MAP[base]
    elif not col_type:
        # SQLite allows typeless columns, PostgreSQL does not
        col_type = "TEXT"

    constraints = _AUTOINCREMENT.sub("", constraints)
    constraints = _COLLATE.sub("", constraints)
    constraints = _quote_constraint_lists(_requote(constraints)).strip()
    return " ".join(p for p in (name, col_type, constraints) if p)


def translate_constraint(definition: str) -> str:
    return _quote_constraint_lists(_requote(definition))


def translate(create_table_sql: str) -> str:
    """Translate one SQLite CREATE TABLE statement for PostgreSQL."""
    if not create_table_sql or not create_table_sql.strip():
        return ""
    m = _CREATE.match(create_table_sql)
    if not m:
        return create_table_sql

    definitions = []
    for definition in split_definitions(m.group("body")):
        if _TABLE_CONSTRAINT.match(definition):
            definitions.append(translate_constraint(definition))
        else:
            definitions.append(translate_column(definition))

    # WITHOUT ROWID / STRICT have no PostgreSQL equivalent
    body = ",\n  ".join(definitions)
    return f"CREATE TABLE IF NOT EXISTS {quote_identifier(m.group('name'))} (\n  {body}\n)"
