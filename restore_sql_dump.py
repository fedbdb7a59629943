#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
SQL Dump Restore (MySQL)
- Splits mysqldump-style SQL text into statements (quote and escape aware).
- Full-schema import: drops and recreates every table from the dump inside one
  transaction, then hands over to the application's migration command.
- Data-only import: replays only INSERTs, as REPLACE INTO, against the live
  schema. Columns that no longer exist are dropped from the statement.
- Backups: mysqldump when available, otherwise a per-table dump written here.
Note: the parser is best-effort -- it is not a full SQL analyzer.
Strings are expected to use backslash escaping, as mysqldump writes them.
"""

import argparse
import configparser
import gettext
import locale
import os
import re
import shlex
import shutil
import subprocess
import sys
import warnings
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Iterator, NamedTuple

import mysql.connector
from tqdm import tqdm

try:
    # Set user locale from the operating system
    locale.setlocale(locale.LC_ALL, "")
except (locale.Error, IndexError):
    pass  # Keep default locale if setting fails

# ---------- Localization setup ----------
APP_NAME = "restore_sql_dump"
LOCALE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "locale")
try:
    translation = gettext.translation(APP_NAME, localedir=LOCALE_DIR, fallback=True)
    tl: Callable[[str], str] = translation.gettext
except FileNotFoundError:
    tl = gettext.gettext

UPSERT_VERB = "REPLACE INTO"
SYSTEM_TABLES = (
    "migrations",
    "password_reset_tokens",
    "sessions",
    "cache",
    "cache_locks",
    "jobs",
    "job_batches",
    "failed_jobs",
)
DEFAULT_BACKUP_DIR = os.path.join("storage", "app", "backups")
ERROR_MESSAGE_LIMIT = 300


class DumpError(Exception):
    """Base class for dump import/export failures."""


class EmptyDumpError(DumpError):
    """The dump file is empty or could not be read."""


class MigrationError(DumpError):
    """The migration command failed after the data was restored."""


class RowSkippedWarning(UserWarning):
    """A row of an INSERT was dropped while rewriting it for the live schema."""


# ---------- Statements ----------
class StatementKind(Enum):
    CREATE_TABLE = "create_table"
    DROP_TABLE = "drop_table"
    INSERT = "insert"
    OTHER = "other"


class Statement(NamedTuple):
    kind: StatementKind
    text: str
    table: str | None = None


CREATE_TABLE_RE = re.compile(
    r"^CREATE\s+(?:TEMPORARY\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?(?P<table>[^\s(;]+)",
    re.IGNORECASE,
)
DROP_TABLE_RE = re.compile(
    r"^DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?(?P<table>[^\s,;]+)", re.IGNORECASE
)
INSERT_RE = re.compile(
    r"^(?:INSERT\s+(?:IGNORE\s+)?INTO|REPLACE\s+INTO)\s+(?P<table>[^\s(]+)",
    re.IGNORECASE,
)
INSERT_VERB_RE = re.compile(r"^(?:INSERT\s+(?:IGNORE\s+)?|REPLACE\s+)INTO", re.IGNORECASE)
INSERT_NO_COLUMNS_RE = re.compile(
    r"^(?:INSERT\s+(?:IGNORE\s+)?|REPLACE\s+)INTO\s+[^\s(]+\s+VALUES\b", re.IGNORECASE
)
INSERT_WITH_COLUMNS_RE = re.compile(
    r"^(?:INSERT\s+(?:IGNORE\s+)?|REPLACE\s+)INTO\s+(?P<table>[^\s(]+)\s*"
    r"\((?P<columns>[^)]+)\)\s*VALUES\s*(?P<values>.+)$",
    re.IGNORECASE | re.DOTALL,
)
COLUMN_NAME_RE = re.compile(r"`([^`]+)`|(\w+)")


def normalize_table_name(raw_name: str) -> str:
    name = raw_name.strip().strip('`"')
    if "." in name:
        name = name.split(".")[-1].strip('`"')
    return name


def is_comment(text: str) -> bool:
    return text.startswith("--") or text.startswith("/*")


def classify_statement(text: str) -> Statement:
    """Classifies a statement by the keywords at its head."""
    text = text.strip()
    for kind, regex in (
        (StatementKind.CREATE_TABLE, CREATE_TABLE_RE),
        (StatementKind.DROP_TABLE, DROP_TABLE_RE),
        (StatementKind.INSERT, INSERT_RE),
    ):
        m = regex.match(text)
        if m:
            return Statement(kind, text, normalize_table_name(m.group("table")))
    return Statement(StatementKind.OTHER, text)


def split_sql_statements(sql: str) -> list[str]:
    """
    Splits SQL text into statements, one line at a time.

    A statement ends on a line whose last non-blank character is ';' while no
    string literal is open. The quote state carries over line breaks; a line
    that starts inside a string is kept as is and joined with a newline.
    """
    statements = []
    parts: list[str] = []
    in_quote = None
    escaped = False

    for raw_line in sql.split("\n"):
        # a backslash at the end of the previous line escaped the line break
        escaped = False
        if in_quote:
            line = raw_line
            parts.append("\n" + line)
        else:
            line = raw_line.strip()
            if not line or line.startswith("--"):
                continue
            if parts:
                parts.append(" ")
            parts.append(line)

        for char in line:
            if in_quote:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == in_quote:
                    in_quote = None
            elif char in ("'", '"'):
                in_quote = char

        if not in_quote and line.rstrip().endswith(";"):
            statements.append("".join(parts).strip())
            parts = []

    remainder = "".join(parts).strip()
    if remainder:
        statements.append(remainder)
    return statements


def iter_statements(sql: str) -> Iterator[Statement]:
    """Yields classified statements from SQL text."""
    for text in split_sql_statements(sql):
        yield classify_statement(text)


# ---------- VALUES parsing ----------
class ValueSetParser:
    """
    Iterates over the row tuples of an INSERT's VALUES clause.
    "(1, 'a'), (2, 'b')" yields "1, 'a'" and then "2, 'b'". The parentheses
    of each tuple are not part of the result.
    """

    def __init__(self, text: str):
        self.text = text

    def __iter__(self):
        current: list[str] = []
        in_quote = None
        escaped = False
        depth = 0
        for char in self.text:
            if in_quote:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == in_quote:
                    in_quote = None
                current.append(char)
                continue
            if char in ("'", '"'):
                in_quote = char
            elif char == "(":
                depth += 1
                if depth == 1:
                    continue
            elif char == ")":
                if depth == 0:
                    continue
                depth -= 1
                if depth == 0:
                    body = "".join(current).strip()
                    if body:
                        yield body
                    current = []
                    continue
            if depth > 0 or in_quote:
                current.append(char)


class ValueFieldParser:
    """
    Iterates over the raw values of a single row tuple body.
    "'x,y', 5, NULL" yields "'x,y'", "5" and "NULL". Values keep their
    source form; nothing is unquoted or decoded.
    """

    def __init__(self, text: str):
        self.text = text

    def __iter__(self):
        current: list[str] = []
        in_quote = None
        escaped = False
        for char in self.text:
            if in_quote:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == in_quote:
                    in_quote = None
            elif char in ("'", '"'):
                in_quote = char
            elif char == ",":
                yield "".join(current).strip()
                current = []
                continue
            current.append(char)
        tail = "".join(current).strip()
        if tail:
            yield tail


def parse_value_sets(values: str) -> list[str]:
    return list(ValueSetParser(values))


def parse_value_set(value_set: str) -> list[str]:
    return list(ValueFieldParser(value_set))


def to_upsert(statement: str) -> str:
    return INSERT_VERB_RE.sub(UPSERT_VERB, statement.strip(), count=1)


def filter_insert_columns(
    statement: str, valid_columns: Iterable[str], verbose: bool = False
) -> str | None:
    """
    Rewrites an INSERT so that it only names columns present in valid_columns.

    Returns a REPLACE INTO statement, or None when no column (or no row)
    survives. Rows whose value count does not match the column list are
    dropped with a RowSkippedWarning.
    """
    statement = statement.strip()
    if INSERT_NO_COLUMNS_RE.match(statement):
        return to_upsert(statement)
    m = INSERT_WITH_COLUMNS_RE.match(statement)
    if not m:
        return to_upsert(statement)

    table = normalize_table_name(m.group("table"))
    columns = [
        quoted or bare for quoted, bare in COLUMN_NAME_RE.findall(m.group("columns"))
    ]
    live = {c.lower() for c in valid_columns}
    keep = [i for i, col in enumerate(columns) if col.lower() in live]

    if not keep:
        return None
    if len(keep) == len(columns):
        return to_upsert(statement)

    rows = []
    for value_set in ValueSetParser(m.group("values")):
        values = parse_value_set(value_set)
        if len(values) != len(columns):
            warnings.warn(
                tl(
                    "Column count mismatch in {table}: expected {expected}, got {got}"
                ).format(table=table, expected=len(columns), got=len(values)),
                RowSkippedWarning,
                stacklevel=2,
            )
            continue
        rows.append("(" + ", ".join(values[i] for i in keep) + ")")

    if not rows:
        return None
    if verbose:
        dropped = [c for i, c in enumerate(columns) if i not in keep]
        print(
            tl("[INFO] Dropped columns from {table}: {columns}").format(
                table=table, columns=", ".join(dropped)
            )
        )
    new_columns = ", ".join(f"`{columns[i]}`" for i in keep)
    return f"{UPSERT_VERB} `{table}` ({new_columns}) VALUES {', '.join(rows)};"


# ---------- File handling ----------
def read_dump(path) -> str:
    """Reads a whole dump file. Raises EmptyDumpError if there is nothing to import."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            content = f.read()
    except OSError as e:
        raise EmptyDumpError(
            tl("SQL file is empty or cannot be read: {path}").format(path=path)
        ) from e
    if not content.strip():
        raise EmptyDumpError(
            tl("SQL file is empty or cannot be read: {path}").format(path=path)
        )
    return content


def quote_sql_value(val) -> str:
    """
    Returns an SQL literal for a value read from the database.

    Strings use backslash escaping (like mysqldump) so the statement splitter
    reads them back: "O'Reilly" -> 'O\\'Reilly'.
    """
    if val is None:
        return "NULL"
    if isinstance(val, bool):
        return "1" if val else "0"
    if isinstance(val, (int, float)):
        return str(val)
    if isinstance(val, (bytes, bytearray)):
        return "0x" + bytes(val).hex() if val else "''"
    text = str(val)
    safe_val = (
        text.replace("\\", "\\\\")
        .replace("\x00", "\\0")
        .replace("'", "\\'")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\x1a", "\\Z")
    )
    return f"'{safe_val}'"


def format_bytes(size) -> str:
    units = ["B", "KB", "MB", "GB"]
    i = 0
    size = float(size)
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    number = f"{size:.2f}".rstrip("0").rstrip(".")
    return f"{number} {units[i]}"


# ---------- Database access ----------
class SchemaConnection(ABC):
    """Database operations the importer and the backup writer rely on."""

    @abstractmethod
    def table_exists(self, table: str) -> bool:
        pass

    @abstractmethod
    def list_columns(self, table: str) -> list[str]:
        """Column names of a live table, in ordinal order."""
        pass

    @abstractmethod
    def list_tables(self) -> list[str]:
        pass

    @abstractmethod
    def show_create_table(self, table: str) -> str:
        pass

    @abstractmethod
    def iter_rows(self, table: str) -> Iterator[tuple]:
        pass

    @abstractmethod
    def execute_unprepared(self, sql: str) -> None:
        """Runs a statement as is, without parameter binding."""
        pass

    @abstractmethod
    def begin(self) -> None:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    def set_foreign_key_checks(self, enabled: bool) -> None:
        self.execute_unprepared(f"SET FOREIGN_KEY_CHECKS={1 if enabled else 0}")

    def truncate(self, table: str) -> None:
        self.execute_unprepared(f"TRUNCATE TABLE `{table}`")

    def drop_table_if_exists(self, table: str) -> None:
        self.execute_unprepared(f"DROP TABLE IF EXISTS `{table}`")


class MySQLConnection(SchemaConnection):
    """SchemaConnection over mysql.connector."""

    def __init__(self, **kwargs):
        self.args = kwargs
        self.connection = None
        self.cursor = None

    def connect(self):
        self.connection = mysql.connector.connect(
            host=self.args.get("db_host", "localhost"),
            port=int(self.args.get("db_port") or 3306),
            user=self.args["db_user"],
            password=self.args.get("db_password") or "",
            database=self.args["db_name"],
            autocommit=False,
        )
        self.cursor = self.connection.cursor()
        if self.args.get("verbose"):
            print(
                tl("[INFO] Successfully connected to database '{db}' on {host}").format(
                    db=self.args["db_name"], host=self.args.get("db_host", "localhost")
                )
            )
        return self

    def close(self):
        if self.cursor:
            self.cursor.close()
        if self.connection and self.connection.is_connected():
            self.connection.close()

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def database(self) -> str:
        return self.args["db_name"]

    def table_exists(self, table: str) -> bool:
        self.cursor.execute(
            "SELECT COUNT(*) FROM information_schema.TABLES "
            "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s",
            (self.database, table),
        )
        return self.cursor.fetchone()[0] > 0

    def list_columns(self, table: str) -> list[str]:
        self.cursor.execute(
            "SELECT COLUMN_NAME FROM information_schema.COLUMNS "
            "WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s ORDER BY ORDINAL_POSITION",
            (self.database, table),
        )
        return [row[0] for row in self.cursor.fetchall()]

    def list_tables(self) -> list[str]:
        self.cursor.execute(
            "SELECT TABLE_NAME FROM information_schema.TABLES "
            "WHERE TABLE_SCHEMA = %s AND TABLE_TYPE = 'BASE TABLE' ORDER BY TABLE_NAME",
            (self.database,),
        )
        return [row[0] for row in self.cursor.fetchall()]

    def show_create_table(self, table: str) -> str:
        self.cursor.execute(f"SHOW CREATE TABLE `{table}`")
        return self.cursor.fetchone()[1]

    def iter_rows(self, table: str) -> Iterator[tuple]:
        cursor = self.connection.cursor()
        try:
            cursor.execute(f"SELECT * FROM `{table}`")
            yield from cursor
        finally:
            cursor.close()

    def execute_unprepared(self, sql: str) -> None:
        self.cursor.execute(sql)
        if self.cursor.with_rows:
            self.cursor.fetchall()

    def begin(self) -> None:
        # with autocommit off, earlier reads leave an implicit transaction open
        if self.connection.in_transaction:
            self.connection.commit()
        self.connection.start_transaction()

    def commit(self) -> None:
        self.connection.commit()

    def rollback(self) -> None:
        self.connection.rollback()

    def get_stats(self) -> dict:
        self.cursor.execute(
            "SELECT ROUND(SUM(data_length + index_length) / 1024 / 1024, 2), COUNT(*) "
            "FROM information_schema.TABLES WHERE table_schema = %s",
            (self.database,),
        )
        size_mb, tables_count = self.cursor.fetchone()
        return {
            "size_mb": float(size_mb or 0),
            "tables_count": int(tables_count or 0),
            "connection": "mysql",
            "name": self.database,
        }


# ---------- Migrations ----------
class CommandMigrationRunner:
    """Runs the application's migration command, e.g. "php artisan migrate"."""

    def __init__(self, command: str, cwd: str | None = None):
        self.command = command
        self.cwd = cwd

    def __call__(self, force: bool = True) -> str:
        args = shlex.split(self.command)
        if force:
            args.append("--force")
        try:
            proc = subprocess.run(
                args, cwd=self.cwd, capture_output=True, text=True, check=False
            )
        except OSError as e:
            raise MigrationError(
                tl("Cannot run migration command {cmd}: {error}").format(
                    cmd=self.command, error=e
                )
            ) from e
        output = (proc.stdout or "") + (proc.stderr or "")
        if proc.returncode != 0:
            raise MigrationError(
                tl("Migration command failed with exit code {code}: {output}").format(
                    code=proc.returncode, output=output.strip()
                )
            )
        return output


# ---------- Import ----------
class ImportMode(Enum):
    FULL = "full"
    DATA_ONLY = "data_only"


class SchemaImportResult(NamedTuple):
    tables_count: int
    statements_count: int
    migrations_run: bool
    migrate_output: str


class ImportResult(NamedTuple):
    insert_count: int
    skipped_count: int
    tables_cleared: tuple[str, ...]
    errors: tuple[str, ...]
    mode: str = ImportMode.DATA_ONLY.value


class DumpImporter:
    def __init__(
        self,
        connection: SchemaConnection,
        migration_runner: Callable[..., str] | None = None,
        verbose: bool = False,
        system_tables: Iterable[str] = SYSTEM_TABLES,
        migrations_table: str = "migrations",
    ):
        self.connection = connection
        self.migration_runner = migration_runner
        self.verbose = verbose
        self.system_tables = {t.lower() for t in system_tables}
        self.migrations_table = migrations_table

    def _progress(self, statements, desc):
        if self.verbose:
            return tqdm(statements, unit="stmt", desc=desc)
        return statements

    def _abort(self):
        try:
            self.connection.rollback()
        finally:
            self.connection.set_foreign_key_checks(True)

    def import_file(self, path, mode: ImportMode = ImportMode.FULL, **options):
        sql = read_dump(path)
        if mode is ImportMode.FULL:
            return self.import_sql(sql)
        if mode is ImportMode.DATA_ONLY:
            return self.import_sql_data_only(
                sql, clear_existing=options.get("clear_existing", False)
            )
        raise ValueError(tl("Unknown import mode: {mode}").format(mode=mode))

    def import_sql(self, sql: str) -> SchemaImportResult:
        """
        Restores a complete dump. Every table the dump creates is dropped and
        recreated; rows for the migrations table are left out and the
        migration command is run once the transaction is committed.
        """
        if not sql or not sql.strip():
            raise EmptyDumpError(tl("SQL file is empty or cannot be read."))

        tables_count = 0
        statements_count = 0
        self.connection.begin()
        try:
            self.connection.set_foreign_key_checks(False)
            statements = split_sql_statements(sql)
            for text in self._progress(statements, tl("Restoring schema")):
                if is_comment(text):
                    continue
                stmt = classify_statement(text)
                if (
                    stmt.kind is StatementKind.INSERT
                    and stmt.table.lower() == self.migrations_table.lower()
                ):
                    continue
                if stmt.kind is StatementKind.CREATE_TABLE:
                    tables_count += 1
                    self.connection.drop_table_if_exists(stmt.table)
                self.connection.execute_unprepared(stmt.text)
                statements_count += 1
            self.connection.set_foreign_key_checks(True)
            self.connection.commit()
        except Exception:
            self._abort()
            raise

        if self.verbose:
            print(
                tl("[INFO] Restored {tables} tables from {count} statements.").format(
                    tables=tables_count, count=statements_count
                )
            )

        self.connection.set_foreign_key_checks(False)
        try:
            if self.connection.table_exists(self.migrations_table):
                self.connection.truncate(self.migrations_table)
        finally:
            self.connection.set_foreign_key_checks(True)

        if self.migration_runner is None:
            self._warn(
                tl("[WARN] No migration command configured, pending migrations were not run.")
            )
            return SchemaImportResult(tables_count, statements_count, False, "")
        output = self.migration_runner(force=True)
        return SchemaImportResult(tables_count, statements_count, True, output)

    def import_sql_data_only(
        self, sql: str, clear_existing: bool = False
    ) -> ImportResult:
        """
        Merges the rows of a dump into the current schema.

        Only INSERT statements are replayed, rewritten to REPLACE INTO and
        limited to columns the live tables still have. Failing statements are
        recorded in the result and do not stop the import.
        """
        if not sql or not sql.strip():
            raise EmptyDumpError(tl("SQL file is empty or cannot be read."))

        insert_count = 0
        skipped_count = 0
        errors: list[str] = []
        tables_cleared: list[str] = []
        columns_cache: dict[str, list[str]] = {}
        live_tables: set[str] = set()

        self.connection.begin()
        try:
            self.connection.set_foreign_key_checks(False)
            statements = split_sql_statements(sql)
            for text in self._progress(statements, tl("Importing data")):
                if is_comment(text):
                    continue
                stmt = classify_statement(text)
                if stmt.kind is not StatementKind.INSERT:
                    skipped_count += 1
                    continue
                table = stmt.table
                if not re.fullmatch(r"\w+", table):
                    skipped_count += 1
                    self._warn(
                        tl("[WARN] Could not parse INSERT statement: {stmt}").format(
                            stmt=text[:100]
                        )
                    )
                    continue
                if table.lower() in self.system_tables:
                    skipped_count += 1
                    continue
                if table not in live_tables:
                    if not self.connection.table_exists(table):
                        skipped_count += 1
                        self._warn(
                            tl("[WARN] Table {table} does not exist, skipping").format(
                                table=table
                            )
                        )
                        continue
                    live_tables.add(table)

                if clear_existing and table not in tables_cleared:
                    self.connection.truncate(table)
                    tables_cleared.append(table)

                try:
                    if table not in columns_cache:
                        columns_cache[table] = self.connection.list_columns(table)
                    filtered = filter_insert_columns(
                        stmt.text, columns_cache[table], verbose=self.verbose
                    )
                    if filtered:
                        self.connection.execute_unprepared(filtered)
                        insert_count += 1
                    else:
                        skipped_count += 1
                        self._warn(
                            tl(
                                "[WARN] No matching columns left for table {table}, skipping"
                            ).format(table=table)
                        )
                except Exception as e:
                    message = str(e)[:ERROR_MESSAGE_LIMIT]
                    errors.append(
                        tl("Table {table}: {error}").format(table=table, error=message)
                    )
                    skipped_count += 1
                    print(
                        tl("[ERROR] Data import failed for {table}: {error}").format(
                            table=table, error=message
                        ),
                        file=sys.stderr,
                    )
            self.connection.set_foreign_key_checks(True)
            self.connection.commit()
        except Exception:
            self._abort()
            raise

        if self.verbose:
            print(
                tl("[INFO] {inserted} inserts applied, {skipped} skipped.").format(
                    inserted=insert_count, skipped=skipped_count
                )
            )
        return ImportResult(
            insert_count, skipped_count, tuple(tables_cleared), tuple(errors)
        )

    def _warn(self, message: str):
        if self.verbose:
            print(message)


# ---------- Dump analysis ----------
class DumpAnalyzer:
    def __init__(self, **kwargs):
        self.args = kwargs
        self.stats = {}

    def run(self):
        sql = read_dump(self.args["inpath"])
        for stmt in iter_statements(sql):
            if stmt.kind is StatementKind.CREATE_TABLE:
                self.stats.setdefault(stmt.table, {"rows": 0, "inserts": 0})
            elif stmt.kind is StatementKind.INSERT:
                data = self.stats.setdefault(stmt.table, {"rows": 0, "inserts": 0})
                data["inserts"] += 1
                idx = re.search(r"\bVALUES\b", stmt.text, re.I)
                if idx:
                    data["rows"] += len(parse_value_sets(stmt.text[idx.end():]))
        self.print_summary()

    def print_summary(self):
        print("\n" + tl("--- Dump Analysis Summary ---"))
        print(f"{'Table':<40} {'INSERT Statements':>20} {'Total Rows':>20}")
        print("-" * 82)
        total_rows = 0
        for tname, data in sorted(self.stats.items()):
            print(f"{tname:<40} {data['inserts']:>20,d} {data['rows']:>20,d}")
            total_rows += data["rows"]
        print("-" * 82)
        print(
            tl("Found {num_tables} tables with a total of {total_rows} rows.").format(
                num_tables=len(self.stats), total_rows=f"{total_rows:,d}"
            )
        )
        print("---------------------------\n")


# ---------- Backups ----------
class BackupManager:
    def __init__(
        self,
        backup_dir: str = DEFAULT_BACKUP_DIR,
        connection: SchemaConnection | None = None,
        db_config: dict | None = None,
        verbose: bool = False,
        mysqldump_bin: str = "mysqldump",
    ):
        self.backup_dir = backup_dir
        self.connection = connection
        self.db_config = db_config or {}
        self.verbose = verbose
        self.mysqldump_bin = mysqldump_bin

    def ensure_backup_dir(self):
        os.makedirs(self.backup_dir, exist_ok=True)

    def _path(self, filename: str) -> str | None:
        if not filename or os.path.basename(filename) != filename:
            return None
        return os.path.join(self.backup_dir, filename)

    def list_backups(self) -> list[dict]:
        if not os.path.isdir(self.backup_dir):
            return []
        backups = []
        for entry in os.scandir(self.backup_dir):
            if not entry.is_file() or not entry.name.endswith(".sql"):
                continue
            st = entry.stat()
            backups.append(
                {
                    "filename": entry.name,
                    "size": format_bytes(st.st_size),
                    "bytes": st.st_size,
                    "date": datetime.fromtimestamp(st.st_mtime).strftime(
                        "%Y-%m-%d %H:%M:%S"
                    ),
                    "mtime": st.st_mtime,
                }
            )
        backups.sort(key=lambda b: b["mtime"], reverse=True)
        return backups

    def create(self, now: datetime | None = None) -> dict:
        now = now or datetime.now()
        filename = f"backup_{now:%Y-%m-%d_%H%M%S}.sql"
        path = os.path.join(self.backup_dir, filename)
        self.ensure_backup_dir()
        if self.try_mysqldump(path):
            if self.verbose:
                print(tl("[INFO] Backup written by mysqldump: {path}").format(path=path))
            return {"success": True, "filename": filename, "method": "mysqldump"}
        return self.create_simple_backup(filename, now=now)

    def try_mysqldump(self, path: str) -> bool:
        binary = shutil.which(self.mysqldump_bin)
        if not binary or not self.db_config.get("db_name"):
            return False
        cmd = [
            binary,
            f"--host={self.db_config.get('db_host', 'localhost')}",
            f"--port={self.db_config.get('db_port') or 3306}",
            f"--user={self.db_config.get('db_user', '')}",
            self.db_config["db_name"],
        ]
        env = dict(os.environ, MYSQL_PWD=self.db_config.get("db_password") or "")
        try:
            with open(path, "w", encoding="utf-8") as out:
                proc = subprocess.run(
                    cmd, stdout=out, stderr=subprocess.PIPE, env=env, check=False
                )
        except OSError as e:
            if self.verbose:
                print(tl("[WARN] mysqldump could not be run: {error}").format(error=e))
            self._remove_partial(path)
            return False
        ok = proc.returncode == 0 and os.path.exists(path) and os.path.getsize(path) > 0
        if not ok:
            if self.verbose:
                print(
                    tl("[WARN] mysqldump failed with exit code {code}").format(
                        code=proc.returncode
                    )
                )
            self._remove_partial(path)
        return ok

    @staticmethod
    def _remove_partial(path: str):
        if os.path.exists(path):
            os.remove(path)

    def create_simple_backup(self, filename: str, now: datetime | None = None) -> dict:
        if self.connection is None:
            raise DumpError(tl("A database connection is required to create a backup."))
        now = now or datetime.now()
        path = os.path.join(self.backup_dir, filename)
        self.ensure_backup_dir()
        database = self.db_config.get("db_name", "")
        tables = self.connection.list_tables()
        if self.verbose:
            tables = tqdm(tables, unit="table", desc=tl("Backing up"))
        with open(path, "w", encoding="utf-8") as f:
            f.write(f"-- Backup created at {now:%Y-%m-%d %H:%M:%S}\n")
            f.write(f"-- Database: {database}\n\n")
            f.write("SET FOREIGN_KEY_CHECKS=0;\n\n")
            for table in tables:
                f.write(self.get_table_sql(table))
            f.write("SET FOREIGN_KEY_CHECKS=1;\n")
        return {"success": True, "filename": filename, "method": "simple"}

    def get_table_sql(self, table: str) -> str:
        lines = [self.connection.show_create_table(table).rstrip().rstrip(";") + ";\n\n"]
        for row in self.connection.iter_rows(table):
            values = ", ".join(quote_sql_value(v) for v in row)
            lines.append(f"INSERT INTO `{table}` VALUES ({values});\n")
        lines.append("\n")
        return "".join(lines)

    def get_backup_path(self, filename: str) -> str | None:
        path = self._path(filename)
        if path and os.path.isfile(path):
            return path
        return None

    def delete(self, filename: str) -> bool:
        path = self.get_backup_path(filename)
        if not path:
            return False
        os.remove(path)
        if self.verbose:
            print(tl("[INFO] Deleted backup {name}").format(name=filename))
        return True

    def prune(self, max_files: int) -> list[str]:
        """Deletes the oldest backups so that at most max_files remain."""
        if max_files <= 0:
            return []
        deleted = []
        for backup in self.list_backups()[max_files:]:
            if self.delete(backup["filename"]):
                deleted.append(backup["filename"])
        return deleted


# ---------- Command line ----------
def _load_config(config_file="restore_sql_dump.ini"):
    config = configparser.ConfigParser(
        allow_no_value=True, inline_comment_prefixes=("#", ";")
    )
    config_defaults = {}
    boolean_flags = {"verbose", "clear_existing"}
    if os.path.exists(config_file) and os.path.getsize(config_file) > 0:
        config.read(config_file)
        _parse_config_sections(config, config_defaults, boolean_flags)
    return config_defaults


def _parse_config_sections(config, config_defaults, boolean_flags):
    database_mapping = {
        "host": "db_host",
        "port": "db_port",
        "user": "db_user",
        "password": "db_password",
        "name": "db_name",
    }
    backup_mapping = {
        "backup-dir": "backup_dir",
        "mysqldump": "mysqldump_bin",
        "max-files": "max_files",
    }
    import_mapping = {
        "migrate-command": "migrate_command",
        "clear-existing": "clear_existing",
        "verbose": "verbose",
    }

    def load_section(section_name, mapping):
        if section_name not in config:
            return
        for key, dest in mapping.items():
            if key in config[section_name]:
                if dest in boolean_flags:
                    if config[section_name][key] is None or config.getboolean(
                        section_name, key
                    ):
                        config_defaults[dest] = True
                else:
                    config_defaults[dest] = config.get(section_name, key)

    load_section("database", database_mapping)
    load_section("backup", backup_mapping)
    load_section("import", import_mapping)


def _create_arg_parser(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
    p.add_argument("input", nargs="?", help=tl("SQL dump file to import or analyze"))
    p.add_argument(
        "--input", "-i", dest="input_override", help=tl("Override positional input file")
    )
    p.add_argument(
        "--verbose", "-v", action="store_true", help=tl("Print diagnostic information")
    )

    # --- Mutually Exclusive Actions ---
    action_group = p.add_mutually_exclusive_group()
    action_group.add_argument(
        "--import",
        dest="import_full",
        action="store_true",
        help=tl("Restore the whole dump: tables are dropped and recreated."),
    )
    action_group.add_argument(
        "--import-data",
        action="store_true",
        help=tl("Import only the rows of the dump into the current schema."),
    )
    action_group.add_argument(
        "--info",
        action="store_true",
        help=tl("Analyze dump and print summary without touching the database."),
    )
    action_group.add_argument(
        "--backup", action="store_true", help=tl("Create a new backup file.")
    )
    action_group.add_argument(
        "--list-backups", action="store_true", help=tl("List existing backups.")
    )
    action_group.add_argument(
        "--delete-backup", metavar="FILENAME", help=tl("Delete a backup file.")
    )
    action_group.add_argument(
        "--prune",
        type=int,
        metavar="N",
        help=tl("Keep only the N most recent backups."),
    )
    action_group.add_argument(
        "--stats", action="store_true", help=tl("Print database size and table count.")
    )

    # --- Options for Specific Actions ---
    p.add_argument(
        "--clear-existing",
        action="store_true",
        help=tl("[--import-data] Truncate each table before its first INSERT."),
    )
    p.add_argument(
        "--migrate-command",
        help=tl("[--import] Command that runs pending migrations (--force is added)."),
    )
    p.add_argument("--backup-dir", help=tl("Directory holding backup files."))
    p.add_argument("--mysqldump", dest="mysqldump_bin", help=tl("mysqldump binary."))

    db_group = p.add_argument_group(tl("Database Connection"))
    db_group.add_argument("--db-host", help=tl("Database host."))
    db_group.add_argument("--db-port", type=int, help=tl("Database port."))
    db_group.add_argument("--db-user", help=tl("Database user."))
    db_group.add_argument("--db-password", help=tl("Database password."))
    db_group.add_argument("--db-name", help=tl("Database name."))
    return p


def _validate_args(p, args, argv=None):
    args.input = args.input_override or args.input

    needs_input = args.import_full or args.import_data or args.info
    needs_db = args.import_full or args.import_data or args.backup or args.stats
    if not any(
        [
            needs_input,
            args.backup,
            args.list_backups,
            args.delete_backup,
            args.prune is not None,
            args.stats,
        ]
    ):
        p.error(
            tl(
                "You must specify an action (e.g. --import, --import-data, --info, --backup)."
            )
        )
    if needs_input:
        if not args.input:
            p.error(tl("You must provide an input dump file (e.g., `script.py dump.sql`)"))
        if not os.path.exists(args.input):
            print(tl("File not found: {path}").format(path=args.input))
            sys.exit(2)
    if needs_db and (not args.db_user or not args.db_name):
        p.error(tl("This action requires --db-user and --db-name."))
    argv = sys.argv[1:] if argv is None else argv
    # a clear-existing default from the config file applies to --import-data only
    if "--clear-existing" in argv and not args.import_data:
        p.error(tl("--clear-existing can only be used with --import-data."))
    if args.prune is not None and args.prune < 0:
        p.error(tl("--prune expects a non-negative number."))


def set_parse_arguments_and_config():
    parser = argparse.ArgumentParser(
        description=tl(
            "SQL Dump Restore: imports, merges and backs up MySQL databases."
        )
    )
    config_defaults = _load_config()
    parser = _create_arg_parser(parser)
    parser.set_defaults(
        db_host="localhost",
        db_port=3306,
        backup_dir=DEFAULT_BACKUP_DIR,
        mysqldump_bin="mysqldump",
        migrate_command=None,
    )
    parser.set_defaults(**config_defaults)
    args = parser.parse_args()
    _validate_args(parser, args)
    return args


def print_backups(backups):
    if not backups:
        print(tl("No backups found."))
        return
    print(f"{'Filename':<40} {'Size':>12} {'Date':>22}")
    print("-" * 76)
    for b in backups:
        print(f"{b['filename']:<40} {b['size']:>12} {b['date']:>22}")


def run_command(**kwargs):
    verbose = bool(kwargs.get("verbose"))
    if kwargs.get("info"):
        DumpAnalyzer(**kwargs).run()
        return
    if kwargs.get("list_backups") or kwargs.get("delete_backup") or (
        kwargs.get("prune") is not None
    ):
        manager = BackupManager(kwargs["backup_dir"], verbose=verbose)
        if kwargs.get("list_backups"):
            print_backups(manager.list_backups())
        elif kwargs.get("delete_backup"):
            if not manager.delete(kwargs["delete_backup"]):
                print(
                    tl("[ERROR] Backup not found: {name}").format(
                        name=kwargs["delete_backup"]
                    ),
                    file=sys.stderr,
                )
                sys.exit(1)
            print(tl("Deleted: {name}").format(name=kwargs["delete_backup"]))
        else:
            for name in manager.prune(int(kwargs["prune"])):
                print(tl("Deleted old backup: {name}").format(name=name))
        return

    with MySQLConnection(**kwargs) as connection:
        if kwargs.get("stats"):
            stats = connection.get_stats()
            print(tl("Database: {name}").format(name=stats["name"]))
            print(tl("Size: {size} MB").format(size=stats["size_mb"]))
            print(tl("Tables: {count}").format(count=stats["tables_count"]))
        elif kwargs.get("backup"):
            manager = BackupManager(
                kwargs["backup_dir"],
                connection=connection,
                db_config=kwargs,
                verbose=verbose,
                mysqldump_bin=kwargs.get("mysqldump_bin") or "mysqldump",
            )
            result = manager.create()
            print(tl("Done. Backup saved to: {name}").format(name=result["filename"]))
            max_files = int(kwargs.get("max_files") or 0)
            for name in manager.prune(max_files):
                print(tl("Deleted old backup: {name}").format(name=name))
        else:
            runner = (
                CommandMigrationRunner(kwargs["migrate_command"])
                if kwargs.get("migrate_command")
                else None
            )
            importer = DumpImporter(connection, migration_runner=runner, verbose=verbose)
            if kwargs.get("import_full"):
                result = importer.import_file(kwargs["inpath"], ImportMode.FULL)
                print(
                    tl("Done. {tables} tables restored.").format(
                        tables=result.tables_count
                    )
                )
                if result.migrations_run:
                    print(result.migrate_output)
            else:
                result = importer.import_file(
                    kwargs["inpath"],
                    ImportMode.DATA_ONLY,
                    clear_existing=bool(kwargs.get("clear_existing")),
                )
                print(
                    tl("Done. {inserted} inserts applied, {skipped} skipped.").format(
                        inserted=result.insert_count, skipped=result.skipped_count
                    )
                )
                if result.tables_cleared:
                    print(
                        tl("Tables cleared: {tables}").format(
                            tables=", ".join(result.tables_cleared)
                        )
                    )
                for error in result.errors:
                    print(tl("[ERROR] {error}").format(error=error), file=sys.stderr)


def main():
    args = set_parse_arguments_and_config()
    kwargs = vars(args)
    kwargs["inpath"] = kwargs.pop("input")
    kwargs.pop("input_override", None)
    try:
        run_command(**kwargs)
    except (DumpError, mysql.connector.Error) as e:
        print(tl("[ERROR] {error}").format(error=e), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
