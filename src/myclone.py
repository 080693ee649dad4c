#!/usr/bin/env python3
"""
MyClone - MySQL Database Cloner

A CLI tool and library for copying a MySQL database to another server or
schema. It can:
- Recreate tables from their canonical CREATE statements
- Copy row data with LOAD DATA LOCAL INFILE, falling back to batched INSERTs
- Recreate views in dependency order without a dependency graph
- Recreate triggers and stored routines with DEFINER clauses removed
- Keep foreign key checks disabled for the duration of the clone

MyClone is built on the MyRUG schema extraction code.

MyClone is (C) Copyright 2025 David Cutting, https://davecutting.uk

MyClone is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

MyClone is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with MyClone.  If not, see www.gnu.org/licenses

For more information see www.purplepixie.org/myrug
"""

import argparse
import codecs
import logging
import os
import re
import signal
import sys
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

try:
    import mysql.connector
    from mysql.connector import Error as MySQLError
    from mysql.connector import errorcode
    from mysql.connector.constants import FieldType
except ImportError:
    print("Error: mysql-connector-python is not installed.", file=sys.stderr)
    print("Install it with: pip install mysql-connector-python", file=sys.stderr)
    sys.exit(1)


logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS AND ENUMS
# ============================================================================

BATCH_SIZE = 500

# 3-byte names tried in order when a destination lacks utf8mb4.
LEGACY_CHARSET_ALIASES: Dict[str, Tuple[str, ...]] = {
    "utf8mb4": ("utf8", "utf8mb3"),
}

# MySQL character set -> Python codec used to write LOAD DATA spool files.
PYTHON_CODECS: Dict[str, str] = {
    "utf8mb4": "utf-8",
    "utf8mb3": "utf-8",
    "utf8": "utf-8",
    "latin1": "cp1252",
    "latin2": "iso8859-2",
    "latin5": "iso8859-9",
    "latin7": "iso8859-13",
    "ascii": "ascii",
    "binary": "latin-1",
    "cp1250": "cp1250",
    "cp1251": "cp1251",
    "cp1256": "cp1256",
    "cp1257": "cp1257",
    "greek": "iso8859-7",
    "hebrew": "iso8859-8",
    "koi8r": "koi8-r",
    "koi8u": "koi8-u",
    "sjis": "shift_jis",
    "cp932": "cp932",
    "ujis": "euc-jp",
    "eucjpms": "euc-jp",
    "euckr": "euc-kr",
    "gbk": "gbk",
    "gb2312": "gb2312",
    "gb18030": "gb18030",
    "big5": "big5",
}


class CopyStrategy(Enum):
    """How row data is moved from source to destination."""
    AUTO = "auto"
    FAST = "fast"
    BATCHED = "batched"


class ErrorClass(Enum):
    """Categories a database error can fall into while cloning."""
    UNRESOLVED_REFERENCE = "unresolved_reference"
    TRANSFER = "transfer"
    FATAL = "fatal"


# Errors meaning "an object this statement refers to does not exist yet".
UNRESOLVED_REFERENCE_ERRNOS = frozenset({
    errorcode.ER_NO_SUCH_TABLE,
    errorcode.ER_VIEW_INVALID,
})


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass
class TableCloneOption:
    """
    A table requested for cloning.

    Attributes:
        name: Table name in the source database
        copy_data: Whether rows are copied after the structure
    """
    name: str
    copy_data: bool = True


@dataclass
class TableDescriptor:
    """
    A table or view as listed by the source catalog.

    Attributes:
        name: Table name
        is_base_table: True for storage tables, False for views
    """
    name: str
    is_base_table: bool


@dataclass
class ObjectDefinition:
    """
    A named object and the DDL that recreates it.

    Used for views, and as the unit of work of the dependency-ordered
    builder.

    Attributes:
        name: Object name
        create_statement: CREATE statement text
    """
    name: str
    create_statement: str


@dataclass
class TriggerDefinition:
    """
    A trigger split into the parts needed to rebuild its CREATE statement.

    Attributes:
        name: Trigger name
        table: Table the trigger is attached to
        timing: BEFORE or AFTER
        event: INSERT, UPDATE, or DELETE
        body: Trigger body (ACTION_STATEMENT)
        schema: Schema of the table, if reported by the catalog
    """
    name: str
    table: str
    timing: str
    event: str
    body: str
    schema: Optional[str] = None


@dataclass
class RoutineDefinition:
    """
    A stored procedure or function.

    Attributes:
        name: Routine name
        type: 'PROCEDURE' or 'FUNCTION'
        create_statement: SHOW CREATE output, empty when not visible
    """
    name: str
    type: str  # PROCEDURE or FUNCTION
    create_statement: str = ""

    @property
    def is_function(self) -> bool:
        return self.type.upper() == "FUNCTION"


@dataclass
class CloneRequest:
    """
    Everything a single clone operation needs besides the two connections.

    Attributes:
        tables: Tables to clone in order; None means every table in the source
        copy_views: Whether views are recreated
        copy_triggers: Whether triggers are recreated
        copy_routines: Whether procedures and functions are recreated
        strategy: Data copy strategy
        charset: Charset requested for bulk loads (default: source's charset)
        batch_size: Rows per INSERT statement on the batched path
        progress: Callback receiving human-readable progress messages
        cancel_event: Object with is_set(); checked between clone steps
    """
    tables: Optional[List[TableCloneOption]] = None
    copy_views: bool = True
    copy_triggers: bool = True
    copy_routines: bool = True
    strategy: CopyStrategy = CopyStrategy.AUTO
    charset: Optional[str] = None
    batch_size: int = BATCH_SIZE
    progress: Optional[Callable[[str], None]] = None
    cancel_event: Optional[Any] = None

    def __post_init__(self):
        if isinstance(self.strategy, str):
            self.strategy = CopyStrategy(self.strategy.lower())
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.tables is not None:
            seen = set()
            for option in self.tables:
                if option.name in seen:
                    raise ValueError(f"Table '{option.name}' is requested more than once")
                seen.add(option.name)


@dataclass
class CloneSummary:
    """Counts of what a finished clone operation created."""
    tables: List[str] = field(default_factory=list)
    rows: Dict[str, int] = field(default_factory=dict)
    views: List[str] = field(default_factory=list)
    triggers: List[str] = field(default_factory=list)
    routines: List[str] = field(default_factory=list)


# ============================================================================
# ERRORS
# ============================================================================

class CloneError(Exception):
    """Raised when a clone operation cannot continue."""


class DependencyResolutionError(CloneError):
    """
    Raised when a builder pass creates nothing while objects remain pending.

    This means a dependency cycle or a reference to an object that will never
    exist. The last unresolved-reference error is kept as ``last_error`` and
    chained as ``__cause__``.
    """

    def __init__(self, pending: Sequence[str], last_error: Optional[BaseException] = None):
        self.pending = list(pending)
        self.last_error = last_error
        message = f"Unable to resolve dependencies for: {', '.join(self.pending)}"
        if last_error is not None:
            message += f" (last error: {last_error})"
        super().__init__(message)


class BulkLoadError(CloneError):
    """Raised when LOAD DATA did not load every row that was spooled."""


class CloneCancelledError(Exception):
    """Raised when the cancel event is set between clone steps."""


# Failures of the LOAD DATA path that the batched path can recover from.
TRANSFER_ERRORS = (MySQLError, OSError, UnicodeError, BulkLoadError)


def classify_error(error: BaseException,
                   unresolved_errnos: Iterable[int] = UNRESOLVED_REFERENCE_ERRNOS,
                   during_transfer: bool = False) -> ErrorClass:
    """
    Classify an error raised while cloning.

    Args:
        error: The exception to classify
        unresolved_errnos: MySQL error numbers meaning "object not created yet"
        during_transfer: True when the error came from the LOAD DATA path

    Returns:
        The ErrorClass of the error
    """
    if isinstance(error, MySQLError) and error.errno in frozenset(unresolved_errnos):
        return ErrorClass.UNRESOLVED_REFERENCE
    if during_transfer and isinstance(error, TRANSFER_ERRORS):
        return ErrorClass.TRANSFER
    return ErrorClass.FATAL


# ============================================================================
# PROGRESS AND CANCELLATION
# ============================================================================

class ProgressReporter:
    """Sends progress messages to the debug log and the caller's callback."""

    def __init__(self, callback: Optional[Callable[[str], None]] = None):
        self.callback = callback

    def __call__(self, message: str):
        logger.debug(message)
        if self.callback is not None:
            self.callback(message)


def make_cancel_check(cancel_event: Optional[Any]) -> Callable[[], None]:
    """Return a function that raises CloneCancelledError once the event is set."""
    def check():
        if cancel_event is not None and cancel_event.is_set():
            raise CloneCancelledError("Clone operation cancelled")
    return check


# ============================================================================
# DATABASE HELPERS
# ============================================================================

def quote_identifier(name: str) -> str:
    """Wrap a MySQL identifier in backticks."""
    return "`" + name.replace("`", "``") + "`"


def execute_query(connection, query: str, params: Optional[tuple] = None) -> List[tuple]:
    """
    Execute a query and return results.

    Args:
        connection: Open MySQL connection
        query: SQL query to execute
        params: Optional query parameters

    Returns:
        List of result tuples
    """
    cursor = connection.cursor(buffered=True)
    try:
        cursor.execute(query, params or ())
        return cursor.fetchall()
    finally:
        cursor.close()


def execute_statement(connection, statement: str) -> int:
    """
    Execute a statement that returns no rows.

    Returns:
        The cursor's row count
    """
    cursor = connection.cursor()
    try:
        cursor.execute(statement)
        return cursor.rowcount
    finally:
        cursor.close()


def _iter_query(connection, query: str, params: Optional[tuple] = None) -> Iterator[tuple]:
    # Buffered so the connection stays usable while the caller consumes rows.
    cursor = connection.cursor(buffered=True)
    try:
        cursor.execute(query, params or ())
        for row in cursor:
            yield row
    finally:
        cursor.close()


@contextmanager
def _select_all(connection, table: str):
    """Stream every row of a table through an unbuffered cursor."""
    cursor = connection.cursor(buffered=False)
    try:
        cursor.execute(f"SELECT * FROM {quote_identifier(table)}")
        yield cursor
    except BaseException:
        _discard_unread(cursor)
        raise
    finally:
        cursor.close()


def _discard_unread(cursor):
    # An unbuffered cursor cannot be closed with rows still on the wire.
    try:
        for _ in cursor:
            pass
    except MySQLError as err:
        logger.debug("Could not drain source cursor: %s", err)


# ============================================================================
# METADATA EXTRACTION
# ============================================================================

def current_database(connection) -> Optional[str]:
    """
    Return the connection's current database name.

    The configured database is preferred; SELECT DATABASE() is used when
    the connection has none configured.
    """
    if connection.database:
        return connection.database
    rows = execute_query(connection, "SELECT DATABASE()")
    if rows and rows[0][0]:
        return str(rows[0][0])
    return None


def iter_tables(connection) -> Iterator[TableDescriptor]:
    """
    Yield every table and view in the current database, ordered by name.
    """
    query = """
        SELECT TABLE_NAME, TABLE_TYPE
        FROM information_schema.TABLES
        WHERE TABLE_SCHEMA = DATABASE()
        ORDER BY TABLE_NAME
    """
    for name, table_type in _iter_query(connection, query):
        yield TableDescriptor(name=name, is_base_table=(table_type or "").upper() == "BASE TABLE")


def list_tables(connection) -> List[str]:
    """
    List the base tables of the current database.

    Args:
        connection: Open MySQL connection

    Returns:
        Base-table names in lexicographic order
    """
    return sorted(table.name for table in iter_tables(connection) if table.is_base_table)


def show_create_table(connection, table: str) -> Optional[str]:
    """Return the canonical CREATE TABLE statement for a table."""
    rows = execute_query(connection, f"SHOW CREATE TABLE {quote_identifier(table)}")
    if not rows:
        return None
    return rows[0][1]


def iter_views(connection) -> Iterator[ObjectDefinition]:
    """
    Yield the views of the current database with their CREATE statements.
    """
    query = """
        SELECT TABLE_NAME
        FROM information_schema.VIEWS
        WHERE TABLE_SCHEMA = DATABASE()
        ORDER BY TABLE_NAME
    """
    for (view_name,) in _iter_query(connection, query):
        rows = execute_query(connection, f"SHOW CREATE VIEW {quote_identifier(view_name)}")
        if rows:
            yield ObjectDefinition(name=view_name, create_statement=rows[0][1])


def iter_triggers(connection) -> Iterator[TriggerDefinition]:
    """
    Yield the triggers of the current database.

    Triggers are returned in firing order per table and event so that
    recreating them in sequence preserves ACTION_ORDER.
    """
    query = """
        SELECT
            TRIGGER_NAME,
            EVENT_OBJECT_SCHEMA,
            EVENT_OBJECT_TABLE,
            ACTION_TIMING,
            EVENT_MANIPULATION,
            ACTION_STATEMENT
        FROM information_schema.TRIGGERS
        WHERE TRIGGER_SCHEMA = DATABASE()
        ORDER BY EVENT_OBJECT_TABLE, ACTION_TIMING, EVENT_MANIPULATION, ACTION_ORDER
    """
    for row in _iter_query(connection, query):
        yield TriggerDefinition(
            name=row[0],
            schema=row[1],
            table=row[2],
            timing=row[3],  # BEFORE or AFTER
            event=row[4],   # INSERT, UPDATE, or DELETE
            body=row[5]
        )


def iter_routines(connection) -> Iterator[RoutineDefinition]:
    """
    Yield the stored procedures and functions of the current database.

    The CREATE statement is empty when the account may not see it.
    """
    query = """
        SELECT ROUTINE_NAME, ROUTINE_TYPE
        FROM information_schema.ROUTINES
        WHERE ROUTINE_SCHEMA = DATABASE()
        ORDER BY ROUTINE_TYPE, ROUTINE_NAME
    """
    for routine_name, routine_type in _iter_query(connection, query):
        routine = RoutineDefinition(name=routine_name, type=routine_type)
        kind = "FUNCTION" if routine.is_function else "PROCEDURE"
        rows = execute_query(connection, f"SHOW CREATE {kind} {quote_identifier(routine_name)}")
        if rows and rows[0][2]:
            routine.create_statement = rows[0][2]
        yield routine


def iter_character_sets(connection) -> Iterator[str]:
    """Yield the character set names the server supports."""
    query = "SELECT CHARACTER_SET_NAME FROM information_schema.CHARACTER_SETS"
    for (name,) in _iter_query(connection, query):
        yield name


# ============================================================================
# CONSTRAINT GUARD
# ============================================================================

def acquire(destination) -> int:
    """
    Disable foreign key checks on the destination.

    Returns:
        The original @@FOREIGN_KEY_CHECKS value
    """
    rows = execute_query(destination, "SELECT @@FOREIGN_KEY_CHECKS")
    original = int(rows[0][0])
    execute_statement(destination, "SET FOREIGN_KEY_CHECKS=0")
    return original


def release(destination, original: int):
    """Restore the destination's @@FOREIGN_KEY_CHECKS value."""
    execute_statement(destination, f"SET FOREIGN_KEY_CHECKS={int(original)}")


class ForeignKeyChecksGuard:
    """
    Keeps foreign key checks disabled on the destination while in use.

    The original value is restored exactly once, however the guarded block
    exits.
    """

    def __init__(self, destination):
        self.destination = destination
        self.original: Optional[int] = None
        self._held = False

    def acquire(self) -> int:
        if self._held:
            raise CloneError("Foreign key checks are already disabled by this guard")
        self.original = acquire(self.destination)
        self._held = True
        logger.debug("FOREIGN_KEY_CHECKS disabled (was %s)", self.original)
        return self.original

    def release(self):
        if not self._held:
            return
        self._held = False
        release(self.destination, self.original)
        logger.debug("FOREIGN_KEY_CHECKS restored to %s", self.original)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


# ============================================================================
# CHARSET NEGOTIATION
# ============================================================================

def negotiate_charset(destination, requested: Optional[str]) -> Optional[str]:
    """
    Find a destination character set compatible with the requested one.

    Args:
        destination: Open destination connection
        requested: Character set name, e.g. the source connection's charset

    Returns:
        The requested charset, its legacy 3-byte alias for utf8mb4, or None
    """
    if not requested:
        return None
    requested = requested.lower()
    supported = {name.lower() for name in iter_character_sets(destination)}
    for candidate in (requested,) + LEGACY_CHARSET_ALIASES.get(requested, ()):
        if candidate in supported:
            return candidate
    return None


def python_codec(charset: Optional[str]) -> str:
    """Return the Python codec matching a MySQL character set."""
    if not charset:
        return "utf-8"
    return PYTHON_CODECS.get(charset.lower(), charset)


# ============================================================================
# DDL TRANSFORMS
# ============================================================================

_VERSIONED_COMMENT_RE = re.compile(r"/\*!\d{5,6}\s*.*?\*/\s*", re.DOTALL)

_DEFINER_RE = re.compile(
    r"\s*DEFINER\s*=\s*"
    r"(?:`[^`]*`|'[^']*'|\"[^\"]*\"|[^\s@]+)"
    r"(?:\s*@\s*(?:`[^`]*`|'[^']*'|\"[^\"]*\"|[^\s]+))?",
    re.IGNORECASE
)

_CREATE_RE = re.compile(r"CREATE\b", re.IGNORECASE)


def strip_versioned_comments(sql: str) -> str:
    """Remove /*!NNNNN ... */ comments."""
    if not sql:
        return sql
    return _VERSIONED_COMMENT_RE.sub("", sql)


def strip_definer(sql: str) -> str:
    """
    Remove the DEFINER=user@host clause.

    The account running the clone may not be allowed to create objects for
    the original definer. SQL SECURITY DEFINER is left alone.
    """
    if not sql:
        return sql
    return _DEFINER_RE.sub("", sql)


def rewrite_schema(sql: str, source_schema: Optional[str], destination_schema: Optional[str]) -> str:
    """
    Replace `source_schema`. qualifiers with `destination_schema`.

    Nothing is rewritten unless both names are known and differ.
    """
    if not sql or not source_schema or not destination_schema:
        return sql
    if source_schema.lower() == destination_schema.lower():
        return sql
    pattern = re.compile(re.escape(quote_identifier(source_schema)) + r"\.", re.IGNORECASE)
    target = quote_identifier(destination_schema) + "."
    return pattern.sub(lambda _: target, sql)


def ensure_create_prefix(sql: str) -> str:
    """Make sure the statement starts with CREATE."""
    if not sql:
        return sql
    sql = sql.lstrip()
    if _CREATE_RE.match(sql):
        return sql
    return "CREATE " + sql


def sanitize_statement(sql: str, source_schema: Optional[str] = None,
                       destination_schema: Optional[str] = None) -> str:
    """
    Prepare a view, trigger or routine CREATE statement for the destination.

    Applies, in order: versioned comment removal, DEFINER removal, schema
    rewriting and CREATE re-prefixing.
    """
    sql = strip_versioned_comments(sql)
    sql = strip_definer(sql)
    sql = rewrite_schema(sql, source_schema, destination_schema)
    return ensure_create_prefix(sql)


# ============================================================================
# SCHEMA CLONING
# ============================================================================

def clone_table(source, destination, table: str):
    """
    Recreate a table's structure on the destination.

    Args:
        source: Source connection
        destination: Destination connection
        table: Table name
    """
    create_statement = show_create_table(source, table)
    if not create_statement:
        raise CloneError(f"Source returned no CREATE statement for table '{table}'")
    execute_statement(destination, f"DROP TABLE IF EXISTS {quote_identifier(table)}")
    execute_statement(destination, create_statement)


def build_trigger_statement(trigger: TriggerDefinition, source_schema: Optional[str] = None) -> str:
    """
    Rebuild a trigger's CREATE statement from its catalog fields.

    The table is qualified with the source schema when it is known so that
    rewrite_schema can retarget it.
    """
    schema = source_schema or trigger.schema
    table_ref = quote_identifier(trigger.table)
    if schema:
        table_ref = f"{quote_identifier(schema)}.{table_ref}"
    return (
        f"CREATE TRIGGER {quote_identifier(trigger.name)} {trigger.timing} {trigger.event} "
        f"ON {table_ref} FOR EACH ROW {trigger.body};"
    )


def clone_trigger(destination, trigger: TriggerDefinition,
                  source_schema: Optional[str] = None, destination_schema: Optional[str] = None):
    """Drop and recreate a trigger on the destination."""
    statement = sanitize_statement(
        build_trigger_statement(trigger, source_schema), source_schema, destination_schema
    )
    execute_statement(destination, f"DROP TRIGGER IF EXISTS {quote_identifier(trigger.name)}")
    execute_statement(destination, statement)


def clone_routine(destination, routine: RoutineDefinition,
                  source_schema: Optional[str] = None, destination_schema: Optional[str] = None):
    """Drop and recreate a stored function or procedure on the destination."""
    kind = "FUNCTION" if routine.is_function else "PROCEDURE"
    statement = sanitize_statement(routine.create_statement, source_schema, destination_schema)
    execute_statement(destination, f"DROP {kind} IF EXISTS {quote_identifier(routine.name)}")
    execute_statement(destination, statement)


# ============================================================================
# DEPENDENCY-ORDERED BUILDER
# ============================================================================

class DependencyOrderedBuilder:
    """
    Creates objects that may refer to each other, in whatever order works.

    No dependency graph is computed. Each pass tries every pending object;
    failures caused by a missing referenced object are retried on the next
    pass, any other failure aborts. A pass that creates nothing means a cycle
    or a permanently missing dependency.
    """

    def __init__(self, connection, definitions: Iterable[ObjectDefinition],
                 drop_template: str = "DROP VIEW IF EXISTS {name}",
                 progress: Optional[Callable[[str], None]] = None,
                 cancel_check: Optional[Callable[[], None]] = None,
                 unresolved_errnos: Iterable[int] = UNRESOLVED_REFERENCE_ERRNOS,
                 kind: str = "view"):
        self.connection = connection
        self.pending: List[ObjectDefinition] = list(definitions)
        self.created: List[str] = []
        self.passes = 0
        self.drop_template = drop_template
        self.progress = progress or ProgressReporter()
        self.cancel_check = cancel_check or (lambda: None)
        self.unresolved_errnos = frozenset(unresolved_errnos)
        self.kind = kind

    def build(self) -> List[str]:
        """
        Create every pending object.

        Returns:
            Names of the created objects, in creation order

        Raises:
            DependencyResolutionError: if a pass makes no progress
        """
        cursor = self.connection.cursor()
        try:
            for definition in self.pending:
                cursor.execute(self.drop_template.format(name=quote_identifier(definition.name)))

            while self.pending:
                self.passes += 1
                created_this_pass = 0
                last_error = None

                for definition in list(self.pending):
                    self.cancel_check()
                    try:
                        cursor.execute(definition.create_statement)
                    except MySQLError as err:
                        if classify_error(err, self.unresolved_errnos) is not ErrorClass.UNRESOLVED_REFERENCE:
                            raise
                        logger.debug("Deferring %s '%s': %s", self.kind, definition.name, err)
                        last_error = err
                        continue
                    self.pending.remove(definition)
                    self.created.append(definition.name)
                    created_this_pass += 1

                self.progress(
                    f"  Pass {self.passes}: created {created_this_pass} {self.kind}(s), "
                    f"{len(self.pending)} pending"
                )
                if not created_this_pass and self.pending:
                    raise DependencyResolutionError(
                        [definition.name for definition in self.pending], last_error
                    ) from last_error
        finally:
            cursor.close()

        return self.created


# ============================================================================
# DATA MOVER
# ============================================================================

_SPECIAL_CHARS = "\\\t\n\r\x00"
_TEXT_ESCAPES = {"\\": "\\\\", "\t": "\\t", "\n": "\\n", "\r": "\\r", "\x00": "\\0"}
_BYTES_ESCAPES = {key.encode(): value.encode() for key, value in _TEXT_ESCAPES.items()}
_TEXT_ESCAPE_RE = re.compile("[" + re.escape(_SPECIAL_CHARS) + "]")
_BYTES_ESCAPE_RE = re.compile(b"[" + re.escape(_SPECIAL_CHARS.encode()) + b"]")


def format_timedelta(value: timedelta) -> str:
    """Render a TIME value the way MySQL expects it: [-]H:MM:SS[.ffffff]."""
    sign = "-" if value < timedelta(0) else ""
    value = abs(value)
    hours, remainder = divmod(value.days * 86400 + value.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    text = f"{sign}{hours}:{minutes:02d}:{seconds:02d}"
    if value.microseconds:
        text += f".{value.microseconds:06d}"
    return text


def encode_load_data_field(value: Any, encoding: str = "utf-8") -> bytes:
    """
    Encode one column value in LOAD DATA's default text format.

    Args:
        value: Value as returned by the source cursor
        encoding: Python codec of the file's character set

    Returns:
        Escaped field bytes (\\N for NULL)
    """
    if value is None:
        return b"\\N"
    if isinstance(value, (bytes, bytearray)):
        return _BYTES_ESCAPE_RE.sub(lambda m: _BYTES_ESCAPES[m.group(0)], bytes(value))
    if isinstance(value, bool):
        text = "1" if value else "0"
    elif isinstance(value, timedelta):
        text = format_timedelta(value)
    elif isinstance(value, (set, frozenset)):
        text = ",".join(sorted(value))
    elif isinstance(value, float):
        text = repr(value)
    else:
        text = str(value)
    return _TEXT_ESCAPE_RE.sub(lambda m: _TEXT_ESCAPES[m.group(0)], text).encode(encoding)


class DataMover:
    """
    Copies table rows from source to destination.

    The fast path spools rows to a temporary file and loads it with
    LOAD DATA LOCAL INFILE. If that fails the destination table is emptied
    and the rows are sent again as multi-row INSERT statements.
    """

    def __init__(self, source, destination, strategy: CopyStrategy = CopyStrategy.AUTO,
                 batch_size: int = BATCH_SIZE, progress: Optional[Callable[[str], None]] = None,
                 charset: Optional[str] = None):
        self.source = source
        self.destination = destination
        self.strategy = strategy
        self.batch_size = batch_size
        self.progress = progress or ProgressReporter()
        self.requested_charset = charset
        self.negotiated_charset: Optional[str] = None
        self.load_charset: Optional[str] = None
        self.load_encoding: Optional[str] = None
        self.statements_executed = 0
        self._charset_applied = False

    def copy(self, table: str) -> int:
        """
        Copy every row of a table.

        Args:
            table: Table name (same on both sides)

        Returns:
            Number of rows copied
        """
        if self.strategy is CopyStrategy.BATCHED:
            return self.copy_batched(table)

        try:
            return self.copy_fast(table)
        except Exception as err:
            if classify_error(err, during_transfer=True) is not ErrorClass.TRANSFER:
                raise
            logger.warning("Bulk load of '%s' failed: %s", table, err)
            self.progress(f"  Bulk load of '{table}' failed ({err}); falling back to batched inserts...")
            execute_statement(self.destination, f"DELETE FROM {quote_identifier(table)}")
            return self.copy_batched(table)

    def apply_charset(self):
        """
        Negotiate the destination charset once.

        The negotiated charset is switched on through the connector so that
        the client encoding and the server session agree. The spool file's
        charset is the negotiated one when Python can encode it, otherwise
        the destination's UTF-8 charset; LOAD DATA always names it.
        """
        if self._charset_applied:
            return
        self._charset_applied = True
        requested = self.requested_charset or self.source.charset
        negotiated = negotiate_charset(self.destination, requested)
        if negotiated:
            self.destination.set_charset_collation(negotiated)
            self.negotiated_charset = negotiated
            logger.debug("Destination session uses character set %s", negotiated)

        self.load_charset, self.load_encoding = self._spool_charset(negotiated)
        if negotiated is None:
            if self.load_charset:
                fallback = f"bulk loads will use {self.load_charset}."
            else:
                fallback = "rows will be sent as INSERT statements."
            self.progress(f"  Character set '{requested}' is not supported by the destination; {fallback}")

    def _spool_charset(self, negotiated: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        if negotiated:
            codec = python_codec(negotiated)
            try:
                return negotiated, codecs.lookup(codec).name
            except LookupError:
                logger.debug("No Python codec for character set %s", negotiated)
        utf8 = negotiate_charset(self.destination, "utf8mb4")
        if utf8:
            return utf8, "utf-8"
        return None, None

    def copy_fast(self, table: str) -> int:
        """Copy a table with LOAD DATA LOCAL INFILE."""
        self.apply_charset()
        if self.load_charset is None:
            raise BulkLoadError("The destination has no character set the spool file can be written in")
        fd, path = tempfile.mkstemp(prefix="myclone-", suffix=".tsv")
        try:
            rows = 0
            with os.fdopen(fd, "wb") as spool, _select_all(self.source, table) as cursor:
                columns = [column[0] for column in cursor.description]
                bit_columns = {column[0] for column in cursor.description if column[1] == FieldType.BIT}
                for row in cursor:
                    spool.write(b"\t".join(encode_load_data_field(value, self.load_encoding) for value in row))
                    spool.write(b"\n")
                    rows += 1

            if not rows:
                return 0

            statement = self._load_data_statement(path, table, columns, bit_columns)
            loaded = execute_statement(self.destination, statement)
            if loaded != rows:
                raise BulkLoadError(f"LOAD DATA loaded {loaded} of {rows} row(s) into '{table}'")
            return rows
        finally:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

    def _load_data_statement(self, path: str, table: str, columns: List[str],
                             bit_columns: Iterable[str] = ()) -> str:
        path = path.replace("\\", "/").replace("'", "\\'")
        bit_columns = set(bit_columns)
        targets = []
        assignments = []
        for index, column in enumerate(columns):
            if column in bit_columns:
                # A text field loads into BIT as its bytes, so go through a number.
                variable = f"@bit_{index}"
                targets.append(variable)
                assignments.append(f"{quote_identifier(column)} = CAST({variable} AS UNSIGNED)")
            else:
                targets.append(quote_identifier(column))

        statement = (
            f"LOAD DATA LOCAL INFILE '{path}' INTO TABLE {quote_identifier(table)} "
            f"CHARACTER SET {self.load_charset} "
            "FIELDS TERMINATED BY '\\t' ESCAPED BY '\\\\' "
            "LINES TERMINATED BY '\\n' "
            f"({', '.join(targets)})"
        )
        if assignments:
            statement += f" SET {', '.join(assignments)}"
        return statement

    def copy_batched(self, table: str) -> int:
        """
        Copy a table with multi-row INSERT statements of up to batch_size rows.

        Buffered rows are flushed even when reading the source fails.
        """
        copied = 0
        with _select_all(self.source, table) as source_cursor:
            columns = [column[0] for column in source_cursor.description]
            row_placeholder = "(" + ", ".join(["%s"] * len(columns)) + ")"
            prefix = (
                f"INSERT INTO {quote_identifier(table)} "
                f"({', '.join(quote_identifier(column) for column in columns)}) VALUES "
            )

            cursor = self.destination.cursor()
            batch: List[Sequence[Any]] = []
            try:
                try:
                    for row in source_cursor:
                        batch.append(row)
                        if len(batch) >= self.batch_size:
                            rows, batch = batch, []
                            copied += self._flush(cursor, prefix, row_placeholder, rows)
                finally:
                    if batch:
                        rows, batch = batch, []
                        copied += self._flush(cursor, prefix, row_placeholder, rows)
            finally:
                cursor.close()
        return copied

    def _flush(self, cursor, prefix: str, row_placeholder: str, rows: List[Sequence[Any]]) -> int:
        statement = prefix + ", ".join([row_placeholder] * len(rows)) + ";"
        params = [value for row in rows for value in row]
        cursor.execute(statement, params)
        self.statements_executed += 1
        return len(rows)


# ============================================================================
# ORCHESTRATION
# ============================================================================

class DatabaseCloner:
    """
    Clones a source database onto a destination connection.

    Order: tables (structure, then data), views, triggers, routines. Foreign
    key checks on the destination are disabled for the whole run and
    restored afterwards, including on errors and cancellation.
    """

    def __init__(self, source, destination, request: Optional[CloneRequest] = None):
        self.source = source
        self.destination = destination
        self.request = request or CloneRequest()
        self.progress = ProgressReporter(self.request.progress)
        self.check_cancelled = make_cancel_check(self.request.cancel_event)
        self.mover = DataMover(
            source, destination,
            strategy=self.request.strategy,
            batch_size=self.request.batch_size,
            progress=self.progress,
            charset=self.request.charset
        )
        self.summary = CloneSummary()
        self._schemas: Optional[Tuple[Optional[str], Optional[str]]] = None

    def run(self) -> CloneSummary:
        """
        Run the clone.

        Returns:
            Summary of the created objects

        Raises:
            CloneCancelledError: if the cancel event was set
            CloneError: on orchestration failures
            mysql.connector.Error: on any fatal database error
        """
        with ForeignKeyChecksGuard(self.destination):
            self.clone_tables()

            if self.request.copy_views:
                self.progress("Cloning views...")
                self.clone_views()

            if self.request.copy_triggers:
                self.progress("Cloning triggers...")
                self.clone_triggers()

            if self.request.copy_routines:
                self.progress("Cloning stored routines (functions/procedures)...")
                self.clone_routines()

            self.destination.commit()
            self.progress("Cloning completed successfully.")
        return self.summary

    def schemas(self) -> Tuple[Optional[str], Optional[str]]:
        """Source and destination database names, looked up once."""
        if self._schemas is None:
            self._schemas = (current_database(self.source), current_database(self.destination))
        return self._schemas

    def resolve_tables(self) -> List[Tuple[TableCloneOption, TableDescriptor]]:
        descriptors = {table.name: table for table in iter_tables(self.source)}
        if self.request.tables is None:
            return [
                (TableCloneOption(name=table.name, copy_data=True), table)
                for table in descriptors.values()
            ]

        resolved = []
        for option in self.request.tables:
            descriptor = descriptors.get(option.name)
            if descriptor is None:
                raise CloneError(f"Table '{option.name}' does not exist in the source database")
            resolved.append((option, descriptor))
        return resolved

    def clone_tables(self):
        for option, descriptor in self.resolve_tables():
            self.check_cancelled()
            if not descriptor.is_base_table:
                self.progress(f"Skipping '{descriptor.name}': not a base table.")
                continue

            self.progress(f"Cloning structure for table '{descriptor.name}'...")
            clone_table(self.source, self.destination, descriptor.name)
            self.summary.tables.append(descriptor.name)

            if option.copy_data:
                self.progress(f"Copying data for '{descriptor.name}'...")
                rows = self.mover.copy(descriptor.name)
                self.summary.rows[descriptor.name] = rows
                self.progress(f"  Copied {rows} row(s).")

    def clone_views(self):
        source_schema, destination_schema = self.schemas()
        definitions = [
            ObjectDefinition(
                name=view.name,
                create_statement=sanitize_statement(view.create_statement, source_schema, destination_schema)
            )
            for view in iter_views(self.source)
        ]
        builder = DependencyOrderedBuilder(
            self.destination,
            definitions,
            progress=self.progress,
            cancel_check=self.check_cancelled
        )
        self.summary.views.extend(builder.build())

    def clone_triggers(self):
        source_schema, destination_schema = self.schemas()
        for trigger in iter_triggers(self.source):
            self.check_cancelled()
            if trigger.table not in self.summary.tables:
                self.progress(f"  Skipping trigger '{trigger.name}': table '{trigger.table}' was not cloned.")
                continue
            self.progress(f"  Trigger '{trigger.name}' on '{trigger.table}'")
            clone_trigger(self.destination, trigger, source_schema, destination_schema)
            self.summary.triggers.append(trigger.name)

    def clone_routines(self):
        source_schema, destination_schema = self.schemas()
        for routine in iter_routines(self.source):
            self.check_cancelled()
            if not routine.create_statement:
                self.progress(f"  Skipping {routine.type.lower()} '{routine.name}': definition not visible.")
                continue
            self.progress(f"  {routine.type.capitalize()} '{routine.name}'")
            clone_routine(self.destination, routine, source_schema, destination_schema)
            self.summary.routines.append(routine.name)


def clone_database(source, destination, request: Optional[CloneRequest] = None, **options) -> CloneSummary:
    """
    Clone the source database onto the destination.

    Args:
        source: Open connection to the source database
        destination: Open connection to the destination database
        request: Clone settings; keyword options override its fields

    Returns:
        Summary of the created objects
    """
    if request is None:
        request = CloneRequest(**options)
    elif options:
        request = replace(request, **options)
    return DatabaseCloner(source, destination, request).run()


# ============================================================================
# CLI INTERFACE
# ============================================================================

class DatabaseConnection:
    """
    Opens a MySQL connection suitable for cloning.
    """

    def __init__(self, host: str, port: int, user: str, password: str, database: str,
                 charset: Optional[str] = None):
        """
        Initialize database connection parameters.

        Args:
            host: Database host
            port: Database port
            user: Database user
            password: Database password
            database: Database name
            charset: Connection character set (connector default if None)
        """
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.charset = charset
        self.connection = None

    def __enter__(self):
        """Context manager entry - establish connection."""
        params = {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'database': self.database,
            'allow_local_infile': True
        }
        if self.charset:
            params['charset'] = self.charset
        try:
            self.connection = mysql.connector.connect(**params)
            return self
        except MySQLError as e:
            print(f"Error connecting to database: {e}", file=sys.stderr)
            sys.exit(1)

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close connection."""
        if self.connection and self.connection.is_connected():
            self.connection.close()


def parse_connection_string(conn_str: str) -> Dict[str, Any]:
    """
    Parse a MySQL connection string.

    Format: user:password@host:port/database

    Args:
        conn_str: Connection string

    Returns:
        Dictionary with connection parameters
    """
    pattern = r'(?:([^:@]+)(?::([^@]+))?@)?([^:/@]+)(?::(\d+))?/(.+)'
    match = re.match(pattern, conn_str)

    if not match:
        print(f"Error: Invalid connection string format: {conn_str}", file=sys.stderr)
        print("Expected format: user:password@host:port/database", file=sys.stderr)
        sys.exit(1)

    user, password, host, port, database = match.groups()

    return {
        'user': user or 'root',
        'password': password or '',
        'host': host,
        'port': int(port) if port else 3306,
        'database': database
    }


def _split_names(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [name.strip() for name in value.split(',') if name.strip()]


def build_request(args, table_names: Optional[List[str]] = None,
                  cancel_event: Optional[threading.Event] = None) -> CloneRequest:
    """
    Turn parsed clone arguments into a CloneRequest.

    Args:
        args: Parsed command-line arguments
        table_names: Tables to clone when --tables was not given
        cancel_event: Event set by the SIGINT handler

    Returns:
        The CloneRequest for clone_database
    """
    no_data = set(_split_names(args.no_data))
    names = _split_names(args.tables) or table_names
    tables = None
    if names is not None:
        tables = [TableCloneOption(name=name, copy_data=name not in no_data) for name in names]

    return CloneRequest(
        tables=tables,
        copy_views=args.include_views,
        copy_triggers=args.include_triggers,
        copy_routines=args.include_routines,
        strategy=CopyStrategy(args.strategy),
        charset=args.charset,
        batch_size=args.batch_size,
        progress=lambda message: print(message, file=sys.stderr),
        cancel_event=cancel_event
    )


def tables_command(args):
    """
    Handle the tables command.

    Args:
        args: Parsed command-line arguments
    """
    conn_params = parse_connection_string(args.source)
    with DatabaseConnection(**conn_params) as db:
        for name in list_tables(db.connection):
            print(name)


def clone_command(args):
    """
    Handle the clone command.

    The first Ctrl-C asks the clone to stop after the current step; a second
    one interrupts immediately.

    Args:
        args: Parsed command-line arguments
    """
    source_params = parse_connection_string(args.source)
    dest_params = parse_connection_string(args.destination)
    cancel_event = threading.Event()

    def request_cancel(signum, frame):
        print("\nCancelling after the current step (Ctrl-C again to abort)...", file=sys.stderr)
        cancel_event.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    previous_handler = signal.signal(signal.SIGINT, request_cancel)
    try:
        print(f"Connecting to source database '{source_params['database']}' on {source_params['host']}...",
              file=sys.stderr)
        with DatabaseConnection(charset=args.charset, **source_params) as source, \
                DatabaseConnection(**dest_params) as destination:
            # --no-data without --tables still means every table
            table_names = None
            if args.no_data and not args.tables:
                table_names = list_tables(source.connection)
            request = build_request(args, table_names, cancel_event)
            summary = clone_database(source.connection, destination.connection, request)
    except CloneCancelledError:
        print("\nClone cancelled; foreign key checks restored.", file=sys.stderr)
        sys.exit(130)
    except KeyboardInterrupt:
        print("\nClone aborted.", file=sys.stderr)
        sys.exit(130)
    except (CloneError, MySQLError) as e:
        print(f"\nError during clone: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print(
        f"\nCloned {len(summary.tables)} table(s) ({sum(summary.rows.values())} row(s)), "
        f"{len(summary.views)} view(s), {len(summary.triggers)} trigger(s), "
        f"{len(summary.routines)} routine(s).",
        file=sys.stderr
    )


def main(argv: Optional[List[str]] = None):
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="MySQL Database Cloner - Copy tables, data, views, triggers and routines between databases.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List the base tables of a database
  %(prog)s tables user:pass@localhost:3306/mydb

  # Clone everything
  %(prog)s clone user:pass@localhost:3306/source_db user:pass@otherhost:3306/dest_db

  # Clone two tables, structure only for 'audit_log', no views or routines
  %(prog)s clone src_conn dest_conn --tables users,audit_log --no-data audit_log --no-views --no-routines

  # Skip LOAD DATA and use batched INSERT statements
  %(prog)s clone src_conn dest_conn --strategy batched
        """
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    # Tables command
    tables_parser = subparsers.add_parser('tables', help='List base tables of a database')
    tables_parser.add_argument('source', help='Database connection string (user:pass@host:port/database)')

    # Clone command
    clone_parser = subparsers.add_parser('clone', help='Clone source database onto destination')
    clone_parser.add_argument('source', help='Source database connection string')
    clone_parser.add_argument('destination', help='Destination database connection string')
    clone_parser.add_argument('--tables', help='Comma-separated tables to clone (default: all)')
    clone_parser.add_argument('--no-data', dest='no_data',
                              help='Comma-separated tables to clone without rows')
    clone_parser.add_argument('--no-views', dest='include_views', action='store_false',
                              help='Do not clone views')
    clone_parser.add_argument('--no-triggers', dest='include_triggers', action='store_false',
                              help='Do not clone triggers')
    clone_parser.add_argument('--no-routines', dest='include_routines', action='store_false',
                              help='Do not clone stored procedures and functions')
    clone_parser.add_argument('--strategy', choices=[s.value for s in CopyStrategy],
                              default=CopyStrategy.AUTO.value, help='Data copy strategy (default: auto)')
    clone_parser.add_argument('--charset', help='Connection character set for the source')
    clone_parser.add_argument('--batch-size', dest='batch_size', type=int, default=BATCH_SIZE,
                              help=f'Rows per INSERT on the batched path (default: {BATCH_SIZE})')

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(levelname)s - %(message)s')

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Execute the appropriate command
    if args.command == 'tables':
        tables_command(args)
    elif args.command == 'clone':
        clone_command(args)


if __name__ == '__main__':
    main()
