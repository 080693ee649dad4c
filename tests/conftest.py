"""
Shared fixtures: an in-memory stand-in for a mysql.connector connection.

FakeConnection understands just enough MySQL to exercise MyClone: catalog
queries, SHOW CREATE, DROP/CREATE of tables, views, triggers and routines,
@@FOREIGN_KEY_CHECKS, SET NAMES, SELECT *, multi-row INSERT, DELETE and
LOAD DATA LOCAL INFILE (reading the spool file the way the server would).
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import mysql.connector
import pytest
from mysql.connector import errorcode
from mysql.connector.constants import FieldType


def no_such_table(name: str) -> mysql.connector.Error:
    return mysql.connector.errors.ProgrammingError(
        msg=f"Table '{name}' doesn't exist", errno=errorcode.ER_NO_SUCH_TABLE
    )


def unescape_field(raw: bytes) -> Optional[str]:
    """Decode one LOAD DATA field written with the default escaping."""
    if raw == b"\\N":
        return None
    escapes = {b"t": b"\t", b"n": b"\n", b"r": b"\r", b"0": b"\x00"}
    value = re.sub(rb"\\(.)", lambda m: escapes.get(m.group(1), m.group(1)), raw, flags=re.DOTALL)
    return value.decode("utf-8")


@dataclass
class FakeTable:
    name: str
    columns: List[str]
    rows: List[Any] = field(default_factory=list)
    create: str = ""
    types: Dict[str, int] = field(default_factory=dict)


class FakeCursor:
    def __init__(self, connection: "FakeConnection", buffered: Optional[bool] = None):
        self.connection = connection
        self.buffered = buffered
        self.description = None
        self.rowcount = -1
        self._rows: List[Any] = []
        self.closed = False

    def execute(self, operation, params=None):
        statement = " ".join(operation.split())
        self.connection.executed.append(statement)
        self.connection.params.append(list(params) if params else None)
        self.description = None
        self.rowcount = -1
        self._rows = []

        columns, rows, rowcount = self.connection.dispatch(statement, params)
        if columns is not None:
            self.description = []
            for column in columns:
                name, type_code = column if isinstance(column, tuple) else (column, FieldType.VAR_STRING)
                self.description.append((name, type_code, None, None, None, None, 1, 0))
            self._rows = list(rows)
            self.rowcount = len(self._rows)
        if rowcount is not None:
            self.rowcount = rowcount

    def fetchone(self):
        if not self._rows:
            return None
        row = self._rows.pop(0)
        if isinstance(row, BaseException):
            raise row
        return row

    def fetchall(self):
        rows = []
        row = self.fetchone()
        while row is not None:
            rows.append(row)
            row = self.fetchone()
        return rows

    def __iter__(self):
        return iter(self.fetchone, None)

    def close(self):
        self.closed = True


class FakeConnection:
    """A scripted mysql.connector connection for one database."""

    def __init__(self, database: Optional[str] = "shop", charset: str = "utf8mb4",
                 character_sets=("utf8mb4", "utf8mb3", "latin1", "ascii"),
                 foreign_key_checks: int = 1, schema: Optional[str] = None):
        self.database = database
        self.schema = schema or database
        self.charset = charset
        self.character_sets = list(character_sets)
        self.foreign_key_checks = foreign_key_checks
        self.tables = {}
        self.views = {}
        self.triggers = {}
        self.routines = {}
        self.executed: List[str] = []
        self.params: List[Optional[list]] = []
        self.failures: List[Tuple[re.Pattern, BaseException]] = []
        self.commits = 0
        self.names: Optional[str] = None
        self.load_data_limit: Optional[int] = None
        self.load_data_files: List[str] = []
        self.fk_history: List[int] = []

    # --- fixture helpers -------------------------------------------------

    def add_table(self, name: str, columns, rows=(), types=None) -> FakeTable:
        create = "CREATE TABLE `{}` ({}) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4".format(
            name, ", ".join(f"`{column}` varchar(255)" for column in columns)
        )
        table = FakeTable(name=name, columns=list(columns), rows=list(rows), create=create,
                          types=dict(types or {}))
        self.tables[name] = table
        return table

    def add_view(self, name: str, select: str) -> str:
        create = (
            "CREATE ALGORITHM=UNDEFINED DEFINER=`root`@`localhost` SQL SECURITY DEFINER "
            f"VIEW `{name}` AS {select}"
        )
        self.views[name] = create
        return create

    def add_trigger(self, name, table, timing, event, body):
        self.triggers[name] = {
            "schema": self.schema, "table": table, "timing": timing, "event": event, "body": body
        }

    def add_routine(self, name, routine_type, create):
        self.routines[name] = (routine_type, create)

    def fail_on(self, pattern: str, error: BaseException):
        self.failures.append((re.compile(pattern, re.IGNORECASE), error))

    def statements(self, prefix: str) -> List[str]:
        return [s for s in self.executed if s.upper().startswith(prefix.upper())]

    # --- connection API --------------------------------------------------

    def cursor(self, buffered=None, **kwargs):
        return FakeCursor(self, buffered)

    def commit(self):
        self.commits += 1

    def set_charset_collation(self, charset=None, collation=None):
        self.cursor().execute(f"SET NAMES '{charset}'")
        self.charset = charset

    # --- statement handling ----------------------------------------------

    def dispatch(self, statement: str, params):
        for pattern, error in self.failures:
            if pattern.search(statement):
                raise error

        for pattern, handler in self._handlers():
            match = re.match(pattern, statement, re.IGNORECASE | re.DOTALL)
            if match:
                return handler(match, params)
        return None, None, None

    def _handlers(self):
        return [
            (r"SELECT TABLE_NAME, TABLE_TYPE FROM information_schema\.TABLES", self._list_tables),
            (r"SELECT TABLE_NAME FROM information_schema\.VIEWS", self._list_views),
            (r"SHOW CREATE VIEW `(.+)`$", self._show_create_view),
            (r"SHOW CREATE TABLE `(.+)`$", self._show_create_table),
            (r"SELECT TRIGGER_NAME", self._list_triggers),
            (r"SELECT ROUTINE_NAME, ROUTINE_TYPE", self._list_routines),
            (r"SHOW CREATE (FUNCTION|PROCEDURE) `(.+)`$", self._show_create_routine),
            (r"SELECT CHARACTER_SET_NAME", self._list_charsets),
            (r"SELECT DATABASE\(\)", lambda m, p: (["DATABASE()"], [(self.schema,)], None)),
            (r"SELECT @@FOREIGN_KEY_CHECKS", lambda m, p: (["@@FOREIGN_KEY_CHECKS"], [(self.foreign_key_checks,)], None)),
            (r"SET FOREIGN_KEY_CHECKS=(\d+)", self._set_fk_checks),
            (r"SET NAMES '(.+)'", self._set_names),
            (r"DROP (TABLE|VIEW|TRIGGER|FUNCTION|PROCEDURE) IF EXISTS `(.+)`$", self._drop),
            (r"CREATE TABLE `([^`]+)` \((.*)\)", self._create_table),
            (r"CREATE (?:.*?\s)?VIEW `([^`]+)` AS (.*)$", self._create_view),
            (r"CREATE TRIGGER `([^`]+)` (BEFORE|AFTER) (INSERT|UPDATE|DELETE) ON "
             r"(?:`([^`]+)`\.)?`([^`]+)` FOR EACH ROW (.*);$", self._create_trigger),
            (r"CREATE (FUNCTION|PROCEDURE) `([^`]+)`", self._create_routine),
            (r"SELECT \* FROM `([^`]+)`$", self._select_all),
            (r"INSERT INTO `([^`]+)` \((.*?)\) VALUES", self._insert),
            (r"LOAD DATA LOCAL INFILE '(.+?)' INTO TABLE `([^`]+)`", self._load_data),
            (r"DELETE FROM `([^`]+)`$", self._delete),
        ]

    def _list_tables(self, match, params):
        rows = [(name, "BASE TABLE") for name in self.tables]
        rows += [(name, "VIEW") for name in self.views]
        return ["TABLE_NAME", "TABLE_TYPE"], sorted(rows), None

    def _list_views(self, match, params):
        return ["TABLE_NAME"], [(name,) for name in sorted(self.views)], None

    def _show_create_view(self, match, params):
        name = match.group(1)
        if name not in self.views:
            raise no_such_table(name)
        columns = ["View", "Create View", "character_set_client", "collation_connection"]
        return columns, [(name, self.views[name], "utf8mb4", "utf8mb4_general_ci")], None

    def _show_create_table(self, match, params):
        name = match.group(1)
        if name not in self.tables:
            raise no_such_table(name)
        return ["Table", "Create Table"], [(name, self.tables[name].create)], None

    def _list_triggers(self, match, params):
        rows = [
            (name, t["schema"], t["table"], t["timing"], t["event"], t["body"])
            for name, t in self.triggers.items()
        ]
        columns = ["TRIGGER_NAME", "EVENT_OBJECT_SCHEMA", "EVENT_OBJECT_TABLE",
                   "ACTION_TIMING", "EVENT_MANIPULATION", "ACTION_STATEMENT"]
        return columns, rows, None

    def _list_routines(self, match, params):
        rows = sorted((name, routine_type) for name, (routine_type, _) in self.routines.items())
        rows.sort(key=lambda row: (row[1], row[0]))
        return ["ROUTINE_NAME", "ROUTINE_TYPE"], rows, None

    def _show_create_routine(self, match, params):
        kind, name = match.group(1).upper(), match.group(2)
        routine_type, create = self.routines[name]
        assert routine_type.upper() == kind
        columns = ["Name", "sql_mode", "Create", "character_set_client"]
        return columns, [(name, "STRICT_TRANS_TABLES", create, "utf8mb4")], None

    def _list_charsets(self, match, params):
        return ["CHARACTER_SET_NAME"], [(name,) for name in self.character_sets], None

    def _set_fk_checks(self, match, params):
        self.foreign_key_checks = int(match.group(1))
        self.fk_history.append(self.foreign_key_checks)
        return None, None, 0

    def _set_names(self, match, params):
        self.names = match.group(1)
        return None, None, 0

    def _drop(self, match, params):
        kind, name = match.group(1).upper(), match.group(2)
        store = {
            "TABLE": self.tables, "VIEW": self.views, "TRIGGER": self.triggers,
            "FUNCTION": self.routines, "PROCEDURE": self.routines,
        }[kind]
        store.pop(name, None)
        return None, None, 0

    def _create_table(self, match, params):
        name = match.group(1)
        columns = re.findall(r"`([^`]+)` [a-z]", match.group(2))
        self.tables[name] = FakeTable(name=name, columns=columns, create=match.group(0))
        return None, None, 0

    def _create_view(self, match, params):
        name, body = match.group(1), match.group(2)
        if name in self.views or name in self.tables:
            raise mysql.connector.errors.ProgrammingError(
                msg=f"Table '{name}' already exists", errno=errorcode.ER_TABLE_EXISTS_ERROR
            )
        for dependency in re.findall(r"(?:from|join)\s+(?:`[^`]+`\.)?`([^`]+)`", body, re.IGNORECASE):
            if dependency not in self.tables and dependency not in self.views:
                raise no_such_table(dependency)
        self.views[name] = match.group(0)
        return None, None, 0

    def _create_trigger(self, match, params):
        name, timing, event, schema, table, body = match.groups()
        if schema is not None and schema.lower() != (self.schema or "").lower():
            raise mysql.connector.errors.ProgrammingError(
                msg="Trigger in wrong schema", errno=errorcode.ER_TRG_IN_WRONG_SCHEMA
            )
        if table not in self.tables:
            raise no_such_table(table)
        self.triggers[name] = {
            "schema": self.schema, "table": table, "timing": timing, "event": event, "body": body,
            "create": match.group(0),
        }
        return None, None, 0

    def _create_routine(self, match, params):
        kind, name = match.group(1).upper(), match.group(2)
        self.routines[name] = (kind, match.group(0))
        return None, None, 0

    def _select_all(self, match, params):
        name = match.group(1)
        if name not in self.tables:
            raise no_such_table(name)
        table = self.tables[name]
        columns = [(column, table.types.get(column, FieldType.VAR_STRING)) for column in table.columns]
        return columns, list(table.rows), None

    def _insert(self, match, params):
        name = match.group(1)
        if name not in self.tables:
            raise no_such_table(name)
        width = len(re.findall(r"`([^`]+)`", match.group(2)))
        values = list(params or [])
        rows = [tuple(values[i:i + width]) for i in range(0, len(values), width)]
        self.tables[name].rows.extend(rows)
        return None, None, len(rows)

    def _load_data(self, match, params):
        path, name = match.group(1), match.group(2)
        if name not in self.tables:
            raise no_such_table(name)
        self.load_data_files.append(path)
        with open(path, "rb") as spool:
            lines = spool.read().split(b"\n")[:-1]
        table = self.tables[name]
        targets_match = re.search(r"\(([^()]*)\)(?: SET (.*))?$", match.string)
        targets = [target.strip() for target in targets_match.group(1).split(",")]
        assignments = re.findall(r"`([^`]+)` = CAST\((@\w+) AS UNSIGNED\)", targets_match.group(2) or "")
        casts = {variable: column for column, variable in assignments}

        rows = []
        for line in lines:
            loaded = {}
            for target, raw in zip(targets, line.split(b"\t")):
                value = unescape_field(raw)
                if target.startswith("@"):
                    loaded[casts[target]] = None if value is None else int(value)
                else:
                    loaded[target.strip("`")] = value
            rows.append(tuple(loaded.get(column) for column in table.columns))
        if self.load_data_limit is not None:
            rows = rows[:self.load_data_limit]
        self.tables[name].rows.extend(rows)
        return None, None, len(rows)

    def _delete(self, match, params):
        table = self.tables[match.group(1)]
        deleted = len(table.rows)
        table.rows = []
        return None, None, deleted


@pytest.fixture
def source() -> FakeConnection:
    return FakeConnection(database="shop")


@pytest.fixture
def destination() -> FakeConnection:
    return FakeConnection(database="shop_copy")


@pytest.fixture
def messages() -> List[str]:
    return []
