"""In-memory stand-in for a MySQL server behind a SQLAlchemy engine.

`FakeDatabase` understands exactly the statements the fixer issues (SHOW
metadata, the zero/duplicate probes, DELETE ... LIMIT, ALTER TABLE) and keeps
rows in insertion order, which doubles as the storage scan order. Failures can
be queued per statement fragment to exercise the retry paths.
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import pytest
from sqlalchemy.exc import OperationalError, ProgrammingError, StatementError

from mysql_identity_fixer import CONFIG, RunContext


class FakeDriverError(Exception):
    def __init__(self, errno: int, msg: str) -> None:
        super().__init__(errno, msg)
        self.errno = errno
        self.msg = msg

    def __str__(self) -> str:
        return f"{self.errno}: {self.msg}"


def transient_error(statement: str = "SELECT 1") -> OperationalError:
    return OperationalError(statement, {}, FakeDriverError(2006, "MySQL server has gone away"))


def logical_error(statement: str = "SELECT 1") -> ProgrammingError:
    return ProgrammingError(statement, {}, FakeDriverError(1146, "Table 'demo.nope' doesn't exist"))


def column(name: str, type_: str = "int(11)", null: str = "NO", key: str = "", default: Optional[str] = None, extra: str = "") -> Dict[str, Any]:
    return {"Field": name, "Type": type_, "Null": null, "Key": key, "Default": default, "Extra": extra}


@dataclass
class FakeTable:
    columns: List[Dict[str, Any]]
    rows: List[Dict[str, Any]] = field(default_factory=list)
    # A tuple stands for a composite PRIMARY index.
    primary_key: Union[str, Tuple[str, ...], None] = None
    auto_increment: Optional[int] = None

    def index_rows(self) -> List[Dict[str, Any]]:
        if self.primary_key is None:
            return []
        key = (self.primary_key,) if isinstance(self.primary_key, str) else self.primary_key
        return [
            {"Key_name": "PRIMARY", "Column_name": name, "Seq_in_index": seq, "Non_unique": 0}
            for seq, name in enumerate(key, start=1)
        ]


class FakeRow(tuple):
    def __new__(cls, mapping: Dict[str, Any]) -> "FakeRow":
        row = super().__new__(cls, tuple(mapping.values()))
        row._mapping = dict(mapping)
        return row


class FakeResult:
    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, rowcount: int = 0) -> None:
        self._rows = [FakeRow(r) for r in (rows or [])]
        self.rowcount = rowcount

    def __iter__(self):
        return iter(self._rows)

    def fetchone(self) -> Optional[FakeRow]:
        return self._rows[0] if self._rows else None

    def scalar(self) -> Any:
        row = self.fetchone()
        return None if row is None else row[0]


IDENT = r"`((?:[^`]|``)+)`"


def _ident(raw: str) -> str:
    return raw.replace("``", "`")


def _unlike(pattern: str) -> str:
    return pattern.replace("\\_", "_").replace("\\%", "%").replace("\\\\", "\\")


def _numeric(value: Any) -> Any:
    # MySQL reads a string's leading number when comparing it with a number; no number means 0.
    if isinstance(value, str):
        m = re.match(r"\s*[-+]?\d+(\.\d*)?", value)
        return float(m.group()) if m else 0
    return value


def _mysql_eq(value: Any, target: Any) -> bool:
    if isinstance(target, (int, float)):
        return _numeric(value) == target
    return value == target


class FakeDatabase:
    def __init__(self, name: str = "demo") -> None:
        self.name = name
        self.tables: Dict[str, FakeTable] = {}
        self.statements: List[str] = []
        self._failures: List[tuple] = []

    def add_table(
        self,
        name: str,
        columns: List[Dict[str, Any]],
        ids: List[Any] = (),
        primary_key: Union[str, Tuple[str, ...], None] = "id",
    ) -> FakeTable:
        table = FakeTable(columns=columns, primary_key=primary_key)
        for n, value in enumerate(ids):
            table.rows.append({"id": value, "tag": f"r{n}"})
        self.tables[name] = table
        return table

    def fail_on(self, fragment: str, *errors: Exception) -> None:
        """Raise `errors` in order on the next statements containing `fragment`."""
        for error in errors:
            self._failures.append((fragment, error, False))

    def fail_after(self, fragment: str, error: Exception) -> None:
        """Apply the next statement containing `fragment`, then raise `error` as if the reply was lost."""
        self._failures.append((fragment, error, True))

    def ids(self, table: str) -> List[Any]:
        return [row["id"] for row in self.tables[table].rows]

    def execute(self, sql: str, params: Dict[str, Any]) -> FakeResult:
        sql = " ".join(sql.split())
        self.statements.append(sql)
        for i, (fragment, error, after) in enumerate(self._failures):
            if fragment in sql:
                del self._failures[i]
                if after:
                    self._dispatch(sql, params)
                raise error
        return self._dispatch(sql, params)

    def _dispatch(self, sql: str, params: Dict[str, Any]) -> FakeResult:
        if sql.startswith("SET SESSION") or sql == "SELECT 1":
            return FakeResult([{"1": 1}])

        if sql == "SHOW TABLES":
            return FakeResult([{f"Tables_in_{self.name}": t} for t in self.tables])

        if sql == "SHOW TABLES LIKE :pattern":
            wanted = _unlike(params["pattern"])
            return FakeResult([{f"Tables_in_{self.name}": t} for t in self.tables if t == wanted])

        m = re.fullmatch(rf"SHOW COLUMNS FROM {IDENT}( LIKE :pattern)?", sql)
        if m:
            table = self.tables[_ident(m.group(1))]
            cols = table.columns
            if m.group(2):
                cols = [c for c in cols if c["Field"] == _unlike(params["pattern"])]
            return FakeResult([dict(c) for c in cols])

        m = re.fullmatch(rf"SHOW INDEX FROM {IDENT}", sql)
        if m:
            return FakeResult(self.tables[_ident(m.group(1))].index_rows())

        m = re.fullmatch(rf"SELECT COUNT\(\*\) FROM {IDENT} WHERE {IDENT} = (0|:value)", sql)
        if m:
            table, col = self.tables[_ident(m.group(1))], _ident(m.group(2))
            target = 0 if m.group(3) == "0" else params["value"]
            return FakeResult([{"COUNT(*)": sum(1 for r in table.rows if _mysql_eq(r[col], target))}])

        m = re.fullmatch(
            rf"SELECT {IDENT} AS id_value, COUNT\(\*\) AS occurrences FROM {IDENT} WHERE {IDENT} > 0 "
            rf"GROUP BY {IDENT} HAVING COUNT\(\*\) > 1 LIMIT (\d+)",
            sql,
        )
        if m:
            table, col, limit = self.tables[_ident(m.group(2))], _ident(m.group(1)), int(m.group(5))
            counts: Dict[Any, int] = {}
            for row in table.rows:
                if _numeric(row[col]) > 0:
                    counts[row[col]] = counts.get(row[col], 0) + 1
            groups = [{"id_value": v, "occurrences": c} for v, c in counts.items() if c > 1]
            return FakeResult(groups[:limit])

        m = re.fullmatch(rf"SELECT \* FROM {IDENT} WHERE {IDENT} = 0", sql)
        if m:
            table, col = self.tables[_ident(m.group(1))], _ident(m.group(2))
            return FakeResult([dict(r) for r in table.rows if _mysql_eq(r[col], 0)])

        m = re.fullmatch(rf"DELETE FROM {IDENT} WHERE {IDENT} = (0|:value)( LIMIT (\d+))?", sql)
        if m:
            table, col = self.tables[_ident(m.group(1))], _ident(m.group(2))
            target = 0 if m.group(3) == "0" else params["value"]
            limit = int(m.group(5)) if m.group(5) else None
            kept, deleted = [], 0
            for row in table.rows:
                if _mysql_eq(row[col], target) and (limit is None or deleted < limit):
                    deleted += 1
                else:
                    kept.append(row)
            table.rows = kept
            return FakeResult(rowcount=deleted)

        m = re.fullmatch(rf"SELECT MAX\({IDENT}\) AS max_id, COUNT\(\*\) AS row_count FROM {IDENT}", sql)
        if m:
            table, col = self.tables[_ident(m.group(2))], _ident(m.group(1))
            values = [r[col] for r in table.rows]
            return FakeResult([{"max_id": max(values) if values else None, "row_count": len(values)}])

        m = re.fullmatch(rf"ALTER TABLE {IDENT} MODIFY {IDENT} (.+) AUTO_INCREMENT", sql)
        if m:
            table, col = self.tables[_ident(m.group(1))], _ident(m.group(2))
            for c in table.columns:
                if c["Field"] == col:
                    c["Extra"] = "auto_increment"
                    c["Definition"] = m.group(3)
            return FakeResult()

        m = re.fullmatch(rf"ALTER TABLE {IDENT} AUTO_INCREMENT = (\d+)", sql)
        if m:
            self.tables[_ident(m.group(1))].auto_increment = int(m.group(2))
            return FakeResult()

        raise AssertionError(f"FakeDatabase does not understand: {sql}")


class FakeConnection:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self.closed = False

    def execution_options(self, **_: Any) -> "FakeConnection":
        return self

    def exec_driver_sql(
        self,
        sql: str,
        params: Optional[Dict[str, Any]] = None,
        execution_options: Optional[Dict[str, Any]] = None,
    ) -> FakeResult:
        return self.db.execute(sql, params or {})

    def execute(self, clause: Any, params: Optional[Dict[str, Any]] = None) -> FakeResult:
        params = params or {}
        missing = sorted(set(clause.compile().params) - set(params))
        if missing:
            raise StatementError(f"A value is required for bind parameter {missing[0]!r}", str(clause), params, None)
        return self.db.execute(str(clause), params)

    def close(self) -> None:
        self.closed = True


class FakeEngine:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self.connects = 0
        self.refusals: List[Exception] = []

    def connect(self) -> FakeConnection:
        self.connects += 1
        if self.refusals:
            raise self.refusals.pop(0)
        return FakeConnection(self.db)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def config(tmp_path) -> Dict[str, Any]:
    cfg = copy.deepcopy(CONFIG)
    cfg["CONNECTION"]["DATABASE"] = "demo"
    cfg["RUN"].update({"VERBOSE": False, "LOG_ENABLED": False, "BACKUP_ENABLED": False, "MAX_EXECUTION_TIME": 0})
    cfg["RETRY"].update({"MAX_RETRIES": 3, "RETRY_DELAY": 0.0})
    cfg["PACING"].update({"TABLE_DELAY": 0.0, "BATCH_DELAY": 0.0})
    cfg["OUTPUT"]["BASE_PATH"] = str(tmp_path / "output")
    return cfg


@pytest.fixture
def ctx(config):
    context = RunContext(config)
    yield context
    context.close()


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def engine(db) -> FakeEngine:
    return FakeEngine(db)
