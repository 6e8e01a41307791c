"""
MySQL identity repair tool.

Scans every table of a MySQL database for three identity defects and repairs
them in place:

* primary-key columns lacking AUTO_INCREMENT,
* rows whose identity column holds the sentinel value 0,
* rows sharing a duplicate identity value.

The tool is meant for long unattended runs against servers that drop idle or
busy connections. Every statement goes through a single connection manager
that reconnects preventively and retries transient connectivity failures, and
tables are processed strictly one at a time in paced batches. Each table is
repaired independently; nothing is rolled back across tables.

All configuration lives in the CONFIG constant below and can be overridden
from the command line (`python mysql_identity_fixer.py --help`).
"""
from __future__ import annotations

import argparse
import html
import json
import logging
import os
import re
import sys
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.pool import NullPool

try:
    import resource
except ImportError:  # not available on Windows
    resource = None


# --------------------------------------------------------------------------------------
# Configuration
# --------------------------------------------------------------------------------------
CONFIG: Dict[str, Any] = {
    "CONNECTION": {
        "HOST": os.getenv("MYSQL_HOST", "localhost"),
        "PORT": int(os.getenv("MYSQL_PORT", "3306")),
        "USER": os.getenv("MYSQL_USER", "whmcs"),
        "PASSWORD": os.getenv("MYSQL_PASSWORD", ""),
        "DATABASE": os.getenv("MYSQL_DATABASE", "whmcs"),
        "CHARSET": "utf8mb4",
        # Seconds to wait for the TCP handshake.
        "CONNECT_TIMEOUT": 3600,
    },
    "RUN": {
        "DRY_RUN": False,
        "VERBOSE": True,
        "BACKUP_ENABLED": True,
        "LOG_ENABLED": True,
        "BATCH_SIZE": 5,
        # Wall-clock ceiling in seconds; 0 disables it.
        "MAX_EXECUTION_TIME": 7200,
        # Address-space ceiling in MiB; 0 disables it.
        "MEMORY_LIMIT_MB": 1024,
    },
    "RETRY": {
        "MAX_RETRIES": 3,
        "RETRY_DELAY": 2.0,
        # Force a fresh connection when the current one is older than this.
        "RECONNECT_INTERVAL": 300,
    },
    "PACING": {
        "TABLE_DELAY": 0.2,
        "BATCH_DELAY": 2.0,
    },
    "LIMITS": {
        "MAX_DUPLICATE_GROUPS": 50,
        # Advisory only: a larger gap between MAX(id) and the row count is logged.
        "MAX_ID_GAP": 1_000_000,
    },
    "TABLES": {
        "QUICK_FIX": [
            "tblclients", "tblorders", "tblhostingaccounts", "tbldomains",
            "tblinvoices", "tblinvoiceitems", "tbltickets", "tblticketreplies",
            "tblproducts", "tblproductgroups", "tblhosting", "tblaccounts",
            "tbladmins", "tblaffiliates", "tblaffiliatespayments", "tblannouncements",
            "tblbannedips", "tblconfiguration", "tblcurrencies", "tblcustomfields",
            "tblcustomfieldsvalues", "tblemails", "tblemailtemplates", "tblgateways",
            "tblknowledgebase", "tbllinks", "tblnetworkissues", "tblpaymentgateways",
            "tblpricing", "tblquotes", "tblservers", "tblservices", "tblsupportdepartments",
            "tbltax", "tbltodolist", "tbltransactions", "tblusers", "tblactivitylog",
        ],
        "CRITICAL": ["tblclients", "tblinvoices", "tblorders", "tbltickets", "tblusers"],
    },
    "OUTPUT": {
        "BASE_PATH": "output",
    },
}

SESSION_SETTINGS = (
    "SET SESSION sql_mode = (SELECT REPLACE(@@sql_mode, 'ONLY_FULL_GROUP_BY', ''))",
    "SET SESSION wait_timeout = 28800",
    "SET SESSION interactive_timeout = 28800",
    "SET SESSION max_allowed_packet = 1073741824",
    "SET SESSION net_read_timeout = 600",
    "SET SESSION net_write_timeout = 600",
)

# MySQL client error numbers for dropped or unreachable servers.
TRANSIENT_ERRNOS = frozenset({2003, 2006, 2013, 2055, 4031})
TRANSIENT_SIGNATURES = ("server has gone away", "lost connection", "connection timed out")

AUTO_INCREMENT_MARKER = "auto_increment"

# Only integer identities carry the 0 sentinel and can take AUTO_INCREMENT.
INTEGER_TYPE_RE = re.compile(r"^(tinyint|smallint|mediumint|int|integer|bigint)\b", re.IGNORECASE)

# Statements without bind parameters go to the driver verbatim.
RAW_SQL = {"no_parameters": True}

LOGGER_NAME = "mysql_identity_fixer"


# --------------------------------------------------------------------------------------
# Utility helpers
# --------------------------------------------------------------------------------------
def quote_ident(name: str) -> str:
    """Quote a MySQL identifier with backticks.

    Embedded backticks are escaped by doubling them, so table names coming
    from SHOW TABLES can be interpolated safely.
    """
    escaped = name.replace("`", "``")
    return f"`{escaped}`"


def text_ident(name: str) -> str:
    """Quote an identifier for a `text()` statement that also takes bind parameters.

    A colon followed by a word inside a name would otherwise be read as a
    bind placeholder; SQLAlchemy turns the escaped form back into a plain
    colon when it compiles the statement.
    """
    return quote_ident(name).replace(":", "\\:")


def like_escape(value: str) -> str:
    """Escape LIKE wildcards so the pattern matches the literal name only."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def sql_literal(value: Any) -> str:
    """Render a Python value as a MySQL literal for backup scripts and DDL."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"X'{bytes(value).hex()}'"
    if isinstance(value, (datetime, date)):
        value = value.isoformat(sep=" ") if isinstance(value, datetime) else value.isoformat()
    escaped = (
        str(value)
        .replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\x00", "\\0")
    )
    return f"'{escaped}'"


def chunked(items: Sequence[str], size: int) -> List[List[str]]:
    size = max(int(size), 1)
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def _text(value: Any) -> Any:
    # Some connector builds hand back SHOW output as bytes.
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return value


# --------------------------------------------------------------------------------------
# Errors
# --------------------------------------------------------------------------------------
class ErrorKind(Enum):
    TRANSIENT = "transient"
    OTHER = "other"


class FixerError(Exception):
    """Base class for errors raised by the fixer."""


class StoreError(FixerError):
    """A failed store access, classified once at the SQLAlchemy boundary."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.OTHER, errno: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.errno = errno

    @property
    def is_transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    @classmethod
    def from_dbapi(cls, exc: DBAPIError) -> "StoreError":
        orig = exc.orig
        errno = getattr(orig, "errno", None)
        if errno is None and orig is not None and orig.args and isinstance(orig.args[0], int):
            errno = orig.args[0]
        message = str(orig) if orig is not None else str(exc)
        kind = classify_error(message, errno, exc.connection_invalidated)
        return cls(message, kind, errno)


def classify_error(message: str, errno: Optional[int] = None, invalidated: bool = False) -> ErrorKind:
    """Decide whether a driver failure is a dropped connection worth retrying."""
    if invalidated or errno in TRANSIENT_ERRNOS:
        return ErrorKind.TRANSIENT
    lowered = message.lower()
    if any(signature in lowered for signature in TRANSIENT_SIGNATURES):
        return ErrorKind.TRANSIENT
    return ErrorKind.OTHER


# --------------------------------------------------------------------------------------
# Data containers
# --------------------------------------------------------------------------------------
@dataclass
class ColumnDescriptor:
    name: str
    type: str
    nullable: bool
    default: Optional[str] = None
    key: str = ""
    extra: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ColumnDescriptor":
        default = _text(row.get("Default"))
        return cls(
            name=_text(row["Field"]),
            type=_text(row["Type"]),
            nullable=_text(row.get("Null")) == "YES",
            default=None if default is None else str(default),
            key=_text(row.get("Key")) or "",
            extra=_text(row.get("Extra")) or "",
        )

    @property
    def is_primary(self) -> bool:
        return self.key == "PRI"

    @property
    def is_auto_increment(self) -> bool:
        return AUTO_INCREMENT_MARKER in self.extra.lower()

    @property
    def is_integer(self) -> bool:
        return INTEGER_TYPE_RE.match(self.type.strip()) is not None

    def definition(self) -> str:
        """Type and nullability as used by ALTER TABLE ... MODIFY ... AUTO_INCREMENT.

        The DEFAULT clause is left out: MySQL rejects a default on an
        AUTO_INCREMENT column (error 1067).
        """
        parts = [self.type]
        if not self.nullable:
            parts.append("NOT NULL")
        return " ".join(parts)


@dataclass
class IndexDescriptor:
    key_name: str
    column_name: str
    seq_in_index: int = 1
    non_unique: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "IndexDescriptor":
        return cls(
            key_name=_text(row["Key_name"]),
            column_name=_text(row["Column_name"]),
            seq_in_index=int(row.get("Seq_in_index") or 1),
            non_unique=bool(int(row.get("Non_unique") or 0)),
        )

    @property
    def is_primary(self) -> bool:
        return self.key_name == "PRIMARY"


@dataclass
class TableDescriptor:
    name: str
    columns: List[ColumnDescriptor]
    indexes: List[IndexDescriptor]

    def column(self, name: str) -> Optional[ColumnDescriptor]:
        for col in self.columns:
            if col.name == name:
                return col
        return None


class IssueKind(str, Enum):
    MISSING_AUTO_INCREMENT = "missing_auto_increment"
    ZERO_IDS = "zero_ids"
    DUPLICATE_IDS = "duplicate_ids"


@dataclass
class IssueRecord:
    kind: IssueKind
    column: str
    count: int = 0
    duplicates: Dict[Any, int] = field(default_factory=dict)
    # Set when the duplicate listing hit the group cap and may undercount.
    may_be_truncated: bool = False

    @property
    def description(self) -> str:
        if self.kind is IssueKind.MISSING_AUTO_INCREMENT:
            return f"Primary key '{self.column}' missing AUTO_INCREMENT"
        if self.kind is IssueKind.ZERO_IDS:
            return f"Found {self.count} rows with {self.column} = 0"
        values = ", ".join(str(v) for v in self.duplicates)
        suffix = " (listing capped, more may exist)" if self.may_be_truncated else ""
        return f"Found duplicate IDs: {values}{suffix}"


@dataclass
class TableAnalysis:
    table: TableDescriptor
    primary_key: Optional[str]
    issues: List[IssueRecord]
    # Why the table was left out of defect analysis, if it was.
    skip_reason: Optional[str] = None


@dataclass
class FixResult:
    kind: IssueKind
    ok: bool
    rows_affected: int = 0
    detail: str = ""
    next_auto_increment: Optional[int] = None


@dataclass
class RepairOutcome:
    table: str
    issues: List[IssueRecord]
    results: List[FixResult]

    @property
    def success(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def failed_kinds(self) -> List[IssueKind]:
        return [r.kind for r in self.results if not r.ok]


@dataclass
class SkippedTable:
    table: str
    reason: str


@dataclass
class TableError:
    table: str
    message: str
    outcome: Optional[RepairOutcome] = None


@dataclass
class RunReport:
    database: str
    mode: str
    dry_run: bool
    started_at: datetime
    finished_at: datetime
    total_tables: int
    fixed: List[RepairOutcome]
    skipped: List[SkippedTable]
    errors: List[TableError]

    @property
    def fixed_tables(self) -> List[str]:
        return [o.table for o in self.fixed]

    @property
    def processed_tables(self) -> int:
        return len(self.fixed) + len(self.skipped) + len(self.errors)

    @property
    def issues_found(self) -> int:
        found = sum(len(o.issues) for o in self.fixed)
        found += sum(len(e.outcome.issues) for e in self.errors if e.outcome is not None)
        return found

    @property
    def rows_removed(self) -> int:
        outcomes = self.fixed + [e.outcome for e in self.errors if e.outcome is not None]
        return sum(
            r.rows_affected
            for o in outcomes
            for r in o.results
            if r.ok and r.kind in (IssueKind.ZERO_IDS, IssueKind.DUPLICATE_IDS)
        )

    @property
    def success_rate(self) -> float:
        attempted = len(self.fixed) + len(self.errors)
        return round(len(self.fixed) / max(1, attempted) * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "database": self.database,
            "mode": self.mode,
            "dry_run": self.dry_run,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "counts": {
                "total_tables": self.total_tables,
                "processed_tables": self.processed_tables,
                "fixed": len(self.fixed),
                "skipped": len(self.skipped),
                "errors": len(self.errors),
                "issues_found": self.issues_found,
                "rows_removed": self.rows_removed,
            },
            "fixed": [
                {
                    "table": o.table,
                    "issues": [
                        {"kind": i.kind.value, "column": i.column, "description": i.description}
                        for i in o.issues
                    ],
                    "results": [
                        {
                            "kind": r.kind.value,
                            "ok": r.ok,
                            "rows_affected": r.rows_affected,
                            "next_auto_increment": r.next_auto_increment,
                            "detail": r.detail,
                        }
                        for r in o.results
                    ],
                }
                for o in self.fixed
            ],
            "skipped": [{"table": s.table, "reason": s.reason} for s in self.skipped],
            "errors": [{"table": e.table, "message": e.message} for e in self.errors],
        }


# --------------------------------------------------------------------------------------
# Report collector
# --------------------------------------------------------------------------------------
class ReportCollector:
    """Accumulates per-table outcomes for one run; each table lands in exactly one list."""

    def __init__(self) -> None:
        self.fixed: List[RepairOutcome] = []
        self.skipped: List[SkippedTable] = []
        self.errors: List[TableError] = []
        self._recorded: set = set()

    def _claim(self, table: str) -> None:
        if table in self._recorded:
            raise ValueError(f"Table {table} already recorded in this run")
        self._recorded.add(table)

    def add_fixed(self, outcome: RepairOutcome) -> None:
        self._claim(outcome.table)
        self.fixed.append(outcome)

    def add_skipped(self, table: str, reason: str) -> None:
        self._claim(table)
        self.skipped.append(SkippedTable(table, reason))

    def add_error(self, table: str, message: str, outcome: Optional[RepairOutcome] = None) -> None:
        self._claim(table)
        self.errors.append(TableError(table, message, outcome))

    def finalize(self, database: str, mode: str, dry_run: bool, started_at: datetime, total_tables: int) -> RunReport:
        return RunReport(
            database=database,
            mode=mode,
            dry_run=dry_run,
            started_at=started_at,
            finished_at=datetime.now(),
            total_tables=total_tables,
            fixed=list(self.fixed),
            skipped=list(self.skipped),
            errors=list(self.errors),
        )


# --------------------------------------------------------------------------------------
# Run context
# --------------------------------------------------------------------------------------
class RunState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    ANALYZING = "analyzing"
    FIXING = "fixing"
    REPORTING = "reporting"
    DONE = "done"
    EMERGENCY_RECOVERY = "emergency_recovery"


class RunContext:
    """Everything scoped to a single run: config, log sink, output paths and the report collector.

    The context attaches a console handler (when verbose) and a timestamped
    file handler (when logging is enabled) to the fixer logger and removes
    them again on close, so consecutive runs in one process do not share
    sinks.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        mode: str = "scan",
        dry_run: Optional[bool] = None,
        verbose: Optional[bool] = None,
    ) -> None:
        run_cfg = config["RUN"]
        self.config = config
        self.mode = mode
        self.dry_run = bool(run_cfg["DRY_RUN"] if dry_run is None else dry_run)
        self.verbose = bool(run_cfg["VERBOSE"] if verbose is None else verbose)
        self.backup_enabled = bool(run_cfg["BACKUP_ENABLED"])
        self.database = config["CONNECTION"]["DATABASE"]
        self.started_at = datetime.now()
        self.state = RunState.IDLE
        self.total_tables = 0
        self.collector = ReportCollector()

        ts = self.started_at.strftime("%Y%m%d_%H%M%S")
        self.output_root = Path(config["OUTPUT"]["BASE_PATH"]) / f"run_{ts}_{mode}"
        self.backup_dir = self.output_root / "backups"
        self.log_path: Optional[Path] = self.output_root / f"fixer_{ts}.log" if run_cfg["LOG_ENABLED"] else None

        self.logger = logging.getLogger(LOGGER_NAME)
        self.logger.setLevel(logging.DEBUG)
        self._handlers: List[logging.Handler] = []
        self._configure_logging()

        self.logger.info("=== MySQL identity fixer started (%s) ===", mode)
        self.logger.info("Mode: %s", "DRY RUN" if self.dry_run else "LIVE")

    def _configure_logging(self) -> None:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s %(message)s", "%Y-%m-%d %H:%M:%S")
        if self.verbose:
            console = logging.StreamHandler(sys.stdout)
            console.setLevel(logging.INFO)
            self._handlers.append(console)
        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_path, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            self._handlers.append(file_handler)
        for handler in self._handlers:
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def set_state(self, state: RunState) -> None:
        if state is not self.state:
            self.logger.debug("State %s -> %s", self.state.value, state.value)
            self.state = state

    def finalize(self) -> RunReport:
        return self.collector.finalize(
            database=self.database,
            mode=self.mode,
            dry_run=self.dry_run,
            started_at=self.started_at,
            total_tables=self.total_tables,
        )

    def close(self) -> None:
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


# --------------------------------------------------------------------------------------
# Connection manager
# --------------------------------------------------------------------------------------
T = TypeVar("T")


def build_url(conn_cfg: Dict[str, Any]) -> URL:
    return URL.create(
        "mysql+mysqlconnector",
        username=conn_cfg["USER"],
        password=conn_cfg["PASSWORD"],
        host=conn_cfg["HOST"],
        port=conn_cfg["PORT"],
        database=conn_cfg["DATABASE"],
        query={"charset": conn_cfg["CHARSET"]},
    )


def _is_transient(error: StoreError) -> bool:
    return error.is_transient


class ConnectionManager:
    """Owns the single live connection; every store access goes through `run`.

    The connection runs in autocommit mode, so each statement is its own
    unit of durability and a reconnect never leaves a half-open transaction
    behind. `NullPool` makes a reconnect open a genuinely new session.
    """

    def __init__(
        self,
        ctx: RunContext,
        engine: Optional[Engine] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ctx = ctx
        conn_cfg = ctx.config["CONNECTION"]
        retry_cfg = ctx.config["RETRY"]
        self.engine = engine or create_engine(
            build_url(conn_cfg),
            poolclass=NullPool,
            connect_args={"connection_timeout": conn_cfg["CONNECT_TIMEOUT"]},
        )
        self.max_retries = int(retry_cfg["MAX_RETRIES"])
        self.retry_delay = float(retry_cfg["RETRY_DELAY"])
        self.reconnect_interval = float(retry_cfg["RECONNECT_INTERVAL"])
        self.clock = clock
        self.sleep = sleep
        self.connection: Optional[Connection] = None
        self.connected_at: Optional[float] = None

    def connect(self) -> Connection:
        self.close()
        log = self.ctx.logger
        try:
            conn = self.engine.connect()
        except DBAPIError as exc:
            error = StoreError.from_dbapi(exc)
            log.error("Database connection failed: %s", error)
            raise error from exc
        conn = conn.execution_options(isolation_level="AUTOCOMMIT")
        for statement in SESSION_SETTINGS:
            try:
                conn.exec_driver_sql(statement, execution_options=RAW_SQL)
            except DBAPIError as exc:
                # Some servers refuse individual session settings (read-only variables).
                log.warning("Session setting rejected (%s): %s", statement, exc.orig)
        self.connection = conn
        self.connected_at = self.clock()
        log.info("Database connection established")
        return conn

    def close(self) -> None:
        if self.connection is None:
            return
        try:
            self.connection.close()
        except DBAPIError as exc:
            self.ctx.logger.debug("Error while closing stale connection: %s", exc)
        self.connection = None

    def _invoke(self, operation: Callable[[Connection], T]) -> T:
        try:
            return operation(self.connection)
        except DBAPIError as exc:
            raise StoreError.from_dbapi(exc) from exc

    def ensure_connection(self) -> None:
        if self.connection is None or self.connected_at is None:
            self.connect()
            return
        if self.clock() - self.connected_at > self.reconnect_interval:
            self.ctx.logger.info("Reconnecting to database (preventive reconnection)")
            self.connect()
            return
        try:
            self._invoke(lambda conn: conn.exec_driver_sql("SELECT 1", execution_options=RAW_SQL))
        except StoreError as exc:
            if not exc.is_transient:
                raise
            self.ctx.logger.warning("Connection lost (%s), attempting to reconnect...", exc)
            self.connect()

    def run(
        self,
        operation: Callable[[Connection], T],
        max_attempts: Optional[int] = None,
        is_transient: Callable[[StoreError], bool] = _is_transient,
    ) -> T:
        """Run `operation` against a live connection with bounded retry.

        Transient failures wait `retry_delay` seconds, force a reconnect and
        try again; attempts never exceed `max_attempts`. Anything else
        propagates on the first failure.
        """
        max_attempts = max(1, max_attempts or self.max_retries)
        log = self.ctx.logger
        attempt = 0
        while True:
            try:
                self.ensure_connection()
                return self._invoke(operation)
            except StoreError as exc:
                attempt += 1
                if not is_transient(exc) or attempt >= max_attempts:
                    raise
                log.warning("Connection error (attempt %d/%d): %s", attempt, max_attempts, exc)
                log.info("Waiting %.1f seconds before retry...", self.retry_delay)
                self.sleep(self.retry_delay)
                try:
                    self.connect()
                except StoreError as connect_exc:
                    log.error("Reconnection failed: %s", connect_exc)

    @staticmethod
    def _statement(conn: Connection, sql: str, params: Optional[Dict[str, Any]]) -> Any:
        # With params the statement is a text() construct and names inside it
        # must come from text_ident; without them it is sent verbatim.
        if params is None:
            return conn.exec_driver_sql(sql, execution_options=RAW_SQL)
        return conn.execute(text(sql), params)

    def fetch_all(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return self.run(lambda conn: [dict(row._mapping) for row in self._statement(conn, sql, params)])

    def fetch_value(self, sql: str, params: Optional[Dict[str, Any]] = None) -> Any:
        row = self.run(lambda conn: self._statement(conn, sql, params).fetchone())
        return None if row is None else row[0]

    def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Execute a mutating statement and return the affected row count."""
        return self.run(lambda conn: self._statement(conn, sql, params).rowcount)

    def execute_ddl(self, *statements: str) -> None:
        """Run DDL statements verbatim, as one retried unit."""

        def apply(conn: Connection) -> None:
            for statement in statements:
                conn.exec_driver_sql(statement, execution_options=RAW_SQL)

        self.run(apply)


# --------------------------------------------------------------------------------------
# Schema inspector
# --------------------------------------------------------------------------------------
class SchemaInspector:
    """Reads table, column and index metadata through the connection manager."""

    def __init__(self, manager: ConnectionManager) -> None:
        self.manager = manager

    def list_tables(self) -> List[str]:
        rows = self.manager.fetch_all("SHOW TABLES")
        return [_text(next(iter(row.values()))) for row in rows]

    def table_exists(self, table: str) -> bool:
        rows = self.manager.fetch_all("SHOW TABLES LIKE :pattern", {"pattern": like_escape(table)})
        return any(_text(next(iter(row.values()))) == table for row in rows)

    def get_columns(self, table: str) -> List[ColumnDescriptor]:
        rows = self.manager.fetch_all(f"SHOW COLUMNS FROM {quote_ident(table)}")
        return [ColumnDescriptor.from_row(r) for r in rows]

    def get_column(self, table: str, column: str) -> Optional[ColumnDescriptor]:
        rows = self.manager.fetch_all(
            f"SHOW COLUMNS FROM {text_ident(table)} LIKE :pattern", {"pattern": like_escape(column)}
        )
        for row in rows:
            col = ColumnDescriptor.from_row(row)
            if col.name == column:
                return col
        return None

    def get_indexes(self, table: str) -> List[IndexDescriptor]:
        rows = self.manager.fetch_all(f"SHOW INDEX FROM {quote_ident(table)}")
        return [IndexDescriptor.from_row(r) for r in rows]

    def describe(self, table: str) -> TableDescriptor:
        return TableDescriptor(name=table, columns=self.get_columns(table), indexes=self.get_indexes(table))

    @staticmethod
    def primary_key_columns(columns: Sequence[ColumnDescriptor], indexes: Sequence[IndexDescriptor]) -> List[str]:
        """Columns of the primary key in key order.

        The PRIMARY index wins. Failing that, every column whose own metadata
        says PRI, in table order.
        """
        primary = sorted((idx for idx in indexes if idx.is_primary), key=lambda idx: idx.seq_in_index)
        if primary:
            return [idx.column_name for idx in primary]
        return [col.name for col in columns if col.is_primary]

    @staticmethod
    def find_primary_key(columns: Sequence[ColumnDescriptor], indexes: Sequence[IndexDescriptor]) -> Optional[str]:
        """Pick the identity column of a table, or None.

        A composite key has no single identity column: its rows are told
        apart by the whole tuple, so None is returned for it as well.
        """
        key = SchemaInspector.primary_key_columns(columns, indexes)
        return key[0] if len(key) == 1 else None


# --------------------------------------------------------------------------------------
# Issue detector
# --------------------------------------------------------------------------------------
class IssueDetector:
    """Detects the three identity defect classes on one table at a time.

    The zero and duplicate probes are read-only and fail open: a failing
    probe is logged and treated as "no defect", so one odd table never stops
    the analysis.
    """

    def __init__(self, ctx: RunContext, manager: ConnectionManager, inspector: Optional[SchemaInspector] = None) -> None:
        self.ctx = ctx
        self.manager = manager
        self.inspector = inspector or SchemaInspector(manager)
        self.max_groups = int(ctx.config["LIMITS"]["MAX_DUPLICATE_GROUPS"])

    def has_auto_increment(self, table: str, column: str) -> bool:
        col = self.inspector.get_column(table, column)
        return col is not None and col.is_auto_increment

    def count_zero_ids(self, table: str, column: str) -> int:
        sql = f"SELECT COUNT(*) FROM {quote_ident(table)} WHERE {quote_ident(column)} = 0"
        try:
            return int(self.manager.fetch_value(sql) or 0)
        except StoreError as exc:
            self.ctx.logger.warning("Could not count zero IDs in %s: %s", table, exc)
            return 0

    def find_duplicate_ids(self, table: str, column: str) -> Dict[Any, int]:
        col = quote_ident(column)
        # Zero-valued rows belong to the zero-id check only.
        sql = (
            f"SELECT {col} AS id_value, COUNT(*) AS occurrences FROM {quote_ident(table)} "
            f"WHERE {col} > 0 GROUP BY {col} HAVING COUNT(*) > 1 LIMIT {self.max_groups}"
        )
        try:
            rows = self.manager.fetch_all(sql)
        except StoreError as exc:
            self.ctx.logger.warning("Could not check for duplicates in %s: %s", table, exc)
            return {}
        return {row["id_value"]: int(row["occurrences"]) for row in rows}

    def analyze_table(self, table: str) -> TableAnalysis:
        descriptor = self.inspector.describe(table)
        primary_key = self.inspector.find_primary_key(descriptor.columns, descriptor.indexes)
        issues: List[IssueRecord] = []
        if primary_key is None:
            key = self.inspector.primary_key_columns(descriptor.columns, descriptor.indexes)
            reason = "composite primary key" if len(key) > 1 else "no primary key"
            return TableAnalysis(descriptor, None, issues, skip_reason=reason)

        # MySQL compares non-numeric strings to 0 as equal, so the zero check
        # on a character key would match and delete every such row.
        key_column = descriptor.column(primary_key)
        if key_column is None or not key_column.is_integer:
            return TableAnalysis(descriptor, None, issues, skip_reason="non-integer primary key")

        if not self.has_auto_increment(table, primary_key):
            issues.append(IssueRecord(IssueKind.MISSING_AUTO_INCREMENT, primary_key))

        zero_count = self.count_zero_ids(table, primary_key)
        if zero_count > 0:
            issues.append(IssueRecord(IssueKind.ZERO_IDS, primary_key, count=zero_count))

        duplicates = self.find_duplicate_ids(table, primary_key)
        if duplicates:
            issues.append(
                IssueRecord(
                    IssueKind.DUPLICATE_IDS,
                    primary_key,
                    count=sum(duplicates.values()),
                    duplicates=duplicates,
                    may_be_truncated=len(duplicates) >= self.max_groups,
                )
            )
        return TableAnalysis(descriptor, primary_key, issues)


# --------------------------------------------------------------------------------------
# Remediator
# --------------------------------------------------------------------------------------
# Rows are removed before the column is altered so the AUTO_INCREMENT start
# value is computed on the cleaned table.
REPAIR_ORDER = (IssueKind.ZERO_IDS, IssueKind.DUPLICATE_IDS, IssueKind.MISSING_AUTO_INCREMENT)


def render_backup(table: str, rows: Sequence[Dict[str, Any]], created_at: datetime) -> str:
    lines = [
        f"-- Backup of zero ID rows from {table}",
        f"-- Created: {created_at:%Y-%m-%d %H:%M:%S}",
        "",
    ]
    for row in rows:
        columns = ", ".join(quote_ident(c) for c in row)
        values = ", ".join(sql_literal(v) for v in row.values())
        lines.append(f"INSERT INTO {quote_ident(table)} ({columns}) VALUES ({values});")
    return "\n".join(lines) + "\n"


class Remediator:
    """Applies one fix per defect class; failures are reported, never raised."""

    def __init__(self, ctx: RunContext, manager: ConnectionManager, inspector: Optional[SchemaInspector] = None) -> None:
        self.ctx = ctx
        self.manager = manager
        self.inspector = inspector or SchemaInspector(manager)
        self.max_id_gap = int(ctx.config["LIMITS"]["MAX_ID_GAP"])
        self._handlers: Dict[IssueKind, Callable[[str, IssueRecord], FixResult]] = {
            IssueKind.ZERO_IDS: self.fix_zero_ids,
            IssueKind.DUPLICATE_IDS: self.fix_duplicate_ids,
            IssueKind.MISSING_AUTO_INCREMENT: self.fix_auto_increment,
        }

    def repair(self, table: str, issues: Sequence[IssueRecord]) -> RepairOutcome:
        by_kind = {issue.kind: issue for issue in issues}
        results = [self._handlers[kind](table, by_kind[kind]) for kind in REPAIR_ORDER if kind in by_kind]
        return RepairOutcome(table=table, issues=list(issues), results=results)

    def backup_zero_id_rows(self, table: str, column: str) -> Optional[Path]:
        log = self.ctx.logger
        try:
            rows = self.manager.fetch_all(f"SELECT * FROM {quote_ident(table)} WHERE {quote_ident(column)} = 0")
            path = self.ctx.backup_dir / f"{table}_zero_ids.sql"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(render_backup(table, rows, datetime.now()), encoding="utf-8")
        except (StoreError, OSError) as exc:
            log.warning("Could not back up zero ID rows of %s: %s", table, exc)
            return None
        log.info("Backed up %d zero ID rows to %s", len(rows), path)
        return path

    def fix_zero_ids(self, table: str, issue: IssueRecord) -> FixResult:
        log = self.ctx.logger
        log.info("Fixing %d zero ID rows in %s...", issue.count, table)
        if self.ctx.dry_run:
            log.info("DRY RUN: would delete %d rows with %s = 0", issue.count, issue.column)
            return FixResult(issue.kind, True, detail=f"dry run: {issue.count} rows")

        try:
            if self.ctx.backup_enabled:
                self.backup_zero_id_rows(table, issue.column)
            deleted = self.manager.execute(
                f"DELETE FROM {quote_ident(table)} WHERE {quote_ident(issue.column)} = 0"
            )
        except StoreError as exc:
            log.error("Failed to fix zero IDs in %s: %s", table, exc)
            return FixResult(issue.kind, False, detail=str(exc))

        log.info("Deleted %d zero ID rows from %s", deleted, table)
        return FixResult(issue.kind, True, rows_affected=deleted)

    def _collapse_group(self, table: str, column: str, value: Any) -> int:
        """Delete all but one row holding `value`; returns the rows removed.

        DELETE ... LIMIT removes rows in the storage engine's scan order, so the
        survivor is the last matching row in that order. Rows sharing a value
        cannot be ordered by key, so the order is engine-defined: on InnoDB it
        follows insertion within the group, while MyISAM reuses freed row slots
        and a newer row may sit earlier in the scan. The count is re-read
        inside the retried unit, which keeps a repeated attempt from removing
        the survivor.
        """
        tbl, col = text_ident(table), text_ident(column)

        def collapse(conn: Connection) -> int:
            remaining = int(conn.execute(text(f"SELECT COUNT(*) FROM {tbl} WHERE {col} = :value"), {"value": value}).scalar() or 0)
            if remaining <= 1:
                return 0
            result = conn.execute(text(f"DELETE FROM {tbl} WHERE {col} = :value LIMIT {remaining - 1}"), {"value": value})
            return result.rowcount

        return self.manager.run(collapse)

    def fix_duplicate_ids(self, table: str, issue: IssueRecord) -> FixResult:
        log = self.ctx.logger
        log.info("Fixing duplicate IDs in %s...", table)
        if self.ctx.dry_run:
            values = ", ".join(str(v) for v in issue.duplicates)
            log.info("DRY RUN: would fix duplicates: %s", values)
            return FixResult(issue.kind, True, detail=f"dry run: {values}")

        removed_total = 0
        try:
            for value in issue.duplicates:
                removed = self._collapse_group(table, issue.column, value)
                removed_total += removed
                log.info("Removed %d duplicate rows for ID %s", removed, value)
        except StoreError as exc:
            log.error("Failed to fix duplicates in %s: %s", table, exc)
            return FixResult(issue.kind, False, rows_affected=removed_total, detail=str(exc))
        return FixResult(issue.kind, True, rows_affected=removed_total)

    def next_auto_increment(self, table: str, column: str) -> int:
        rows = self.manager.fetch_all(
            f"SELECT MAX({quote_ident(column)}) AS max_id, COUNT(*) AS row_count FROM {quote_ident(table)}"
        )
        row = rows[0] if rows else {}
        max_id = max(int(row.get("max_id") or 0), 0)
        row_count = int(row.get("row_count") or 0)
        if max_id - row_count > self.max_id_gap:
            self.ctx.logger.warning(
                "%s.%s: gap between MAX(id)=%d and %d rows exceeds %d", table, column, max_id, row_count, self.max_id_gap
            )
        return max_id + 1

    def fix_auto_increment(self, table: str, issue: IssueRecord) -> FixResult:
        log = self.ctx.logger
        column = issue.column
        log.info("Adding AUTO_INCREMENT to %s.%s...", table, column)
        try:
            next_value = self.next_auto_increment(table, column)
            if self.ctx.dry_run:
                log.info("DRY RUN: would add AUTO_INCREMENT to %s.%s starting from %d", table, column, next_value)
                return FixResult(issue.kind, True, detail="dry run", next_auto_increment=next_value)

            descriptor = self.inspector.get_column(table, column)
            if descriptor is None:
                raise StoreError(f"Column {column} not found in {table}")
            tbl = quote_ident(table)
            self.manager.execute_ddl(
                f"ALTER TABLE {tbl} MODIFY {quote_ident(column)} {descriptor.definition()} AUTO_INCREMENT",
                f"ALTER TABLE {tbl} AUTO_INCREMENT = {next_value}",
            )
        except StoreError as exc:
            log.error("Failed to add AUTO_INCREMENT to %s.%s: %s", table, column, exc)
            return FixResult(issue.kind, False, detail=str(exc))

        log.info("Added AUTO_INCREMENT to %s.%s, starting from %d", table, column, next_value)
        return FixResult(issue.kind, True, next_auto_increment=next_value)


# --------------------------------------------------------------------------------------
# Batch orchestrator
# --------------------------------------------------------------------------------------
class BatchOrchestrator:
    """Drives a run: enumerate, batch, analyze, repair, pace and record."""

    def __init__(
        self,
        ctx: RunContext,
        manager: ConnectionManager,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ctx = ctx
        self.manager = manager
        self.inspector = SchemaInspector(manager)
        self.detector = IssueDetector(ctx, manager, self.inspector)
        self.remediator = Remediator(ctx, manager, self.inspector)
        self.sleep = sleep
        self.clock = clock
        pacing = ctx.config["PACING"]
        self.table_delay = float(pacing["TABLE_DELAY"])
        self.batch_delay = float(pacing["BATCH_DELAY"])
        self.batch_size = int(ctx.config["RUN"]["BATCH_SIZE"])
        ceiling = float(ctx.config["RUN"]["MAX_EXECUTION_TIME"] or 0)
        self._deadline = clock() + ceiling if ceiling > 0 else None
        self.total = 0
        self.processed = 0

    @property
    def progress(self) -> float:
        if not self.total:
            return 0.0
        return round(self.processed / self.total * 100, 1)

    def _time_exceeded(self) -> bool:
        return self._deadline is not None and self.clock() > self._deadline

    def _existing(self, tables: Sequence[str]) -> List[str]:
        present = []
        for table in tables:
            try:
                if self.inspector.table_exists(table):
                    present.append(table)
            except StoreError as exc:
                self.ctx.logger.warning("Could not check whether %s exists: %s", table, exc)
        return present

    def scan_and_fix(self) -> None:
        log = self.ctx.logger
        self.ctx.set_state(RunState.SCANNING)
        log.info("Starting comprehensive database scan...")
        tables = self.inspector.list_tables()
        log.info("Found %d tables to analyze", len(tables))
        self.process_in_batches(tables)

    def quick_fix(self, tables: Optional[Sequence[str]] = None) -> None:
        self.ctx.set_state(RunState.SCANNING)
        self.ctx.logger.info("Running QUICK FIX for core tables...")
        candidates = tables if tables is not None else self.ctx.config["TABLES"]["QUICK_FIX"]
        self.process_in_batches(self._existing(candidates))

    def emergency_recovery(self, tables: Optional[Sequence[str]] = None) -> bool:
        log = self.ctx.logger
        self.ctx.set_state(RunState.EMERGENCY_RECOVERY)
        log.info("Starting EMERGENCY RECOVERY mode...")
        try:
            self.manager.connect()
        except StoreError as exc:
            log.error("Emergency reconnection failed: %s", exc)
            return False

        candidates = tables if tables is not None else self.ctx.config["TABLES"]["CRITICAL"]
        present = self._existing(candidates)
        self.ctx.total_tables = self.total = len(present)
        fixed_count = 0
        for table in present:
            log.info("Emergency fixing: %s", table)
            self.processed += 1
            outcome = self.process_table(table)
            if outcome is not None and outcome.success:
                fixed_count += 1
                log.info("Emergency fixed: %s", table)
        log.info("Emergency recovery completed. Fixed %d critical tables.", fixed_count)
        return fixed_count > 0

    def process_in_batches(self, tables: Sequence[str]) -> None:
        log = self.ctx.logger
        batches = chunked(tables, self.batch_size)
        self.ctx.total_tables = self.total = len(tables)
        self.processed = 0

        for batch_index, batch in enumerate(batches, start=1):
            log.info("Processing batch %d/%d (%d tables)", batch_index, len(batches), len(batch))
            for table in batch:
                if self._time_exceeded():
                    remaining = list(tables[self.processed :])
                    log.error("Execution time ceiling reached; %d tables left unvisited", len(remaining))
                    for skipped in remaining:
                        self.ctx.collector.add_skipped(skipped, "execution time ceiling reached")
                    return
                self.processed += 1
                log.info("[%.1f%%] Analyzing: %s", self.progress, table)
                self.process_table(table)
                self.sleep(self.table_delay)

            if batch_index < len(batches):
                log.info("Batch completed. Resting for %.1f seconds...", self.batch_delay)
                self.sleep(self.batch_delay)

    def process_table(self, table: str) -> Optional[RepairOutcome]:
        log = self.ctx.logger
        collector = self.ctx.collector
        try:
            if self.ctx.state is not RunState.EMERGENCY_RECOVERY:
                self.ctx.set_state(RunState.ANALYZING)
            analysis = self.detector.analyze_table(table)
            if analysis.skip_reason is not None:
                log.info("Skipping %s: %s", table, analysis.skip_reason)
                collector.add_skipped(table, analysis.skip_reason)
                return None
            if not analysis.issues:
                collector.add_skipped(table, "no defects")
                return None

            log.warning("Issues found in %s: %s", table, ", ".join(i.kind.value for i in analysis.issues))
            if self.ctx.state is not RunState.EMERGENCY_RECOVERY:
                self.ctx.set_state(RunState.FIXING)
            outcome = self.remediator.repair(table, analysis.issues)
        except Exception as exc:
            log.error("Error with %s: %s", table, exc)
            collector.add_error(table, str(exc))
            return None

        if outcome.success:
            collector.add_fixed(outcome)
            log.info("Fixed: %s", table)
        else:
            failed = ", ".join(k.value for k in outcome.failed_kinds)
            collector.add_error(table, f"failed to fix {failed}", outcome)
            log.error("Could not fully fix %s (%s)", table, failed)
        return outcome

    def finish(self) -> RunReport:
        self.ctx.set_state(RunState.REPORTING)
        return self.ctx.finalize()


# --------------------------------------------------------------------------------------
# Report writer
# --------------------------------------------------------------------------------------
class ReportWriter:
    """Renders a finalized RunReport; it never sees the run while it is in progress."""

    def __init__(self, base_path: Path) -> None:
        self.base_path = base_path

    @staticmethod
    def summary_lines(report: RunReport) -> List[str]:
        rule = "=" * 60
        lines = [
            rule,
            "MYSQL IDENTITY FIXER REPORT",
            rule,
            f"Mode: {'DRY RUN' if report.dry_run else 'LIVE EXECUTION'} ({report.mode})",
            f"Database: {report.database}",
            f"Date: {report.finished_at:%Y-%m-%d %H:%M:%S}",
            f"Issues Found: {report.issues_found}",
            f"Tables Fixed: {len(report.fixed)}",
            f"Tables Skipped: {len(report.skipped)}",
            f"Errors: {len(report.errors)}",
            f"Rows Removed: {report.rows_removed}",
        ]
        if report.fixed:
            lines.append("Fixed Tables:")
            lines.extend(f"  - {o.table} ({', '.join(i.kind.value for i in o.issues)})" for o in report.fixed)
        if report.skipped:
            lines.append("Skipped Tables:")
            lines.extend(f"  - {s.table}: {s.reason}" for s in report.skipped)
        if report.errors:
            lines.append("Errors:")
            lines.extend(f"  - Table {e.table}: {e.message}" for e in report.errors)
        lines.append(rule)
        return lines

    def write_json(self, report: RunReport) -> Path:
        path = self.base_path / "report.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report.to_dict(), indent=2, default=str))
        return path

    def write_html(self, report: RunReport) -> Path:
        esc = html.escape
        mode = "DRY RUN" if report.dry_run else "LIVE EXECUTION"
        lines = [
            "<!DOCTYPE html>",
            "<html>",
            "<head>",
            '<meta charset="utf-8">',
            "<title>MySQL Identity Fixer Report</title>",
            "<style>",
            "body { font-family: 'Segoe UI', Tahoma, sans-serif; margin: 0; padding: 20px; background: #f4f5f7; }",
            ".container { max-width: 1100px; margin: 0 auto; background: white; border-radius: 8px; padding: 30px; }",
            ".stats { display: grid; grid-template-columns: repeat(auto-fit, minmax(200px, 1fr)); gap: 16px; }",
            ".stat-box { padding: 20px; border-radius: 8px; text-align: center; color: white; }",
            ".stat-box h3 { margin: 0; font-size: 2.2em; }",
            ".success { background: #28a745; } .warning { background: #fd7e14; }",
            ".error { background: #dc3545; } .info { background: #17a2b8; }",
            ".section h2 { border-bottom: 1px solid #dee2e6; padding-bottom: 6px; }",
            "li { padding: 4px 0; }",
            "</style>",
            "</head>",
            "<body>",
            "<div class='container'>",
            "<h1>MySQL Identity Fixer Report</h1>",
            f"<p>Generated: {report.finished_at:%Y-%m-%d %H:%M:%S} | Mode: {mode} | Database: {esc(report.database)}</p>",
            "<div class='stats'>",
            f"<div class='stat-box success'><h3>{len(report.fixed)}</h3><p>Tables Fixed</p></div>",
            f"<div class='stat-box warning'><h3>{report.issues_found}</h3><p>Issues Found</p></div>",
            f"<div class='stat-box error'><h3>{len(report.errors)}</h3><p>Errors</p></div>",
            f"<div class='stat-box info'><h3>{len(report.skipped)}</h3><p>Skipped</p></div>",
            "</div>",
            "<div class='section'>",
            "<h2>Execution Summary</h2>",
            f"<p><strong>Total Tables Processed:</strong> {report.processed_tables} of {report.total_tables}</p>",
            f"<p><strong>Rows Removed:</strong> {report.rows_removed}</p>",
            f"<p><strong>Success Rate:</strong> {report.success_rate}%</p>",
            "</div>",
        ]
        sections = [
            ("Successfully Fixed Tables", [f"{o.table}: {', '.join(i.description for i in o.issues)}" for o in report.fixed]),
            ("Skipped Tables", [f"{s.table}: {s.reason}" for s in report.skipped]),
            ("Errors Encountered", [f"Table {e.table}: {e.message}" for e in report.errors]),
        ]
        for title, items in sections:
            if not items:
                continue
            lines.append("<div class='section'>")
            lines.append(f"<h2>{title} ({len(items)})</h2>")
            lines.append("<ul>")
            lines.extend(f"<li>{esc(item)}</li>" for item in items)
            lines.append("</ul>")
            lines.append("</div>")
        lines.extend(["</div>", "</body>", "</html>"])

        path = self.base_path / "report.html"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines), encoding="utf-8")
        return path


def publish_report(ctx: RunContext, report: RunReport) -> None:
    for line in ReportWriter.summary_lines(report):
        ctx.logger.info(line)
    # Dry runs change nothing, so they only get the logged summary.
    if report.dry_run:
        return
    writer = ReportWriter(ctx.output_root)
    json_path = writer.write_json(report)
    html_path = writer.write_html(report)
    ctx.logger.info("Reports written: %s, %s", html_path, json_path)


# --------------------------------------------------------------------------------------
# Runner
# --------------------------------------------------------------------------------------
def apply_resource_limits(config: Dict[str, Any]) -> None:
    limit_mb = int(config["RUN"].get("MEMORY_LIMIT_MB") or 0)
    if resource is None or limit_mb <= 0:
        return
    limit = limit_mb * 1024 * 1024
    soft, hard = resource.getrlimit(resource.RLIMIT_AS)
    if hard != resource.RLIM_INFINITY:
        limit = min(limit, hard)
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, hard))
    except (ValueError, OSError) as exc:
        print(f"[WARN] Could not apply memory limit of {limit_mb} MiB: {exc}")


def run_fixer(config: Dict[str, Any], mode: str = "scan", engine: Optional[Engine] = None) -> RunReport:
    """Run one fixer pass in `mode` ("scan", "quick" or "emergency") and return its report."""
    with RunContext(config, mode=mode) as ctx:
        manager = ConnectionManager(ctx, engine=engine)
        try:
            orchestrator = BatchOrchestrator(ctx, manager)
            if mode == "emergency":
                orchestrator.emergency_recovery()
            elif mode == "quick":
                orchestrator.quick_fix()
            else:
                orchestrator.scan_and_fix()
            report = orchestrator.finish()
            publish_report(ctx, report)
            ctx.set_state(RunState.DONE)
        except Exception:
            ctx.logger.exception("Fatal error during %s run", mode)
            raise
        finally:
            manager.close()
    return report


def _configure_test_source() -> None:
    """Point CONFIG to the dockerized MySQL fixture seeded by seed_defect_demo.py."""

    CONFIG["CONNECTION"].update(
        {
            "HOST": "localhost",
            "PORT": 3306,
            "USER": "root",
            "PASSWORD": os.getenv("MYSQL_ROOT_PASSWORD", "YourStrong!Passw0rd"),
            "DATABASE": "IdentityDemo",
        }
    )


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Detect and repair identity defects in MySQL tables.")
    parser.add_argument(
        "mode",
        nargs="?",
        choices=["test"],
        help="Use 'test' to run against the dockerized IdentityDemo database.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Detect only; never delete or alter anything.")
    parser.add_argument("--silent", action="store_true", help="Do not echo status lines to the console.")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--quick-fix", action="store_true", help="Only fix the well-known core tables.")
    group.add_argument("--emergency", action="store_true", help="Reconnect and fix only the critical tables.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    if args.mode == "test":
        _configure_test_source()
    if args.dry_run:
        CONFIG["RUN"]["DRY_RUN"] = True
    if args.silent:
        CONFIG["RUN"]["VERBOSE"] = False
    mode = "emergency" if args.emergency else "quick" if args.quick_fix else "scan"

    apply_resource_limits(CONFIG)
    try:
        run_fixer(CONFIG, mode)
    except Exception as exc:
        print(f"[ERROR] Fatal error: {exc}")
        if mode != "emergency":
            print("[INFO] Attempting emergency recovery...")
            try:
                run_fixer(CONFIG, "emergency")
            except Exception as emergency_exc:
                print(f"[ERROR] Emergency recovery also failed: {emergency_exc}")
        return 1
    print(f"[INFO] Run complete. Artifacts under {CONFIG['OUTPUT']['BASE_PATH']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
