"""Seed the IdentityDemo database into a running Docker MySQL server.

Usage is intentionally minimal to match the three-step workflow:

1. Start MySQL via Docker (`docker run -e MYSQL_ROOT_PASSWORD=... -p 3306:3306 mysql:8`).
2. Run this script once; if the database already exists, nothing happens.
3. Run `python mysql_identity_fixer.py test` with or without `--dry-run`.

The seeded tables cover every defect class the fixer repairs, plus tables it
must leave alone (no primary key, already healthy).
"""
from __future__ import annotations

import argparse
import os
import sys
from typing import Iterator
from urllib.parse import quote_plus

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError


DEFAULT_HOST = "localhost"
DEFAULT_PORT = 3306
DEFAULT_PASSWORD = os.environ.get("MYSQL_ROOT_PASSWORD", "YourStrong!Passw0rd")
DEMO_DATABASE = "IdentityDemo"

DEMO_DATASET_SQL = """
CREATE DATABASE IdentityDemo CHARACTER SET utf8mb4;
USE IdentityDemo;

-- Primary key without AUTO_INCREMENT and a row stuck at id 0.
CREATE TABLE tblclients (
    id INT(10) UNSIGNED NOT NULL,
    firstname VARCHAR(64) NOT NULL DEFAULT '',
    email VARCHAR(128) NULL,
    PRIMARY KEY (id)
) ENGINE=InnoDB;
INSERT INTO tblclients (id, firstname, email) VALUES
    (0, 'Orphan', NULL),
    (1, 'Ada', 'ada@example.com'),
    (3, 'Grace', 'grace@example.com');

-- Empty table missing AUTO_INCREMENT; the counter must start at 1.
CREATE TABLE tbltickets (
    id INT(10) NOT NULL,
    title VARCHAR(255) NOT NULL DEFAULT '',
    PRIMARY KEY (id)
) ENGINE=InnoDB;

-- Healthy table.
CREATE TABLE tblinvoices (
    id INT(10) NOT NULL AUTO_INCREMENT,
    total DECIMAL(10, 2) NOT NULL DEFAULT '0.00',
    PRIMARY KEY (id)
) ENGINE=InnoDB;
INSERT INTO tblinvoices (total) VALUES (10.00), (25.50);

-- No primary key at all: skipped, duplicates and zeros are left untouched.
CREATE TABLE tblactivitylog (
    id INT(10) NOT NULL,
    description TEXT
) ENGINE=InnoDB;
INSERT INTO tblactivitylog (id, description) VALUES (0, 'boot'), (7, 'login'), (7, 'login');
"""


def build_engine(host: str, port: int, password: str) -> Engine:
    url = f"mysql+mysqlconnector://root:{quote_plus(password)}@{host}:{port}/"
    return create_engine(url, connect_args={"connection_timeout": 30})


def database_exists(engine: Engine) -> bool:
    sql = "SELECT SCHEMA_NAME FROM information_schema.SCHEMATA WHERE SCHEMA_NAME = :name"
    with engine.connect() as conn:
        return conn.execute(text(sql), {"name": DEMO_DATABASE}).scalar() is not None


def split_statements(sql_text: str) -> Iterator[str]:
    """Yield statements terminated by `;`, dropping comment-only lines."""
    statement = []
    for line in sql_text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("--"):
            continue
        statement.append(line)
        if stripped.endswith(";"):
            yield "\n".join(statement).rstrip().rstrip(";")
            statement = []
    if statement:
        yield "\n".join(statement)


def seed(engine: Engine) -> None:
    if database_exists(engine):
        print(f"{DEMO_DATABASE} already present; nothing to do.")
        return

    print(f"Seeding {DEMO_DATABASE}...")
    with engine.begin() as conn:
        for i, statement in enumerate(split_statements(DEMO_DATASET_SQL), start=1):
            print(f"Executing statement {i}...", flush=True)
            conn.exec_driver_sql(statement)
    print("Seeding complete.")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the IdentityDemo database into Docker MySQL.")
    parser.add_argument("--host", default=DEFAULT_HOST, help="MySQL host (default: %(default)s)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="MySQL port (default: %(default)s)")
    parser.add_argument(
        "--password", default=DEFAULT_PASSWORD, help="root password (default: env MYSQL_ROOT_PASSWORD or YourStrong!Passw0rd)"
    )

    args = parser.parse_args()
    engine = build_engine(args.host, args.port, args.password)
    try:
        seed(engine)
    except InterfaceError as exc:
        print("[ERROR] Could not connect to MySQL. Ensure the container is running and the port is published.")
        print(f"Details: {exc}")
        sys.exit(1)


if __name__ == "__main__":
    main()
