# database.py -- SQLite storage handle for celluloid
# Copyright (C) 2025 The Celluloid Authors
#
# SPDX-License-Identifier: Apache-2.0 OR GPL-2.0-or-later
# Celluloid is dual-licensed under the Apache License, Version 2.0 and the GNU
# General Public License as published by the Free Software Foundation; version 2.0
# or (at your option) any later version. You can redistribute it and/or
# modify it under the terms of either of these two licenses.
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
# You should have received a copy of the licenses; if not, see
# <http://www.gnu.org/licenses/> for a copy of the GNU General Public License
# and <http://www.apache.org/licenses/LICENSE-2.0> for a copy of the Apache
# License, Version 2.0.
#

"""Access to the SQLite database that holds a celluloid repository.

A single :class:`Database` is opened per process and handed to every
component that needs storage. The connection runs in autocommit mode;
multi-statement units of work go through :meth:`Database.transaction`.
"""

__all__ = [
    "SCHEMA",
    "Database",
]

import os
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from types import TracebackType
from typing import Any

from .errors import StorageError
from .log_utils import getLogger

logger = getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS git_objects (
    sha TEXT PRIMARY KEY,
    type TEXT NOT NULL CHECK(type IN ('blob', 'tree', 'commit', 'tag')),
    size INTEGER NOT NULL,
    data BLOB NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS git_refs (
    name TEXT PRIMARY KEY,
    sha TEXT NOT NULL,
    type TEXT NOT NULL CHECK(type IN ('branch', 'tag', 'remote')),
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS process_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    commit_sha TEXT NOT NULL,
    command TEXT NOT NULL,
    pid INTEGER,
    parent_pid INTEGER,
    uid INTEGER,
    gid INTEGER,
    start_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    end_time TIMESTAMP,
    exit_code INTEGER,
    stdout TEXT,
    stderr TEXT,
    environment TEXT,
    working_directory TEXT,
    status TEXT CHECK(status IN ('running', 'completed', 'failed'))
);

CREATE TABLE IF NOT EXISTS code_changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    from_sha TEXT,
    to_sha TEXT NOT NULL,
    change_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    status TEXT CHECK(status IN ('pending', 'running', 'applied', 'failed')),
    error_message TEXT
);
"""

DEFAULT_TIMEOUT = 30.0


class Database:
    """An open celluloid database."""

    def __init__(self, path: str, connection: sqlite3.Connection) -> None:
        """Wrap an existing connection.

        Args:
            path: Location of the database file
            connection: Connection opened with isolation_level=None
        """
        self.path = path
        self._conn = connection

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.path!r})"

    @classmethod
    def open(
        cls, path: str, *, create: bool = False, timeout: float = DEFAULT_TIMEOUT
    ) -> "Database":
        """Open a database file.

        Args:
            path: Path of the SQLite file, or ":memory:"
            create: Whether a missing file may be created
            timeout: Seconds to wait for locks held by other connections

        Raises:
            StorageError: if the file is missing or cannot be opened
        """
        if path != ":memory:":
            path = os.path.abspath(path)
            if not create and not os.path.exists(path):
                raise StorageError(f"database file not found: {path}")
        try:
            conn = sqlite3.connect(path, timeout=timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise StorageError(f"opening {path}", e) from e
        logger.debug("opened database %s", path)
        return cls(path, conn)

    @classmethod
    def init(cls, path: str) -> "Database":
        """Create (or upgrade in place) a database with the celluloid schema.

        Initializing an existing database leaves its contents alone; in
        particular HEAD keeps its current target.
        """
        db = cls.open(path, create=True)
        try:
            db.executescript(SCHEMA)
            db.execute(
                "INSERT OR IGNORE INTO git_refs (name, sha, type) "
                "VALUES ('HEAD', '', 'branch')"
            )
        except BaseException:
            db.close()
            raise
        logger.info("initialized database %s", db.path)
        return db

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute a single parameter-bound statement.

        Raises:
            StorageError: if the statement fails
        """
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(sql.split(None, 1)[0].lower(), e) from e

    def executescript(self, script: str) -> None:
        """Execute a trusted multi-statement script (schema only)."""
        try:
            self._conn.executescript(script)
        except sqlite3.Error as e:
            raise StorageError("executing script", e) from e

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> tuple[Any, ...] | None:
        """Execute a query and return its first row, if any."""
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[tuple[Any, ...]]:
        """Execute a query and return all rows."""
        cursor = self.execute(sql, params)
        try:
            return cursor.fetchall()
        except sqlite3.Error as e:
            raise StorageError("reading rows", e) from e

    @property
    def in_transaction(self) -> bool:
        """Whether a transaction is currently open on the connection."""
        return self._conn.in_transaction

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT.

        The transaction is rolled back if the block raises.
        """
        self.execute("BEGIN IMMEDIATE")
        try:
            yield self
            self.execute("COMMIT")
        except BaseException:
            if self._conn.in_transaction:
                try:
                    self._conn.execute("ROLLBACK")
                except sqlite3.Error as e:
                    logger.warning("rollback failed: %s", e)
            raise

    def backup_to(self, path: str) -> None:
        """Copy the whole database into a new file at path."""
        try:
            target = sqlite3.connect(path)
            try:
                self._conn.backup(target)
            finally:
                target.close()
        except sqlite3.Error as e:
            raise StorageError(f"snapshot to {path}", e) from e
        logger.debug("snapshot of %s written to %s", self.path, path)

    def restore_from(self, path: str) -> None:
        """Replace the whole database with the contents of a snapshot."""
        if self.in_transaction:
            raise StorageError("cannot restore a snapshot inside a transaction")
        try:
            source = sqlite3.connect(path)
            try:
                source.backup(self._conn)
            finally:
                source.close()
        except sqlite3.Error as e:
            raise StorageError(f"restore from {path}", e) from e
        logger.info("restored %s from snapshot", self.path)

    def close(self) -> None:
        """Close the underlying connection."""
        self._conn.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
