# audit.py -- Code change and process run records
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

"""Durable records of pushes and command runs.

Every push attempt leaves exactly one ``code_changes`` row behind. Rows
move ``pending -> running -> applied|failed`` (``running`` may be
skipped) and are never reopened once terminal.
"""

__all__ = [
    "ChangeLog",
    "ChangeStatus",
    "CodeChange",
    "ProcessRun",
    "ProcessRunLog",
]

import json
import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum

from .database import Database
from .errors import ChangeStateError, StorageError
from .log_utils import getLogger

logger = getLogger(__name__)


class ChangeStatus(str, Enum):
    """Lifecycle state of a code change."""

    PENDING = "pending"
    RUNNING = "running"
    APPLIED = "applied"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (ChangeStatus.APPLIED, ChangeStatus.FAILED)


_ALLOWED_FROM = {
    ChangeStatus.RUNNING: (ChangeStatus.PENDING,),
    ChangeStatus.APPLIED: (ChangeStatus.PENDING, ChangeStatus.RUNNING),
    ChangeStatus.FAILED: (ChangeStatus.PENDING, ChangeStatus.RUNNING),
}


@dataclass(frozen=True)
class CodeChange:
    """One push attempt."""

    id: int
    from_target: str
    to_target: str
    status: ChangeStatus
    error_message: str
    timestamp: str


class ChangeLog:
    """Access to the ``code_changes`` table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def record(self, from_target: str, to_target: str) -> int:
        """Record a new pending change.

        Returns:
            The id of the new row
        """
        cursor = self.db.execute(
            "INSERT INTO code_changes (from_sha, to_sha, status) VALUES (?, ?, ?)",
            (from_target, to_target, ChangeStatus.PENDING.value),
        )
        change_id = cursor.lastrowid
        if change_id is None:
            raise StorageError("recording code change")
        logger.info("recorded change %d: %s -> %s", change_id, from_target, to_target)
        return change_id

    def get(self, change_id: int) -> CodeChange:
        """Retrieve a change by id.

        Raises:
            KeyError: if there is no such change
        """
        row = self.db.fetchone(
            "SELECT id, from_sha, to_sha, status, error_message, change_time "
            "FROM code_changes WHERE id = ?",
            (change_id,),
        )
        if row is None:
            raise KeyError(change_id)
        return self._from_row(row)

    def __iter__(self) -> Iterator[CodeChange]:
        rows = self.db.fetchall(
            "SELECT id, from_sha, to_sha, status, error_message, change_time "
            "FROM code_changes ORDER BY id"
        )
        for row in rows:
            yield self._from_row(row)

    def __len__(self) -> int:
        row = self.db.fetchone("SELECT COUNT(*) FROM code_changes")
        assert row is not None
        return int(row[0])

    @staticmethod
    def _from_row(row: tuple) -> CodeChange:
        return CodeChange(
            id=row[0],
            from_target=row[1] or "",
            to_target=row[2],
            status=ChangeStatus(row[3]),
            error_message=row[4] or "",
            timestamp=row[5],
        )

    def _transition(
        self, change_id: int, status: ChangeStatus, message: str | None = None
    ) -> None:
        allowed = _ALLOWED_FROM[status]
        placeholders = ", ".join("?" for _ in allowed)
        cursor = self.db.execute(
            "UPDATE code_changes SET status = ?, error_message = ? "
            f"WHERE id = ? AND status IN ({placeholders})",
            (status.value, message, change_id, *(s.value for s in allowed)),
        )
        if cursor.rowcount != 1:
            current = self.get(change_id).status
            raise ChangeStateError(
                f"change {change_id} cannot move from {current.value} to {status.value}"
            )
        logger.debug("change %d is now %s", change_id, status.value)

    def mark_running(self, change_id: int) -> None:
        """Note that the migration script for a change has been launched."""
        self._transition(change_id, ChangeStatus.RUNNING)

    def mark_applied(self, change_id: int) -> None:
        """Finish a change successfully."""
        self._transition(change_id, ChangeStatus.APPLIED)

    def mark_failed(self, change_id: int, message: str) -> None:
        """Finish a change unsuccessfully.

        Args:
            change_id: Change to update
            message: Human readable reason, stored verbatim
        """
        self._transition(change_id, ChangeStatus.FAILED, message or "unknown error")


@dataclass(frozen=True)
class ProcessRun:
    """A command executed against a checked out commit."""

    id: int
    commit_sha: str
    command: str
    status: str
    exit_code: int | None
    stdout: str
    stderr: str
    working_directory: str


class ProcessRunLog:
    """Access to the ``process_runs`` table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def start(
        self,
        commit_sha: str,
        command: str,
        working_directory: str,
        environment: Mapping[str, str] | None = None,
    ) -> int:
        """Record that a command is starting.

        Returns:
            The id of the new row
        """
        uid = getattr(os, "getuid", lambda: None)()
        gid = getattr(os, "getgid", lambda: None)()
        cursor = self.db.execute(
            "INSERT INTO process_runs (commit_sha, command, pid, parent_pid, uid, "
            "gid, environment, working_directory, status) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'running')",
            (
                commit_sha,
                command,
                os.getpid(),
                os.getppid(),
                uid,
                gid,
                json.dumps(dict(environment)) if environment is not None else None,
                working_directory,
            ),
        )
        run_id = cursor.lastrowid
        if run_id is None:
            raise StorageError("recording process run")
        return run_id

    def finish(self, run_id: int, exit_code: int, stdout: str, stderr: str) -> None:
        """Record the outcome of a command."""
        self.db.execute(
            "UPDATE process_runs SET end_time = CURRENT_TIMESTAMP, exit_code = ?, "
            "stdout = ?, stderr = ?, status = ? WHERE id = ?",
            (
                exit_code,
                stdout,
                stderr,
                "completed" if exit_code == 0 else "failed",
                run_id,
            ),
        )

    def get(self, run_id: int) -> ProcessRun:
        """Retrieve a run by id.

        Raises:
            KeyError: if there is no such run
        """
        row = self.db.fetchone(
            "SELECT id, commit_sha, command, status, exit_code, stdout, stderr, "
            "working_directory FROM process_runs WHERE id = ?",
            (run_id,),
        )
        if row is None:
            raise KeyError(run_id)
        return ProcessRun(
            id=row[0],
            commit_sha=row[1],
            command=row[2],
            status=row[3],
            exit_code=row[4],
            stdout=row[5] or "",
            stderr=row[6] or "",
            working_directory=row[7] or "",
        )
