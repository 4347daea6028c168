# push.py -- Transactional push pipeline
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

"""Pushing commits into a celluloid database.

A push goes through these steps:

1. every object reachable from the pushed commit is copied into the
   object store;
2. a ``code_changes`` row is recorded as pending;
3. the reference update is staged in a :class:`PushTransaction`;
4. for head-advancing references only, the commit is checked out into a
   scratch directory and its migration script, if any, is run;
5. the transaction either commits (reference, HEAD and ``applied`` status
   in one SQLite transaction) or rolls back (database snapshot restored,
   row marked ``failed``).

HEAD therefore only ever moves to a commit whose migration succeeded.
"""

__all__ = [
    "PushPipeline",
    "PushRequest",
    "PushResult",
    "PushTransaction",
]

import os
import shutil
import tempfile
from dataclasses import dataclass
from types import TracebackType

from .audit import ChangeLog
from .checkout import Materializer, materialized
from .config import HelperConfig
from .database import Database
from .errors import (
    GraphError,
    MaterializationFailed,
    MigrationFailed,
    NonFastForward,
    ObjectConflict,
    ObjectNotFound,
    ProtocolParseError,
    StorageError,
    one_line,
)
from .log_utils import getLogger
from .migration import MigrationRunner
from .object_store import ObjectStore
from .refs import RefsContainer
from .vcs import Backend, ObjectGraph

logger = getLogger(__name__)


@dataclass(frozen=True)
class PushRequest:
    """A single ``push`` line."""

    src: str
    dst: str
    ref: str
    force: bool = False

    @classmethod
    def parse(cls, refspec: str, ref: str | None = None) -> "PushRequest":
        """Parse ``[+]<src>:<dst>`` and an optional explicit reference.

        Args:
            refspec: The refspec argument of the push command
            ref: Reference to report on; defaults to dst

        Raises:
            ProtocolParseError: if the refspec is malformed or asks for a
                deletion; the error names the reference, or the refspec
                itself when no reference can be told
        """
        token = refspec
        force = refspec.startswith("+")
        if force:
            refspec = refspec[1:]
        if ":" not in refspec:
            raise ProtocolParseError(f"invalid refspec {refspec!r}", ref or token)
        src, dst = refspec.split(":", 1)
        ref = ref or dst
        if not ref:
            raise ProtocolParseError(f"no destination in refspec {refspec!r}", token)
        if not src:
            raise ProtocolParseError("deleting references is not supported", ref)
        return cls(src=src, dst=dst or ref, ref=ref, force=force)


@dataclass(frozen=True)
class PushResult:
    """Outcome of one push, as reported to the client."""

    ref: str
    ok: bool
    reason: str = ""
    change_id: int | None = None

    def format(self) -> str:
        """Render the protocol status line (without newline)."""
        if self.ok:
            return f"ok {self.ref}"
        return f"error {self.ref} {one_line(self.reason)}"


class PushTransaction:
    """The all-or-nothing part of a push.

    Reference updates are staged and only written by :meth:`commit`,
    together with HEAD and the change status, inside one SQLite
    transaction. A database snapshot can be taken before running code
    that writes to the database on its own connection; :meth:`rollback`
    restores it.
    """

    def __init__(
        self, db: Database, refs: RefsContainer, changes: ChangeLog, change_id: int
    ) -> None:
        self.db = db
        self.refs = refs
        self.changes = changes
        self.change_id = change_id
        self.state = "open"
        self._staged: dict[str, str] = {}
        self._tempdir: str | None = None
        self._snapshot: str | None = None

    def stage_ref(self, name: str, target: str) -> None:
        """Arrange for name to point at target once the push commits."""
        self._check_open()
        self._staged[name] = target

    def snapshot(self) -> None:
        """Save the current database contents for a later rollback."""
        self._check_open()
        if self._tempdir is None:
            self._tempdir = tempfile.mkdtemp(prefix="celluloid-snapshot-")
        path = os.path.join(self._tempdir, "snapshot.sqlite")
        self.db.backup_to(path)
        self._snapshot = path

    def commit(self, head_target: str | None = None) -> None:
        """Write the staged references and mark the change applied.

        Args:
            head_target: New HEAD target, or None to leave HEAD alone
        """
        self._check_open()
        with self.db.transaction():
            for name, target in self._staged.items():
                self.refs.set(name, target)
            if head_target is not None:
                self.refs.set_head(head_target)
            self.changes.mark_applied(self.change_id)
        self.state = "committed"
        logger.info(
            "change %d applied%s",
            self.change_id,
            f", HEAD is now {head_target}" if head_target is not None else "",
        )

    def rollback(self, message: str) -> None:
        """Undo everything since the snapshot and mark the change failed.

        Args:
            message: Reason stored on the change row
        """
        self._check_open()
        self.state = "rolled back"
        if self._snapshot is not None:
            try:
                self.db.restore_from(self._snapshot)
            except StorageError as e:
                logger.error("could not restore snapshot: %s", e)
                message = f"{message}\n(restoring the database snapshot failed: {e})"
        self.changes.mark_failed(self.change_id, message)
        logger.info("change %d failed: %s", self.change_id, one_line(message))

    def close(self) -> None:
        """Discard the snapshot; roll back if the push never finished."""
        try:
            if self.state == "open":
                self.rollback("push aborted")
        finally:
            if self._tempdir is not None:
                shutil.rmtree(self._tempdir, ignore_errors=True)
                self._tempdir = None
                self._snapshot = None

    def _check_open(self) -> None:
        if self.state != "open":
            raise RuntimeError(f"transaction already {self.state}")

    def __enter__(self) -> "PushTransaction":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_val is not None and self.state == "open":
            self.rollback(f"unexpected error: {exc_val!r}")
        self.close()


class PushPipeline:
    """Applies push requests to a database."""

    def __init__(
        self,
        db: Database,
        graph: ObjectGraph,
        backend: Backend,
        config: HelperConfig | None = None,
        runner: MigrationRunner | None = None,
    ) -> None:
        """Initialize a PushPipeline.

        Args:
            db: Database to push into
            graph: The repository being pushed from
            backend: Backend used for scratch checkouts
            config: Helper configuration; defaults apply when omitted
            runner: Migration runner; built from config when omitted
        """
        if config is None:
            config = HelperConfig()
        self.db = db
        self.graph = graph
        self.config = config
        self.objects = ObjectStore(db)
        self.refs = RefsContainer(db)
        self.changes = ChangeLog(db)
        self.materializer = Materializer(self.objects, backend)
        if runner is None:
            runner = MigrationRunner(config.migration_script, config.migration_timeout)
        self.runner = runner

    def import_objects(self, target: str) -> int:
        """Copy every object reachable from target into the object store.

        Returns:
            Number of objects that were not stored before
        """
        added = 0
        with self.db.transaction():
            for sha in self.graph.list_reachable(target):
                if sha in self.objects:
                    continue
                if self.objects.add(self.graph.read_object(sha)):
                    added += 1
        logger.info("imported %d new objects reachable from %s", added, target)
        return added

    def push(self, request: PushRequest) -> PushResult:
        """Push a single reference.

        Failures are reported in the result; only errors the pipeline
        cannot attribute to the push itself propagate.

        Raises:
            StorageError: if the failure could not even be recorded
        """
        ref = request.ref
        advances_head = self.config.is_head_ref(ref)
        current = self.refs.target(ref)
        from_target = self.refs.head() if advances_head else current

        target = request.src
        failure = None
        try:
            target = self.graph.resolve(request.src)
            self.import_objects(target)
        except (ObjectNotFound, ObjectConflict, GraphError, StorageError) as e:
            failure = f"failed to import objects: {e}"

        try:
            change_id = self.changes.record(from_target, target)
        except StorageError as e:
            logger.error("cannot record change for %s: %s", ref, e)
            return PushResult(ref, False, "failed to record change")

        if failure is None:
            try:
                self._check_fast_forward(request, current, target)
            except NonFastForward as e:
                failure = str(e)
        if failure is not None:
            self.changes.mark_failed(change_id, failure)
            logger.warning("push to %s rejected: %s", ref, failure)
            return PushResult(ref, False, failure, change_id)

        with PushTransaction(self.db, self.refs, self.changes, change_id) as txn:
            txn.stage_ref(ref, target)
            try:
                if not advances_head:
                    txn.commit()
                else:
                    self._migrate(txn, change_id, from_target, target)
                    txn.commit(head_target=target)
            except MigrationFailed as e:
                txn.rollback(e.details)
                return PushResult(ref, False, str(e), change_id)
            except (MaterializationFailed, StorageError) as e:
                txn.rollback(str(e))
                return PushResult(ref, False, str(e), change_id)
        return PushResult(ref, True, change_id=change_id)

    def _check_fast_forward(
        self, request: PushRequest, current: str, target: str
    ) -> None:
        if not self.config.deny_non_fast_forwards or request.force or not current:
            return
        if not self.graph.is_ancestor(current, target):
            raise NonFastForward(request.ref)

    def _migrate(
        self, txn: PushTransaction, change_id: int, from_target: str, target: str
    ) -> None:
        with materialized(self.materializer, target) as root:
            script = self.runner.find(root)
            if script is None:
                logger.info("%s has no migration script", target)
                return
            self.changes.mark_running(change_id)
            if self.config.migration_snapshot:
                txn.snapshot()
            self.runner.run(script, from_target, root, self.db.path)
