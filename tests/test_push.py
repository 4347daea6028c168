# test_push.py -- Tests for push.py
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

"""Tests for celluloid.push."""

import os
import shutil
import sys
import tempfile
import time

from celluloid.audit import ChangeLog, ChangeStatus
from celluloid.config import HelperConfig
from celluloid.errors import ProtocolParseError
from celluloid.object_store import ObjectStore
from celluloid.push import PushPipeline, PushRequest, PushResult, PushTransaction
from celluloid.refs import RefsContainer

from . import TestCase
from .utils import (
    MemoryBackend,
    MemoryObjectGraph,
    make_commit,
    make_database,
    requires_posix,
    script,
)

MIGRATE_PY = b"""\
import os
import sqlite3

conn = sqlite3.connect(os.environ["DATABASE_URL"])
conn.execute("CREATE TABLE IF NOT EXISTS app (value TEXT)")
conn.execute("INSERT INTO app VALUES ('migrated')")
conn.commit()
conn.close()
"""


class PushRequestTests(TestCase):
    def test_parse(self) -> None:
        request = PushRequest.parse("refs/heads/main:refs/heads/main")
        self.assertEqual(
            PushRequest("refs/heads/main", "refs/heads/main", "refs/heads/main", False),
            request,
        )

    def test_parse_force(self) -> None:
        request = PushRequest.parse("+abc:refs/heads/main")
        self.assertTrue(request.force)
        self.assertEqual("abc", request.src)

    def test_parse_explicit_ref(self) -> None:
        request = PushRequest.parse("abc:refs/heads/main", "refs/heads/other")
        self.assertEqual("refs/heads/main", request.dst)
        self.assertEqual("refs/heads/other", request.ref)

    def test_parse_missing_dst(self) -> None:
        self.assertEqual("x", PushRequest.parse("abc:", "x").dst)
        self.assertRaises(ProtocolParseError, PushRequest.parse, "abc:")

    def test_parse_not_a_refspec(self) -> None:
        with self.assertRaises(ProtocolParseError) as cm:
            PushRequest.parse("abc", "refs/heads/main")
        self.assertEqual("refs/heads/main", cm.exception.ref)

    def test_parse_not_a_refspec_without_ref(self) -> None:
        with self.assertRaises(ProtocolParseError) as cm:
            PushRequest.parse("+abc")
        self.assertEqual("+abc", cm.exception.ref)

    def test_parse_deletion(self) -> None:
        with self.assertRaises(ProtocolParseError) as cm:
            PushRequest.parse(":refs/heads/main")
        self.assertEqual("refs/heads/main", cm.exception.ref)
        self.assertEqual("deleting references is not supported", str(cm.exception))


class PushResultTests(TestCase):
    def test_ok(self) -> None:
        self.assertEqual("ok refs/heads/main", PushResult("refs/heads/main", True).format())

    def test_error_is_single_line(self) -> None:
        result = PushResult("refs/heads/main", False, "script failed\nstderr:\nboom")
        self.assertEqual("error refs/heads/main script failed", result.format())


class PushPipelineTestCase(TestCase):
    config = HelperConfig(migration_timeout=60)

    def setUp(self) -> None:
        super().setUp()
        self.db = make_database(self)
        self.graph = MemoryObjectGraph()
        self.backend = MemoryBackend()
        self.pipeline = PushPipeline(self.db, self.graph, self.backend, self.config)
        self.refs = RefsContainer(self.db)
        self.changes = ChangeLog(self.db)
        self.objects = ObjectStore(self.db)
        self.outside = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.outside, ignore_errors=True)

    def commit(self, files, parents=()) -> str:
        return make_commit(self.graph.store, files, parents)

    def push(self, src: str, ref: str = "refs/heads/main", force: bool = False):
        return self.pipeline.push(PushRequest(src, ref, ref, force))

    def only_change(self):
        (change,) = list(self.changes)
        return change

    def table_exists(self, name: str) -> bool:
        row = self.db.fetchone(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        )
        return row is not None


class PushPipelineTests(PushPipelineTestCase):
    def test_push_without_script(self) -> None:
        c1 = self.commit({"README": b"hello\n"})
        result = self.push(c1)
        self.assertEqual("ok refs/heads/main", result.format())
        self.assertEqual(c1, self.refs.head())
        self.assertEqual(c1, self.refs["refs/heads/main"])
        change = self.only_change()
        self.assertEqual(result.change_id, change.id)
        self.assertEqual(ChangeStatus.APPLIED, change.status)
        self.assertEqual("", change.from_target)
        self.assertEqual(c1, change.to_target)
        for sha in self.graph.list_reachable(c1):
            self.assertIn(sha, self.objects)

    def test_push_resolves_revisions(self) -> None:
        c1 = self.commit({"README": b"hello\n"})
        self.graph.set_ref("refs/heads/main", c1)
        result = self.pipeline.push(PushRequest.parse("refs/heads/main:refs/heads/main"))
        self.assertTrue(result.ok)
        self.assertEqual(c1, self.refs.head())
        self.assertEqual(c1, self.only_change().to_target)

    def test_second_push_records_previous_head(self) -> None:
        c1 = self.commit({"README": b"one\n"})
        c2 = self.commit({"README": b"two\n"}, [c1])
        self.assertTrue(self.push(c1).ok)
        self.assertTrue(self.push(c2).ok)
        first, second = list(self.changes)
        self.assertEqual(c1, second.from_target)
        self.assertEqual(c2, second.to_target)
        self.assertEqual(c2, self.refs.head())

    def test_non_head_ref(self) -> None:
        marker = os.path.join(self.outside, "ran")
        c2 = self.commit({"code_change.sh": script(f"touch {marker}\nexit 1")})
        result = self.push(c2, "refs/heads/feature")
        self.assertEqual("ok refs/heads/feature", result.format())
        self.assertEqual(c2, self.refs["refs/heads/feature"])
        self.assertEqual("", self.refs.head())
        self.assertEqual(ChangeStatus.APPLIED, self.only_change().status)
        self.assertEqual([], self.backend.graphs)
        self.assertFalse(os.path.exists(marker))

    def test_unknown_source(self) -> None:
        result = self.push("f" * 40)
        self.assertFalse(result.ok)
        self.assertIn("failed to import objects", result.reason)
        change = self.only_change()
        self.assertEqual(ChangeStatus.FAILED, change.status)
        self.assertTrue(change.error_message)
        self.assertEqual("", self.refs.head())
        self.assertNotIn("refs/heads/main", self.refs)

    def test_record_failure(self) -> None:
        c1 = self.commit({"README": b"hello\n"})
        self.db.execute("DROP TABLE code_changes")
        result = self.push(c1)
        self.assertEqual("error refs/heads/main failed to record change", result.format())
        self.assertIsNone(result.change_id)
        self.assertEqual("", self.refs.head())

    def test_materialization_failure(self) -> None:
        c1 = self.commit({"README": b"hello\n"})
        original_open = self.backend.open

        def failing_open(path=None):
            graph = original_open(path)
            graph.fail_import = True
            return graph

        self.backend.open = failing_open
        result = self.push(c1)
        self.assertFalse(result.ok)
        self.assertEqual("", self.refs.head())
        self.assertNotIn("refs/heads/main", self.refs)
        change = self.only_change()
        self.assertEqual(ChangeStatus.FAILED, change.status)
        self.assertIn("import refused", change.error_message)

    def test_working_tree_cannot_be_created(self) -> None:
        c1 = self.commit({"README": b"hello\n"})
        missing = os.path.join(self.outside, "missing")
        self.pipeline.materializer.prefix = os.path.join(missing, "celluloid-")
        result = self.push(c1)
        self.assertFalse(result.ok)
        self.assertIn("cannot create a working tree", result.reason)
        self.assertEqual("", self.refs.head())
        self.assertEqual(ChangeStatus.FAILED, self.only_change().status)

    def test_unexpected_error_marks_change_failed(self) -> None:
        c1 = self.commit({"README": b"hello\n"})

        def broken_find(root):
            raise RuntimeError("unexpected")

        self.pipeline.runner.find = broken_find
        self.assertRaises(RuntimeError, self.push, c1)
        change = self.only_change()
        self.assertEqual(ChangeStatus.FAILED, change.status)
        self.assertIn("unexpected", change.error_message)
        self.assertEqual("", self.refs.head())

    def test_every_push_is_audited(self) -> None:
        c1 = self.commit({"README": b"one\n"})
        self.push(c1)
        self.push("f" * 40)
        self.push(c1, "refs/heads/feature")
        self.assertEqual(3, len(self.changes))
        for change in self.changes:
            self.assertTrue(change.status.terminal)


@requires_posix
class MigrationPushTests(PushPipelineTestCase):
    def test_script_success(self) -> None:
        out = os.path.join(self.outside, "args")
        c1 = self.commit({"README": b"one\n"})
        c2 = self.commit(
            {"code_change.sh": script(f'echo "prev=$1" > {out}')}, [c1]
        )
        self.assertTrue(self.push(c1).ok)
        result = self.push(c2)
        self.assertEqual("ok refs/heads/main", result.format())
        self.assertEqual(c2, self.refs.head())
        with open(out) as f:
            self.assertEqual(f"prev={c1}\n", f.read())
        self.assertEqual(ChangeStatus.APPLIED, self.changes.get(result.change_id).status)

    def test_script_failure(self) -> None:
        c1 = self.commit({"README": b"one\n"})
        c2 = self.commit(
            {"code_change.sh": script("echo 'column missing' >&2\nexit 1")}, [c1]
        )
        self.assertTrue(self.push(c1).ok)
        result = self.push(c2)
        self.assertFalse(result.ok)
        self.assertEqual(
            "error refs/heads/main code_change.sh exited with status 1", result.format()
        )
        self.assertEqual(c1, self.refs.head())
        self.assertEqual(c1, self.refs["refs/heads/main"])
        change = self.changes.get(result.change_id)
        self.assertEqual(ChangeStatus.FAILED, change.status)
        self.assertIn("column missing", change.error_message)

    def test_script_writes_are_kept_on_success(self) -> None:
        c1 = self.commit(
            {
                "migrate.py": MIGRATE_PY,
                "code_change.sh": script(f'exec "{sys.executable}" migrate.py'),
            }
        )
        self.assertTrue(self.push(c1).ok)
        self.assertTrue(self.table_exists("app"))
        self.assertEqual([("migrated",)], self.db.fetchall("SELECT value FROM app"))

    def test_script_writes_are_rolled_back_on_failure(self) -> None:
        c1 = self.commit(
            {
                "migrate.py": MIGRATE_PY,
                "code_change.sh": script(f'"{sys.executable}" migrate.py\nexit 1'),
            }
        )
        result = self.push(c1)
        self.assertFalse(result.ok)
        self.assertFalse(self.table_exists("app"))
        self.assertEqual("", self.refs.head())
        change = self.only_change()
        self.assertEqual(ChangeStatus.FAILED, change.status)
        for sha in self.graph.list_reachable(c1):
            self.assertIn(sha, self.objects)

    def test_scratch_directory_removed(self) -> None:
        record = os.path.join(self.outside, "cwd")
        c1 = self.commit({"code_change.sh": script(f"pwd > {record}\nexit 1")})
        self.push(c1)
        with open(record) as f:
            self.assertFalse(os.path.exists(f.read().strip()))


@requires_posix
class MigrationTimeoutTests(PushPipelineTestCase):
    config = HelperConfig(migration_timeout=1)

    def test_background_writer_is_killed(self) -> None:
        migrate = os.path.join(self.outside, "migrate.py")
        with open(migrate, "wb") as f:
            f.write(MIGRATE_PY)
        c1 = self.commit(
            {
                "code_change.sh": script(
                    f'(sleep 2; "{sys.executable}" "{migrate}") &\nexec sleep 30'
                ),
            }
        )
        result = self.push(c1)
        self.assertFalse(result.ok)
        self.assertIn("timed out", result.reason)
        time.sleep(3)
        self.assertFalse(self.table_exists("app"))
        self.assertEqual("", self.refs.head())
        self.assertEqual(ChangeStatus.FAILED, self.only_change().status)


@requires_posix
class SnapshotDisabledTests(PushPipelineTestCase):
    config = HelperConfig(migration_snapshot=False)

    def test_script_writes_survive_failure(self) -> None:
        c1 = self.commit(
            {
                "migrate.py": MIGRATE_PY,
                "code_change.sh": script(f'"{sys.executable}" migrate.py\nexit 1'),
            }
        )
        self.assertFalse(self.push(c1).ok)
        self.assertTrue(self.table_exists("app"))
        self.assertEqual("", self.refs.head())
        self.assertEqual(ChangeStatus.FAILED, self.only_change().status)


class FastForwardTests(PushPipelineTestCase):
    config = HelperConfig(deny_non_fast_forwards=True)

    def setUp(self) -> None:
        super().setUp()
        self.base = self.commit({"README": b"base\n"})
        self.assertTrue(self.push(self.base).ok)

    def test_fast_forward(self) -> None:
        child = self.commit({"README": b"child\n"}, [self.base])
        self.assertTrue(self.push(child).ok)

    def test_non_fast_forward_rejected(self) -> None:
        other = self.commit({"README": b"other\n"})
        result = self.push(other)
        self.assertEqual("error refs/heads/main non-fast-forward", result.format())
        self.assertEqual(self.base, self.refs.head())
        self.assertEqual(ChangeStatus.FAILED, self.changes.get(result.change_id).status)

    def test_forced_push(self) -> None:
        other = self.commit({"README": b"other\n"})
        self.assertTrue(self.push(other, force=True).ok)
        self.assertEqual(other, self.refs.head())


class PushTransactionTests(TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.db = make_database(self)
        self.refs = RefsContainer(self.db)
        self.changes = ChangeLog(self.db)
        self.change_id = self.changes.record("", "1" * 40)

    def transaction(self) -> PushTransaction:
        return PushTransaction(self.db, self.refs, self.changes, self.change_id)

    def test_commit(self) -> None:
        with self.transaction() as txn:
            txn.stage_ref("refs/heads/main", "1" * 40)
            self.assertNotIn("refs/heads/main", self.refs)
            txn.commit(head_target="1" * 40)
        self.assertEqual("committed", txn.state)
        self.assertEqual("1" * 40, self.refs["refs/heads/main"])
        self.assertEqual("1" * 40, self.refs.head())
        self.assertEqual(ChangeStatus.APPLIED, self.changes.get(self.change_id).status)

    def test_rollback_restores_snapshot(self) -> None:
        with self.transaction() as txn:
            txn.stage_ref("refs/heads/main", "1" * 40)
            txn.snapshot()
            self.refs.set("refs/heads/stray", "2" * 40)
            txn.rollback("migration failed")
        self.assertNotIn("refs/heads/stray", self.refs)
        self.assertNotIn("refs/heads/main", self.refs)
        change = self.changes.get(self.change_id)
        self.assertEqual(ChangeStatus.FAILED, change.status)
        self.assertEqual("migration failed", change.error_message)

    def test_unfinished_transaction_is_rolled_back(self) -> None:
        with self.transaction() as txn:
            txn.stage_ref("refs/heads/main", "1" * 40)
        self.assertEqual("rolled back", txn.state)
        self.assertEqual(ChangeStatus.FAILED, self.changes.get(self.change_id).status)
        self.assertNotIn("refs/heads/main", self.refs)

    def test_finished_transaction_cannot_be_reused(self) -> None:
        with self.transaction() as txn:
            txn.commit()
        self.assertRaises(RuntimeError, txn.stage_ref, "refs/heads/main", "1" * 40)
        self.assertRaises(RuntimeError, txn.rollback, "too late")
