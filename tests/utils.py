# utils.py -- Test utilities for celluloid
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

"""Utility functions common to celluloid tests."""

import os
import shutil
import stat
import sys
import tempfile
import unittest
from collections.abc import Iterator, Mapping, Sequence

from dulwich.index import commit_tree
from dulwich.object_store import BaseObjectStore, MemoryObjectStore, MissingObjectFinder
from dulwich.objects import S_ISGITLINK, Blob, Commit, ShaFile, Tag, Tree, object_class
from dulwich.repo import Repo

from celluloid.database import Database
from celluloid.errors import GraphError, ObjectNotFound
from celluloid.object_store import StoredObject
from celluloid.vcs import Backend, ObjectGraph

EXECUTABLE_MODE = stat.S_IFREG | 0o755
REGULAR_MODE = stat.S_IFREG | 0o644

requires_posix = unittest.skipIf(
    sys.platform == "win32", "shell scripts are not available on Windows"
)

# A file mapping is path -> contents, or path -> (contents, mode).
Files = Mapping[str, bytes | tuple[bytes, int]]


def script(body: str) -> tuple[bytes, int]:
    """Build an executable shell script entry for a file mapping."""
    return (("#!/bin/sh\n" + body + "\n").encode("utf-8"), EXECUTABLE_MODE)


def make_commit(
    object_store: BaseObjectStore,
    files: Files,
    parents: Sequence[str] = (),
    message: bytes = b"Test commit",
    commit_time: int = 1700000000,
) -> str:
    """Store a commit with the given files and return its id."""
    entries = []
    for path, value in files.items():
        if isinstance(value, tuple):
            contents, mode = value
        else:
            contents, mode = value, REGULAR_MODE
        blob = Blob.from_string(contents)
        object_store.add_object(blob)
        entries.append((path.encode("utf-8"), blob.id, mode))
    commit = Commit()
    commit.tree = commit_tree(object_store, entries)
    commit.parents = [p.encode("ascii") for p in parents]
    commit.author = commit.committer = b"Test Author <test@example.com>"
    commit.author_time = commit.commit_time = commit_time + len(parents)
    commit.author_timezone = commit.commit_timezone = 0
    commit.message = message
    object_store.add_object(commit)
    return commit.id.decode("ascii")


def make_tag(
    object_store: BaseObjectStore, target: str, name: bytes = b"v1.0"
) -> str:
    """Store an annotated tag pointing at a commit and return its id."""
    tag = Tag()
    tag.name = name
    tag.object = (Commit, target.encode("ascii"))
    tag.tagger = b"Test Author <test@example.com>"
    tag.tag_time = 1700000000
    tag.tag_timezone = 0
    tag.message = b"Release\n"
    object_store.add_object(tag)
    return tag.id.decode("ascii")


def make_repo(testcase: unittest.TestCase) -> Repo:
    """Create an on-disk repository removed at the end of the test."""
    path = tempfile.mkdtemp(prefix="celluloid-test-repo-")
    testcase.addCleanup(shutil.rmtree, path, ignore_errors=True)
    repo = Repo.init(path)
    testcase.addCleanup(repo.close)
    return repo


def make_database(testcase: unittest.TestCase) -> Database:
    """Create an initialized database file removed at the end of the test."""
    path = tempfile.mkdtemp(prefix="celluloid-test-db-")
    testcase.addCleanup(shutil.rmtree, path, ignore_errors=True)
    db = Database.init(os.path.join(path, "celluloid.sqlite"))
    testcase.addCleanup(db.close)
    return db


class MemoryObjectGraph(ObjectGraph):
    """ObjectGraph over a dulwich MemoryObjectStore.

    Checkouts write the files of the checked out commit to path, if it is
    set; nothing else touches the filesystem or runs subprocesses.
    """

    def __init__(self, path: str = "") -> None:
        self.path = path
        self.store = MemoryObjectStore()
        self.refs: dict[str, str] = {}
        self.checked_out: list[str] = []
        self.imported: list[str] = []
        self.fail_import = False

    def _get(self, sha: str) -> ShaFile:
        try:
            return self.store[sha.encode("ascii")]
        except KeyError:
            raise ObjectNotFound(sha, "memory")

    def resolve(self, revision: str) -> str:
        if revision in self.refs:
            return self.refs[revision]
        if self.has_object(revision):
            return revision
        raise ObjectNotFound(revision, "memory")

    def has_object(self, sha: str) -> bool:
        return sha.encode("ascii") in self.store

    def read_object(self, sha: str) -> StoredObject:
        obj = self._get(sha)
        return StoredObject.from_payload(
            sha, obj.type_name.decode("ascii"), obj.as_raw_string()
        )

    def import_raw_object(self, kind: str, payload: bytes) -> str:
        if self.fail_import:
            raise GraphError("import refused")
        cls = object_class(kind.encode("ascii"))
        if cls is None:
            raise GraphError(f"unknown object type {kind!r}")
        obj = ShaFile.from_raw_string(cls.type_num, payload)
        self.store.add_object(obj)
        sha = obj.id.decode("ascii")
        self.imported.append(sha)
        return sha

    def list_reachable(self, sha: str) -> Iterator[str]:
        self._get(sha)
        finder = MissingObjectFinder(
            self.store, haves=[], wants=[sha.encode("ascii")]
        )
        for object_id, _ in finder:
            yield object_id.decode("ascii")

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        pending = [descendant]
        seen: set[str] = set()
        while pending:
            current = pending.pop()
            if current == ancestor:
                return True
            if current in seen or not self.has_object(current):
                continue
            seen.add(current)
            obj = self._get(current)
            if isinstance(obj, Commit):
                pending.extend(p.decode("ascii") for p in obj.parents)
        return False

    def set_ref(self, name: str, sha: str) -> None:
        self.refs[name] = sha

    def checkout(self, ref: str) -> None:
        if ref not in self.refs:
            raise GraphError(f"cannot resolve {ref}")
        commit = self._get(self.refs[ref])
        if not isinstance(commit, Commit):
            raise GraphError(f"{ref} does not point at a commit")
        self.checked_out.append(self.refs[ref])
        if self.path:
            self._write_tree(commit.tree.decode("ascii"), self.path)

    def _write_tree(self, tree_id: str, path: str) -> None:
        tree = self._get(tree_id)
        assert isinstance(tree, Tree)
        for entry in tree.iteritems():
            target = os.path.join(path, entry.path.decode("utf-8"))
            if stat.S_ISDIR(entry.mode):
                os.mkdir(target)
                self._write_tree(entry.sha.decode("ascii"), target)
            elif not S_ISGITLINK(entry.mode):
                blob = self._get(entry.sha.decode("ascii"))
                assert isinstance(blob, Blob)
                with open(target, "wb") as f:
                    f.write(blob.data)
                os.chmod(target, entry.mode & 0o777)


class MemoryBackend(Backend):
    """Backend creating MemoryObjectGraphs."""

    name = "memory"

    def __init__(self) -> None:
        self.graphs: list[MemoryObjectGraph] = []

    def open(self, path: str | None = None) -> MemoryObjectGraph:
        graph = MemoryObjectGraph(path or "")
        self.graphs.append(graph)
        return graph

    def init(self, path: str) -> MemoryObjectGraph:
        return self.open(path)
