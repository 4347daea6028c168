# vcs.py -- Version-control operations used by celluloid
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

"""Object graph operations on a local git repository.

Celluloid never hashes, parses trees or walks history itself; it asks an
:class:`ObjectGraph` to do so. Two implementations are provided:

* :class:`DulwichObjectGraph` works in-process through dulwich.
* :class:`GitCommandObjectGraph` shells out to the ``git`` executable,
  using its plumbing commands (``cat-file``, ``hash-object``,
  ``rev-list``, ``checkout``).

Each comes with a :class:`Backend` that opens existing repositories and
creates fresh ones for checkouts.
"""

__all__ = [
    "BACKENDS",
    "Backend",
    "DulwichBackend",
    "DulwichObjectGraph",
    "GitCommandBackend",
    "GitCommandObjectGraph",
    "ObjectGraph",
    "get_backend",
]

import os
import subprocess
from collections.abc import Iterator
from types import TracebackType

from dulwich.errors import NotGitRepository, ObjectFormatException
from dulwich.graph import can_fast_forward
from dulwich.index import build_index_from_tree
from dulwich.object_store import MissingObjectFinder
from dulwich.objects import Commit, ShaFile, Tag, object_class, valid_hexsha
from dulwich.repo import Repo

from .errors import GraphError, ObjectConflict, ObjectNotFound
from .log_utils import getLogger
from .object_store import StoredObject

logger = getLogger(__name__)

LOCAL = "the local repository"


class ObjectGraph:
    """A git repository that objects can be read from and written to."""

    path: str

    def resolve(self, revision: str) -> str:
        """Resolve a revision (object id or reference name) to an object id.

        Raises:
            ObjectNotFound: if the revision does not name an object
        """
        raise NotImplementedError(self.resolve)

    def has_object(self, sha: str) -> bool:
        """Check whether an object is present."""
        raise NotImplementedError(self.has_object)

    def read_object(self, sha: str) -> StoredObject:
        """Read an object's type and body.

        Raises:
            ObjectNotFound: if the object is not present
        """
        raise NotImplementedError(self.read_object)

    def import_raw_object(self, kind: str, payload: bytes) -> str:
        """Hash and store an object body under the given type.

        Returns:
            The id the repository assigned
        """
        raise NotImplementedError(self.import_raw_object)

    def list_reachable(self, sha: str) -> Iterator[str]:
        """Iterate over sha and every object reachable from it.

        Raises:
            ObjectNotFound: if sha (or something it refers to) is missing
        """
        raise NotImplementedError(self.list_reachable)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Check whether descendant contains ancestor in its history.

        A commit that is not present at all is not an ancestor.
        """
        raise NotImplementedError(self.is_ancestor)

    def set_ref(self, name: str, sha: str) -> None:
        """Point a reference at an object."""
        raise NotImplementedError(self.set_ref)

    def checkout(self, ref: str) -> None:
        """Populate the working tree from the commit ref points at."""
        raise NotImplementedError(self.checkout)

    def close(self) -> None:
        """Release any resources held."""

    def __enter__(self) -> "ObjectGraph":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


class Backend:
    """Factory for object graphs of one kind."""

    name: str

    def open(self, path: str | None = None) -> ObjectGraph:
        """Open an existing repository.

        Args:
            path: Repository or control directory; None to use GIT_DIR or
                discover one from the current directory
        """
        raise NotImplementedError(self.open)

    def init(self, path: str) -> ObjectGraph:
        """Create a repository with its working tree at path."""
        raise NotImplementedError(self.init)


class DulwichObjectGraph(ObjectGraph):
    """Object graph backed by a dulwich repository."""

    def __init__(self, repo: Repo) -> None:
        self.repo = repo
        self.path = repo.path

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.path!r})"

    def resolve(self, revision: str) -> str:
        if valid_hexsha(revision):
            if not self.has_object(revision):
                raise ObjectNotFound(revision, LOCAL)
            return revision
        try:
            sha = self.repo.refs[revision.encode("utf-8")]
        except KeyError:
            raise ObjectNotFound(revision, LOCAL)
        return sha.decode("ascii")

    def has_object(self, sha: str) -> bool:
        return sha.encode("ascii") in self.repo.object_store

    def read_object(self, sha: str) -> StoredObject:
        try:
            obj = self.repo.object_store[sha.encode("ascii")]
        except KeyError:
            raise ObjectNotFound(sha, LOCAL)
        return StoredObject.from_payload(
            sha, obj.type_name.decode("ascii"), obj.as_raw_string()
        )

    def import_raw_object(self, kind: str, payload: bytes) -> str:
        cls = object_class(kind.encode("ascii"))
        if cls is None:
            raise GraphError(f"unknown object type {kind!r}")
        try:
            obj = ShaFile.from_raw_string(cls.type_num, payload)
        except ObjectFormatException as e:
            raise GraphError(f"malformed {kind}: {e}") from e
        self.repo.object_store.add_object(obj)
        return obj.id.decode("ascii")

    def list_reachable(self, sha: str) -> Iterator[str]:
        want = sha.encode("ascii")
        if want not in self.repo.object_store:
            raise ObjectNotFound(sha, LOCAL)
        try:
            finder = MissingObjectFinder(self.repo.object_store, haves=[], wants=[want])
            for object_id, _ in finder:
                yield object_id.decode("ascii")
        except KeyError as e:
            missing = e.args[0] if e.args else want
            if isinstance(missing, bytes):
                missing = missing.decode("ascii", "replace")
            raise ObjectNotFound(str(missing), LOCAL) from e

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        if ancestor == descendant:
            return True
        if not (self.has_object(ancestor) and self.has_object(descendant)):
            return False
        try:
            return can_fast_forward(
                self.repo, ancestor.encode("ascii"), descendant.encode("ascii")
            )
        except KeyError:
            return False

    def set_ref(self, name: str, sha: str) -> None:
        self.repo.refs[name.encode("utf-8")] = sha.encode("ascii")

    def checkout(self, ref: str) -> None:
        ref_name = ref.encode("utf-8")
        try:
            obj = self.repo[self.repo.refs[ref_name]]
        except KeyError as e:
            raise GraphError(f"cannot resolve {ref}") from e
        if isinstance(obj, Tag):
            obj = self.repo[obj.object[1]]
        if not isinstance(obj, Commit):
            raise GraphError(f"{ref} does not point at a commit")
        self.repo.refs.set_symbolic_ref(b"HEAD", ref_name)
        build_index_from_tree(
            self.repo.path, self.repo.index_path(), self.repo.object_store, obj.tree
        )

    def close(self) -> None:
        self.repo.close()


class DulwichBackend(Backend):
    """Backend that uses dulwich in-process."""

    name = "dulwich"

    def open(self, path: str | None = None) -> DulwichObjectGraph:
        if path is None:
            path = os.environ.get("GIT_DIR")
        try:
            if path is None:
                repo = Repo.discover()
            else:
                repo = Repo(path)
        except NotGitRepository as e:
            raise GraphError(f"not a git repository: {path or os.getcwd()}") from e
        return DulwichObjectGraph(repo)

    def init(self, path: str) -> DulwichObjectGraph:
        return DulwichObjectGraph(Repo.init(path, mkdir=False))


class GitCommandObjectGraph(ObjectGraph):
    """Object graph that drives the git command-line tool."""

    def __init__(
        self,
        git_dir: str | None = None,
        work_tree: str | None = None,
        git_command: str = "git",
    ) -> None:
        """Initialize a GitCommandObjectGraph.

        Args:
            git_dir: Control directory; None leaves discovery to git
            work_tree: Working tree for checkouts, if any
            git_command: Name or path of the git executable
        """
        self.git_dir = git_dir
        self.work_tree = work_tree
        self.git_command = git_command
        self.path = work_tree or git_dir or os.getcwd()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.git_dir!r}, {self.work_tree!r})"

    def _run(
        self, *args: str, input: bytes | None = None
    ) -> subprocess.CompletedProcess[bytes]:
        argv = [self.git_command]
        if self.git_dir is not None:
            argv.append(f"--git-dir={self.git_dir}")
        if self.work_tree is not None:
            argv.append(f"--work-tree={self.work_tree}")
        argv.extend(args)
        logger.debug("running %s", " ".join(argv))
        try:
            return subprocess.run(
                argv, input=input, capture_output=True, cwd=self.work_tree
            )
        except OSError as e:
            raise GraphError(f"cannot run {self.git_command}: {e}") from e

    def _check(self, *args: str, input: bytes | None = None) -> bytes:
        result = self._run(*args, input=input)
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", "replace").strip()
            raise GraphError(
                f"git {args[0]} exited with status {result.returncode}: {stderr}"
            )
        return result.stdout

    def resolve(self, revision: str) -> str:
        result = self._run("rev-parse", "--verify", "--quiet", revision + "^{object}")
        if result.returncode != 0:
            raise ObjectNotFound(revision, LOCAL)
        return result.stdout.decode("ascii").strip()

    def has_object(self, sha: str) -> bool:
        return self._run("cat-file", "-e", sha).returncode == 0

    def read_object(self, sha: str) -> StoredObject:
        result = self._run("cat-file", "-t", sha)
        if result.returncode != 0:
            raise ObjectNotFound(sha, LOCAL)
        kind = result.stdout.decode("ascii").strip()
        size = int(self._check("cat-file", "-s", sha).decode("ascii").strip())
        payload = self._check("cat-file", kind, sha)
        if len(payload) != size:
            raise ObjectConflict(
                sha, f"git reports {size} bytes but returned {len(payload)}"
            )
        return StoredObject(sha, kind, size, payload)

    def import_raw_object(self, kind: str, payload: bytes) -> str:
        out = self._check(
            "hash-object", "-w", "--literally", "-t", kind, "--stdin", input=payload
        )
        return out.decode("ascii").strip()

    def list_reachable(self, sha: str) -> Iterator[str]:
        result = self._run("rev-list", "--objects", sha)
        if result.returncode != 0:
            raise ObjectNotFound(sha, LOCAL)
        for line in result.stdout.decode("utf-8", "replace").splitlines():
            fields = line.split(" ", 1)
            if fields[0]:
                yield fields[0]

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        if ancestor == descendant:
            return True
        result = self._run("merge-base", "--is-ancestor", ancestor, descendant)
        return result.returncode == 0

    def set_ref(self, name: str, sha: str) -> None:
        self._check("update-ref", name, sha)

    def checkout(self, ref: str) -> None:
        if self.work_tree is None:
            raise GraphError("repository has no working tree")
        self._check("checkout", "-f", "-q", ref)


class GitCommandBackend(Backend):
    """Backend that runs the git executable."""

    name = "git"

    def __init__(self, git_command: str = "git") -> None:
        self.git_command = git_command

    def open(self, path: str | None = None) -> GitCommandObjectGraph:
        return GitCommandObjectGraph(git_dir=path, git_command=self.git_command)

    def init(self, path: str) -> GitCommandObjectGraph:
        try:
            result = subprocess.run(
                [self.git_command, "init", "-q", path], capture_output=True
            )
        except OSError as e:
            raise GraphError(f"cannot run {self.git_command}: {e}") from e
        if result.returncode != 0:
            raise GraphError(
                "git init failed: " + result.stderr.decode("utf-8", "replace").strip()
            )
        return GitCommandObjectGraph(
            git_dir=os.path.join(path, ".git"),
            work_tree=path,
            git_command=self.git_command,
        )


BACKENDS: dict[str, type[Backend]] = {
    "dulwich": DulwichBackend,
    "git": GitCommandBackend,
}


def get_backend(name: str) -> Backend:
    """Instantiate the backend called name.

    Raises:
        KeyError: if there is no such backend
    """
    return BACKENDS[name]()
