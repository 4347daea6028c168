# porcelain.py -- Porcelain-like layer on top of celluloid
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

"""Simple wrapper that provides porcelain-like functions on top of celluloid.

Currently implemented:
 * init
 * checkout
 * run
 * remote_url
 * serve

These functions are meant to behave similarly to the celluloid command
line tool; they take paths to database files rather than open objects.
"""

__all__ = [
    "checkout",
    "find_control_dir",
    "init",
    "remote_url",
    "run",
    "serve",
]

import os
import shutil
import subprocess
import sys
from typing import BinaryIO, TextIO

from dulwich.errors import NotGitRepository
from dulwich.repo import Repo

from .audit import ProcessRunLog
from .checkout import Materializer
from .config import DATABASE_ENV, load_config
from .database import Database
from .errors import GraphError, MaterializationFailed
from .log_utils import getLogger
from .object_store import ObjectStore
from .protocol import RemoteHelper
from .push import PushPipeline
from .refs import HEADREF, RefsContainer
from .vcs import Backend, DulwichBackend, get_backend

logger = getLogger(__name__)


def init(path: str) -> str:
    """Create a celluloid database, or add missing tables to an existing one.

    Args:
        path: Path of the database file

    Returns:
        Absolute path of the database
    """
    with Database.init(path) as db:
        return db.path


def _resolve_target(db: Database, target: str | None) -> str:
    refs = RefsContainer(db)
    if target is None:
        target = HEADREF
    if target in refs:
        name, target = target, refs[target]
        if not target:
            raise MaterializationFailed(f"{name} is unborn; push a commit first")
    return target


def checkout(
    db_path: str,
    target: str | None = None,
    backend: Backend | None = None,
    dir: str | None = None,
) -> str:
    """Check out a stored commit into a new temporary directory.

    Args:
        db_path: Path of the database
        target: Commit id or reference name; defaults to HEAD
        backend: Backend used for the checkout
        dir: Parent directory for the new directory

    Returns:
        Path of the working tree, which the caller must remove
    """
    if backend is None:
        backend = DulwichBackend()
    with Database.open(db_path) as db:
        sha = _resolve_target(db, target)
        return Materializer(ObjectStore(db), backend).materialize(sha, dir=dir)


def run(
    db_path: str,
    command: str,
    backend: Backend | None = None,
    outstream: TextIO | None = None,
    errstream: TextIO | None = None,
) -> int:
    """Run a shell command in a checkout of HEAD.

    The command runs with DATABASE_URL pointing at the database, and its
    execution is recorded in the ``process_runs`` table.

    Args:
        db_path: Path of the database
        command: Shell command line
        backend: Backend used for the checkout
        outstream: Stream the command's stdout is copied to
        errstream: Stream the command's stderr is copied to

    Returns:
        Exit status of the command
    """
    if backend is None:
        backend = DulwichBackend()
    if outstream is None:
        outstream = sys.stdout
    if errstream is None:
        errstream = sys.stderr
    with Database.open(db_path) as db:
        head = _resolve_target(db, HEADREF)
        root = Materializer(ObjectStore(db), backend).materialize(head)
        try:
            env = dict(os.environ)
            env[DATABASE_ENV] = db.path
            runs = ProcessRunLog(db)
            run_id = runs.start(head, command, root, env)
            logger.info("running %r in %s", command, root)
            proc = subprocess.run(
                command,
                shell=True,
                cwd=root,
                env=env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
            )
            stdout = proc.stdout.decode("utf-8", "replace")
            stderr = proc.stderr.decode("utf-8", "replace")
            runs.finish(run_id, proc.returncode, stdout, stderr)
        finally:
            shutil.rmtree(root, ignore_errors=True)
    outstream.write(stdout)
    errstream.write(stderr)
    logger.info("command exited with status %d", proc.returncode)
    return proc.returncode


def find_control_dir(path: str | None = None) -> str:
    """Locate the control directory of the repository being pushed from.

    Args:
        path: Repository path; None to use GIT_DIR or the current directory

    Raises:
        GraphError: if no repository can be found
    """
    if path is None:
        path = os.environ.get("GIT_DIR")
    try:
        repo = Repo.discover() if path is None else Repo(path)
    except NotGitRepository as e:
        raise GraphError(f"not a git repository: {path or os.getcwd()}") from e
    with repo:
        return repo.controldir()


def serve(
    db_path: str,
    inf: BinaryIO,
    outf: BinaryIO,
    repo_path: str | None = None,
) -> None:
    """Serve the remote-helper protocol for a database.

    Args:
        db_path: Path of the database
        inf: Stream to read commands from
        outf: Stream to write responses to
        repo_path: Local repository; None to use GIT_DIR or discovery
    """
    control_dir = find_control_dir(repo_path)
    config = load_config(control_dir)
    backend = get_backend(config.backend)
    with Database.open(db_path) as db, backend.open(control_dir) as graph:
        pipeline = PushPipeline(db, graph, backend, config)
        RemoteHelper(db, graph, pipeline, inf, outf).handle()


def remote_url(name: str, repo_path: str | None = None) -> str:
    """Look up the configured URL of a remote.

    Raises:
        KeyError: if the remote has no url configured
    """
    control_dir = find_control_dir(repo_path)
    with Repo(control_dir) as repo:
        url = repo.get_config().get((b"remote", name.encode("utf-8")), b"url")
    return url.decode("utf-8")
