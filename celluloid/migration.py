# migration.py -- Running repository migration scripts
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

"""Migration scripts shipped inside a repository.

A repository may carry an executable (``code_change.sh`` by default) at
its root. When a push moves HEAD, the script is run from a checkout of
the new commit with the previous HEAD as its only argument and
``DATABASE_URL`` pointing at the celluloid database, so it can bring the
application data in line with the new code.
"""

__all__ = [
    "MigrationResult",
    "MigrationRunner",
    "MigrationScript",
]

import os
import signal
import subprocess
import sys
import time
from collections.abc import Mapping
from dataclasses import dataclass

from .config import DATABASE_ENV, DEFAULT_MIGRATION_SCRIPT
from .errors import MigrationFailed
from .log_utils import getLogger

logger = getLogger(__name__)

_POSIX = sys.platform != "win32"

# Variables git sets for remote helpers; a script must not inherit them
# or its own git commands would act on the pushing repository.
_GIT_REPOSITORY_VARIABLES = (
    "GIT_DIR",
    "GIT_WORK_TREE",
    "GIT_INDEX_FILE",
    "GIT_OBJECT_DIRECTORY",
    "GIT_PREFIX",
)


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    return data.decode("utf-8", "replace")


def _combine(stdout: str, stderr: str) -> str:
    parts = []
    if stdout.strip():
        parts.append("stdout:\n" + stdout.rstrip())
    if stderr.strip():
        parts.append("stderr:\n" + stderr.rstrip())
    return "\n".join(parts)


def _kill(proc: subprocess.Popen) -> None:
    """Kill a script together with every process it started."""
    if not _POSIX:
        proc.kill()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        logger.debug("process group %d already exited", proc.pid)


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of a successful script run."""

    script: str
    returncode: int
    stdout: str
    stderr: str
    duration: float

    @property
    def output(self) -> str:
        return _combine(self.stdout, self.stderr)


class MigrationScript:
    """A migration script found in a working tree."""

    def __init__(self, name: str, path: str, timeout: float | None = None) -> None:
        """Initialize a MigrationScript.

        Args:
            name: Name of the script, for messages
            path: Absolute path of the executable
            timeout: Seconds after which the script is killed; None for no limit
        """
        self.name = name
        self.path = path
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.path!r})"

    def execute(
        self, previous_target: str, cwd: str, env: Mapping[str, str]
    ) -> MigrationResult:
        """Run the script.

        Args:
            previous_target: Commit HEAD pointed at before the push; empty
                on the first push
            cwd: Directory to run in
            env: Complete environment for the script

        Returns:
            The result of a run that exited with status 0

        Raises:
            MigrationFailed: if the script cannot be started, times out or
                exits with a non-zero status
        """
        logger.info("running %s %s", self.name, previous_target or "''")
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                [self.path, previous_target],
                cwd=cwd,
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=_POSIX,
            )
        except OSError as e:
            raise MigrationFailed(f"cannot run {self.name}: {e}") from e
        try:
            out, err = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            _kill(proc)
            out, err = proc.communicate()
            raise MigrationFailed(
                f"{self.name} timed out after {self.timeout:g} seconds",
                output=_combine(_decode(out), _decode(err)),
            ) from e
        duration = time.monotonic() - start

        stdout = _decode(out)
        stderr = _decode(err)
        logger.info(
            "%s exited with status %d after %.1fs", self.name, proc.returncode, duration
        )
        if stdout or stderr:
            logger.debug("%s output:\n%s", self.name, _combine(stdout, stderr))
        if proc.returncode != 0:
            raise MigrationFailed(
                f"{self.name} exited with status {proc.returncode}",
                returncode=proc.returncode,
                output=_combine(stdout, stderr),
            )
        return MigrationResult(self.name, proc.returncode, stdout, stderr, duration)


class MigrationRunner:
    """Locates and runs the migration script of a checked out commit."""

    def __init__(
        self,
        script_name: str = DEFAULT_MIGRATION_SCRIPT,
        timeout: float | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize a MigrationRunner.

        Args:
            script_name: Path of the script relative to the working tree root
            timeout: Seconds after which scripts are killed; None for no limit
            base_env: Environment to start from; defaults to os.environ
        """
        self.script_name = script_name
        self.timeout = timeout
        self.base_env = base_env

    def find(self, root: str) -> MigrationScript | None:
        """Look for the migration script in a working tree.

        Returns:
            The script, or None if the tree does not contain one
        """
        root = os.path.realpath(root)
        path = os.path.realpath(os.path.join(root, self.script_name))
        if os.path.commonpath([root, path]) != root:
            logger.warning("ignoring migration script outside the tree: %s", path)
            return None
        if not os.path.isfile(path):
            return None
        return MigrationScript(self.script_name, path, self.timeout)

    def environment(self, database_path: str) -> dict[str, str]:
        """Build the environment a script runs with."""
        env = dict(os.environ if self.base_env is None else self.base_env)
        for name in _GIT_REPOSITORY_VARIABLES:
            env.pop(name, None)
        env[DATABASE_ENV] = database_path
        return env

    def run(
        self, script: MigrationScript, previous_target: str, root: str, database_path: str
    ) -> MigrationResult:
        """Run script from root against the database at database_path.

        Raises:
            MigrationFailed: if the script does not succeed
        """
        return script.execute(previous_target, root, self.environment(database_path))
