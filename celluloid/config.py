# config.py -- Helper configuration read from git config
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

"""Configuration for the remote helper.

Settings live in the ``[celluloid]`` section of the git configuration of
the repository being pushed from, e.g.::

    [celluloid]
        migrationScript = db/migrate.sh
        migrationTimeout = 120
        headRef = refs/heads/main
        headRef = refs/heads/production
        denyNonFastForwards = true
"""

__all__ = [
    "DATABASE_ENV",
    "DEFAULT_HEAD_REFS",
    "HelperConfig",
    "load_config",
]

import os
from dataclasses import dataclass

from dulwich.config import Config, ConfigFile, StackedConfig

from .log_utils import getLogger

logger = getLogger(__name__)

SECTION = (b"celluloid",)

# Environment variable through which scripts find the database.
DATABASE_ENV = "DATABASE_URL"

DEFAULT_HEAD_REFS = ("refs/heads/main", "refs/heads/master")
DEFAULT_MIGRATION_SCRIPT = "code_change.sh"
DEFAULT_MIGRATION_TIMEOUT = 600.0

BACKENDS = ("dulwich", "git")


@dataclass(frozen=True)
class HelperConfig:
    """Behaviour switches for the push pipeline."""

    migration_script: str = DEFAULT_MIGRATION_SCRIPT
    migration_timeout: float | None = DEFAULT_MIGRATION_TIMEOUT
    head_refs: tuple[str, ...] = DEFAULT_HEAD_REFS
    deny_non_fast_forwards: bool = False
    migration_snapshot: bool = True
    backend: str = "dulwich"

    def is_head_ref(self, ref: str) -> bool:
        """Check whether pushing to ref advances HEAD and runs migrations."""
        return ref in self.head_refs

    @classmethod
    def from_config(cls, config: Config) -> "HelperConfig":
        """Build a HelperConfig from a dulwich configuration object.

        Args:
            config: Configuration to read the celluloid section from

        Returns:
            A HelperConfig, with defaults for unset keys

        Raises:
            ValueError: if a value cannot be interpreted
        """
        try:
            script = config.get(SECTION, b"migrationScript").decode("utf-8")
        except KeyError:
            script = DEFAULT_MIGRATION_SCRIPT

        try:
            raw_timeout = config.get(SECTION, b"migrationTimeout")
        except KeyError:
            timeout: float | None = DEFAULT_MIGRATION_TIMEOUT
        else:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                raise ValueError(
                    f"invalid celluloid.migrationTimeout: {raw_timeout!r}"
                )
            if timeout < 0:
                raise ValueError(f"invalid celluloid.migrationTimeout: {timeout}")
            if timeout == 0:
                timeout = None

        try:
            head_refs = tuple(
                value.decode("utf-8")
                for value in config.get_multivar(SECTION, b"headRef")
            )
        except KeyError:
            head_refs = ()

        try:
            backend = config.get(SECTION, b"backend").decode("ascii").lower()
        except KeyError:
            backend = "dulwich"
        if backend not in BACKENDS:
            raise ValueError(f"unknown celluloid.backend: {backend}")

        return cls(
            migration_script=script,
            migration_timeout=timeout,
            head_refs=head_refs or DEFAULT_HEAD_REFS,
            deny_non_fast_forwards=bool(
                config.get_boolean(SECTION, b"denyNonFastForwards", False)
            ),
            migration_snapshot=bool(
                config.get_boolean(SECTION, b"migrationSnapshot", True)
            ),
            backend=backend,
        )


def load_config(git_dir: str | None = None) -> HelperConfig:
    """Load the helper configuration for a repository.

    The repository's own config file takes precedence over the user and
    system files.

    Args:
        git_dir: Path to the repository control directory, if known

    Returns:
        The effective HelperConfig
    """
    backends: list[ConfigFile] = []
    if git_dir is not None:
        path = os.path.join(git_dir, "config")
        if os.path.exists(path):
            backends.append(ConfigFile.from_path(path))
    backends.extend(StackedConfig.default_backends())
    config = HelperConfig.from_config(StackedConfig(backends))
    logger.debug("helper configuration: %r", config)
    return config
