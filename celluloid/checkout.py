# checkout.py -- Materialize stored commits as working trees
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

"""Check out a stored commit into a fresh temporary directory.

A new repository is created in the directory, every stored object is
imported into it, a branch is pointed at the commit and the backend's
checkout is run. Nothing of the caller's own repository is touched.
"""

__all__ = [
    "CHECKOUT_BRANCH",
    "Materializer",
    "materialized",
]

import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager

from .errors import GraphError, MaterializationFailed, ObjectConflict
from .log_utils import getLogger
from .object_store import ObjectStore
from .vcs import Backend

logger = getLogger(__name__)

CHECKOUT_BRANCH = "refs/heads/celluloid"


class Materializer:
    """Builds working trees from the object store."""

    def __init__(
        self, store: ObjectStore, backend: Backend, prefix: str = "celluloid-"
    ) -> None:
        """Initialize a Materializer.

        Args:
            store: Objects to check out from
            backend: Backend used to create the scratch repository
            prefix: Prefix for the temporary directory name
        """
        self.store = store
        self.backend = backend
        self.prefix = prefix

    def materialize(self, target: str, dir: str | None = None) -> str:
        """Check out target into a new directory.

        The caller owns the returned directory and must remove it. On
        failure nothing is left behind.

        Args:
            target: Id of the commit to check out
            dir: Parent directory for the new directory; defaults to the
                system temporary directory

        Returns:
            Path of the new working tree

        Raises:
            MaterializationFailed: if importing or checking out fails
        """
        try:
            path = tempfile.mkdtemp(prefix=self.prefix, dir=dir)
        except OSError as e:
            raise MaterializationFailed(f"cannot create a working tree: {e}") from e
        try:
            self._populate(path, target)
        except BaseException:
            shutil.rmtree(path, ignore_errors=True)
            raise
        logger.info("checked out %s in %s", target, path)
        return path

    def _populate(self, path: str, target: str) -> None:
        if target not in self.store:
            raise MaterializationFailed(f"{target} is not in the object store")
        try:
            with self.backend.init(path) as graph:
                count = 0
                for obj in self.store.iter_objects():
                    sha = graph.import_raw_object(obj.kind, obj.payload)
                    if sha != obj.id:
                        raise ObjectConflict(obj.id, f"payload hashes to {sha}")
                    count += 1
                logger.debug("imported %d objects into %s", count, path)
                graph.set_ref(CHECKOUT_BRANCH, target)
                graph.checkout(CHECKOUT_BRANCH)
        except (GraphError, ObjectConflict, KeyError, OSError) as e:
            raise MaterializationFailed(f"cannot check out {target}: {e}") from e


@contextmanager
def materialized(materializer: Materializer, target: str) -> Iterator[str]:
    """Check out target for the duration of a with block.

    The directory is removed however the block exits.
    """
    path = materializer.materialize(target)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("removed %s", path)
