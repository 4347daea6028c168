# object_store.py -- Git objects stored in the celluloid database
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

"""Git object storage in the ``git_objects`` table.

Objects are stored exactly as the version-control tool hands them over:
the uncompressed body, its type name and its size. Ids are assigned by
the tool and never computed here.
"""

__all__ = [
    "OBJECT_KINDS",
    "DatabaseObjectStore",
    "ObjectStore",
    "StoredObject",
]

from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass

from dulwich.object_store import BaseObjectStore
from dulwich.objects import ShaFile, object_class, sha_to_hex

from .database import Database
from .errors import ObjectConflict, ObjectNotFound
from .log_utils import getLogger

logger = getLogger(__name__)

OBJECT_KINDS = ("blob", "tree", "commit", "tag")


@dataclass(frozen=True)
class StoredObject:
    """A content-addressed object as kept in the database."""

    id: str
    kind: str
    size: int
    payload: bytes

    @classmethod
    def from_payload(cls, sha: str, kind: str, payload: bytes) -> "StoredObject":
        """Create a StoredObject whose size is taken from the payload."""
        return cls(sha, kind, len(payload), payload)

    def check(self) -> None:
        """Verify the invariants that must hold before the object is written.

        Raises:
            ObjectConflict: if the kind is unknown or size does not match
        """
        if self.kind not in OBJECT_KINDS:
            raise ObjectConflict(self.id, f"unknown object type {self.kind!r}")
        if self.size != len(self.payload):
            raise ObjectConflict(
                self.id,
                f"declared size {self.size} but payload is {len(self.payload)} bytes",
            )


class ObjectStore:
    """Key-value access to the objects in a celluloid database."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def __contains__(self, sha: object) -> bool:
        if not isinstance(sha, str):
            return False
        row = self.db.fetchone("SELECT 1 FROM git_objects WHERE sha = ?", (sha,))
        return row is not None

    def __len__(self) -> int:
        row = self.db.fetchone("SELECT COUNT(*) FROM git_objects")
        assert row is not None
        return int(row[0])

    def __iter__(self) -> Iterator[str]:
        """Iterate over the ids of all stored objects in insertion order."""
        for (sha,) in self.db.fetchall("SELECT sha FROM git_objects ORDER BY rowid"):
            yield sha

    def get(self, sha: str) -> StoredObject:
        """Retrieve an object.

        Raises:
            ObjectNotFound: if no object with that id is stored
        """
        row = self.db.fetchone(
            "SELECT sha, type, size, data FROM git_objects WHERE sha = ?", (sha,)
        )
        if row is None:
            raise ObjectNotFound(sha)
        return StoredObject(row[0], row[1], int(row[2]), bytes(row[3]))

    def iter_objects(self) -> Iterator[StoredObject]:
        """Iterate over every stored object."""
        for sha in list(self):
            yield self.get(sha)

    def add(self, obj: StoredObject) -> bool:
        """Store an object.

        Storing an id that is already present with the same payload is a
        no-op.

        Args:
            obj: Object to store

        Returns:
            True if the object was newly written, False if it was present

        Raises:
            ObjectConflict: if obj is inconsistent, or its id is already
                stored with a different payload
        """
        obj.check()
        row = self.db.fetchone(
            "SELECT type, data FROM git_objects WHERE sha = ?", (obj.id,)
        )
        if row is not None:
            if row[0] != obj.kind or bytes(row[1]) != obj.payload:
                raise ObjectConflict(
                    obj.id, "already stored with different content"
                )
            return False
        self.db.execute(
            "INSERT INTO git_objects (sha, type, size, data) VALUES (?, ?, ?, ?)",
            (obj.id, obj.kind, obj.size, obj.payload),
        )
        return True

    def add_objects(self, objects: Iterable[StoredObject]) -> int:
        """Store several objects.

        Returns:
            Number of objects that were not already present
        """
        added = 0
        for obj in objects:
            if self.add(obj):
                added += 1
        logger.debug("stored %d new objects", added)
        return added


class DatabaseObjectStore(BaseObjectStore):
    """Presents an ObjectStore through dulwich's object store interface.

    This lets dulwich's own traversal machinery (``MissingObjectFinder``,
    ``iter_tree_contents``) run directly against the database.
    """

    def __init__(self, store: ObjectStore) -> None:
        super().__init__()
        self.store = store

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.store.db!r})"

    @staticmethod
    def _hex(sha: bytes) -> str:
        if len(sha) == 20:
            sha = sha_to_hex(sha)
        return sha.decode("ascii")

    def contains_loose(self, sha: bytes) -> bool:
        return self._hex(sha) in self.store

    @property
    def packs(self) -> list:
        return []

    def get_raw(self, name: bytes) -> tuple[int, bytes]:
        try:
            obj = self.store.get(self._hex(name))
        except ObjectNotFound:
            raise KeyError(name)
        cls = object_class(obj.kind.encode("ascii"))
        assert cls is not None
        return cls.type_num, obj.payload

    def __iter__(self) -> Iterator[bytes]:
        for sha in self.store:
            yield sha.encode("ascii")

    def add_object(self, obj: ShaFile) -> None:
        self.store.add(
            StoredObject.from_payload(
                obj.id.decode("ascii"),
                obj.type_name.decode("ascii"),
                obj.as_raw_string(),
            )
        )

    def add_objects(
        self,
        objects: Sequence[tuple[ShaFile, str | None]],
        progress: Callable[..., None] | None = None,
    ) -> None:
        for obj, path in objects:
            self.add_object(obj)
