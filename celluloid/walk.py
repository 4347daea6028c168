# walk.py -- Reachability over objects stored in the database
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

"""Find the stored objects a fetch has to hand over.

The traversal itself is dulwich's ``MissingObjectFinder``, run over the
database through :class:`celluloid.object_store.DatabaseObjectStore`.
"""

__all__ = ["iter_reachable"]

from collections.abc import Iterator

from dulwich.errors import ObjectFormatException
from dulwich.object_store import MissingObjectFinder
from dulwich.objects import ShaFile, object_class, sha_to_hex

from .errors import ObjectConflict, ObjectNotFound
from .object_store import DatabaseObjectStore, ObjectStore, StoredObject


def _verify(obj: StoredObject) -> None:
    cls = object_class(obj.kind.encode("ascii"))
    assert cls is not None
    try:
        parsed = ShaFile.from_raw_string(cls.type_num, obj.payload)
    except ObjectFormatException as e:
        raise ObjectConflict(obj.id, f"malformed {obj.kind}: {e}") from e
    if parsed.id.decode("ascii") != obj.id:
        raise ObjectConflict(obj.id, f"payload hashes to {parsed.id.decode()}")


def _missing(e: KeyError, default: str) -> str:
    missing = e.args[0] if e.args else default
    if isinstance(missing, bytes):
        if len(missing) == 20:
            missing = sha_to_hex(missing)
        return missing.decode("ascii")
    return str(missing)


def iter_reachable(store: ObjectStore, sha: str) -> Iterator[StoredObject]:
    """Iterate over the stored object sha and everything reachable from it.

    Each object is yielded once, in no particular order.

    Args:
        store: Store to read from
        sha: Id of the starting object

    Raises:
        ObjectNotFound: if any reachable object is not stored
        ObjectConflict: if a stored payload is malformed or does not hash
            to its id
    """
    if sha not in store:
        raise ObjectNotFound(sha)
    try:
        finder = MissingObjectFinder(
            DatabaseObjectStore(store), haves=[], wants=[sha.encode("ascii")]
        )
        for object_id, _ in finder:
            obj = store.get(object_id.decode("ascii"))
            _verify(obj)
            yield obj
    except KeyError as e:
        raise ObjectNotFound(_missing(e, sha)) from e
    except ObjectFormatException as e:
        raise ObjectConflict(sha, f"malformed object reachable from it: {e}") from e
