# refs.py -- References stored in the celluloid database
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

"""Reference table.

``HEAD`` is an ordinary row here, not a symbolic ref: it holds the commit
whose migration was last applied, and is empty until the first push to a
head-advancing branch.
"""

__all__ = [
    "HEADREF",
    "REF_KINDS",
    "Reference",
    "RefsContainer",
    "ref_kind",
]

from collections.abc import Iterator
from dataclasses import dataclass

from .database import Database
from .log_utils import getLogger

logger = getLogger(__name__)

HEADREF = "HEAD"
LOCAL_BRANCH_PREFIX = "refs/heads/"
LOCAL_TAG_PREFIX = "refs/tags/"
LOCAL_REMOTE_PREFIX = "refs/remotes/"

REF_KINDS = ("branch", "tag", "remote")


def ref_kind(name: str) -> str:
    """Classify a reference name as branch, tag or remote."""
    if name.startswith(LOCAL_TAG_PREFIX):
        return "tag"
    if name.startswith(LOCAL_REMOTE_PREFIX):
        return "remote"
    return "branch"


@dataclass(frozen=True)
class Reference:
    """A named pointer to an object."""

    name: str
    target: str
    kind: str

    @property
    def unborn(self) -> bool:
        """Whether the reference does not point at anything yet."""
        return not self.target


class RefsContainer:
    """Point-in-time reads and upserts of the ``git_refs`` table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        return self.get(name) is not None

    def __getitem__(self, name: str) -> str:
        """Return the target of a reference.

        Raises:
            KeyError: if no such reference exists
        """
        ref = self.get(name)
        if ref is None:
            raise KeyError(name)
        return ref.target

    def __setitem__(self, name: str, target: str) -> None:
        self.set(name, target)

    def get(self, name: str) -> Reference | None:
        """Look up a reference, returning None if it does not exist."""
        row = self.db.fetchone(
            "SELECT name, sha, type FROM git_refs WHERE name = ?", (name,)
        )
        if row is None:
            return None
        return Reference(row[0], row[1], row[2])

    def target(self, name: str) -> str:
        """Return the target of name, or an empty string if it is unset."""
        ref = self.get(name)
        if ref is None:
            return ""
        return ref.target

    def head(self) -> str:
        """Return the current HEAD target; empty while HEAD is unborn."""
        return self.target(HEADREF)

    def set(self, name: str, target: str, kind: str | None = None) -> None:
        """Create or overwrite a reference.

        Args:
            name: Reference name
            target: Object id the reference should point at
            kind: One of REF_KINDS; derived from name when omitted
        """
        if kind is None:
            kind = ref_kind(name)
        if kind not in REF_KINDS:
            raise ValueError(f"invalid reference kind {kind!r}")
        self.db.execute(
            "INSERT INTO git_refs (name, sha, type) VALUES (?, ?, ?) "
            "ON CONFLICT(name) DO UPDATE SET sha = excluded.sha, "
            "type = excluded.type, updated_at = CURRENT_TIMESTAMP",
            (name, target, kind),
        )
        logger.debug("set %s to %s", name, target or "(unborn)")

    def set_head(self, target: str) -> None:
        """Point HEAD at target."""
        self.set(HEADREF, target, "branch")

    def __iter__(self) -> Iterator[Reference]:
        """Iterate over all references in a stable (insertion) order."""
        rows = self.db.fetchall("SELECT name, sha, type FROM git_refs ORDER BY rowid")
        for name, sha, kind in rows:
            yield Reference(name, sha, kind)

    def as_dict(self) -> dict[str, str]:
        """Return a mapping from reference name to target."""
        return {ref.name: ref.target for ref in self}
