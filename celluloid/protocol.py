# protocol.py -- The git remote-helper protocol
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

"""Server side of the git remote-helper protocol.

git starts a remote helper as a subprocess and talks to it over stdin and
stdout, one command per line::

    capabilities          -> fetch, push, option, blank line
    list [for-push]       -> "<sha> <name>" lines, blank line
    fetch <sha> <ref>     -> (batched) blank line
    push [+]<src>:<dst>   -> (batched) "ok <ref>" or "error <ref> <why>"
    option <name> <value> -> ok

``fetch`` and ``push`` commands come in batches terminated by a blank
line; the responses for a whole batch are written, followed by a single
blank line, once the batch is complete. A blank line outside a batch, or
the end of input, ends the conversation.
"""

__all__ = [
    "CAPABILITIES",
    "UNKNOWN_TARGET",
    "Capabilities",
    "Command",
    "Fetch",
    "List",
    "Option",
    "Push",
    "RemoteHelper",
    "Unrecognized",
    "parse_command",
]

from dataclasses import dataclass
from typing import BinaryIO, Union

from dulwich.objects import valid_hexsha

from .database import Database
from .errors import (
    GraphError,
    ObjectConflict,
    ObjectNotFound,
    ProtocolParseError,
    StorageError,
    one_line,
)
from .log_utils import getLogger
from .object_store import ObjectStore
from .push import PushPipeline, PushRequest
from .refs import RefsContainer
from .vcs import ObjectGraph
from .walk import iter_reachable

logger = getLogger(__name__)

CAPABILITIES = ("fetch", "push", "option")

# Placeholder git accepts for a reference whose value is not known.
UNKNOWN_TARGET = "?"


@dataclass(frozen=True)
class Capabilities:
    """``capabilities``"""


@dataclass(frozen=True)
class List:
    """``list`` or ``list for-push``"""

    for_push: bool = False


@dataclass(frozen=True)
class Fetch:
    """``fetch <sha> <ref>``"""

    sha: str
    ref: str


@dataclass(frozen=True)
class Push:
    """``push [+]<src>:<dst> [<ref>]``"""

    request: PushRequest


@dataclass(frozen=True)
class Option:
    """``option <name> <value>``"""

    name: str
    value: str


@dataclass(frozen=True)
class Unrecognized:
    """Any other command."""

    name: str
    args: tuple[str, ...] = ()


Command = Union[Capabilities, List, Fetch, Push, Option, Unrecognized]


@dataclass(frozen=True)
class _Rejected:
    """A batched command that failed to parse."""

    ref: str
    reason: str


def parse_command(line: str) -> Command:
    """Parse a single command line (without its newline).

    Raises:
        ProtocolParseError: if a known command is missing arguments or
            has malformed ones
    """
    words = line.split()
    if not words:
        raise ProtocolParseError("empty command")
    name, args = words[0], words[1:]
    if name == "capabilities":
        return Capabilities()
    if name == "list":
        return List(for_push="for-push" in args)
    if name == "fetch":
        if len(args) < 2:
            raise ProtocolParseError("fetch requires an object id and a reference")
        sha, ref = args[0], args[1]
        if not valid_hexsha(sha):
            raise ProtocolParseError(f"invalid object id {sha!r}", ref)
        return Fetch(sha, ref)
    if name == "push":
        if not args:
            raise ProtocolParseError("push requires a refspec")
        return Push(PushRequest.parse(args[0], args[1] if len(args) > 1 else None))
    if name == "option":
        if not args:
            raise ProtocolParseError("option requires a name")
        parts = line.strip().split(None, 2)
        return Option(parts[1], parts[2] if len(parts) > 2 else "")
    return Unrecognized(name, tuple(args))


class RemoteHelper:
    """One protocol conversation against a celluloid database."""

    def __init__(
        self,
        db: Database,
        graph: ObjectGraph,
        pipeline: PushPipeline,
        inf: BinaryIO,
        outf: BinaryIO,
    ) -> None:
        """Initialize a RemoteHelper.

        Args:
            db: Database serving as the remote
            graph: Local repository objects are fetched into
            pipeline: Pipeline that applies pushes
            inf: Stream commands are read from
            outf: Stream responses are written to
        """
        self.db = db
        self.graph = graph
        self.pipeline = pipeline
        self.inf = inf
        self.outf = outf
        self.objects = ObjectStore(db)
        self.refs = RefsContainer(db)
        self.options: dict[str, str] = {}
        self.closed = False
        self._batch: list[Fetch | Push | _Rejected] = []

    def write_line(self, line: str = "") -> None:
        self.outf.write(line.encode("utf-8") + b"\n")

    def flush(self) -> None:
        self.outf.flush()

    def read_line(self) -> str | None:
        """Read the next line, or None at end of input.

        Raises:
            ProtocolParseError: if the line is not valid UTF-8
        """
        data = self.inf.readline()
        if not data:
            return None
        try:
            return data.decode("utf-8").rstrip("\r\n")
        except UnicodeDecodeError as e:
            raise ProtocolParseError(f"command is not valid UTF-8: {e.reason}") from e

    def handle(self) -> None:
        """Serve commands until the conversation ends."""
        while not self.closed:
            try:
                line = self.read_line()
            except ProtocolParseError as e:
                logger.warning("unreadable command: %s", e)
                self.write_line(f"error {one_line(str(e))}")
                self.flush()
                continue
            if line is None:
                logger.debug("end of input")
                self.finish_batch()
                self.closed = True
            elif not line.strip():
                if self._batch:
                    self.finish_batch()
                else:
                    self.closed = True
            else:
                self.handle_line(line)
        self.flush()

    def handle_line(self, line: str) -> None:
        """Process one non-blank command line."""
        logger.debug("< %s", line)
        try:
            command = parse_command(line)
        except ProtocolParseError as e:
            logger.warning("malformed command %r: %s", line, e)
            name = line.split()[0]
            if name in ("fetch", "push") and e.ref is not None:
                self._batch.append(_Rejected(e.ref, str(e)))
            elif e.ref is not None:
                self.write_line(f"error {e.ref} {one_line(str(e))}")
                self.flush()
            else:
                self.write_line(f"error {one_line(str(e))}")
                self.flush()
            return

        if isinstance(command, (Fetch, Push)):
            self._batch.append(command)
        elif isinstance(command, Capabilities):
            for capability in CAPABILITIES:
                self.write_line(capability)
            self.write_line()
            self.flush()
        elif isinstance(command, List):
            self.handle_list()
        elif isinstance(command, Option):
            self.options[command.name] = command.value
            self.write_line("ok")
            self.flush()
        else:
            self.write_line(f"error unknown command {command.name!r}")
            self.flush()

    def handle_list(self) -> None:
        try:
            refs = list(self.refs)
        except StorageError as e:
            logger.error("cannot list references: %s", e)
            self.write_line(f"error {one_line(str(e))}")
        else:
            for ref in refs:
                self.write_line(f"{ref.target or UNKNOWN_TARGET} {ref.name}")
        self.write_line()
        self.flush()

    def finish_batch(self) -> None:
        """Execute the queued fetch and push commands and report on them."""
        if not self._batch:
            return
        batch, self._batch = self._batch, []
        for command in batch:
            if isinstance(command, Push):
                self.write_line(self.handle_push(command))
            elif isinstance(command, Fetch):
                reason = self.handle_fetch(command)
                if reason is not None:
                    self.write_line(f"error {command.ref} {one_line(reason)}")
            else:
                self.write_line(f"error {command.ref} {one_line(command.reason)}")
        self.write_line()
        self.flush()

    def handle_push(self, command: Push) -> str:
        ref = command.request.ref
        try:
            result = self.pipeline.push(command.request)
        except StorageError as e:
            logger.error("push to %s failed: %s", ref, e)
            return f"error {ref} {one_line(str(e))}"
        except Exception as e:
            logger.exception("push to %s failed", ref)
            reason = one_line(str(e) or type(e).__name__)
            return f"error {ref} unexpected error: {reason}"
        return result.format()

    def handle_fetch(self, command: Fetch) -> str | None:
        """Fetch one object and its history into the local repository.

        Returns:
            None on success, otherwise the reason for the failure
        """
        try:
            count = self.fetch(command.sha)
        except (ObjectNotFound, ObjectConflict, GraphError, StorageError) as e:
            logger.error("fetch of %s failed: %s", command.ref, e)
            return str(e)
        logger.info("fetched %s (%d new objects)", command.ref, count)
        return None

    def fetch(self, sha: str) -> int:
        """Copy the stored objects reachable from sha into the local repository.

        Returns:
            Number of objects that were not present locally

        Raises:
            ObjectNotFound: if sha or something it refers to is not stored
            ObjectConflict: if the local repository assigns an object a
                different id than it was stored under
        """
        count = 0
        for obj in iter_reachable(self.objects, sha):
            if self.graph.has_object(obj.id):
                continue
            imported = self.graph.import_raw_object(obj.kind, obj.payload)
            if imported != obj.id:
                raise ObjectConflict(obj.id, f"imported as {imported}")
            count += 1
        return count
