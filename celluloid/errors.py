# errors.py -- Exception classes for celluloid
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

"""Celluloid exception classes."""

__all__ = [
    "ChangeStateError",
    "GraphError",
    "MaterializationFailed",
    "MigrationFailed",
    "NonFastForward",
    "ObjectConflict",
    "ObjectNotFound",
    "ProtocolParseError",
    "StorageError",
    "one_line",
]


def one_line(message: str, limit: int = 200) -> str:
    """Collapse a message to a single line suitable for a protocol response.

    Args:
        message: Possibly multi-line message
        limit: Maximum number of characters to keep

    Returns:
        The first non-empty line of message, truncated to limit characters
    """
    for line in message.splitlines():
        line = line.strip()
        if line:
            if len(line) > limit:
                return line[: limit - 3] + "..."
            return line
    return "unknown error"


class StorageError(Exception):
    """A statement against the relational store failed."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        """Initialize a StorageError.

        Args:
            operation: Description of what was being attempted
            cause: The underlying database exception, if any
        """
        self.operation = operation
        self.cause = cause
        if cause is not None:
            Exception.__init__(self, f"{operation}: {cause}")
        else:
            Exception.__init__(self, operation)


class ObjectNotFound(Exception):
    """Indicates that a requested object is not available."""

    def __init__(self, sha: str, where: str = "the object store") -> None:
        """Initialize an ObjectNotFound exception.

        Args:
            sha: Hex id of the missing object
            where: Human readable name of the place that was searched
        """
        self.sha = sha
        Exception.__init__(self, f"{sha} is not in {where}")


class ObjectConflict(Exception):
    """An object does not match the identity it was stored under."""

    def __init__(self, sha: str, reason: str) -> None:
        """Initialize an ObjectConflict exception.

        Args:
            sha: Hex id of the object
            reason: What did not match
        """
        self.sha = sha
        Exception.__init__(self, f"object {sha}: {reason}")


class GraphError(Exception):
    """A version-control operation failed."""


class MaterializationFailed(Exception):
    """Checking out a commit into a working directory failed."""


class MigrationFailed(Exception):
    """The repository migration script did not complete successfully."""

    def __init__(
        self, message: str, returncode: int | None = None, output: str = ""
    ) -> None:
        """Initialize a MigrationFailed exception.

        Args:
            message: Short description of the failure
            returncode: Exit status of the script, None if it never ran
            output: Captured standard output and error of the script
        """
        self.returncode = returncode
        self.output = output
        Exception.__init__(self, message)

    @property
    def details(self) -> str:
        """Full failure description including captured output."""
        if self.output.strip():
            return f"{self.args[0]}\n{self.output.rstrip()}"
        return str(self.args[0])


class ProtocolParseError(Exception):
    """A command line could not be parsed."""

    def __init__(self, message: str, ref: str | None = None) -> None:
        """Initialize a ProtocolParseError.

        Args:
            message: What was wrong with the line
            ref: Reference the command concerned, if it could be determined
        """
        self.ref = ref
        Exception.__init__(self, message)


class ChangeStateError(Exception):
    """A code change was moved through an illegal status transition."""


class NonFastForward(Exception):
    """A push would discard commits on the target reference."""

    def __init__(self, ref: str) -> None:
        """Initialize a NonFastForward exception.

        Args:
            ref: Name of the reference being pushed
        """
        self.ref = ref
        Exception.__init__(self, "non-fast-forward")
