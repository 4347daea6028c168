#
# celluloid - Git repositories stored in SQLite
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

"""Command-line interface for celluloid.

Two programs are provided: ``celluloid``, for managing databases, and
``git-remote-celluloid``, which git runs for ``celluloid://`` remotes.
"""

__all__ = [
    "Command",
    "URL_SCHEME",
    "commands",
    "main",
    "parse_url",
    "remote_helper_main",
]

import argparse
import signal
import sys
import types
from collections.abc import Sequence

from . import porcelain
from .errors import GraphError, MaterializationFailed, StorageError
from .log_utils import default_logging_config, getLogger

logger = getLogger(__name__)

URL_SCHEME = "celluloid://"


def signal_int(signal: int, frame: types.FrameType | None) -> None:
    """Handle interrupt signal by exiting.

    Args:
        signal: Signal number
        frame: Current stack frame
    """
    sys.exit(1)


class Command:
    """A celluloid subcommand."""

    def run(self, args: Sequence[str]) -> int | None:
        """Run the command."""
        raise NotImplementedError(self.run)


class cmd_init(Command):
    """Create a database, or add missing tables to an existing one."""

    def run(self, args: Sequence[str]) -> None:
        parser = argparse.ArgumentParser(prog="celluloid init")
        parser.add_argument("db", help="Database file")
        parsed_args = parser.parse_args(args)
        path = porcelain.init(parsed_args.db)
        print(f"Initialized celluloid database in {path}")


class cmd_push(Command):
    """Serve the remote-helper protocol on stdin and stdout."""

    def run(self, args: Sequence[str]) -> None:
        parser = argparse.ArgumentParser(prog="celluloid push")
        parser.add_argument(
            "--repo", default=None, help="Local repository (default: GIT_DIR or cwd)"
        )
        parser.add_argument("db", help="Database file")
        parsed_args = parser.parse_args(args)
        porcelain.serve(
            parsed_args.db,
            sys.stdin.buffer,
            sys.stdout.buffer,
            repo_path=parsed_args.repo,
        )


class cmd_checkout(Command):
    """Check out a stored commit into a new temporary directory."""

    def run(self, args: Sequence[str]) -> None:
        parser = argparse.ArgumentParser(prog="celluloid checkout")
        parser.add_argument("db", help="Database file")
        parser.add_argument(
            "target", nargs="?", default=None, help="Commit or reference (default: HEAD)"
        )
        parsed_args = parser.parse_args(args)
        print(porcelain.checkout(parsed_args.db, parsed_args.target))


class cmd_run(Command):
    """Run a shell command in a checkout of HEAD."""

    def run(self, args: Sequence[str]) -> int:
        parser = argparse.ArgumentParser(prog="celluloid run")
        parser.add_argument("db", help="Database file")
        parser.add_argument("command", nargs="+", help="Shell command")
        parsed_args = parser.parse_args(args)
        return porcelain.run(parsed_args.db, " ".join(parsed_args.command))


commands = {
    "checkout": cmd_checkout,
    "init": cmd_init,
    "push": cmd_push,
    "run": cmd_run,
}


def main(argv: Sequence[str] | None = None) -> int | None:
    """Main entry point for the celluloid command.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code or None
    """
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ("-h", "--help"):
        parser = argparse.ArgumentParser(
            prog="celluloid", description="Git repositories stored in SQLite"
        )
        parser.add_argument(
            "command",
            nargs="?",
            help=f"Command to run. Available: {', '.join(sorted(commands.keys()))}",
        )
        parser.print_help()
        return 1

    default_logging_config()

    cmd = argv[0]
    try:
        cmd_kls = commands[cmd]
    except KeyError:
        logger.fatal("No such subcommand: %s", cmd)
        return 1
    try:
        return cmd_kls().run(argv[1:])
    except (StorageError, GraphError, MaterializationFailed, ValueError) as e:
        logger.error("%s", e)
        return 1


def parse_url(url: str) -> str:
    """Extract the database path from a ``celluloid://`` URL.

    Raises:
        ValueError: if url does not use the celluloid scheme or has no path
    """
    if not url.startswith(URL_SCHEME):
        raise ValueError(f"not a celluloid URL: {url}")
    path = url[len(URL_SCHEME) :]
    if not path:
        raise ValueError(f"no database path in {url}")
    return path


def remote_helper_main(argv: Sequence[str] | None = None) -> int:
    """Entry point for git-remote-celluloid.

    git invokes it as ``git-remote-celluloid <remote> <url>``.
    """
    if argv is None:
        argv = sys.argv[1:]
    default_logging_config()
    if len(argv) < 1:
        logger.error("usage: git-remote-celluloid <remote> [<url>]")
        return 1
    try:
        if len(argv) > 1:
            url = argv[1]
        else:
            url = porcelain.remote_url(argv[0])
        db_path = parse_url(url)
        porcelain.serve(db_path, sys.stdin.buffer, sys.stdout.buffer)
    except (KeyError, ValueError, StorageError, GraphError) as e:
        logger.error("%s", e)
        return 1
    return 0


def _main() -> None:
    signal.signal(signal.SIGINT, signal_int)
    sys.exit(main())


def _remote_helper_main() -> None:
    signal.signal(signal.SIGINT, signal_int)
    sys.exit(remote_helper_main())


if __name__ == "__main__":
    _main()
