# log_utils.py -- Logging utilities for celluloid
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

"""Logging utilities for celluloid.

Celluloid is mostly run by git as a remote helper, which means standard
output belongs to the helper protocol. Nothing here ever logs to stdout:
the default configuration writes to stderr, and tracing can be redirected
to a file descriptor or a file through CELLULOID_TRACE or GIT_TRACE.

As with any library, importing celluloid does not produce log output by
itself; the package logger carries a null handler until
default_logging_config() is called.
"""

__all__ = [
    "TRACE_VARIABLES",
    "default_logging_config",
    "getLogger",
    "remove_null_handler",
]

import logging
import os
import sys
from collections.abc import Mapping

getLogger = logging.getLogger

TRACE_VARIABLES = ("CELLULOID_TRACE", "GIT_TRACE")

TRACE_FORMAT = "%(asctime)s %(name)s %(levelname)s: %(message)s"
DEFAULT_FORMAT = "celluloid: %(levelname)s: %(message)s"


class _NullHandler(logging.Handler):
    """No-op logging handler to avoid unexpected logging warnings."""

    def emit(self, record: logging.LogRecord) -> None:
        pass


_NULL_HANDLER = _NullHandler()
_CELLULOID_LOGGER = getLogger("celluloid")
_CELLULOID_LOGGER.addHandler(_NULL_HANDLER)


def _trace_value(env: Mapping[str, str] | None = None) -> str:
    """Return the first non-empty trace setting.

    CELLULOID_TRACE takes precedence so celluloid can be traced without
    turning on git's own tracing.
    """
    if env is None:
        env = os.environ
    for name in TRACE_VARIABLES:
        value = env.get(name, "")
        if value:
            return value
    return ""


def _get_trace_target(env: Mapping[str, str] | None = None) -> str | int | None:
    """Work out where trace output should go.

    Returns:
        - None if tracing is disabled
        - 2 for stderr (values "1", "2", "true")
        - an int between 3 and 9 for an already open file descriptor
        - an absolute path (file or directory) as a string
    """
    value = _trace_value(env)
    if not value or value.lower() in ("0", "false"):
        return None
    if value.lower() in ("1", "2", "true"):
        return 2
    try:
        fd = int(value)
    except ValueError:
        pass
    else:
        if 3 <= fd <= 9:
            return fd
        return None
    if os.path.isabs(value):
        return value
    return None


def _configure_logging_from_trace(env: Mapping[str, str] | None = None) -> bool:
    """Configure DEBUG logging according to the trace variables.

    Returns True if tracing was configured, False otherwise.
    """
    target = _get_trace_target(env)
    if target is None:
        return False

    if target == 2:
        logging.basicConfig(level=logging.DEBUG, stream=sys.stderr, format=TRACE_FORMAT)
        return True

    if isinstance(target, int):
        try:
            stream = os.fdopen(target, "w", buffering=1)
        except OSError as e:
            sys.stderr.write(f"Warning: cannot trace to fd {target}: {e}\n")
            return False
        logging.basicConfig(level=logging.DEBUG, stream=stream, format=TRACE_FORMAT)
        return True

    if os.path.isdir(target):
        filename = os.path.join(target, f"celluloid-trace.{os.getpid()}")
    else:
        filename = target
    try:
        logging.basicConfig(
            level=logging.DEBUG, filename=filename, filemode="a", format=TRACE_FORMAT
        )
    except OSError as e:
        sys.stderr.write(f"Warning: cannot trace to {target}: {e}\n")
        return False
    return True


def default_logging_config(level: int = logging.WARNING) -> None:
    """Set up logging for the celluloid command line tools.

    Tracing variables win over level; without them, messages of at least
    level go to stderr.

    Args:
        level: Minimum level to emit when tracing is off
    """
    remove_null_handler()
    if not _configure_logging_from_trace():
        logging.basicConfig(level=level, stream=sys.stderr, format=DEFAULT_FORMAT)


def remove_null_handler() -> None:
    """Remove the null handler from the celluloid logger."""
    _CELLULOID_LOGGER.removeHandler(_NULL_HANDLER)
