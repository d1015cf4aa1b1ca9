"""
Harness context

A `HarnessContext` carries the state that is shared between all
machines launched by one controlling program: the counter used to give
each machine a unique name, the directory sockets are created in, and an
optional `InputLog` that records everything sent to QEMU.
"""

# Copyright (C) 2017 Hanna Reitz
# Copyright (C) 2015-2016 Red Hat Inc.
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.

import atexit
import itertools
import logging
import os
import subprocess
import tempfile
import threading
from typing import List, Optional


LOG = logging.getLogger(__name__)

#: Environment variable overriding the default socket directory.
SOCK_DIR_ENV = 'VMHARNESS_SOCK_DIR'


class InputLog:
    """
    Records the input given to QEMU: raw QMP lines and shell commands.

    The result is a sample that can be pasted into a bug report to
    reproduce a session by hand.
    """
    def __init__(self) -> None:
        self._lines: List[str] = []
        self._lock = threading.Lock()

    def record(self, line: str) -> None:
        """Append a single line to the log."""
        with self._lock:
            self._lines.append(line.rstrip('\n'))

    def system(self, cmdline: str) -> int:
        """
        Record ``cmdline`` as a shell command and run it.

        :return: The exit status of the command.
        """
        self.record('$ ' + cmdline)
        LOG.debug("Running: %s", cmdline)
        return subprocess.call(cmdline, shell=True)

    def dump(self) -> str:
        """Return the recorded input, one entry per line."""
        with self._lock:
            return ''.join(line + '\n' for line in self._lines)

    def print_at_exit(self) -> None:
        """Print the recorded input when the interpreter exits."""
        def _print() -> None:
            print()
            print('--- INPUT SAMPLE ---')
            print(self.dump(), end='')
            print('--- END SAMPLE ---')
            print()
        atexit.register(_print)


class HarnessContext:
    """
    State shared by the machines of one controlling program.

    :param sock_dir: Directory for socket files. Defaults to
                     ``$VMHARNESS_SOCK_DIR`` or the system temporary
                     directory.
    :param transcript: Optional `InputLog` receiving all QMP input.
    """
    def __init__(self,
                 sock_dir: Optional[str] = None,
                 transcript: Optional[InputLog] = None):
        self.sock_dir = (sock_dir
                         or os.environ.get(SOCK_DIR_ENV)
                         or tempfile.gettempdir())
        self.transcript = transcript
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def next_instance_id(self) -> str:
        """
        Return a new instance identifier of the form ``PID-N``.

        Identifiers are unique among all machines created through this
        context by the current process.
        """
        with self._lock:
            index = next(self._counter)
        return f"{os.getpid()}-{index}"


_default_context: Optional[HarnessContext] = None
_default_lock = threading.Lock()


def default_context() -> HarnessContext:
    """Return the process-wide context used when none is given."""
    global _default_context  # pylint: disable=global-statement
    with _default_lock:
        if _default_context is None:
            _default_context = HarnessContext()
        return _default_context
