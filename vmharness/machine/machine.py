"""
QEMU machine module:

The machine module primarily provides the Machine class, which manages
the lifetime of one QEMU (or QEMU storage daemon) process together with
the sockets it talks to us through.
"""

# Copyright (C) 2015-2016 Red Hat Inc.
# Copyright (C) 2012 IBM Corp.
# Copyright (C) 2017 Hanna Reitz
#
# Authors:
#  Fam Zheng <famz@redhat.com>
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.
#

from enum import Enum
import logging
import os
import re
import shlex
import signal
import socket
import subprocess
import threading
from types import TracebackType
from typing import (
    IO,
    Any,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from ..context import HarnessContext, default_context
from ..qmp import QMPClient, command_line_arg
from ..utils.accel import accel_list
from .endpoint import Endpoint


LOG = logging.getLogger(__name__)

#: Placeholder in arguments that is replaced by the number of a file
#: descriptor opened on the given path and passed to QEMU.
FDSET_RE = re.compile(r'\{FDSET:([^}]*)\}')

_MACHINE_OPTIONS = ('-M', '-machine', '--machine')


class MachineError(Exception):
    """
    Exception called when an error in Machine happens.
    """


class LaunchError(MachineError):
    """
    Exception raised when the QEMU process could not be started.

    The root cause, usually an `OSError`, is available as ``__cause__``.
    """
    def __init__(self, command: str):
        super().__init__(command)
        self.command = command

    def __str__(self) -> str:
        ret = ''
        if self.__cause__ is not None:
            name = type(self.__cause__).__name__
            reason = str(self.__cause__)
            if reason:
                ret += f"{name}: {reason}"
            else:
                ret += f"{name}"
        ret += '\n'
        ret += f"\tCommand: {self.command}\n"
        return ret


class MachineState(Enum):
    """Lifecycle of the process managed by a `Machine`."""

    #: The process has been started.
    SPAWNED = 0
    #: QEMU has connected to the QMP socket.
    CONNECTED = 1
    #: A signal has been sent to the process.
    SIGNALED = 2
    #: The process has exited and been reaped.
    WAITED = 3
    #: All sockets, pipes and socket files have been released.
    CLEANED_UP = 4


_T = TypeVar('_T', bound='Machine')


class Machine:
    """
    A QEMU process.

    The process is started by the constructor. Every listening socket
    is set up before that, so QEMU can connect to them right away; they
    are only accepted on first use (`qmp`, `qtest_socket`,
    `serial_socket`).

    Use this object as a context manager to ensure the QEMU process
    terminates::

        with Machine('qemu-system-x86_64') as vm:
            vm.qmp.command('query_status')
            vm.qmp.quit()
            vm.wait()
        # vm is guaranteed to be shut down here

    :param binary: Path to the QEMU binary.
    :param args: Further arguments. Mappings are turned into compact
                 JSON, with their keys translated like QMP arguments.
                 ``{FDSET:path}`` is replaced by the number of a file
                 descriptor opened on ``path``.
    :param qtest: Create a qtest socket (test mode only).
    :param serial: Create a socket for the serial port.
    :param capture_stdin: Give QEMU a pipe as stdin, writable via `stdin`.
    :param capture_stdout: Capture stdout in a pipe, readable via `stdout`.
    :param capture_stderr: Capture stderr in a pipe, readable via `stderr`.
    :param normal_vm: Run a normal VM, with display, network and device
                      defaults, instead of the headless test setup.
    :param kvm: Prefer KVM over TCG (``normal_vm`` only).
    :param qsd: The binary is the QEMU storage daemon.
    :param rsd: The binary is a storage daemon taking JSON
                ``--chardev``/``--monitor`` arguments.
    :param gdb: Run QEMU under gdb. Implies no stdio capture.
    :param tcp_socks: Use TCP sockets on localhost instead of UNIX sockets.
    :param machine: Machine type, used unless ``args`` select one.
    :param print_full_cmdline: Print the full command line before starting.
    :param accept_timeout: Seconds to wait for QEMU to connect when a
                           socket is first used; None waits forever.
    :param context: Shared harness state; the process-wide default
                    context is used if omitted.

    :raise OSError: if a socket cannot be created; nothing is started.
    :raise LaunchError: if the process cannot be started.
    """
    # pylint: disable=too-many-instance-attributes

    def __init__(self,
                 binary: str,
                 *args: Union[str, Mapping[str, Any]],
                 qtest: bool = True,
                 serial: bool = False,
                 capture_stdin: bool = False,
                 capture_stdout: bool = False,
                 capture_stderr: bool = False,
                 normal_vm: bool = False,
                 kvm: bool = False,
                 qsd: bool = False,
                 rsd: bool = False,
                 gdb: bool = False,
                 tcp_socks: bool = False,
                 machine: Optional[str] = 'q35',
                 print_full_cmdline: bool = False,
                 accept_timeout: Optional[float] = None,
                 context: Optional[HarnessContext] = None):
        # pylint: disable=too-many-arguments,too-many-locals

        self._context = context or default_context()
        self._instance_id = self._context.next_instance_id()
        self._name = f"vm-{self._instance_id}"

        if normal_vm:
            qtest = False
        else:
            kvm = False

        if qsd or rsd:
            kvm = False
            normal_vm = False
            qtest = False
            serial = False

        if gdb:
            capture_stdin = capture_stdout = capture_stderr = False

        # Direct user configuration

        self._binary = binary
        self._args = [command_line_arg(arg) for arg in args]
        self._normal_vm = normal_vm
        self._kvm = kvm
        self._qsd = qsd
        self._rsd = rsd
        self._gdb = gdb
        self._machine = machine
        self._accept_timeout = accept_timeout

        # Runstate
        self._lock = threading.Lock()
        self._state: Optional[MachineState] = None
        self._popen: Optional['subprocess.Popen[bytes]'] = None
        self._exitcode: Optional[int] = None
        self._signals_sent: Set[int] = set()
        self._qmp_connection: Optional[QMPClient] = None
        self._qmp_endpoint: Optional[Endpoint] = None
        self._qtest_endpoint: Optional[Endpoint] = None
        self._serial_endpoint: Optional[Endpoint] = None
        self._fd_files: List[IO[bytes]] = []
        self._stdin: Optional[IO[bytes]] = None
        self._stdout: Optional[IO[bytes]] = None
        self._stderr: Optional[IO[bytes]] = None
        self._full_args: Tuple[str, ...] = ()

        try:
            self._pre_launch(tcp_socks, qtest, serial)
        except BaseException:
            self.cleanup()
            raise

        if print_full_cmdline:
            print('$ ' + shlex.join(self._full_args))
        self._launch(capture_stdin, capture_stdout, capture_stderr)

    def __enter__(self: _T) -> _T:
        return self

    def __exit__(self,
                 exc_type: Optional[Type[BaseException]],
                 exc_val: Optional[BaseException],
                 exc_tb: Optional[TracebackType]) -> None:
        if self.is_running():
            self.kill()
        else:
            self.wait()

    def _sock_path(self, kind: str) -> str:
        return os.path.join(self._context.sock_dir,
                            f"vmharness-{kind}-{self._instance_id}")

    def _endpoint(self, kind: str, tcp: bool) -> Endpoint:
        if tcp:
            return Endpoint.tcp()
        return Endpoint.unix(self._sock_path(kind))

    def _pre_launch(self, tcp_socks: bool, qtest: bool, serial: bool) -> None:
        self._qmp_endpoint = self._endpoint('qmp', tcp_socks)
        if qtest:
            self._qtest_endpoint = self._endpoint('qtest', tcp_socks)
        if serial:
            self._serial_endpoint = self._endpoint('serial', tcp_socks)

        args = [self._binary]
        args += [FDSET_RE.sub(self._open_fdset, arg) for arg in self._args]
        args += self._base_args

        if self._gdb:
            args = ['gdb', '--eval-command',
                    shlex.join(['run'] + args[1:]), args[0]]
        self._full_args = tuple(args)

    def _open_fdset(self, match: 're.Match[str]') -> str:
        # NOTE: Make sure any opened files are *definitely* closed in
        # _launch() or cleanup()!
        # pylint: disable=consider-using-with
        fdfile = open(match.group(1), 'r+b')
        self._fd_files.append(fdfile)
        return str(fdfile.fileno())

    @property
    def _base_args(self) -> List[str]:
        assert self._qmp_endpoint is not None
        qmp = self._qmp_endpoint

        if self._rsd:
            chardev = {
                'id': 'char0',
                'backend': {
                    'type': 'socket',
                    'data': {'addr': qmp.chardev_addr()},
                },
            }
            monitor = {'id': 'mon0', 'chardev': 'char0'}
            args = ['--chardev', command_line_arg(chardev),
                    '--monitor', command_line_arg(monitor)]
        elif self._qsd:
            args = ['--chardev', f"socket,id=mon0,{qmp.chardev_opts()}",
                    '--monitor', 'mon0']
        else:
            args = ['--chardev', f"socket,id=mon0,{qmp.chardev_opts()}",
                    '--mon', 'mon0,mode=control']
            if self._machine is not None and not self._has_machine_arg():
                args.extend(['--machine', self._machine])
            for accel in accel_list(qtest=self._qtest_endpoint is not None,
                                    kvm=self._kvm,
                                    qemu_bin=self._binary):
                args.extend(['-accel', accel])

        if self._qtest_endpoint is not None:
            args.extend(['-qtest', self._qtest_endpoint.qemu_uri()])
        if not (self._normal_vm or self._qsd or self._rsd):
            args.extend(['-display', 'none', '-net', 'none'])
        if self._serial_endpoint is not None:
            args.extend(['-serial', self._serial_endpoint.qemu_uri()])
        return args

    def _has_machine_arg(self) -> bool:
        for arg in self._args:
            if arg in _MACHINE_OPTIONS:
                return True
            if arg.startswith(tuple(opt + '=' for opt in _MACHINE_OPTIONS)):
                return True
        return False

    def _launch(self, capture_stdin: bool, capture_stdout: bool,
                capture_stderr: bool) -> None:
        command = ' '.join(self._full_args)
        LOG.debug('VM launch command: %r', command)
        if self._context.transcript is not None:
            self._context.transcript.record('$ ' + shlex.join(self._full_args))

        pipe = subprocess.PIPE
        try:
            # Cleaning up of this subprocess is guaranteed by wait().
            # pylint: disable=consider-using-with
            self._popen = subprocess.Popen(
                self._full_args,
                stdin=pipe if capture_stdin else None,
                stdout=pipe if capture_stdout else None,
                stderr=pipe if capture_stderr else None,
                pass_fds=[f.fileno() for f in self._fd_files],
                shell=False)
        except Exception as exc:
            self.cleanup()
            raise LaunchError(command) from exc
        finally:
            self._close_fd_files()

        self._stdin = self._popen.stdin
        self._stdout = self._popen.stdout
        self._stderr = self._popen.stderr
        self._state = MachineState.SPAWNED

    def _close_fd_files(self) -> None:
        while self._fd_files:
            self._fd_files.pop().close()

    @property
    def name(self) -> str:
        """Name used for logging, unique among this program's machines."""
        return self._name

    @property
    def state(self) -> Optional[MachineState]:
        """Current lifecycle state."""
        return self._state

    @property
    def full_args(self) -> Tuple[str, ...]:
        """The complete command line QEMU was started with."""
        return self._full_args

    @property
    def pid(self) -> Optional[int]:
        """PID of the process, or None once it has been reaped."""
        if self._popen is None:
            return None
        return self._popen.pid

    def is_running(self) -> bool:
        """Returns true if the process is running."""
        return self._popen is not None and self._popen.poll() is None

    def exitcode(self) -> Optional[int]:
        """
        Returns the exit code if possible, or None.

        A negative value -N means the process was killed by signal N.
        """
        if self._popen is not None:
            self._exitcode = self._popen.poll()
        return self._exitcode

    @property
    def qmp(self) -> QMPClient:
        """
        The QMP client, connected on first use.

        :raise MachineError: if the machine has been cleaned up.
        """
        with self._lock:
            if self._qmp_connection is None:
                endpoint = self._live_endpoint(self._qmp_endpoint)
                assert endpoint is not None
                sock = endpoint.accept(self._accept_timeout)
                self._qmp_connection = QMPClient(
                    sock,
                    nickname=self._name,
                    transcript=self._context.transcript
                )
                if self._state is MachineState.SPAWNED:
                    self._state = MachineState.CONNECTED
            return self._qmp_connection

    @property
    def qtest_socket(self) -> Optional[socket.socket]:
        """
        The raw qtest connection, accepted on first use, or None if no
        qtest socket was requested.
        """
        endpoint = self._live_endpoint(self._qtest_endpoint)
        if endpoint is None:
            return None
        return endpoint.accept(self._accept_timeout)

    @property
    def serial_socket(self) -> Optional[socket.socket]:
        """
        The raw serial port connection, accepted on first use, or None
        if no serial socket was requested.
        """
        endpoint = self._live_endpoint(self._serial_endpoint)
        if endpoint is None:
            return None
        return endpoint.accept(self._accept_timeout)

    def _live_endpoint(self,
                       endpoint: Optional[Endpoint]) -> Optional[Endpoint]:
        if self._state is MachineState.CLEANED_UP:
            raise MachineError(f"{self._name} has already been cleaned up")
        return endpoint

    @property
    def stdin(self) -> Optional[IO[bytes]]:
        """Pipe to QEMU's stdin, if captured."""
        return self._stdin

    @property
    def stdout(self) -> Optional[IO[bytes]]:
        """Pipe from QEMU's stdout, if captured."""
        return self._stdout

    @property
    def stderr(self) -> Optional[IO[bytes]]:
        """Pipe from QEMU's stderr, if captured."""
        return self._stderr

    def kill(self, sig: int = signal.SIGKILL, wait: bool = True) -> None:
        """
        Send a signal to the process, if it is still around.

        :param sig: The signal to send.
        :param wait: Also wait for the process to exit and clean up. If
                     false, the caller has to call `wait` (or `cleanup`).
        """
        if self._popen is not None:
            self._signals_sent.add(sig)
            try:
                self._popen.send_signal(sig)
            except ProcessLookupError:
                # Already exited, but not reaped yet.
                pass
            self._state = MachineState.SIGNALED

        if wait:
            self.wait()

    def wait(self, timeout: Optional[float] = None) -> None:
        """
        Wait for the process to exit, then clean up.

        Does nothing after the machine has been cleaned up.

        :param timeout: Seconds to wait; None waits forever.
        :raise subprocess.TimeoutExpired: if the timeout expires. No
            cleanup is performed in that case.
        """
        if self._popen is not None:
            self._exitcode = self._popen.wait(timeout=timeout)
            self._state = MachineState.WAITED
        self.cleanup()

    def cleanup(self) -> None:
        """
        Release the pipes, connections and socket files of this machine.

        Called by `wait`; only call it directly if the process has been
        reaped by other means. Safe to call more than once.
        """
        if self._state is MachineState.CLEANED_UP:
            return

        for pipe in (self._stdin, self._stdout, self._stderr):
            if pipe is not None:
                try:
                    # Flushes stdin; the reader may be gone already.
                    pipe.close()
                except OSError as err:
                    LOG.warning("%s: exception closing pipe: %s",
                                self._name, err)

        if self._qmp_connection is not None:
            try:
                self._qmp_connection.close()
            except OSError as err:
                LOG.warning("Exception closing QMP connection: %s", err)
            self._qmp_connection = None

        for endpoint in (self._qmp_endpoint, self._qtest_endpoint,
                         self._serial_endpoint):
            if endpoint is not None:
                endpoint.close()

        self._close_fd_files()

        if self._popen is not None:
            self._exitcode = self._popen.poll()
            if self._exitcode is None:
                LOG.warning("%s: cleaning up while the process is still "
                            "running", self._name)
        self._popen = None
        self._log_exit_status()
        self._state = MachineState.CLEANED_UP

    def _log_exit_status(self) -> None:
        exitcode = self._exitcode
        if (exitcode is not None and exitcode < 0
                and -exitcode not in self._signals_sent):
            msg = 'qemu received signal %i; command: "%s"'
            LOG.warning(msg, -exitcode, ' '.join(self._full_args))
