"""
QEMU Monitor Protocol client

This module provides the `QMPClient` class, a synchronous client for one
already connected QMP socket. It performs capability negotiation,
executes commands, and buffers the events that arrive in between so
that they can be waited for later.
"""

# Copyright (C) 2009, 2010 Red Hat Inc.
# Copyright (C) 2017 Hanna Reitz
#
# Authors:
#  Luiz Capitulino <lcapitulino@redhat.com>
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.

import logging
import socket
from types import TracebackType
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
    Union,
    cast,
)

from .error import (
    ConnectionClosedError,
    ExecuteError,
    GreetingError,
    UnexpectedMessageError,
)
from .message import Message, qmp_args, qmp_name


if TYPE_CHECKING:
    from ..context import InputLog
    from .jobs import JobEventResult, JobState


# QMPMessage is a QMP Message of any kind.
# e.g. {'yee': 'haw'}
#
# QMPReturnValue is the inner value of return values only.
# {'return': {}} is the QMPMessage,
# {} is the QMPReturnValue.
QMPMessage = Dict[str, Any]
QMPReturnValue = object

#: What `QMPClient.event_wait` accepts as filter: nothing, an event name,
#: or a (partial) event message.
MatchSpec = Union[None, str, Mapping[str, Any]]

#: Capabilities we accept in the server greeting. None of them is
#: enabled during negotiation.
KNOWN_CAPABILITIES = frozenset(('oob',))

_RECV_SIZE = 4096

_T = TypeVar('_T', bound='QMPClient')


class QMPClient:
    """
    Provide an API to talk to QEMU via QEMU Monitor Protocol (QMP) over a
    connected socket, and to handle commands and events.

    The greeting is read and capabilities are negotiated before the
    constructor returns.

    :param sock: A connected stream socket.
    :param nickname: Optional nickname used for logging.
    :param transcript: Optional log receiving every line sent to QEMU.

    :raise GreetingError: if the greeting is malformed, advertises an
                          unknown capability, or negotiation fails.
    :raise ConnectionClosedError: if the server hangs up first.
    """

    #: Logger object for debugging messages
    logger = logging.getLogger(__name__)

    def __init__(self, sock: socket.socket,
                 nickname: Optional[str] = None,
                 transcript: Optional['InputLog'] = None):
        self._sock = sock
        self._rbuf = bytearray()
        self._events: List[QMPMessage] = []
        self._deferred_events: List[QMPMessage] = []
        self._verbosity: Union[bool, str] = False

        #: Trace hook, called with every raw line when verbosity is on.
        self.trace: Callable[[str], None] = print
        self.transcript = transcript
        self.nickname = nickname
        if nickname:
            self.logger = logging.getLogger(__name__).getChild(nickname)

        self.greeting = self._negotiate_capabilities()

    def __enter__(self: _T) -> _T:
        return self

    def __exit__(self,
                 exc_type: Optional[Type[BaseException]],
                 exc_val: Optional[BaseException],
                 exc_tb: Optional[TracebackType]) -> None:
        self.close()

    def _negotiate_capabilities(self) -> QMPMessage:
        greeting = self._recv()
        assert greeting is not None

        qmp = greeting.get('QMP')
        if not isinstance(qmp, dict):
            raise GreetingError(
                f"Greeting does not contain a 'QMP' object: {greeting!r}")

        capabilities = qmp.get('capabilities')
        if not isinstance(capabilities, list):
            raise GreetingError("Greeting has no capability list")

        for cap in capabilities:
            if cap not in KNOWN_CAPABILITIES:
                raise GreetingError(f"Unknown capability '{cap}'")

        try:
            self.qmp_capabilities()
        except ExecuteError as err:
            raise GreetingError("Capability negotiation failed") from err
        return dict(greeting)

    @property
    def verbosity(self) -> Union[bool, str]:
        """
        Trace setting: False, True, or a label prefixed to traced lines.
        """
        return self._verbosity

    @verbosity.setter
    def verbosity(self, value: Union[bool, str]) -> None:
        self._verbosity = value

    def _trace(self, raw: str) -> None:
        if not self._verbosity:
            return
        if isinstance(self._verbosity, str):
            self.trace(f"[{self._verbosity}] {raw}")
        else:
            self.trace(raw)

    def _send(self, msg: Message) -> None:
        raw = bytes(msg)
        text = raw.decode('utf-8')
        self.logger.debug(">>> %s", text)
        self._trace(text)
        if self.transcript is not None:
            self.transcript.record(text)
        self._sock.sendall(raw + b'\n')

    def _fill(self, wait: bool) -> None:
        """Do one read from the socket into the receive buffer."""
        if wait:
            data = self._sock.recv(_RECV_SIZE)
        else:
            current_timeout = self._sock.gettimeout()
            self._sock.settimeout(0)  # i.e. setblocking(False)
            try:
                data = self._sock.recv(_RECV_SIZE)
            except BlockingIOError:
                # No data available; not critical
                return
            finally:
                self._sock.settimeout(current_timeout)

        if not data:
            raise ConnectionClosedError("Connection closed by the server")
        self._rbuf += data

    def _readline(self, wait: bool) -> Optional[bytes]:
        if wait:
            while b'\n' not in self._rbuf:
                self._fill(wait=True)
        elif b'\n' not in self._rbuf:
            self._fill(wait=False)

        end = self._rbuf.find(b'\n')
        if end < 0:
            return None
        line = bytes(self._rbuf[:end + 1])
        del self._rbuf[:end + 1]
        return line

    def _recv(self, wait: bool = True) -> Optional[Message]:
        """
        Read one message.

        :return: The message, or None if ``wait`` is False and no
                 complete message is available yet.
        """
        while True:
            raw = self._readline(wait)
            if raw is None:
                return None
            raw = raw.strip()
            if raw:
                break
            if not wait:
                return None

        text = raw.decode('utf-8', errors='replace')
        self.logger.debug("<<< %s", text)
        self._trace(text)
        return Message(raw)

    def execute(self, cmd: str,
                args: Optional[Mapping[str, object]] = None
                ) -> QMPReturnValue:
        """
        Execute a QMP command and return its result.

        The command name and arguments are sent as given. Events
        received while waiting for the reply are buffered.

        :param cmd: QMP command name, e.g. ``'query-status'``.
        :param args: Command arguments; omitted from the request if empty.
        :raise ExecuteError: if the server replies with an error.
        :raise ConnectionClosedError: if the server hangs up first.
        """
        qmp_cmd = Message({'execute': cmd})
        if args:
            qmp_cmd['arguments'] = dict(args)
        self._send(qmp_cmd)

        while True:
            resp = self._recv()
            assert resp is not None
            if resp.is_event:
                self._events.append(dict(resp))
            elif resp.is_response:
                if 'error' in resp:
                    raise ExecuteError(dict(resp))
                return resp['return']
            else:
                self.logger.warning("Ignoring unexpected message:\n%s",
                                    resp)

    def command(self, name: str,
                args: Optional[Mapping[str, Any]] = None,
                **kwargs: Any) -> QMPReturnValue:
        """
        Execute any QMP command, spelled the Python way.

        Underscores in ``name`` become hyphens, except for the commands
        in `UNDERSCORE_COMMANDS`. Argument keys are translated the same
        way, recursively::

            qmp.command('blockdev_add', node_name='disk0',
                        driver='null-co')

        :param name: Command name.
        :param args: Arguments as a mapping.
        :param kwargs: Further arguments; these win over ``args``.
        """
        arguments: Dict[str, Any] = dict(args or {})
        arguments.update(kwargs)
        return self.execute(qmp_name(name), qmp_args(arguments))

    # Commands the harness itself relies on.

    def qmp_capabilities(self) -> None:
        """Leave capabilities negotiation mode."""
        self.execute('qmp_capabilities')

    def quit(self) -> None:
        """Ask QEMU to exit."""
        self.execute('quit')

    def query_jobs(self) -> List[Dict[str, Any]]:
        """Return the list of background jobs."""
        return cast(List[Dict[str, Any]], self.execute('query-jobs'))

    def block_job_complete(self, device: str) -> None:
        """Tell a ready block job to complete."""
        self.execute('block-job-complete', {'device': device})

    def job_finalize(self, job_id: str) -> None:
        """Finalize a pending job."""
        self.execute('job-finalize', {'id': job_id})

    def job_dismiss(self, job_id: str) -> None:
        """Dismiss a concluded job."""
        self.execute('job-dismiss', {'id': job_id})

    # Events

    @staticmethod
    def event_match(event: Any, match: Optional[Mapping[str, Any]]) -> bool:
        """
        Check if an event matches optional match criteria.

        The match criteria takes the form of a matching subdict. The
        event is checked to be a superset of the subdict, recursively,
        with equal values for every key of the subdict.

        Examples, with the subdict queries on the left:
         - None and {} match any event.
         - {"event": "STOP"} matches {"event": "STOP", "data": {}}
         - {"data": {"id": "j"}} matches {"data": {"id": "j", "x": 1}}
         - {"data": {"id": "j"}} does not match {"data": {}}
        """
        if not match:
            return True
        if not isinstance(event, Mapping):
            return False

        for key, value in match.items():
            if key not in event:
                return False
            if isinstance(value, Mapping):
                if not isinstance(event[key], Mapping):
                    return False
                if not QMPClient.event_match(event[key], value):
                    return False
            elif event[key] != value:
                return False
        return True

    def event_wait(self, match: MatchSpec = None,
                   wait: bool = True) -> Optional[QMPMessage]:
        """
        Return the first event matching ``match``.

        Buffered events are searched first. After that, if ``wait`` is
        true, messages are read until a matching event arrives; events
        that do not match are buffered. If ``wait`` is false, at most
        one read is attempted, and None is returned if it did not yield
        a matching event.

        :param match: An event name, or partial event message. See
                      `event_match` for details.
        :param wait: Block until a matching event arrives.
        :raise UnexpectedMessageError: if a non-event message arrives.
        """
        if isinstance(match, str):
            match = {'event': match}

        for i, event in enumerate(self._events):
            if self.event_match(event, match):
                del self._events[i]
                return event

        while True:
            msg = self._recv(wait)
            if msg is None:
                return None
            if not msg.is_event:
                raise UnexpectedMessageError("Event expected", dict(msg))
            event = dict(msg)
            if self.event_match(event, match):
                return event
            self._events.append(event)
            if not wait:
                return None

    @property
    def events(self) -> List[QMPMessage]:
        """Buffered events, oldest first."""
        return list(self._events)

    def clear_events(self) -> None:
        """
        Clear current list of pending events.
        """
        self._events = []

    def _merge_deferred_events(self) -> None:
        self._events.extend(self._deferred_events)
        self._deferred_events = []

    # Jobs

    def process_job_event(self, job_id: str, event: QMPMessage,
                          state: 'JobState',
                          auto_finalize: bool = True,
                          auto_dismiss: bool = False,
                          expect_error: bool = False) -> 'JobEventResult':
        """See `vmharness.qmp.jobs.process_job_event`."""
        # pylint: disable=import-outside-toplevel,cyclic-import
        from .jobs import process_job_event
        return process_job_event(self, job_id, event, state,
                                 auto_finalize=auto_finalize,
                                 auto_dismiss=auto_dismiss,
                                 expect_error=expect_error)

    def run_job(self, job_id: str,
                auto_finalize: bool = True,
                auto_dismiss: bool = False,
                expect_error: bool = False) -> None:
        """See `vmharness.qmp.jobs.run_job`."""
        # pylint: disable=import-outside-toplevel,cyclic-import
        from .jobs import run_job
        run_job(self, job_id,
                auto_finalize=auto_finalize,
                auto_dismiss=auto_dismiss,
                expect_error=expect_error)

    def close(self) -> None:
        """
        Close the socket.
        """
        self._sock.close()

    def fileno(self) -> int:
        """
        Get the socket file descriptor, e.g. for use with `select`.
        """
        return self._sock.fileno()
