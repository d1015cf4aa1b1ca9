"""
QEMU Monitor Protocol (QMP) client library.

This package provides a synchronous client for a single QMP connection.

`QMPClient` provides the main functionality of this package. All errors
raised by this library derive from `QMPError`, see `qmp.error` for
additional detail. Background jobs reported through QMP events are
handled by `qmp.jobs`.
"""

# Copyright (C) 2020-2022 John Snow for Red Hat, Inc.
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.

from .client import KNOWN_CAPABILITIES, QMPClient, QMPMessage
from .error import (
    ConnectionClosedError,
    ExecuteError,
    GreetingError,
    JobAbortedError,
    ProtocolError,
    QMPError,
    UnexpectedMessageError,
)
from .jobs import JobEventResult, JobState, process_job_event, run_job
from .message import (
    UNDERSCORE_COMMANDS,
    Message,
    command_line_arg,
    qmp_args,
    qmp_name,
)


__all__ = (
    # Classes, most to least important
    'QMPClient',
    'Message',
    'JobState',
    'JobEventResult',

    # Functions
    'run_job',
    'process_job_event',
    'qmp_name',
    'qmp_args',
    'command_line_arg',

    # Exceptions, most generic to most explicit
    'QMPError',
    'GreetingError',
    'ExecuteError',
    'JobAbortedError',
    'ConnectionClosedError',
    'ProtocolError',
    'UnexpectedMessageError',

    # Constants and type aliases
    'KNOWN_CAPABILITIES',
    'UNDERSCORE_COMMANDS',
    'QMPMessage',
)
