"""
QMP Error Classes

QMPError serves as the ancestor for all exceptions raised by the
`vmharness.qmp` package. Callers that only care whether "something went
wrong talking to QMP" can catch it; callers that need to react to a
particular failure catch one of the more explicit classes below.

.. admonition:: QMP Exception Hierarchy Reference

 |   `Exception`
 |    +-- `QMPError`
 |         +-- `GreetingError`
 |         +-- `ExecuteError`
 |         |    +-- `JobAbortedError`
 |         +-- `ConnectionClosedError`
 |         +-- `ProtocolError`
 |              +-- `DeserializationError`
 |              +-- `UnexpectedTypeError`
 |              +-- `UnexpectedMessageError`
"""

# Copyright (C) 2009, 2010, 2020-2022 Red Hat Inc.
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.

from typing import Any, Dict, Optional


class QMPError(Exception):
    """Abstract error class for all errors originating from this package."""


class GreetingError(QMPError):
    """
    The server greeting was missing, malformed, or advertised a
    capability this client does not know about.

    The session cannot be used after this error.
    """


class ConnectionClosedError(QMPError):
    """
    The server closed the connection while we were waiting for data.
    """


class ExecuteError(QMPError):
    """
    The server answered a command with an error reply.

    :param reply: The complete reply object, e.g.
        ``{'error': {'class': 'GenericError', 'desc': '...'}}``.
    """
    def __init__(self, reply: Dict[str, Any]):
        self.reply = reply
        super().__init__(self.error_desc)

    @property
    def error_class(self) -> Optional[str]:
        """The QMP error class tag, if the server sent one."""
        error = self.reply.get('error')
        if isinstance(error, dict):
            return error.get('class')
        return None

    @property
    def error_desc(self) -> str:
        """Human-readable description of the error."""
        error = self.reply.get('error')
        if isinstance(error, dict) and 'desc' in error:
            return str(error['desc'])
        return str(error)


class JobAbortedError(ExecuteError):
    """
    A background job entered the ``aborting`` state.

    :param job_id: ID of the job that aborted.
    :param reason: The error string recorded for the job by ``query-jobs``.
    """
    def __init__(self, job_id: str, reason: Optional[str]):
        self.job_id = job_id
        self.reason = reason
        super().__init__({'error': reason})

    def __str__(self) -> str:
        return f"Job '{self.job_id}' aborted: {self.reason}"


class ProtocolError(QMPError):
    """
    Abstract error class for protocol failures.

    Semantically, these errors are generally the fault of either the
    protocol server or as a result of a bug in this library; either way
    the channel can no longer be trusted to be in sync.

    :param error_message: Human-readable string describing the error.
    """
    def __init__(self, error_message: str, *args: object):
        super().__init__(error_message, *args)
        #: Human-readable error message, without any prefix.
        self.error_message: str = error_message

    def __str__(self) -> str:
        return self.error_message


class UnexpectedMessageError(ProtocolError):
    """
    An event was expected, but some other kind of message arrived.

    :param error_message: Human-readable string describing the error.
    :param msg: The offending message.
    """
    def __init__(self, error_message: str, msg: Dict[str, Any]):
        super().__init__(error_message, msg)
        self.msg = msg

    def __str__(self) -> str:
        return f"{self.error_message}, got {self.msg!r}"
