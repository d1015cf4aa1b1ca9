"""
QMP Message Format

This module provides the `Message` class, which represents a single QMP
message sent to or from the server, and the helpers that translate
Python-style command and argument names into their QMP wire spelling.
"""

# Copyright (C) 2020-2022 John Snow for Red Hat, Inc.
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.

import json
from json import JSONDecodeError
from typing import (
    Any,
    Dict,
    Iterator,
    Mapping,
    MutableMapping,
    Optional,
    Union,
)

from .error import ProtocolError


#: Commands whose QMP wire name itself uses underscores. These are sent
#: verbatim; every other command name has its underscores replaced with
#: hyphens.
UNDERSCORE_COMMANDS = frozenset((
    'add_client',
    'block_resize',
    'block_set_io_throttle',
    'client_migrate_info',
    'device_add',
    'device_del',
    'expire_password',
    'migrate_cancel',
    'netdev_add',
    'netdev_del',
    'qmp_capabilities',
    'set_link',
    'set_password',
    'system_powerdown',
    'system_reset',
    'system_wakeup',
))


def qmp_name(name: str) -> str:
    """
    Translate a Python identifier into a QMP command name.

    >>> qmp_name('query_status')
    'query-status'
    >>> qmp_name('block_resize')
    'block_resize'
    """
    if name in UNDERSCORE_COMMANDS:
        return name
    return name.replace('_', '-')


def qmp_args(value: Any) -> Any:
    """
    Recursively translate mapping keys from ``snake_case`` to
    ``kebab-case``.

    Lists are walked element-wise so that mappings nested inside them
    are translated as well; any other value is returned unchanged.

    >>> qmp_args({'node_name': 'x', 'file': {'driver': 'y'}})
    {'node-name': 'x', 'file': {'driver': 'y'}}
    """
    if isinstance(value, Mapping):
        return {
            (k.replace('_', '-') if isinstance(k, str) else k): qmp_args(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [qmp_args(v) for v in value]
    return value


def command_line_arg(value: Union[str, Mapping[str, Any]]) -> str:
    """
    Render one command line argument.

    Mappings are translated like QMP arguments and flattened into a
    compact JSON string, which is what QEMU's JSON-aware options
    (``--blockdev``, ``--chardev`` in the storage daemon, ...) expect.
    """
    if isinstance(value, Mapping):
        return json.dumps(qmp_args(value), separators=(',', ':'))
    return value


class Message(MutableMapping[str, object]):
    """
    Represents a single QMP protocol message.

    QMP uses JSON objects as its basic communicative unit; so this
    Python object is a :py:obj:`~collections.abc.MutableMapping`. It may
    be instantiated from either another mapping (like a `dict`), or from
    raw `bytes` that still need to be deserialized::

        >>> msg = Message(b'{"event": "STOP", "data": {}}')
        >>> msg.is_event
        True
        >>> msg.event_name
        'STOP'

    It can be converted to `bytes`, which is the form sent on the wire::

        >>> bytes(Message({'execute': 'quit'}))
        b'{"execute":"quit"}'

    Or back into a garden-variety `dict`::

        >>> dict(Message({'execute': 'quit'}))
        {'execute': 'quit'}

    :param value: Initial value, if any.
    :raise DeserializationError: When ``value`` is not valid JSON.
    :raise UnexpectedTypeError: When ``value`` is JSON, but not an object.
    """
    # pylint: disable=too-many-ancestors

    def __init__(self, value: Union[bytes, Mapping[str, object]] = b'{}'):
        self._data: Optional[bytes] = None
        if isinstance(value, bytes):
            self._data = value
            self._obj = self._deserialize(value)
        else:
            self._obj = dict(value)

    def __getitem__(self, key: str) -> object:
        return self._obj[key]

    def __setitem__(self, key: str, value: object) -> None:
        self._obj[key] = value
        self._data = None

    def __delitem__(self, key: str) -> None:
        del self._obj[key]
        self._data = None

    def __iter__(self) -> Iterator[str]:
        return iter(self._obj)

    def __len__(self) -> int:
        return len(self._obj)

    def __repr__(self) -> str:
        return f"Message({self._obj!r})"

    def __str__(self) -> str:
        """Pretty-printed representation of this QMP message."""
        return json.dumps(self._obj, indent=2)

    def __bytes__(self) -> bytes:
        """bytes representing this QMP message."""
        if self._data is None:
            self._data = self._serialize(self._obj)
        return self._data

    # Typed accessors for the few fields the harness inspects itself.

    @property
    def is_event(self) -> bool:
        """True if this message is an asynchronous event."""
        return 'event' in self._obj

    @property
    def is_response(self) -> bool:
        """True if this message answers a command."""
        return 'return' in self._obj or 'error' in self._obj

    @property
    def event_name(self) -> Optional[str]:
        """The event name, or None for non-event messages."""
        name = self._obj.get('event')
        return name if isinstance(name, str) else None

    @property
    def data(self) -> Dict[str, Any]:
        """The event payload; an empty dict if there is none."""
        data = self._obj.get('data')
        return data if isinstance(data, dict) else {}

    @classmethod
    def _serialize(cls, value: object) -> bytes:
        """
        Serialize a JSON object as `bytes`.

        :raise ValueError: When the object cannot be serialized.
        :raise TypeError: When the object cannot be serialized.
        """
        return json.dumps(value, separators=(',', ':')).encode('utf-8')

    @classmethod
    def _deserialize(cls, data: bytes) -> Dict[str, object]:
        """
        Deserialize JSON `bytes` into a native Python `dict`.

        :raise DeserializationError:
            If JSON deserialization fails for any reason.
        :raise UnexpectedTypeError:
            If the data does not represent a JSON object.
        """
        try:
            obj = json.loads(data)
        except (JSONDecodeError, UnicodeDecodeError) as err:
            emsg = "Failed to deserialize QMP message."
            raise DeserializationError(emsg, data) from err
        if not isinstance(obj, dict):
            raise UnexpectedTypeError(
                "QMP message is not a JSON object.",
                obj
            )
        return obj


class DeserializationError(ProtocolError):
    """
    A QMP message was not understood as JSON.

    When this Exception is raised, ``__cause__`` will be set to the
    `json.JSONDecodeError` Exception, which can be interrogated for
    further details.

    :param error_message: Human-readable string describing the error.
    :param raw: The raw `bytes` that prompted the failure.
    """
    def __init__(self, error_message: str, raw: bytes):
        super().__init__(error_message, raw)
        #: The raw `bytes` that were not understood as JSON.
        self.raw: bytes = raw

    def __str__(self) -> str:
        return "\n".join((
            super().__str__(),
            f"  raw bytes were: {str(self.raw)}",
        ))


class UnexpectedTypeError(ProtocolError):
    """
    A QMP message was JSON, but not a JSON object.

    :param error_message: Human-readable string describing the error.
    :param value: The deserialized JSON value that wasn't an object.
    """
    def __init__(self, error_message: str, value: object):
        super().__init__(error_message, value)
        #: The JSON value that was expected to be an object.
        self.value: object = value

    def __str__(self) -> str:
        strval = json.dumps(self.value, indent=2)
        return "\n".join((
            super().__str__(),
            f"  json value was: {strval}",
        ))
