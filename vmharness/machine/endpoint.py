"""
Listening endpoints

An `Endpoint` is a socket the harness listens on and QEMU connects to.
It is created and bound before QEMU is started, so QEMU never races
against us setting it up, and accepted lazily the first time somebody
needs the connection.
"""

# Copyright (C) 2015 Red Hat Inc.
# Copyright (C) 2017 Hanna Reitz
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.

import logging
import os
import socket
import threading
from typing import Dict, Optional, Tuple, Union


LOG = logging.getLogger(__name__)

InternetAddrT = Tuple[str, int]
UnixAddrT = str
SocketAddrT = Union[UnixAddrT, InternetAddrT]


def remove_if_exists(path: str) -> None:
    """
    Remove file object at path if it exists.

    Other failures are logged and otherwise ignored, so that cleanup
    never hides the error that led to it.
    """
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as err:
        LOG.warning("Could not remove '%s': %s", path, err)


class Endpoint:
    """
    A listening stream socket, accepted at most once.

    Use `Endpoint.unix` or `Endpoint.tcp` to create one.

    :param sock: A bound and listening socket.
    :param path: Socket file to remove on `close`, for UNIX sockets.
    """
    def __init__(self, sock: socket.socket, path: Optional[str] = None):
        self._listener: Optional[socket.socket] = sock
        self._conn: Optional[socket.socket] = None
        self._lock = threading.Lock()
        self._accept_lock = threading.Lock()
        self.path = path
        self._address: SocketAddrT
        if path is not None:
            self._address = path
        else:
            host, port = sock.getsockname()[:2]
            self._address = (host, port)

    @classmethod
    def unix(cls, path: str) -> 'Endpoint':
        """
        Listen on a UNIX socket at ``path``.

        @raise OSError if the socket cannot be created, e.g. because
               ``path`` already exists.
        """
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(path)
            sock.listen(1)
        except OSError:
            sock.close()
            raise
        return cls(sock, path)

    @classmethod
    def tcp(cls, host: str = '127.0.0.1', port: int = 0) -> 'Endpoint':
        """
        Listen on a TCP socket. Port 0 picks a free ephemeral port.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(1)
        except OSError:
            sock.close()
            raise
        return cls(sock)

    def __repr__(self) -> str:
        return f"<Endpoint {self._address!r}>"

    @property
    def address(self) -> SocketAddrT:
        """The socket path, or a (host, port) tuple."""
        return self._address

    @property
    def connected(self) -> bool:
        """True once a connection has been accepted."""
        return self._conn is not None

    def chardev_opts(self) -> str:
        """Address options for a QEMU ``socket`` chardev."""
        if isinstance(self._address, tuple):
            return "host={},port={}".format(*self._address)
        return f"path={self._address}"

    def chardev_addr(self) -> Dict[str, str]:
        """Address as a QAPI ``SocketAddress`` object."""
        if isinstance(self._address, tuple):
            host, port = self._address
            return {'type': 'inet', 'host': host, 'port': str(port)}
        return {'type': 'unix', 'path': self._address}

    def qemu_uri(self) -> str:
        """Address in the ``unix:PATH`` / ``tcp:HOST:PORT`` form."""
        if isinstance(self._address, tuple):
            return "tcp:{}:{}".format(*self._address)
        return f"unix:{self._address}"

    def accept(self, timeout: Optional[float] = None) -> socket.socket:
        """
        Return the connection, accepting it first if necessary.

        Only one caller accepts; concurrent callers wait for it and get
        the same connection. `close` interrupts a pending accept.

        @param timeout: seconds to wait for the peer, None to block
        @raise OSError if the endpoint is closed or accepting fails
        @raise socket.timeout if the timeout expires
        """
        with self._accept_lock:
            with self._lock:
                if self._conn is not None:
                    return self._conn
                listener = self._listener
                if listener is None:
                    raise OSError(f"{self!r} is closed")

            try:
                listener.settimeout(timeout)
                conn, _ = listener.accept()
            except OSError as err:
                if self._listener is None:
                    raise OSError(f"{self!r} is closed") from err
                raise
            conn.settimeout(None)

            with self._lock:
                if self._listener is None:
                    conn.close()
                    raise OSError(f"{self!r} is closed")
                self._conn = conn
            return conn

    def close(self) -> None:
        """
        Close the connection and the listener, and remove the socket
        file. Safe to call more than once, and from another thread
        while `accept` is blocked.
        """
        with self._lock:
            conn, self._conn = self._conn, None
            listener, self._listener = self._listener, None

        if listener is not None:
            # Wakes up a thread blocked in accept(); close() alone won't.
            try:
                listener.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            listener.close()
        if conn is not None:
            conn.close()
        if self.path is not None:
            remove_if_exists(self.path)
