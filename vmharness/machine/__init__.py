"""
QEMU process management.

 | Machine: start a QEMU process wired up to QMP, qtest and serial
 |          sockets, and tear it down again.
 | Endpoint: a listening socket QEMU connects to.
"""

# Copyright (C) 2020-2021 John Snow for Red Hat Inc.
# Copyright (C) 2015-2016 Red Hat Inc.
# Copyright (C) 2012 IBM Corp.
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.
#

# pylint: disable=import-error
# see: https://github.com/PyCQA/pylint/issues/3624
# see: https://github.com/PyCQA/pylint/issues/3651
from .endpoint import Endpoint
from .machine import LaunchError, Machine, MachineError, MachineState


__all__ = (
    'Machine',
    'MachineState',
    'Endpoint',
    'MachineError',
    'LaunchError',
)
