"""
QEMU test and automation harness.

This library starts QEMU processes wired up to control sockets, talks
QMP to them, and follows the background jobs they run. It is meant for
test suites and scripts, not for production use.

 | vmharness.machine: Machine, the QEMU process and its sockets.
 | vmharness.qmp: QMPClient, commands, events and background jobs.
 | vmharness.context: HarnessContext, InputLog.
"""

# Copyright (C) 2015-2016 Red Hat Inc.
# Copyright (C) 2012 IBM Corp.
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.
#

import logging

from .context import HarnessContext, InputLog
from .machine import LaunchError, Machine, MachineError, MachineState
from .qmp import ExecuteError, QMPClient, QMPError


# Suppress logging unless an application engages it.
logging.getLogger('vmharness').addHandler(logging.NullHandler())


__all__ = (
    'Machine',
    'MachineState',
    'QMPClient',
    'HarnessContext',
    'InputLog',
    'MachineError',
    'LaunchError',
    'QMPError',
    'ExecuteError',
)
