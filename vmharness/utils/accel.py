"""
Accelerator probing

This module provides utilities to discover and check the availability
of accelerators, so that a machine asking for KVM can warn early when it
is going to run on TCG instead.
"""
# Copyright (C) 2015-2016 Red Hat Inc.
# Copyright (C) 2012 IBM Corp.
#
# Authors:
#  Fam Zheng <famz@redhat.com>
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.
#

import logging
import os
import subprocess
from typing import List, Optional


LOG = logging.getLogger(__name__)


def list_accel(qemu_bin: str) -> List[str]:
    """
    List accelerators enabled in the QEMU binary.

    @param qemu_bin (str): path to the QEMU binary.
    @raise OSError, CalledProcessError: if ``qemu -accel help`` failed
    @return a list of accelerator names.
    """
    if not qemu_bin:
        return []
    try:
        out = subprocess.check_output([qemu_bin, '-accel', 'help'],
                                      universal_newlines=True)
    except (OSError, subprocess.CalledProcessError):
        LOG.debug("Failed to get the list of accelerators in %s", qemu_bin)
        raise
    # Skip the first line which is the header.
    return [acc.strip() for acc in out.splitlines()[1:]]


def kvm_available(qemu_bin: Optional[str] = None) -> bool:
    """
    Check if KVM is available using the following heuristic:
      - /dev/kvm is accessible on the host;
      - KVM is enabled in the QEMU binary, if one is given.

    @param qemu_bin (str): path to the QEMU binary
    @raise OSError, CalledProcessError: if the binary could not be asked
    @return True if kvm is available, otherwise False.
    """
    if not os.access("/dev/kvm", os.R_OK | os.W_OK):
        return False
    if qemu_bin and "kvm" not in list_accel(qemu_bin):
        return False
    return True


def accel_list(qtest: bool = False, kvm: bool = False,
               qemu_bin: Optional[str] = None) -> List[str]:
    """
    Return the accelerators to pass to QEMU, most preferred first.

    TCG always comes last so that QEMU has something to fall back to.

    @param qtest (bool): prefer the qtest accelerator (test mode)
    @param kvm (bool): prefer KVM; ignored when qtest is set
    @param qemu_bin (str): binary to ask whether it was built with KVM
    """
    accels = ['tcg']
    if qtest:
        accels.insert(0, 'qtest')
    elif kvm:
        try:
            available = kvm_available(qemu_bin)
        except (OSError, subprocess.CalledProcessError) as err:
            LOG.warning("Could not list the accelerators of %s: %s",
                        qemu_bin, err)
            available = False
        if not available:
            LOG.warning("KVM requested, but not usable; "
                        "QEMU will fall back to TCG")
        accels.insert(0, 'kvm')
    return accels
