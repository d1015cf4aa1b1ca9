"""
Background job management

QEMU reports the progress of background jobs (block-mirror, backup,
blockdev-create, ...) through ``JOB_STATUS_CHANGE`` events. A job walks
through ``created``, ``running``, ``ready``, ``pending``, ``concluded``
and finally ``null``, possibly via ``aborting`` when it fails.

`run_job` blocks until a job has been destroyed, issuing the commands
each state requires. Programs that want to handle other events while a
job runs can drive `process_job_event` from their own loop instead::

    state = JobState()
    while True:
        event = qmp.event_wait()
        ret = process_job_event(qmp, 'job0', event, state)
        if ret is JobEventResult.DESTROYED:
            break
        ...  # handle the event yourself
"""

# Copyright (C) 2017 Hanna Reitz
# Copyright (C) 2012-2018 Red Hat Inc.
#
# This work is licensed under the terms of the GNU GPL, version 2.  See
# the COPYING file in the top-level directory.

from enum import Enum
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from .error import JobAbortedError
from .message import Message


if TYPE_CHECKING:
    from .client import QMPClient


LOG = logging.getLogger(__name__)


class JobEventResult(Enum):
    """What an event meant to the job it was offered to."""

    #: The event is not a status change of this job.
    NOT_MINE = 0
    #: The event belongs to this job, which continues to exist.
    RUNNING = 1
    #: The job has been destroyed.
    DESTROYED = 2


class JobState:
    """Per-job bookkeeping for `process_job_event`."""

    def __init__(self) -> None:
        #: Last status seen for the job.
        self.status: Optional[str] = None
        #: Whether block-job-complete has been sent.
        self.complete_sent = False
        #: Whether the job went through the ``aborting`` state.
        self.aborted = False


def job_error(qmp: 'QMPClient', job_id: str) -> Optional[str]:
    """Return the error recorded for a job by ``query-jobs``, if any."""
    for job in qmp.query_jobs():
        if job.get('id') == job_id:
            return job.get('error')
    return None


def process_job_event(qmp: 'QMPClient', job_id: str,
                      event: Dict[str, Any], state: JobState,
                      auto_finalize: bool = True,
                      auto_dismiss: bool = False,
                      expect_error: bool = False) -> JobEventResult:
    """
    Advance a job by one event.

    :param qmp: The client the job runs on.
    :param job_id: ID of the job.
    :param event: Any event; it need not concern this job.
    :param state: Bookkeeping for this job, kept across calls.
    :param auto_finalize: Whether the job was started with auto-finalize.
    :param auto_dismiss: Whether the job was started with auto-dismiss.
    :param expect_error: Treat the job aborting as an expected outcome.

    :return: `JobEventResult.NOT_MINE` if the event is not a status
             change of this job (the caller should keep it for someone
             else), `JobEventResult.DESTROYED` once the job is gone,
             and `JobEventResult.RUNNING` otherwise.
    :raise JobAbortedError: if the job aborts and ``expect_error`` is
                            false.
    """
    msg = Message(event)
    if msg.event_name != 'JOB_STATUS_CHANGE':
        return JobEventResult.NOT_MINE

    data = msg.data
    if data.get('id') != job_id:
        return JobEventResult.NOT_MINE

    status = data.get('status')
    LOG.debug("Job '%s': %s -> %s", job_id, state.status, status)
    state.status = status

    if status == 'ready':
        if not state.complete_sent:
            qmp.block_job_complete(job_id)
            state.complete_sent = True
    elif status == 'pending':
        if not auto_finalize:
            qmp.job_finalize(job_id)
    elif status == 'aborting':
        state.aborted = True
        if not expect_error:
            raise JobAbortedError(job_id, job_error(qmp, job_id))
    elif status == 'concluded':
        if not auto_dismiss:
            qmp.job_dismiss(job_id)
    elif status == 'null':
        return JobEventResult.DESTROYED

    return JobEventResult.RUNNING


def run_job(qmp: 'QMPClient', job_id: str,
            auto_finalize: bool = True,
            auto_dismiss: bool = False,
            expect_error: bool = False) -> None:
    """
    Run `process_job_event` in a loop and block until the job has been
    destroyed.

    Events that do not belong to the job are put back into the client's
    event buffer when this function returns, in the order they arrived.
    A job that aborts while ``expect_error`` is set is followed until it
    has been destroyed, and the abort is logged.

    :raise JobAbortedError: if the job aborts and ``expect_error`` is
                            false.
    """
    # pylint: disable=protected-access
    state = JobState()
    try:
        while True:
            event = qmp.event_wait()
            assert event is not None
            ret = process_job_event(qmp, job_id, event, state,
                                    auto_finalize=auto_finalize,
                                    auto_dismiss=auto_dismiss,
                                    expect_error=expect_error)
            if ret is JobEventResult.DESTROYED:
                if state.aborted:
                    LOG.info("Job '%s' aborted as expected", job_id)
                break
            if ret is JobEventResult.NOT_MINE:
                qmp._deferred_events.append(event)
    finally:
        qmp._merge_deferred_events()
