"""
Job state machine.

    pending -> downloading -> processing -> completed
       |            |              |
       +------------+--------------+------> failed

completed and failed are terminal. Every status write in the store is
checked against TRANSITIONS, so the table below is the single source of
truth for which moves are legal.
"""

from ingest.errors import ConflictError
from ingest.models import IngestionJob

Status = IngestionJob.Status

TRANSITIONS = {
    Status.PENDING: frozenset({Status.DOWNLOADING, Status.FAILED}),
    Status.DOWNLOADING: frozenset({Status.PROCESSING, Status.FAILED}),
    Status.PROCESSING: frozenset({Status.COMPLETED, Status.FAILED}),
    Status.COMPLETED: frozenset(),
    Status.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({Status.COMPLETED, Status.FAILED})
ACTIVE_STATES = frozenset({Status.DOWNLOADING, Status.PROCESSING})

# Overall progress band covered by each active phase
PHASE_PROGRESS = {
    Status.PENDING: (0, 0),
    Status.DOWNLOADING: (0, 50),
    Status.PROCESSING: (50, 95),
    Status.COMPLETED: (100, 100),
}

CANCELLED_REASON = 'cancelled'


def is_terminal(status):
    return Status(status) in TERMINAL_STATES


def can_transition(current, new):
    return Status(new) in TRANSITIONS[Status(current)]


def check_transition(current, new):
    """Raise ConflictError unless current -> new is a legal move."""
    if not can_transition(current, new):
        raise ConflictError(f'Illegal transition {current} -> {new}')


def phase_progress(status, fraction):
    """
    Map a phase-local fraction (0.0-1.0) to overall job progress.

    Args:
        status: The active phase
        fraction: How far through the phase the worker is

    Returns:
        int: Overall progress in the phase's band
    """
    low, high = PHASE_PROGRESS[Status(status)]
    fraction = min(max(fraction, 0.0), 1.0)
    return low + int((high - low) * fraction)
