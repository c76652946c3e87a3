"""Upload session lifecycle finite state machine.

Each :class:`~remocloud.models.UploadSession` gets its own FSM instance.
The orchestrator fires an event before it mutates ``session.status``; an
illegal move raises ``TransitionNotAllowed`` instead of leaving the session
in an impossible state.

The FSM is purely a validation tool -- it has no callbacks and performs no
I/O.
"""

from __future__ import annotations

from statemachine import State, StateMachine


class UploadLifecycleSM(StateMachine):
    """Nine-state lifecycle of one file upload.

    States:
        pending             -- Session created, nothing started.
        hashing             -- Client-side digest in progress.
        checking_duplicates -- Backend digest lookup in flight.
        duplicate_found     -- Paused until the caller continues, reuses or
                               cancels.
        initiating          -- Requesting an upload session and signed URL.
        uploading           -- Direct PUT to storage in flight.
        finalizing          -- Backend completion call in flight.
        completed           -- Terminal success.
        error               -- Terminal failure (including cancellation).

    ``completed`` and ``error`` are final and have no outgoing transitions.
    """

    pending = State("pending", initial=True, value="pending")
    hashing = State("hashing", value="hashing")
    checking_duplicates = State("checking-duplicates", value="checking-duplicates")
    duplicate_found = State("duplicate-found", value="duplicate-found")
    initiating = State("initiating", value="initiating")
    uploading = State("uploading", value="uploading")
    finalizing = State("finalizing", value="finalizing")
    completed = State("completed", value="completed", final=True)
    error = State("error", value="error", final=True)

    start_hashing = pending.to(hashing)
    check_duplicates = hashing.to(checking_duplicates)
    found_duplicate = checking_duplicates.to(duplicate_found)
    # Entered directly when dedup is skipped, after a duplicate decision, or
    # again when an expired signed URL forces a fresh session.
    initiate = (
        pending.to(initiating)
        | hashing.to(initiating)
        | checking_duplicates.to(initiating)
        | duplicate_found.to(initiating)
        | initiating.to.itself()
        | uploading.to(initiating)
        | finalizing.to(initiating)
    )
    start_upload = initiating.to(uploading)
    finalize = uploading.to(finalizing)
    complete = finalizing.to(completed)
    reuse_existing = duplicate_found.to(completed)
    fail = (
        pending.to(error)
        | hashing.to(error)
        | checking_duplicates.to(error)
        | duplicate_found.to(error)
        | initiating.to(error)
        | uploading.to(error)
        | finalizing.to(error)
    )


def create_fsm(current_state: str = "pending") -> UploadLifecycleSM:
    """Create an FSM instance at the given state.

    Args:
        current_state: Any :class:`~remocloud.models.UploadStatus` value.

    Returns:
        An UploadLifecycleSM positioned at *current_state*.
    """
    return UploadLifecycleSM(start_value=current_state)
