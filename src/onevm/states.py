"""Named lifecycle states for a managed VM.

OpenNebula reports two numeric codes for a VM: the primary VM state and, while
ACTIVE, the detailed LCM state. All lifecycle decisions are made against the
named states below rather than raw integers.

Mapping (codes from pyone's VM_STATE / LCM_STATE tables):

    STATE == DONE (6)                       -> DONE
    STATE == ACTIVE (3), LCM == RUNNING (3) -> RUNNING
    anything else                           -> PROVISIONING, or DELETING
                                               once a terminate was issued

ABSENT is never derived from codes; it means no remote record was found.
"""

from __future__ import annotations

from enum import Enum

from pyone import LCM_STATE, VM_STATE


class LifecycleState(str, Enum):
    """Lifecycle of a single managed VM."""

    ABSENT = "absent"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    DELETING = "deleting"
    DONE = "done"


def classify(state: int, lcm_state: int, *, terminating: bool = False) -> LifecycleState:
    """Map the two OpenNebula state codes to a LifecycleState.

    A match on only one of the two codes is a non-terminal state.

    Args:
        state: Primary VM state code.
        lcm_state: Secondary (LCM) state code.
        terminating: True once a terminate action has been issued, so that
            intermediate codes are reported as DELETING.
    """
    if state == VM_STATE.DONE:
        return LifecycleState.DONE
    if not terminating and state == VM_STATE.ACTIVE and lcm_state == LCM_STATE.RUNNING:
        return LifecycleState.RUNNING
    return LifecycleState.DELETING if terminating else LifecycleState.PROVISIONING


def describe_codes(state: int, lcm_state: int) -> str:
    """Human readable rendering of a state pair for log lines."""
    try:
        state_name = VM_STATE(state).name
    except ValueError:
        state_name = f"UNKNOWN({state})"
    try:
        lcm_name = LCM_STATE(lcm_state).name
    except ValueError:
        lcm_name = f"UNKNOWN({lcm_state})"
    return f"{state_name}/{lcm_name}"
