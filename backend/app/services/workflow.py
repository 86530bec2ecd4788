from __future__ import annotations

from backend.app.models import CaseStatus

CLOSING_STATUSES = frozenset({CaseStatus.SOLVED, CaseStatus.UNSOLVED})
OPENING_STATUSES = frozenset({CaseStatus.INITIATED, CaseStatus.IN_PROGRESS})

ALLOWED_TRANSITIONS = {
    CaseStatus.INITIATED: {
        CaseStatus.IN_PROGRESS,
        CaseStatus.SOLVED,
        CaseStatus.UNSOLVED,
        CaseStatus.UNKNOWN,
    },
    CaseStatus.IN_PROGRESS: {CaseStatus.SOLVED, CaseStatus.UNSOLVED, CaseStatus.UNKNOWN},
    CaseStatus.SOLVED: {CaseStatus.INITIATED, CaseStatus.IN_PROGRESS},
    CaseStatus.UNSOLVED: {CaseStatus.INITIATED, CaseStatus.IN_PROGRESS},
    CaseStatus.UNKNOWN: {
        CaseStatus.INITIATED,
        CaseStatus.IN_PROGRESS,
        CaseStatus.SOLVED,
        CaseStatus.UNSOLVED,
    },
}


def is_allowed_transition(current: CaseStatus, target: CaseStatus) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
