from __future__ import annotations

import logging
import math
from datetime import datetime
from threading import Lock
from typing import Any, Optional

from backend.app.models import CaseRecord, CaseStatus, EpisodeRecord, utc_now
from backend.app.services.workflow import CLOSING_STATUSES
from backend.app.store import EventStore, StoreConflictError

logger = logging.getLogger("support_desk.episodes")

MAX_ATTEMPTS = 10


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from ``start`` to ``end``, rounded half up and floored at zero."""
    minutes = (end - start).total_seconds() / 60.0
    return max(0, math.floor(minutes + 0.5))


class EpisodeManager:
    """Owns the open/close/reopen state machine of each case's current episode.

    Check-then-act sequences run under a per-case lock, and every write of the
    case's ``current_episode_id`` is conditional on the value that was read, so
    writers that bypass this process's locks still cannot leave two episodes open.
    """

    def __init__(self, store: EventStore) -> None:
        self.store = store
        self._guard = Lock()
        self._case_locks: dict[str, Lock] = {}

    def _lock_for(self, case_id: str) -> Lock:
        with self._guard:
            lock = self._case_locks.get(case_id)
            if lock is None:
                lock = Lock()
                self._case_locks[case_id] = lock
            return lock

    def ensure_open_episode(
        self,
        case_id: str,
        meta: Optional[dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
        machine_id: Optional[str] = None,
    ) -> EpisodeRecord:
        with self._lock_for(case_id):
            return self._ensure_open(case_id, meta, now=now, machine_id=machine_id)

    def close_current_episode(
        self,
        case_id: str,
        final_status: CaseStatus,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[EpisodeRecord]:
        if final_status not in CLOSING_STATUSES:
            raise ValueError(f"episodes close as SOLVED or UNSOLVED, got {final_status}")
        with self._lock_for(case_id):
            return self._close_current(case_id, final_status, now=now)

    def reopen(
        self,
        case_id: str,
        meta: Optional[dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> EpisodeRecord:
        with self._lock_for(case_id):
            case = self.store.find_case(case_id)
            if case.current_episode_id:
                logger.warning(
                    "episode_force_closed case_id=%s episode_id=%s",
                    case_id,
                    case.current_episode_id,
                )
                self._close_current(case_id, CaseStatus.UNSOLVED, now=now)
            return self._ensure_open(case_id, meta, now=now)

    def list_episodes(self, case_id: str) -> list[EpisodeRecord]:
        self.store.find_case(case_id)
        return self.store.find_episodes_by_case(case_id, newest_first=False)

    def get_episode(self, episode_id: str) -> EpisodeRecord:
        return self.store.get_episode(episode_id)

    def tag_machine(self, episode_id: str, machine_id: str) -> EpisodeRecord:
        return self.store.update_episode(episode_id, {"machine_id": machine_id})

    def update_meta(self, episode_id: str, meta: dict[str, Any]) -> EpisodeRecord:
        episode = self.store.get_episode(episode_id)
        merged = {**episode.meta, **meta}
        return self.store.update_episode(
            episode_id, {"meta": merged}, expected={"meta": episode.meta}
        )

    # --- internals ---------------------------------------------------------

    def _ensure_open(
        self,
        case_id: str,
        meta: Optional[dict[str, Any]],
        *,
        now: Optional[datetime],
        machine_id: Optional[str] = None,
    ) -> EpisodeRecord:
        for _ in range(MAX_ATTEMPTS):
            case = self.store.find_case(case_id)
            if case.current_episode_id:
                current = self.store.get_episode(case.current_episode_id)
                if current.ended_at is None:
                    return current
                # pointer left on a closed episode
                self._swap_pointer(case, None)
                continue

            history = self.store.find_episodes_by_case(case_id, newest_first=True)
            newest = history[0] if history else None
            if newest is not None and newest.ended_at is None:
                # opened by a writer that has not set the pointer yet
                if self._swap_pointer(case, newest.id, first_opened_at=newest.started_at):
                    claimed = self._still_open(case_id, newest.id)
                    if claimed is not None:
                        return claimed
                continue

            started = now or utc_now()
            try:
                episode = self.store.create_episode(
                    {
                        "case_id": case_id,
                        "sequence": newest.sequence + 1 if newest else 1,
                        "status": CaseStatus.INITIATED,
                        "assigned_to": case.assigned_to,
                        "started_at": started,
                        "meta": dict(meta or {}),
                        "machine_id": machine_id,
                    }
                )
            except StoreConflictError:
                logger.info("episode_sequence_taken case_id=%s", case_id)
                continue

            if self._swap_pointer(case, episode.id, first_opened_at=started):
                claimed = self._still_open(case_id, episode.id)
                if claimed is None:
                    continue
                logger.info(
                    "episode_opened case_id=%s episode_id=%s sequence=%s",
                    case_id,
                    episode.id,
                    episode.sequence,
                )
                return claimed

            latest = self.store.find_case(case_id)
            if latest.current_episode_id == episode.id:
                claimed = self._still_open(case_id, episode.id)
                if claimed is None:
                    continue
                return claimed
            logger.warning(
                "episode_orphan_closed case_id=%s episode_id=%s", case_id, episode.id
            )
            self._finish(episode, CaseStatus.UNSOLVED, started)

        raise StoreConflictError(
            f"could not open an episode for case {case_id} after {MAX_ATTEMPTS} attempts"
        )

    def _close_current(
        self, case_id: str, final_status: CaseStatus, *, now: Optional[datetime]
    ) -> Optional[EpisodeRecord]:
        case = self.store.find_case(case_id)
        if not case.current_episode_id:
            return None

        episode = self.store.get_episode(case.current_episode_id)
        ended = now or utc_now()
        if episode.ended_at is not None:
            self._swap_pointer(case, None)
            return None

        closed = self._finish(episode, final_status, ended)
        if closed is None:
            return None
        try:
            self.store.update_case(
                case_id,
                {"current_episode_id": None, "last_closed_at": ended, "updated_at": ended},
                expected={"current_episode_id": episode.id},
            )
        except StoreConflictError:
            logger.warning(
                "episode_pointer_moved case_id=%s episode_id=%s", case_id, episode.id
            )
        logger.info(
            "episode_closed case_id=%s episode_id=%s status=%s duration_minutes=%s",
            case_id,
            closed.id,
            final_status.value,
            closed.duration_minutes,
        )
        return closed

    def _finish(
        self, episode: EpisodeRecord, final_status: CaseStatus, ended: datetime
    ) -> Optional[EpisodeRecord]:
        try:
            return self.store.update_episode(
                episode.id,
                {
                    "status": final_status,
                    "ended_at": ended,
                    "duration_minutes": minutes_between(episode.started_at, ended),
                },
                expected={"ended_at": None},
            )
        except StoreConflictError:
            return None

    def _still_open(self, case_id: str, episode_id: str) -> Optional[EpisodeRecord]:
        """Re-read a freshly pointed-to episode; drop the pointer if it closed meanwhile."""
        episode = self.store.get_episode(episode_id)
        if episode.ended_at is None:
            return episode
        try:
            self.store.update_case(
                case_id, {"current_episode_id": None}, expected={"current_episode_id": episode_id}
            )
        except StoreConflictError:
            logger.debug("episode_pointer_moved case_id=%s episode_id=%s", case_id, episode_id)
        return None

    def _swap_pointer(
        self,
        case: CaseRecord,
        episode_id: Optional[str],
        *,
        first_opened_at: Optional[datetime] = None,
    ) -> bool:
        patch: dict[str, Any] = {"current_episode_id": episode_id}
        if case.first_opened_at is None and first_opened_at is not None:
            patch["first_opened_at"] = first_opened_at
        try:
            self.store.update_case(
                case.id, patch, expected={"current_episode_id": case.current_episode_id}
            )
        except StoreConflictError:
            return False
        return True
