"""Provisioning stages and their forward-only transition table.

No stage is executed by this package. The tracker only records outcomes
reported by whatever performs a stage, so that a failed run can resume at the
stage that failed instead of starting over.
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from . import state
from .logging_utils import log_event


class Stage(str, enum.Enum):
    PARTITION = "partition"
    MDADM = "mdadm"
    PERSIST = "persist"
    LVM = "lvm"
    FORMAT = "format"
    MOUNT = "mount"


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


STAGE_ORDER = (
    Stage.PARTITION,
    Stage.MDADM,
    Stage.PERSIST,
    Stage.LVM,
    Stage.FORMAT,
    Stage.MOUNT,
)

# ``None`` is the state before any stage has succeeded.
TRANSITIONS: Dict[Optional[Stage], Stage] = {
    None: Stage.PARTITION,
    Stage.PARTITION: Stage.MDADM,
    Stage.MDADM: Stage.PERSIST,
    Stage.PERSIST: Stage.LVM,
    Stage.LVM: Stage.FORMAT,
    Stage.FORMAT: Stage.MOUNT,
}


class StageTransitionError(RuntimeError):
    """A stage outcome was recorded out of order."""


class StageTracker:
    """Track outcomes of the provisioning stages."""

    def __init__(self) -> None:
        self._status: Dict[Stage, StageStatus] = {
            stage: StageStatus.PENDING for stage in STAGE_ORDER
        }
        self._detail: Dict[Stage, str] = {}

    def status(self, stage: Stage) -> StageStatus:
        return self._status[stage]

    def last_succeeded(self) -> Optional[Stage]:
        last: Optional[Stage] = None
        for stage in STAGE_ORDER:
            if self._status[stage] is not StageStatus.SUCCEEDED:
                break
            last = stage
        return last

    def next_stage(self) -> Optional[Stage]:
        """Return the stage allowed to run next, or ``None`` when all succeeded."""

        return TRANSITIONS.get(self.last_succeeded())

    def is_complete(self) -> bool:
        return self.next_stage() is None

    def record(self, stage: Stage, succeeded: bool, detail: str | None = None) -> None:
        """Record the outcome of ``stage``.

        Only the stage returned by :meth:`next_stage` may be recorded; a
        failed stage stays the next stage until it succeeds.
        """

        stage = Stage(stage)
        expected = self.next_stage()
        if stage is not expected:
            expected_name = expected.value if expected is not None else "none"
            raise StageTransitionError(
                f"cannot record {stage.value}: next stage is {expected_name}"
            )
        self._status[stage] = StageStatus.SUCCEEDED if succeeded else StageStatus.FAILED
        if detail:
            self._detail[stage] = detail
        else:
            self._detail.pop(stage, None)
        log_event(
            "ryvie_storage.stages.recorded",
            stage=stage,
            status=self._status[stage],
            detail=detail,
        )

    def to_payload(self) -> Dict[str, Any]:
        stages = []
        for stage in STAGE_ORDER:
            entry: Dict[str, Any] = {
                "stage": stage.value,
                "status": self._status[stage].value,
            }
            if stage in self._detail:
                entry["detail"] = self._detail[stage]
            stages.append(entry)
        next_stage = self.next_stage()
        return {
            "stages": stages,
            "next": next_stage.value if next_stage is not None else None,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StageTracker":
        """Rebuild a tracker from :meth:`to_payload` output.

        Outcomes are replayed in stage order, so a payload that claims a
        later stage succeeded while an earlier one did not raises
        :class:`StageTransitionError`.
        """

        entries: Dict[Stage, Mapping[str, Any]] = {}
        for entry in payload.get("stages") or []:
            if not isinstance(entry, Mapping):
                raise ValueError(f"invalid stage entry: {entry!r}")
            try:
                stage = Stage(entry.get("stage"))
                status = StageStatus(entry.get("status"))
            except ValueError as exc:
                raise ValueError(f"invalid stage entry: {entry!r}") from exc
            entries[stage] = {"status": status, "detail": entry.get("detail")}

        tracker = cls()
        for stage in STAGE_ORDER:
            entry = entries.get(stage)
            if entry is None or entry["status"] is StageStatus.PENDING:
                continue
            tracker.record(
                stage,
                entry["status"] is StageStatus.SUCCEEDED,
                detail=entry["detail"],
            )
        return tracker

    def save(self, *, state_dir: Optional[Path] = None) -> Path:
        return state.record_stage_outcomes(self.to_payload(), state_dir=state_dir)

    @classmethod
    def load(cls, *, state_dir: Optional[Path] = None) -> "StageTracker":
        """Return the persisted tracker, or a fresh one when nothing is recorded."""

        payload = state.load_stage_outcomes(state_dir=state_dir)
        if payload is None:
            return cls()
        return cls.from_payload(payload)
