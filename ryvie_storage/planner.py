"""Redundancy proposal heuristics."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from . import topology
from .logging_utils import log_event
from .stages import STAGE_ORDER, Stage

RAID1 = "raid1"
RAID5 = "raid5"
SHR_LIKE = "shr-like"

# Sizes are "roughly equal" when the spread is at most 1/20 (5%) of the
# smallest disk. Tunable policy.
EQUAL_SIZE_DIVISOR = 20

FAULT_TOLERANCE = 1

# md level for each scheme. shr-like starts as raid5 over the slice every
# member shares.
MD_LEVELS = {RAID1: "raid1", RAID5: "raid5", SHR_LIKE: "raid5"}

ARRAY_DEVICE = "/dev/md0"
MDADM_CONFIG = "/etc/mdadm/mdadm.conf"
VOLUME_GROUP = "ryvie"
LOGICAL_VOLUME = "data"
TARGET_FILESYSTEM = "btrfs"
TARGET_MOUNTPOINT = "/data"
MOUNT_OPTIONS = ("defaults", "noatime")

MISSING_DISK_IDS = "missing_diskIds"
INVALID_DISK_IDS = "invalid_diskIds"
NEED_TWO_DISKS = "need_at_least_two_disks"
UNKNOWN_DISKS = "unknown_disks_in_selection"


class SelectionError(ValueError):
    """The caller's disk selection cannot produce a proposal."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        super().__init__(detail or code)
        self.code = code
        self.detail = detail


@dataclass(frozen=True)
class Proposal:
    selected_disks: Tuple[str, ...]
    suggested: str
    capacity: int
    fault_tolerance: int
    plan_preview: Tuple[Dict[str, Any], ...]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "selectedDisks": list(self.selected_disks),
            "suggested": self.suggested,
            "capacityBytes": self.capacity,
            "faultTolerance": self.fault_tolerance,
            "planPreview": [dict(stage) for stage in self.plan_preview],
        }


def roughly_equal(sizes: Sequence[int]) -> bool:
    """Return ``True`` when ``sizes`` are within 5% of the smallest one."""

    smallest = min(sizes)
    return EQUAL_SIZE_DIVISOR * (max(sizes) - smallest) <= smallest


def classify(sizes: Sequence[int]) -> Tuple[str, int, int]:
    """Return ``(scheme, capacity, fault_tolerance)`` for disks of ``sizes``.

    Two disks always become a mirror. Three or more roughly equal disks
    become a single-parity array; anything else is pooled the SHR way, which
    loses the largest disk's worth of space to redundancy.
    """

    count = len(sizes)
    if count < 2:
        raise SelectionError(NEED_TWO_DISKS)
    if count == 2:
        return RAID1, min(sizes), FAULT_TOLERANCE
    if roughly_equal(sizes):
        return RAID5, (count - 1) * min(sizes), FAULT_TOLERANCE
    return SHR_LIKE, sum(sizes) - max(sizes), FAULT_TOLERANCE


def _part_name(device: str, part: int) -> str:
    """Return partition path for ``device`` and ``part`` number."""
    name = device.rsplit("/", 1)[-1]
    suffix = f"p{part}" if name[-1:].isdigit() else str(part)
    return f"{device}{suffix}"


def plan_preview(disk_ids: Sequence[str], scheme: str) -> Tuple[Dict[str, Any], ...]:
    """Describe the provisioning stages for ``disk_ids``.

    The stage order is fixed regardless of ``scheme``. Nothing is executed.
    """

    target = f"/dev/{VOLUME_GROUP}/{LOGICAL_VOLUME}"
    details: Dict[Stage, Dict[str, Any]] = {
        Stage.PARTITION: {
            "table": "gpt",
            "devices": list(disk_ids),
            "partitionType": "linux-raid",
        },
        Stage.MDADM: {
            "scheme": scheme,
            "level": MD_LEVELS[scheme],
            "device": ARRAY_DEVICE,
            "members": [_part_name(disk_id, 1) for disk_id in disk_ids],
        },
        Stage.PERSIST: {"config": MDADM_CONFIG, "updateInitramfs": True},
        Stage.LVM: {"pv": ARRAY_DEVICE, "vg": VOLUME_GROUP, "lv": LOGICAL_VOLUME},
        Stage.FORMAT: {"filesystem": TARGET_FILESYSTEM, "target": target},
        Stage.MOUNT: {
            "mountpoint": TARGET_MOUNTPOINT,
            "source": target,
            "options": list(MOUNT_OPTIONS),
        },
    }
    return tuple(
        {"stage": stage.value, "executed": False, **details[stage]}
        for stage in STAGE_ORDER
    )


def validate_selection(args: Mapping[str, Any]) -> List[str]:
    """Return the disk ids from ``args`` or raise :class:`SelectionError`."""

    if "diskIds" not in args:
        raise SelectionError(MISSING_DISK_IDS)
    disk_ids = args["diskIds"]
    if not isinstance(disk_ids, list) or not all(isinstance(d, str) for d in disk_ids):
        raise SelectionError(INVALID_DISK_IDS)
    if len(disk_ids) < 2:
        raise SelectionError(NEED_TWO_DISKS)
    return list(disk_ids)


def propose(
    args: Mapping[str, Any],
    env: topology.TopologyEnvironment | None = None,
) -> Proposal:
    """Build a redundancy proposal for the disks selected in ``args``.

    The size lookup is queried only once the selection itself is valid, and
    independently of any earlier scan.
    """

    try:
        disk_ids = validate_selection(args)
    except SelectionError as exc:
        log_event("ryvie_storage.planner.rejected", error=exc.code)
        raise
    sizes_by_id = topology.query_disk_sizes(env)
    return proposal_for(disk_ids, sizes_by_id)


def proposal_for(disk_ids: Sequence[str], sizes_by_id: Mapping[str, int]) -> Proposal:
    """Classify ``disk_ids`` using ``sizes_by_id`` as the size lookup."""

    unknown = [disk_id for disk_id in disk_ids if disk_id not in sizes_by_id]
    if unknown:
        log_event("ryvie_storage.planner.rejected", error=UNKNOWN_DISKS, unknown=unknown)
        raise SelectionError(UNKNOWN_DISKS, ", ".join(unknown))
    sizes = [sizes_by_id[disk_id] for disk_id in disk_ids]
    scheme, capacity, tolerance = classify(sizes)
    log_event(
        "ryvie_storage.planner.proposal",
        disks=list(disk_ids),
        sizes=sizes,
        scheme=scheme,
        capacity=capacity,
    )
    return Proposal(
        selected_disks=tuple(disk_ids),
        suggested=scheme,
        capacity=capacity,
        fault_tolerance=tolerance,
        plan_preview=plan_preview(disk_ids, scheme),
    )
