"""Disk inventory utilities."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from . import topology
from .logging_utils import log_event

PARTITION_KINDS = {"part", "partition"}

SIZE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB")

# Kernel names whose partitions are separated by a literal ``p`` because the
# whole-device name already ends in a digit.
_P_SEPARATED_NAME = re.compile(
    r"^(?P<base>(?:nvme\d+n\d+|mmcblk\d+|loop\d+|md\d+|nbd\d+))(?:p\d+)?$"
)
_TRAILING_DIGITS_NAME = re.compile(r"^(?P<base>[a-z]+)\d+$")


@dataclass(frozen=True)
class Partition:
    """A partition directly beneath a disk."""

    path: str
    size: int = 0
    fs: Optional[str] = None
    mountpoint: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "sizeBytes": self.size,
            "fs": self.fs,
            "type": "partition",
            "mountpoint": self.mountpoint,
        }


@dataclass(frozen=True)
class Disk:
    """Representation of a physical block device.

    ``id`` is derived from the kernel device name and is only stable while
    the kernel keeps the same naming; ``serial`` and ``wwn`` are reported for
    display and never take part in identity.
    """

    id: str
    device: str
    size: int = 0
    is_system: bool = False
    mountpoint: Optional[str] = None
    partitions: Tuple[Partition, ...] = field(default_factory=tuple)
    model: str = ""
    serial: str = ""
    wwn: str = ""
    rotational: bool = False

    @property
    def is_mounted(self) -> bool:
        return bool(self.mountpoint)

    @property
    def size_human(self) -> str:
        return format_size(self.size)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "device": self.device,
            "sizeBytes": self.size,
            "sizeHuman": self.size_human,
            "isSystem": self.is_system,
            "isMounted": self.is_mounted,
            "mountpoint": self.mountpoint,
            "health": "unknown",
            "model": self.model,
            "serial": self.serial,
            "wwn": self.wwn,
            "rotational": self.rotational,
            "partitions": [part.to_payload() for part in self.partitions],
        }


def format_size(size: int) -> str:
    """Format ``size`` in bytes using binary (1024-based) prefixes."""

    if size < 1024:
        return f"{size} B"
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.1f} {SIZE_UNITS[unit]}"


def base_disk_path(path: str) -> str:
    """Return the whole-disk device path for a partition or disk ``path``.

    ``/dev/nvme0n1p3`` becomes ``/dev/nvme0n1`` and ``/dev/sda2`` becomes
    ``/dev/sda``. Whole-disk paths are returned unchanged, as are names that
    follow neither convention (``/dev/dm-0``, ``/dev/mapper/vg-root``).
    """

    directory, sep, name = path.rpartition("/")
    prefix = directory + sep
    match = _P_SEPARATED_NAME.match(name)
    if match:
        return prefix + match.group("base")
    match = _TRAILING_DIGITS_NAME.match(name)
    if match:
        return prefix + match.group("base")
    return path


def _mountpoints(entry: Mapping[str, Any]) -> List[str]:
    """Return the mount points of ``entry`` itself.

    util-linux 2.37 and later may report ``mountpoints`` as a list that
    contains ``null`` for unmounted devices.
    """

    found: List[str] = []
    value = entry.get("mountpoint")
    if isinstance(value, str) and value.strip():
        found.append(value)
    values = entry.get("mountpoints")
    if isinstance(values, list):
        for item in values:
            if isinstance(item, str) and item.strip() and item not in found:
                found.append(item)
    return found


def _first_mountpoint(entry: Mapping[str, Any]) -> Optional[str]:
    found = _mountpoints(entry)
    return found[0] if found else None


def _descendant_mountpoints(entry: Mapping[str, Any]) -> List[str]:
    """Return mount points anywhere below ``entry``, depth first.

    Covers filesystems on crypt, LVM or md devices stacked on a partition.
    """

    found: List[str] = []
    for child in entry.get("children") or []:
        found.extend(_mountpoints(child))
        found.extend(_descendant_mountpoints(child))
    return found


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _rotational(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _text(value) in {"1", "true"}


def _entry_path(entry: Mapping[str, Any]) -> str:
    kname = entry.get("kname") or entry["name"]
    return topology.device_path(str(kname))


def _build_partition(entry: Mapping[str, Any]) -> Partition:
    path = _entry_path(entry)
    fs = _text(entry.get("fstype")) or None
    return Partition(
        path=path,
        size=topology.parse_size(entry.get("size"), device=path),
        fs=fs,
        mountpoint=_first_mountpoint(entry),
    )


def _hosts_root_path(disk_id: str, partitions: Tuple[Partition, ...], root_source: str) -> bool:
    """Return ``True`` when ``root_source`` is ``disk_id`` or one of its partitions.

    Base paths are compared on both sides, and the root source must also be
    the disk itself or a listed partition. Whole disks such as ``rbd0`` and
    ``rbd1`` share the base ``rbd`` and must not both match.
    """

    if base_disk_path(disk_id) != base_disk_path(root_source):
        return False
    return root_source == disk_id or any(part.path == root_source for part in partitions)


def build_disk(entry: Mapping[str, Any], *, root_source: Optional[str]) -> Disk:
    """Build a :class:`Disk` from a top-level ``lsblk`` entry.

    ``mountpoint`` is the disk's own mount point, else the first mounted
    partition's, else the first mount stacked anywhere below it.
    """

    disk_id = _entry_path(entry)
    partitions = tuple(
        _build_partition(child)
        for child in entry.get("children") or []
        if child.get("type") in PARTITION_KINDS
    )
    mountpoint = _first_mountpoint(entry)
    if mountpoint is None:
        mountpoint = next(
            (part.mountpoint for part in partitions if part.mountpoint), None
        )
    if mountpoint is None:
        mountpoint = next(iter(_descendant_mountpoints(entry)), None)
    return Disk(
        id=disk_id,
        device=str(entry["name"]),
        size=topology.parse_size(entry.get("size"), device=disk_id),
        is_system=root_source is not None
        and _hosts_root_path(disk_id, partitions, root_source),
        mountpoint=mountpoint,
        partitions=partitions,
        model=_text(entry.get("model")),
        serial=_text(entry.get("serial")),
        wwn=_text(entry.get("wwn")),
        rotational=_rotational(entry.get("rota")),
    )


def disks_from_report(
    devices: List[Mapping[str, Any]], root_source: Optional[str]
) -> List[Disk]:
    """Normalise an ``lsblk`` report into disks.

    Only top-level ``disk`` entries are kept; loop, rom and mapper devices at
    the top level are skipped.

    When the root source is not a disk or partition path (LVM, dm-crypt), the
    disk whose device tree holds the ``/`` mount becomes the system disk. If
    that tree spans several disks (md or multi-PV roots) none is marked, so
    at most one disk is ever flagged.
    """

    disks: List[Disk] = []
    entries: List[Mapping[str, Any]] = []
    seen: set[str] = set()
    for entry in devices:
        if entry.get("type") != "disk":
            continue
        disk = build_disk(entry, root_source=root_source)
        if disk.id in seen:
            raise topology.TopologyParseError(f"duplicate disk {disk.id} in lsblk output")
        seen.add(disk.id)
        disks.append(disk)
        entries.append(entry)

    if root_source and not any(disk.is_system for disk in disks):
        hosts = [
            index
            for index, entry in enumerate(entries)
            if "/" in _mountpoints(entry) or "/" in _descendant_mountpoints(entry)
        ]
        if len(hosts) == 1:
            disks[hosts[0]] = replace(disks[hosts[0]], is_system=True)
        elif hosts:
            log_event(
                "ryvie_storage.inventory.root_ambiguous",
                source=root_source,
                disks=[disks[index].id for index in hosts],
            )
    return disks


def scan_disks(
    args: Optional[Mapping[str, Any]] = None,
    env: topology.TopologyEnvironment | None = None,
) -> List[Disk]:
    """Enumerate the physical disks currently visible on the host.

    Args:
        args: Caller arguments; accepted for traceability and not interpreted.
        env: Topology environment (overridable for tests).

    Returns:
        A list of :class:`Disk` objects in ``lsblk`` order.

    Raises:
        topology.TopologyQueryError: ``lsblk`` or ``findmnt`` failed.
        topology.TopologyParseError: the report could not be parsed.
    """

    del args
    env = env or topology.TopologyEnvironment()
    devices = topology.query_block_devices(env)
    root_source = topology.query_root_source(env)
    log_event(
        "ryvie_storage.inventory.root_resolved",
        source=root_source,
        base=base_disk_path(root_source),
    )
    disks = disks_from_report(devices, root_source)
    for disk in disks:
        log_event(
            "ryvie_storage.inventory.disk",
            id=disk.id,
            size=disk.size,
            system=disk.is_system,
            mounted=disk.is_mounted,
            partitions=[part.path for part in disk.partitions],
        )
    return disks
