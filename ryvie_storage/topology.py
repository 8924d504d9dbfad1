"""Block device topology queries backed by ``lsblk`` and ``findmnt``."""

from __future__ import annotations

from dataclasses import dataclass
import json
import subprocess
from typing import Any, Callable, Dict, List, Mapping, Sequence

from .logging_utils import log_event

__all__ = [
    "CommandOutput",
    "TopologyEnvironment",
    "TopologyError",
    "TopologyQueryError",
    "TopologyParseError",
    "LSBLK_TREE_COMMAND",
    "LSBLK_SIZES_COMMAND",
    "FINDMNT_ROOT_COMMAND",
    "query_block_devices",
    "query_root_source",
    "query_disk_sizes",
    "parse_size",
    "device_path",
]


LSBLK_TREE_COMMAND = (
    "lsblk",
    "-J",
    "-b",
    "-o",
    "NAME,KNAME,SIZE,TYPE,FSTYPE,MOUNTPOINT,MODEL,SERIAL,WWN,ROTA",
)

LSBLK_SIZES_COMMAND = ("lsblk", "-J", "-b", "-d", "-o", "NAME,KNAME,SIZE,TYPE")

FINDMNT_ROOT_COMMAND = ("findmnt", "-n", "-o", "SOURCE", "/")

DEVICE_PREFIX = "/dev/"


@dataclass
class CommandOutput:
    """Minimal command result container for dependency injection."""

    stdout: str
    returncode: int = 0
    stderr: str = ""


class TopologyError(RuntimeError):
    """Base class for failures of the block device topology source."""

    code = "topology_failed"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail if detail is not None else message


class TopologyQueryError(TopologyError):
    """The topology command could not be run or exited unsuccessfully."""

    code = "lsblk_failed"


class TopologyParseError(TopologyError):
    """The topology command produced output that cannot be trusted."""

    code = "parse_failed"


class TopologyEnvironment:
    """Encapsulate external interactions for topology queries."""

    def __init__(
        self,
        *,
        run: Callable[[Sequence[str]], CommandOutput] | None = None,
    ) -> None:
        self.run = run or self._default_run

    @staticmethod
    def _default_run(cmd: Sequence[str]) -> CommandOutput:
        completed = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            check=False,
        )
        return CommandOutput(
            stdout=completed.stdout,
            returncode=completed.returncode,
            stderr=completed.stderr,
        )


def _run_command(env: TopologyEnvironment, cmd: Sequence[str]) -> str:
    """Run *cmd* and return its stdout, raising on any failure."""

    command = " ".join(cmd)
    log_event("ryvie_storage.topology.command", command=command)
    try:
        result = env.run(cmd)
    except OSError as exc:
        log_event("ryvie_storage.topology.failed", command=command, error=str(exc))
        raise TopologyQueryError(
            f"command {command} could not be started", detail=str(exc)
        ) from exc
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        log_event(
            "ryvie_storage.topology.failed",
            command=command,
            returncode=result.returncode,
            stderr=stderr,
        )
        raise TopologyQueryError(
            f"command {command} exited with status {result.returncode}",
            detail=stderr or f"{cmd[0]} exited with status {result.returncode}",
        )
    return result.stdout


def device_path(name: str) -> str:
    """Return ``name`` as an absolute ``/dev`` path."""

    name = name.strip()
    if name.startswith("/"):
        return name
    return f"{DEVICE_PREFIX}{name}"


def parse_size(value: Any, *, device: str) -> int:
    """Return the byte count reported by ``lsblk`` for ``device``.

    Recent util-linux releases emit ``size`` as a JSON number when ``-b`` is
    given, older ones as a numeric string. A missing size is treated as zero;
    anything else that is not a non-negative integer is rejected.
    """

    if value is None:
        return 0
    if isinstance(value, bool):
        raise TopologyParseError(f"invalid size for {device}: {value!r}")
    if isinstance(value, int):
        size = value
    elif isinstance(value, str) and value.strip().isdigit():
        size = int(value.strip())
    else:
        raise TopologyParseError(f"invalid size for {device}: {value!r}")
    if size < 0:
        raise TopologyParseError(f"invalid size for {device}: {value!r}")
    return size


def _load_blockdevices(output: str) -> List[Dict[str, Any]]:
    try:
        data = json.loads(output)
    except json.JSONDecodeError as exc:
        raise TopologyParseError(f"lsblk returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise TopologyParseError("lsblk output is not a JSON object")
    devices = data.get("blockdevices")
    if not isinstance(devices, list):
        raise TopologyParseError("lsblk output has no blockdevices list")
    _check_entries(devices)
    return devices


def _check_entries(entries: List[Any]) -> None:
    for entry in entries:
        if not isinstance(entry, dict):
            raise TopologyParseError(f"lsblk entry is not an object: {entry!r}")
        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            raise TopologyParseError(f"lsblk entry without a name: {entry!r}")
        children = entry.get("children")
        if children is None:
            continue
        if not isinstance(children, list):
            raise TopologyParseError(f"lsblk children of {name} is not a list")
        _check_entries(children)


def query_block_devices(env: TopologyEnvironment | None = None) -> List[Dict[str, Any]]:
    """Return the hierarchical ``blockdevices`` report from ``lsblk``."""

    env = env or TopologyEnvironment()
    return _load_blockdevices(_run_command(env, LSBLK_TREE_COMMAND))


def query_root_source(env: TopologyEnvironment | None = None) -> str:
    """Return the source device of the filesystem mounted at ``/``.

    btrfs mounts report the subvolume in brackets (``/dev/sda2[/@]``); the
    bracketed part is not a device and is dropped.
    """

    env = env or TopologyEnvironment()
    source = _run_command(env, FINDMNT_ROOT_COMMAND).strip()
    lines = [line.strip() for line in source.splitlines() if line.strip()]
    if not lines:
        raise TopologyParseError("findmnt reported no source for /")
    source = lines[0]
    bracket = source.find("[")
    if bracket > 0:
        source = source[:bracket]
    return source


def query_disk_sizes(env: TopologyEnvironment | None = None) -> Mapping[str, int]:
    """Return a mapping of disk id to size in bytes.

    This is a separate size-only query; it shares no snapshot with
    :func:`query_block_devices`.
    """

    env = env or TopologyEnvironment()
    devices = _load_blockdevices(_run_command(env, LSBLK_SIZES_COMMAND))
    sizes: Dict[str, int] = {}
    for entry in devices:
        if entry.get("type") != "disk":
            continue
        kname = entry.get("kname") or entry["name"]
        disk_id = device_path(str(kname))
        sizes[disk_id] = parse_size(entry.get("size"), device=disk_id)
    return sizes
