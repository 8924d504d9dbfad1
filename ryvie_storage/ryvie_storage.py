"""CLI entry point for ryvie-storage."""

import argparse
import json
import sys
from typing import Any, Dict, Optional, Tuple

from . import inventory, planner, topology
from .logging_utils import log_event

CORE_COMMANDS = ("scan", "proposal")

STUB_COMMANDS = (
    "preflight",
    "status",
    "create",
    "partition",
    "mdadm",
    "persist",
    "lvm",
    "format",
    "mount",
    "subvolumes",
)

NOT_IMPLEMENTED_NOTE = "Provisioning stage not implemented. No disk operations are performed."


def _envelope(
    command: str,
    *,
    ok: bool,
    args: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
    detail: Optional[str] = None,
    note: Optional[str] = None,
    **payload: Any,
) -> Dict[str, Any]:
    """Return the response envelope; empty optional fields are left out."""

    response: Dict[str, Any] = {"ok": ok}
    if error:
        response["error"] = error
    response["command"] = command
    if args:
        response["args"] = args
    if detail:
        response["detail"] = detail
    if note:
        response["note"] = note
    response.update(payload)
    return response


def _write_envelope(response: Dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(response, ensure_ascii=False, separators=(",", ":")))
    sys.stdout.write("\n")
    sys.stdout.flush()


def _parse_payload(text: Optional[str]) -> Tuple[Dict[str, Any], Optional[str]]:
    """Return ``(args, parse_error)`` for the ``--json`` payload text."""

    if text is None or not text.strip():
        return {}, None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        return {}, str(exc)
    if not isinstance(data, dict):
        return {}, f"payload must be a JSON object, got {type(data).__name__}"
    return data, None


def _run_scan(args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        disks = inventory.scan_disks(args)
    except topology.TopologyError as exc:
        return _envelope("scan", ok=False, args=args, error=exc.code, detail=exc.detail)
    return _envelope("scan", ok=True, args=args, disks=[d.to_payload() for d in disks])


def _run_proposal(args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        proposal = planner.propose(args)
    except planner.SelectionError as exc:
        return _envelope("proposal", ok=False, args=args, error=exc.code, detail=exc.detail)
    except topology.TopologyError as exc:
        return _envelope("proposal", ok=False, args=args, error=exc.code, detail=exc.detail)
    return _envelope("proposal", ok=True, args=args, **proposal.to_payload())


def dispatch(command: str, payload: Optional[str] = None) -> Dict[str, Any]:
    """Run ``command`` with the raw ``payload`` text and return the envelope."""

    args, parse_error = _parse_payload(payload)
    log_event("ryvie_storage.cli.dispatch", command=command, parse_error=parse_error)

    if command not in CORE_COMMANDS and command not in STUB_COMMANDS:
        known = ", ".join(CORE_COMMANDS + STUB_COMMANDS)
        return _envelope(
            command,
            ok=False,
            args={"requested": command},
            error="unknown_command",
            note=f"Known commands: {known}",
        )
    if parse_error is not None:
        error_args = {"parse_error": parse_error}
        if command in STUB_COMMANDS:
            return _envelope(
                command,
                ok=False,
                args=error_args,
                error="not_implemented",
                note=NOT_IMPLEMENTED_NOTE,
            )
        return _envelope(
            command, ok=False, args=error_args, error="parse_error", detail=parse_error
        )
    if command == "scan":
        return _run_scan(args)
    if command == "proposal":
        return _run_proposal(args)
    return _envelope(
        command, ok=False, args=args, error="not_implemented", note=NOT_IMPLEMENTED_NOTE
    )


def _build_parser() -> argparse.ArgumentParser:
    commands = " | ".join(CORE_COMMANDS + STUB_COMMANDS)
    parser = argparse.ArgumentParser(
        prog="ryvie-storage",
        description="Inventory disks and propose a redundant storage layout",
        epilog=f"Commands: {commands}",
    )
    parser.add_argument("command", help="Command to run")
    parser.add_argument(
        "--json",
        dest="payload",
        nargs="?",
        const="{}",
        default="{}",
        metavar="ARGS",
        help="JSON object with the command arguments (default: {})",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Run the ryvie-storage tool.

    Domain failures are reported in the envelope; the exit status is only
    non-zero when no command is given.
    """
    parser = _build_parser()
    # Unrecognised flags are tolerated so older callers keep working.
    args, _unknown = parser.parse_known_args(argv)
    _write_envelope(dispatch(args.command, args.payload))


if __name__ == "__main__":
    main()
