"""Process scanning, parsing and privilege classification.

Scanning runs in two explicit steps. The primary strategy issues a single
listing command (`ps -A -o PID,UID,ARGS`) and parses one row per process.
If that fails outright it raises ListingUnavailable, and scan() falls back
to walking /proc: per-process sessions for small process counts, or one
looped session with pid markers for large ones.

All text parsing lives in pure functions that take raw output and return a
record or None, so they can be tested without a device.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from droid_reaper.config import CleanupConfig, ScanConfig

if TYPE_CHECKING:
    from droid_reaper.policy import PolicyStore
    from droid_reaper.shell import PrivilegedShell

log = structlog.get_logger()

# Tier boundaries (Android uid ranges)
SYSTEM_UID_START = 1000  # AID_SYSTEM
FIRST_APPLICATION_UID = 10000  # AID_APP_START

# Marker lines emitted by the batched /proc query
PID_MARKER = "@@PID"
CMDLINE_MARKER = "@@CMDLINE"

# Scenario identifiers understood by scan_by_scenario()
SCREEN_OFF = "screen_off"
PERFORMANCE_MODE = "performance_mode"
GAME_MODE = "game_mode"


class PrivilegeTier(Enum):
    """Privilege tier of a process, derived from its uid."""

    CORE_SYSTEM = "core-system"
    SYSTEM_SERVICE = "system-service"
    USER_APP = "user-app"


def classify(uid: int) -> PrivilegeTier:
    """Return the privilege tier for a uid."""
    if uid < SYSTEM_UID_START:
        return PrivilegeTier.CORE_SYSTEM
    if uid < FIRST_APPLICATION_UID:
        return PrivilegeTier.SYSTEM_SERVICE
    return PrivilegeTier.USER_APP


def is_core_system(uid: int) -> bool:
    return uid < SYSTEM_UID_START


def is_system_service(uid: int) -> bool:
    return SYSTEM_UID_START <= uid < FIRST_APPLICATION_UID


def is_user_app(uid: int) -> bool:
    return uid >= FIRST_APPLICATION_UID


def is_system_process(uid: int) -> bool:
    """Legacy two-way split: anything below the first application uid."""
    return uid < FIRST_APPLICATION_UID


@dataclass(frozen=True, slots=True)
class ProcessRecord:
    """One running process, as seen by a single scan."""

    pid: int
    uid: int
    command_line: str  # Whitespace-normalized, NUL bytes converted to spaces
    package_id: str | None = None

    @property
    def tier(self) -> PrivilegeTier:
        return classify(self.uid)


class ListingUnavailable(Exception):
    """Raised when the primary listing command cannot be used."""


# --- Parsing Functions ---


def normalize_command(text: str) -> str:
    """Convert NUL separators to spaces and collapse runs of whitespace."""
    return " ".join(text.replace("\0", " ").split())


def extract_package_id(command: str) -> str | None:
    """Return the first space-separated token containing '.' but no '/'."""
    for token in command.split(" "):
        if "." in token and "/" not in token:
            return token
    return None


def is_kernel_thread(command: str) -> bool:
    """ps shows kernel threads by name in brackets, e.g. [kworker/0:1]."""
    return command.startswith("[") and command.endswith("]")


def _make_record(pid: int, uid: int, raw_command: str) -> ProcessRecord | None:
    """Build a record, or None if any field is out of range.

    Kernel threads are dropped on every path: an empty cmdline under /proc,
    a bracketed name in the listing.
    """
    if pid <= 0 or uid < 0:
        return None
    command = normalize_command(raw_command)
    if not command or is_kernel_thread(command):
        return None
    return ProcessRecord(
        pid=pid,
        uid=uid,
        command_line=command,
        package_id=extract_package_id(command),
    )


def parse_listing_line(line: str) -> ProcessRecord | None:
    """Parse one `pid uid command...` row.

    Returns None for rows with too few fields or non-numeric pid/uid.
    """
    parts = line.split(None, 2)
    if len(parts) < 3:
        return None
    try:
        pid = int(parts[0])
        uid = int(parts[1])
    except ValueError:
        return None
    return _make_record(pid, uid, parts[2])


def parse_listing(text: str, header_lines: int = 1) -> list[ProcessRecord]:
    """Parse listing output, skipping the first header_lines lines by position."""
    records = []
    for line in text.splitlines()[header_lines:]:
        record = parse_listing_line(line)
        if record is not None:
            records.append(record)
    return records


def parse_pid_list(text: str) -> list[int]:
    """Parse `ls /proc` output into the numeric entries."""
    return [int(name) for name in text.split() if name.isdigit() and int(name) > 0]


def parse_uid(status_text: str) -> int | None:
    """Return the real uid from a /proc/<pid>/status block."""
    for line in status_text.splitlines():
        if line.startswith("Uid:"):
            fields = line.split()
            if len(fields) < 2:
                return None
            try:
                return int(fields[1])
            except ValueError:
                return None
    return None


def parse_proc_block(pid: int, status_text: str, cmdline_text: str) -> ProcessRecord | None:
    """Build a record from a status block and a raw cmdline blob."""
    uid = parse_uid(status_text)
    if uid is None:
        return None
    return _make_record(pid, uid, cmdline_text)


def _split_cmdline_section(block: str) -> tuple[str, str]:
    """Split a per-process block into (status, cmdline) at the cmdline marker."""
    status, sep, cmdline = block.partition(f"\n{CMDLINE_MARKER}\n")
    if not sep:
        if block.startswith(f"{CMDLINE_MARKER}\n"):
            return "", block[len(CMDLINE_MARKER) + 1 :]
        return block, ""
    return status, cmdline


def parse_batched_proc_output(text: str) -> list[ProcessRecord]:
    """Parse the output of the looped /proc query.

    Each process is introduced by a `@@PID <pid>` line; its status block
    follows, then a `@@CMDLINE` line and the raw command line.
    """
    records = []
    current_pid: int | None = None
    block: list[str] = []

    def flush() -> None:
        if current_pid is None:
            return
        status, cmdline = _split_cmdline_section("\n".join(block))
        record = parse_proc_block(current_pid, status, cmdline)
        if record is not None:
            records.append(record)

    for line in text.split("\n"):
        if line.startswith(PID_MARKER + " "):
            flush()
            block = []
            try:
                current_pid = int(line[len(PID_MARKER) + 1 :].strip())
            except ValueError:
                current_pid = None
            continue
        block.append(line)
    flush()

    return records


def per_process_command(pid: int) -> str:
    """Shell command that prints one process's status and cmdline."""
    return (
        f"cat /proc/{pid}/status; echo; echo {CMDLINE_MARKER}; "
        f"cat /proc/{pid}/cmdline"
    )


def batched_proc_command(pids: list[int]) -> str:
    """Shell loop that queries every pid in one session, with marker lines."""
    pid_list = " ".join(str(pid) for pid in pids)
    return (
        f"for p in {pid_list}; do "
        f'echo "{PID_MARKER} $p"; '
        f"cat /proc/$p/status 2>/dev/null; echo; "
        f'echo "{CMDLINE_MARKER}"; '
        f"cat /proc/$p/cmdline 2>/dev/null; echo; "
        f"done"
    )


def group_by_tier(records: list[ProcessRecord]) -> dict[PrivilegeTier, list[ProcessRecord]]:
    """Group records into the three privilege tiers (every tier present)."""
    groups: dict[PrivilegeTier, list[ProcessRecord]] = {tier: [] for tier in PrivilegeTier}
    for record in records:
        groups[record.tier].append(record)
    return groups


# --- ProcessCatalog Class ---


class ProcessCatalog:
    """Lists running processes through the privileged shell."""

    def __init__(
        self,
        shell: PrivilegedShell,
        policy: PolicyStore,
        config: ScanConfig | None = None,
        cleanup: CleanupConfig | None = None,
    ):
        self.shell = shell
        self.policy = policy
        self.config = config or ScanConfig()
        self.cleanup = cleanup or CleanupConfig()

    async def scan(self) -> list[ProcessRecord]:
        """Return a fresh list of running processes (no ordering guarantee)."""
        try:
            records = await self._scan_listing()
            strategy = "listing"
        except ListingUnavailable as e:
            log.info("scan_fallback", reason=str(e))
            records = await self._scan_proc()
            strategy = "proc"

        log.info("scan_complete", strategy=strategy, count=len(records))
        return records

    async def scan_by_scenario(self, scenario: str) -> list[ProcessRecord]:
        """Scan, dropping allow-listed packages for aggressive-cleanup scenarios."""
        records = await self.scan()
        if scenario not in self.cleanup.aggressive_scenarios:
            return records
        return [r for r in records if not self.policy.is_allowed(r.package_id)]

    async def _scan_listing(self) -> list[ProcessRecord]:
        """Primary strategy: one listing command, one row per process.

        Raises:
            ListingUnavailable: If the command failed or produced no usable row
        """
        result = await self.shell.run(self.config.listing_command)
        if not result.ok:
            raise ListingUnavailable(
                result.error or f"listing exited with status {result.returncode}"
            )

        records = parse_listing(result.stdout, self.config.header_lines)
        if not records:
            raise ListingUnavailable("listing produced no parseable rows")
        return records

    async def _scan_proc(self) -> list[ProcessRecord]:
        """Fallback strategy: enumerate /proc and query each pid."""
        result = await self.shell.run("ls /proc")
        pids = parse_pid_list(result.stdout)
        if not pids:
            log.warning("scan_no_pids", error=result.error, returncode=result.returncode)
            return []

        if len(pids) > self.config.batch_threshold:
            return await self._scan_proc_batched(pids)
        return await self._scan_proc_each(pids)

    async def _scan_proc_batched(self, pids: list[int]) -> list[ProcessRecord]:
        """Query every pid in a single looped session."""
        result = await self.shell.run(batched_proc_command(pids))
        if result.error is not None:
            log.warning("scan_batched_failed", error=result.error)
        return parse_batched_proc_output(result.stdout)

    async def _scan_proc_each(self, pids: list[int]) -> list[ProcessRecord]:
        """Query pids concurrently, one session each, bounded by max_sessions."""
        semaphore = asyncio.Semaphore(self.config.max_sessions)

        async def fetch(pid: int) -> ProcessRecord | None:
            async with semaphore:
                result = await self.shell.run(per_process_command(pid))
            status, cmdline = _split_cmdline_section(result.stdout)
            return parse_proc_block(pid, status, cmdline)

        results = await asyncio.gather(*(fetch(pid) for pid in pids), return_exceptions=True)

        records = []
        for pid, outcome in zip(pids, results):
            if isinstance(outcome, BaseException):
                log.warning("scan_pid_failed", pid=pid, error=str(outcome))
                continue
            if outcome is not None:
                records.append(outcome)
        return records
