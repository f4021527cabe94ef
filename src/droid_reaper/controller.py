"""Kill and force-stop orchestration.

Every destructive action goes through the policy store first. Actions are
best-effort: each returns a KillOutcome describing what happened, and
batch operations carry on past individual failures.
"""

import shlex
from dataclasses import dataclass
from typing import Iterable, Literal

import structlog

from droid_reaper.catalog import (
    ProcessCatalog,
    extract_package_id,
    is_user_app,
    normalize_command,
)
from droid_reaper.policy import PolicyStore
from droid_reaper.shell import PrivilegedShell

log = structlog.get_logger()

OutcomeStatus = Literal["done", "protected", "failed", "skipped"]


@dataclass(frozen=True)
class KillOutcome:
    """Result of one kill or stop action."""

    action: str  # "kill", "force-stop" or "kill-uid"
    target: str
    status: OutcomeStatus
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "done"


class ProcessController:
    """Kills processes and stops packages, consulting the policy store."""

    def __init__(self, shell: PrivilegedShell, catalog: ProcessCatalog, policy: PolicyStore):
        self.shell = shell
        self.catalog = catalog
        self.policy = policy

    async def kill_by_pid(self, pid: int, *, check_policy: bool = True) -> KillOutcome:
        """Send SIGKILL to a pid.

        With check_policy, the pid's command line is read first and the kill
        is refused if it belongs to an allow-listed package, or if the
        command line cannot be read at all. Without it the kill is
        unconditional.
        """
        target = str(pid)
        if pid <= 0:
            return KillOutcome("kill", target, "skipped", "invalid pid")

        if check_policy:
            lookup = await self.shell.run(f"cat /proc/{pid}/cmdline")
            if not lookup.ok:
                log.warning("kill_owner_unknown", pid=pid, output=lookup.combined_text.strip())
                return KillOutcome(
                    "kill",
                    target,
                    "failed",
                    f"could not resolve owner: {_failure_detail(lookup.combined_text)}",
                )
            package = extract_package_id(normalize_command(lookup.stdout))
            if self.policy.is_allowed(package):
                log.info("kill_refused", pid=pid, package=package)
                return KillOutcome("kill", target, "protected", f"{package} is allow-listed")

        result = await self.shell.run(f"kill -9 {pid}")
        if not result.ok:
            log.warning("kill_failed", pid=pid, output=result.combined_text.strip())
            return KillOutcome("kill", target, "failed", _failure_detail(result.combined_text))

        log.info("kill_done", pid=pid)
        return KillOutcome("kill", target, "done")

    async def force_stop_package(self, package: str) -> KillOutcome:
        """Gracefully stop a package unless it is allow-listed.

        Allow-listed packages return immediately without touching the shell.
        """
        if self.policy.is_allowed(package):
            log.info("force_stop_refused", package=package)
            return KillOutcome("force-stop", package, "protected", "allow-listed")
        if not package:
            return KillOutcome("force-stop", package, "skipped", "no package identifier")

        result = await self.shell.run(f"am force-stop {shlex.quote(package)}")
        if not result.ok:
            log.warning("force_stop_failed", package=package, output=result.combined_text.strip())
            return KillOutcome(
                "force-stop", package, "failed", _failure_detail(result.combined_text)
            )

        log.info("force_stop_done", package=package)
        return KillOutcome("force-stop", package, "done")

    async def kill_batch(
        self, pids: Iterable[int], *, check_policy: bool = True
    ) -> list[KillOutcome]:
        """Kill each pid independently; failures do not stop the batch."""
        outcomes = []
        for pid in sorted(set(pids)):
            outcomes.append(await self.kill_by_pid(pid, check_policy=check_policy))
        return outcomes

    async def kill_all_denied(self) -> list[KillOutcome]:
        """Force-stop every running deny-listed package.

        Always rescans first so stale pids are never acted on. Packages that
        are also allow-listed are skipped by force_stop_package().
        """
        records = await self.catalog.scan()
        packages = sorted(
            {r.package_id for r in records if r.package_id and self.policy.is_denied(r.package_id)}
        )
        log.info("kill_all_denied", running=len(packages))

        outcomes = []
        for package in packages:
            outcomes.append(await self.force_stop_package(package))
        return outcomes

    async def kill_uid(self, uid: int) -> KillOutcome:
        """Kill every process of an application uid.

        Refused for system uids and for uids running an allow-listed package.
        Skipped when a fresh scan shows nothing running under the uid.
        """
        target = str(uid)
        if not is_user_app(uid):
            return KillOutcome("kill-uid", target, "protected", "not an application uid")

        records = [r for r in await self.catalog.scan() if r.uid == uid]
        if not records:
            log.info("kill_uid_no_processes", uid=uid)
            return KillOutcome("kill-uid", target, "skipped", "no running processes found for uid")

        protected = sorted({r.package_id for r in records if self.policy.is_allowed(r.package_id)})
        if protected:
            log.info("kill_uid_refused", uid=uid, packages=protected)
            return KillOutcome(
                "kill-uid", target, "protected", f"runs allow-listed {', '.join(protected)}"
            )

        result = await self.shell.run(f"killall -u {uid}")
        if not result.ok:
            log.warning("kill_uid_failed", uid=uid, output=result.combined_text.strip())
            return KillOutcome("kill-uid", target, "failed", _failure_detail(result.combined_text))

        log.info("kill_uid_done", uid=uid)
        return KillOutcome("kill-uid", target, "done")


def _failure_detail(text: str) -> str:
    """First line of a failure output, for compact outcome messages."""
    lines = [line for line in text.splitlines() if line.strip()]
    return lines[0] if lines else "command failed"
