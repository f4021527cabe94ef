"""Formatting utilities for consistent CLI output."""

from droid_reaper.catalog import PrivilegeTier
from droid_reaper.controller import KillOutcome

TIER_TITLES = {
    PrivilegeTier.CORE_SYSTEM: "Core system",
    PrivilegeTier.SYSTEM_SERVICE: "System services",
    PrivilegeTier.USER_APP: "User apps",
}


def truncate_command(command: str, width: int = 60) -> str:
    """Shorten a command line to width characters, marking the cut with '..'."""
    if width < 3 or len(command) <= width:
        return command
    return command[: width - 2] + ".."


def format_tier(tier: PrivilegeTier, count: int) -> str:
    """Section heading for a tier, e.g. 'User apps (12)'."""
    return f"{TIER_TITLES[tier]} ({count})"


def format_outcome(outcome: KillOutcome) -> str:
    """Plain-text line for a kill/stop outcome.

    Examples:
        "force-stop com.example.app: done"
        "kill 1234: protected (com.android.phone is allow-listed)"
    """
    line = f"{outcome.action} {outcome.target}: {outcome.status}"
    if outcome.detail:
        line += f" ({outcome.detail})"
    return line
