"""CLI commands for droid-reaper."""

import asyncio

import click

TIER_CHOICES = ["core-system", "system-service", "user-app"]


def _open_context():
    """Load config, set up file logging and build the core context."""
    from droid_reaper.config import Config
    from droid_reaper.context import open_context
    from droid_reaper.logging import configure

    config = Config.load()
    configure(config)
    return open_context(config)


def _run_with_root(ctx, action):
    """Run an async core operation after checking root access.

    Exits with status 1 if the privileged shell is unavailable.
    """
    from droid_reaper import logging as rlog

    async def run():
        if not await ctx.shell.check_access():
            return False, None
        return True, await action()

    has_root, result = asyncio.run(run())
    if not has_root:
        rlog.root_unavailable()
        raise SystemExit(1)
    return result


def _echo_outcomes(outcomes) -> None:
    """Print outcomes and exit 1 if any of them failed."""
    from droid_reaper.formatting import format_outcome

    for outcome in outcomes:
        click.echo(format_outcome(outcome))
    if any(o.status == "failed" for o in outcomes):
        raise SystemExit(1)


@click.group()
@click.version_option(package_name="droid-reaper")
def main() -> None:
    """Allow/deny-list process governance for rooted Android devices."""
    pass


@main.command()
def check() -> None:
    """Check for root access."""
    from droid_reaper import logging as rlog

    ctx = _open_context()
    if asyncio.run(ctx.shell.check_access()):
        rlog.root_available()
    else:
        rlog.root_unavailable()
        raise SystemExit(1)


@main.command()
@click.option("--scenario", "-s", default=None, help="Cleanup scenario (e.g. screen_off)")
@click.option("--tier", "-t", type=click.Choice(TIER_CHOICES), default=None, help="Only one tier")
@click.option("--format", "-f", "fmt", type=click.Choice(["table", "json"]), default="table")
def scan(scenario: str | None, tier: str | None, fmt: str) -> None:
    """List running processes grouped by privilege tier."""
    import json

    from droid_reaper import logging as rlog
    from droid_reaper.catalog import PrivilegeTier, group_by_tier
    from droid_reaper.formatting import format_tier, truncate_command

    ctx = _open_context()

    if scenario:
        records = _run_with_root(ctx, lambda: ctx.catalog.scan_by_scenario(scenario))
    else:
        records = _run_with_root(ctx, ctx.catalog.scan)
    if tier:
        records = [r for r in records if r.tier is PrivilegeTier(tier)]

    if fmt == "json":
        data = [
            {
                "pid": r.pid,
                "uid": r.uid,
                "tier": r.tier.value,
                "package_id": r.package_id,
                "command_line": r.command_line,
                "allowed": ctx.policy.is_allowed(r.package_id),
                "denied": ctx.policy.is_denied(r.package_id),
            }
            for r in sorted(records, key=lambda r: r.pid)
        ]
        click.echo(json.dumps(data, indent=2))
        return

    rlog.scan_complete(len(records), scenario)
    for section, members in group_by_tier(records).items():
        if tier and section is not PrivilegeTier(tier):
            continue
        click.echo()
        click.echo(format_tier(section, len(members)))
        click.echo(f"  {'PID':>7}  {'UID':>6}  {'':2}  Command")
        for r in sorted(members, key=lambda r: r.pid):
            flags = ("A" if ctx.policy.is_allowed(r.package_id) else "") + (
                "D" if ctx.policy.is_denied(r.package_id) else ""
            )
            click.echo(f"  {r.pid:>7}  {r.uid:>6}  {flags:2}  {truncate_command(r.command_line)}")


@main.command()
@click.argument("pids", nargs=-1, required=True, type=int)
@click.option("--force", is_flag=True, help="Skip the allow-list check on each pid")
def kill(pids: tuple[int, ...], force: bool) -> None:
    """Kill processes by pid."""
    ctx = _open_context()
    outcomes = _run_with_root(
        ctx, lambda: ctx.controller.kill_batch(pids, check_policy=not force)
    )
    _echo_outcomes(outcomes)


@main.command()
@click.argument("package")
def stop(package: str) -> None:
    """Force-stop a package unless it is allow-listed."""
    ctx = _open_context()
    outcome = _run_with_root(ctx, lambda: ctx.controller.force_stop_package(package))
    _echo_outcomes([outcome])


@main.command("kill-uid")
@click.argument("uid", type=int)
def kill_uid(uid: int) -> None:
    """Kill every process of an application uid."""
    ctx = _open_context()
    outcome = _run_with_root(ctx, lambda: ctx.controller.kill_uid(uid))
    _echo_outcomes([outcome])


@main.command("kill-denied")
def kill_denied() -> None:
    """Force-stop every running deny-listed package."""
    from droid_reaper import logging as rlog

    ctx = _open_context()
    outcomes = _run_with_root(ctx, ctx.controller.kill_all_denied)
    if not outcomes:
        rlog.nothing_denied_running()
        return
    _echo_outcomes(outcomes)


# --- Policy lists ---


@main.group()
def allow() -> None:
    """Manage the allow-list (packages that are never killed)."""
    pass


@allow.command("list")
def allow_list() -> None:
    """Show built-in and user allow-list entries."""
    ctx = _open_context()
    policy = ctx.policy
    for package in sorted(policy.effective_allow()):
        origin = "built-in" if package in policy.default_allow else "user"
        click.echo(f"{package}  [{origin}]")


@allow.command("add")
@click.argument("package")
def allow_add(package: str) -> None:
    """Add a package to the allow-list."""
    _change_policy("allow-list", package, add=True)


@allow.command("remove")
@click.argument("package")
def allow_remove(package: str) -> None:
    """Remove a package from the user allow-list."""
    _change_policy("allow-list", package, add=False)


@main.group()
def deny() -> None:
    """Manage the deny-list (packages stopped by kill-denied)."""
    pass


@deny.command("list")
def deny_list() -> None:
    """Show deny-list entries."""
    ctx = _open_context()
    entries = sorted(ctx.policy.user_deny)
    if not entries:
        click.echo("Deny-list is empty.")
        return
    for package in entries:
        note = "  [allow-listed, never stopped]" if ctx.policy.is_allowed(package) else ""
        click.echo(f"{package}{note}")


@deny.command("add")
@click.argument("package")
def deny_add(package: str) -> None:
    """Add a package to the deny-list."""
    _change_policy("deny-list", package, add=True)


@deny.command("remove")
@click.argument("package")
def deny_remove(package: str) -> None:
    """Remove a package from the deny-list."""
    _change_policy("deny-list", package, add=False)


def _change_policy(list_name: str, package: str, *, add: bool) -> None:
    """Apply one allow/deny change and report whether it was saved."""
    from droid_reaper import logging as rlog

    ctx = _open_context()
    policy = ctx.policy
    package = package.strip()

    if not package:
        rlog.policy_rejected(package)
        raise SystemExit(1)

    if list_name == "allow-list" and not add and package in policy.default_allow:
        click.echo(f"Error: {package} is a built-in allow-list entry", err=True)
        raise SystemExit(1)

    if list_name == "allow-list":
        saved = policy.add_allow(package) if add else policy.remove_allow(package)
    else:
        saved = policy.add_deny(package) if add else policy.remove_deny(package)

    if saved:
        rlog.policy_saved(list_name, package, add)
    else:
        rlog.policy_save_failed(list_name)
        raise SystemExit(1)


# --- Config ---


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from droid_reaper.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[shell]")
    click.echo(f"  su_path = {cfg.shell.su_path}")
    click.echo(f"  command_timeout = {cfg.shell.command_timeout}")
    click.echo(f"  access_timeout = {cfg.shell.access_timeout}")
    click.echo()
    click.echo("[scan]")
    click.echo(f"  listing_command = {cfg.scan.listing_command}")
    click.echo(f"  header_lines = {cfg.scan.header_lines}")
    click.echo(f"  batch_threshold = {cfg.scan.batch_threshold}")
    click.echo(f"  max_sessions = {cfg.scan.max_sessions}")
    click.echo()
    click.echo("[cleanup]")
    click.echo(f"  aggressive_scenarios = {', '.join(cfg.cleanup.aggressive_scenarios)}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from droid_reaper import logging as rlog
    from droid_reaper.config import Config

    cfg = Config.load()

    if not cfg.config_path.exists():
        cfg.save()
        rlog.config_created(str(cfg.config_path))

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from droid_reaper.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
