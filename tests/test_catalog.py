"""Tests for process scanning, parsing and classification."""

import asyncio

import pytest
from conftest import LISTING_COMMAND, FakeShell, failed, listing, ok

from droid_reaper.catalog import (
    CMDLINE_MARKER,
    PID_MARKER,
    PrivilegeTier,
    ProcessCatalog,
    ProcessRecord,
    batched_proc_command,
    classify,
    extract_package_id,
    group_by_tier,
    is_core_system,
    is_kernel_thread,
    is_system_process,
    is_system_service,
    is_user_app,
    normalize_command,
    parse_batched_proc_output,
    parse_listing,
    parse_listing_line,
    parse_pid_list,
    parse_proc_block,
    per_process_command,
)
from droid_reaper.config import ScanConfig
from droid_reaper.shell import CommandResult


def status_block(uid: int, name: str = "app") -> str:
    """Minimal /proc/<pid>/status text."""
    return f"Name:\t{name}\nState:\tS (sleeping)\nUid:\t{uid}\t{uid}\t{uid}\t{uid}\nGid:\t{uid}\n"


def per_process_output(uid: int, cmdline: str) -> CommandResult:
    """Output of per_process_command() for a live process."""
    return ok(f"{status_block(uid)}\n{CMDLINE_MARKER}\n{cmdline}")


# --- Classification ---


@pytest.mark.parametrize(
    "uid,tier",
    [
        (0, PrivilegeTier.CORE_SYSTEM),
        (999, PrivilegeTier.CORE_SYSTEM),
        (1000, PrivilegeTier.SYSTEM_SERVICE),
        (9999, PrivilegeTier.SYSTEM_SERVICE),
        (10000, PrivilegeTier.USER_APP),
        (2_147_483_647, PrivilegeTier.USER_APP),
    ],
)
def test_classify_boundaries(uid: int, tier: PrivilegeTier):
    """Tier boundaries are tier-defining at 1000 and 10000."""
    assert classify(uid) is tier


@pytest.mark.parametrize("uid", [0, 500, 999, 1000, 5000, 9999, 10000, 99999])
def test_exactly_one_tier_helper_matches(uid: int):
    """Exactly one of the three-way helpers is true for any uid."""
    matches = [is_core_system(uid), is_system_service(uid), is_user_app(uid)]
    assert matches.count(True) == 1


def test_is_system_process_is_two_way_split():
    """Legacy helper treats everything below 10000 as system."""
    assert is_system_process(0)
    assert is_system_process(9999)
    assert not is_system_process(10000)


def test_record_tier_property():
    record = ProcessRecord(pid=1, uid=1000, command_line="system_server", package_id=None)
    assert record.tier is PrivilegeTier.SYSTEM_SERVICE


# --- Parsing ---


def test_normalize_command_converts_nul_and_collapses_space():
    assert normalize_command("com.example.app\0--flag\0\0") == "com.example.app --flag"
    assert normalize_command("  a   b\tc \n") == "a b c"


@pytest.mark.parametrize(
    "command,expected",
    [
        ("com.example.app --flag", "com.example.app"),
        ("/system/bin/app_process64 com.foo.bar", "com.foo.bar"),
        ("com.google.android.gms:persistent", "com.google.android.gms:persistent"),
        ("zygote64", None),
        ("/system/bin/surfaceflinger", None),
        ("", None),
    ],
)
def test_extract_package_id(command: str, expected: str | None):
    """First token with a dot and no slash wins."""
    assert extract_package_id(command) == expected


def test_parse_listing_line_well_formed():
    record = parse_listing_line("1234 10055 com.example.app --flag")
    assert record == ProcessRecord(
        pid=1234,
        uid=10055,
        command_line="com.example.app --flag",
        package_id="com.example.app",
    )


@pytest.mark.parametrize(
    "line",
    [
        "abc notanumber",
        "abc 10055 com.example.app",
        "1234 root com.example.app",
        "1234 10055",
        "",
        "0 0 swapper",
        "12 -1 broken",
    ],
)
def test_parse_listing_line_skips_malformed(line: str):
    assert parse_listing_line(line) is None


def test_parse_listing_skips_header_by_position():
    """The first line is dropped even when it looks like a data row."""
    text = "1 0 init\n2 0 kthreadd\n300 1000 system_server\n"
    records = parse_listing(text, header_lines=1)
    assert [r.pid for r in records] == [2, 300]


def test_parse_listing_without_header():
    records = parse_listing("1 0 /init second_stage\n", header_lines=0)
    assert len(records) == 1
    assert records[0].command_line == "/init second_stage"


def test_parse_pid_list_keeps_numeric_entries():
    text = "1\n42\nacpi\nself\nnet\n1337\n"
    assert parse_pid_list(text) == [1, 42, 1337]


def test_parse_proc_block_reads_uid_and_cmdline():
    record = parse_proc_block(77, status_block(10123), "com.example.app\0--opt\0")
    assert record is not None
    assert record.pid == 77
    assert record.uid == 10123
    assert record.command_line == "com.example.app --opt"
    assert record.package_id == "com.example.app"


def test_parse_proc_block_missing_uid_is_skipped():
    assert parse_proc_block(77, "Name:\tapp\n", "com.example.app") is None


def test_parse_proc_block_empty_cmdline_is_skipped():
    """Kernel threads have an empty cmdline."""
    assert parse_proc_block(2, status_block(0, "kthreadd"), "") is None


def test_parse_batched_proc_output():
    """Blocks are split on pid markers; vanished processes are dropped."""
    text = (
        f"{PID_MARKER} 10\n{status_block(10010)}\n{CMDLINE_MARKER}\ncom.a.b\0--x\0\n"
        f"{PID_MARKER} 11\n\n{CMDLINE_MARKER}\n\n"
        f"{PID_MARKER} 12\n{status_block(1000)}\n{CMDLINE_MARKER}\nsystem_server\n"
    )
    records = parse_batched_proc_output(text)
    assert {r.pid for r in records} == {10, 12}
    by_pid = {r.pid: r for r in records}
    assert by_pid[10].package_id == "com.a.b"
    assert by_pid[10].command_line == "com.a.b --x"
    assert by_pid[12].uid == 1000


def test_batched_proc_command_queries_every_pid():
    command = batched_proc_command([1, 22, 333])
    assert command.startswith("for p in 1 22 333; do")
    assert PID_MARKER in command
    assert CMDLINE_MARKER in command


def test_group_by_tier_includes_empty_tiers():
    records = [
        ProcessRecord(1, 0, "init"),
        ProcessRecord(2, 10050, "com.example.app", "com.example.app"),
    ]
    groups = group_by_tier(records)
    assert set(groups) == set(PrivilegeTier)
    assert [r.pid for r in groups[PrivilegeTier.CORE_SYSTEM]] == [1]
    assert groups[PrivilegeTier.SYSTEM_SERVICE] == []
    assert [r.pid for r in groups[PrivilegeTier.USER_APP]] == [2]


# --- ProcessCatalog.scan ---


@pytest.mark.asyncio
async def test_scan_primary_skips_malformed_line(policy):
    """One good line and one malformed line yield exactly one record."""
    shell = FakeShell(
        {LISTING_COMMAND: listing("1234 10055 com.example.app --flag", "abc notanumber")}
    )
    catalog = ProcessCatalog(shell, policy)

    records = await catalog.scan()

    assert len(records) == 1
    assert records[0].pid == 1234
    assert records[0].uid == 10055
    assert records[0].package_id == "com.example.app"
    assert shell.calls == [LISTING_COMMAND]


@pytest.mark.asyncio
async def test_scan_falls_back_per_process_when_listing_fails(policy):
    """A failed listing switches to one session per /proc entry."""
    shell = FakeShell(
        {
            LISTING_COMMAND: failed("ps: bad -o"),
            "ls /proc": ok("1\n42\n99\nself\n"),
            per_process_command(1): per_process_output(0, "/system/bin/init\0second_stage\0"),
            per_process_command(42): per_process_output(10042, "com.example.app\0"),
            per_process_command(99): ok(f"\n{CMDLINE_MARKER}\n"),  # exited mid-scan
        }
    )
    catalog = ProcessCatalog(shell, policy, ScanConfig(batch_threshold=10))

    records = await catalog.scan()

    assert {r.pid for r in records} == {1, 42}
    by_pid = {r.pid: r for r in records}
    assert by_pid[1].command_line == "/system/bin/init second_stage"
    assert by_pid[1].package_id is None
    assert by_pid[42].package_id == "com.example.app"
    assert shell.calls_starting("for p in") == []


@pytest.mark.asyncio
async def test_scan_falls_back_when_listing_unparseable(policy):
    """Old toolbox ps ignores -o; rows with a user name parse to nothing."""
    shell = FakeShell(
        {
            LISTING_COMMAND: ok("USER PID PPID NAME\nroot 1 0 /init\n"),
            "ls /proc": ok("1\n"),
            per_process_command(1): per_process_output(0, "/init"),
        }
    )
    catalog = ProcessCatalog(shell, policy)

    records = await catalog.scan()

    assert [r.pid for r in records] == [1]
    assert "ls /proc" in shell.calls


@pytest.mark.asyncio
async def test_scan_falls_back_when_shell_cannot_spawn(policy):
    shell = FakeShell(
        {
            LISTING_COMMAND: CommandResult.failure("Failed to start privileged session"),
            "ls /proc": CommandResult.failure("Failed to start privileged session"),
        }
    )
    catalog = ProcessCatalog(shell, policy)

    assert await catalog.scan() == []


@pytest.mark.asyncio
async def test_scan_uses_single_batched_session_for_many_pids(policy):
    """Above batch_threshold, all pids are queried in one looped session."""
    batched = (
        f"{PID_MARKER} 5\n{status_block(10005)}\n{CMDLINE_MARKER}\ncom.five.app\n"
        f"{PID_MARKER} 6\n{status_block(10006)}\n{CMDLINE_MARKER}\ncom.six.app\n"
        f"{PID_MARKER} 7\n{status_block(0)}\n{CMDLINE_MARKER}\n\n"
    )
    shell = FakeShell(
        {
            LISTING_COMMAND: failed(),
            "ls /proc": ok("5\n6\n7\n"),
            "for p in": ok(batched),
        }
    )
    catalog = ProcessCatalog(shell, policy, ScanConfig(batch_threshold=2))

    records = await catalog.scan()

    assert {r.package_id for r in records} == {"com.five.app", "com.six.app"}
    assert len(shell.calls) == 3
    assert shell.calls[2] == batched_proc_command([5, 6, 7])


@pytest.mark.asyncio
async def test_per_process_fallback_bounds_concurrent_sessions(policy):
    """No more than max_sessions privileged sessions are in flight."""
    in_flight = 0
    peak = 0

    class SlowShell(FakeShell):
        async def run(self, command: str) -> CommandResult:
            nonlocal in_flight, peak
            if not command.startswith("cat /proc/"):
                return await super().run(command)
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return per_process_output(10000, "com.example.app")

    shell = SlowShell({LISTING_COMMAND: failed(), "ls /proc": ok("1\n2\n3\n4\n5\n6\n7\n")})
    catalog = ProcessCatalog(shell, policy, ScanConfig(batch_threshold=100, max_sessions=2))

    records = await catalog.scan()

    assert len(records) == 7
    assert peak <= 2


@pytest.mark.asyncio
async def test_per_process_failure_is_isolated(policy):
    """One process's failing session never drops another's record."""

    def explode(command: str) -> CommandResult:
        raise RuntimeError("session crashed")

    shell = FakeShell(
        {
            LISTING_COMMAND: failed(),
            "ls /proc": ok("10\n11\n12\n"),
            per_process_command(10): per_process_output(10010, "com.ten.app"),
            per_process_command(11): explode,
            per_process_command(12): per_process_output(10012, "com.twelve.app"),
        }
    )
    catalog = ProcessCatalog(shell, policy)

    records = await catalog.scan()

    assert {r.pid for r in records} == {10, 12}


# --- ProcessCatalog.scan_by_scenario ---


@pytest.fixture
def scenario_shell() -> FakeShell:
    return FakeShell(
        {
            LISTING_COMMAND: listing(
                "100 1001 com.android.phone",
                "200 10020 com.example.keep",
                "300 10030 com.example.game",
                "400 0 /system/bin/vold",
            )
        }
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("scenario", ["screen_off", "performance_mode", "game_mode"])
async def test_scan_by_scenario_drops_allowed_packages(scenario_shell, policy, scenario):
    policy.add_allow("com.example.keep")
    catalog = ProcessCatalog(scenario_shell, policy)

    records = await catalog.scan_by_scenario(scenario)

    assert {r.pid for r in records} == {300, 400}


@pytest.mark.asyncio
async def test_scan_by_unknown_scenario_is_unfiltered(scenario_shell, policy):
    policy.add_allow("com.example.keep")
    catalog = ProcessCatalog(scenario_shell, policy)

    records = await catalog.scan_by_scenario("lunch_break")

    assert {r.pid for r in records} == {100, 200, 300, 400}


@pytest.mark.parametrize("command", ["[kworker/0:1]", "[kthreadd]", "[ksoftirqd/0]"])
def test_listing_drops_kernel_threads(command: str):
    """Bracketed kernel threads are dropped, as their empty /proc cmdline is."""
    assert is_kernel_thread(command)
    assert parse_listing_line(f"2 0 {command}") is None


def test_bracket_inside_command_is_not_kernel_thread():
    record = parse_listing_line("500 10050 com.example.app [worker]")
    assert record is not None
    assert not is_kernel_thread(record.command_line)


@pytest.mark.asyncio
async def test_listing_and_proc_paths_agree_on_kernel_threads(policy):
    primary = FakeShell({LISTING_COMMAND: listing("2 0 [kthreadd]", "42 10042 com.example.app")})
    fallback = FakeShell(
        {
            LISTING_COMMAND: failed(),
            "ls /proc": ok("2\n42\n"),
            per_process_command(2): per_process_output(0, ""),
            per_process_command(42): per_process_output(10042, "com.example.app\0"),
        }
    )

    from_listing = await ProcessCatalog(primary, policy).scan()
    from_proc = await ProcessCatalog(fallback, policy).scan()

    assert [r.pid for r in from_listing] == [42]
    assert [r.pid for r in from_proc] == [42]
