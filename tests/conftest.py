"""Shared test fixtures for droid-reaper."""

import logging
from pathlib import Path
from typing import Callable, Iterator

import pytest
import structlog

from droid_reaper.policy import PolicyStore
from droid_reaper.shell import CommandResult

Response = CommandResult | Callable[[str], CommandResult]

LISTING_COMMAND = "ps -A -o PID,UID,ARGS"


def ok(stdout: str = "", stderr: str = "") -> CommandResult:
    """A session that exited with status zero."""
    return CommandResult(stdout=stdout, stderr=stderr, returncode=0)


def failed(stderr: str = "", returncode: int = 1) -> CommandResult:
    """A session that exited with a non-zero status."""
    return CommandResult(stdout="", stderr=stderr, returncode=returncode)


def listing(*rows: str) -> CommandResult:
    """Listing command output with a header line."""
    return ok("PID UID ARGS\n" + "".join(f"{row}\n" for row in rows))


class FakeShell:
    """Stands in for PrivilegedShell; records every command it is given.

    Responses are matched on the exact command first, then on prefix.
    Unmatched commands succeed with empty output.
    """

    def __init__(self, responses: dict[str, Response] | None = None, *, root: bool = True):
        self.responses = responses or {}
        self.root = root
        self.calls: list[str] = []

    async def check_access(self) -> bool:
        return self.root

    async def run(self, command: str) -> CommandResult:
        self.calls.append(command)
        response = self.responses.get(command)
        if response is None:
            for prefix, candidate in self.responses.items():
                if command.startswith(prefix):
                    response = candidate
                    break
        if response is None:
            return ok()
        return response(command) if callable(response) else response

    def calls_starting(self, prefix: str) -> list[str]:
        return [c for c in self.calls if c.startswith(prefix)]


class MemoryPersistence:
    """In-memory policy persistence that records every save."""

    def __init__(self, data: dict[str, dict[str, set[str]]] | None = None):
        self.data = data or {}
        self.saves: list[tuple[str, str, set[str]]] = []
        self.fail_saves = False

    def load(self, store: str) -> dict[str, set[str]]:
        return {key: set(values) for key, values in self.data.get(store, {}).items()}

    def save(self, store: str, key: str, values: set[str]) -> bool:
        self.saves.append((store, key, set(values)))
        if self.fail_saves:
            return False
        self.data.setdefault(store, {})[key] = set(values)
        return True


@pytest.fixture
def persistence() -> MemoryPersistence:
    return MemoryPersistence()


@pytest.fixture
def policy(persistence: MemoryPersistence) -> PolicyStore:
    """A loaded policy store with empty user lists."""
    store = PolicyStore(persistence)
    store.load()
    return store


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Point HOME at a temp dir so config, data and logs stay inside it.

    Undoes logging.configure() afterwards so later tests do not write
    into a removed directory.
    """
    monkeypatch.setenv("HOME", str(tmp_path))
    yield tmp_path
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    structlog.reset_defaults()
