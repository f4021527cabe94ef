"""Application context: the one place core components are wired together."""

from dataclasses import dataclass

from droid_reaper.catalog import ProcessCatalog
from droid_reaper.config import Config
from droid_reaper.controller import ProcessController
from droid_reaper.policy import PolicyPersistence, PolicyStore
from droid_reaper.shell import PrivilegedShell
from droid_reaper.storage import PolicyStorage


@dataclass
class ReaperContext:
    """Core components sharing one shell and one policy store."""

    config: Config
    shell: PrivilegedShell
    policy: PolicyStore
    catalog: ProcessCatalog
    controller: ProcessController


def open_context(
    config: Config,
    *,
    persistence: PolicyPersistence | None = None,
    shell: PrivilegedShell | None = None,
) -> ReaperContext:
    """Build the core components and load the policy store.

    The policy lists are read once here; afterwards the in-memory sets are
    authoritative.
    """
    persistence = persistence or PolicyStorage(config.db_path)
    shell = shell or PrivilegedShell(config.shell)

    policy = PolicyStore(persistence)
    policy.load()

    catalog = ProcessCatalog(shell, policy, config.scan, config.cleanup)
    controller = ProcessController(shell, catalog, policy)

    return ReaperContext(
        config=config,
        shell=shell,
        policy=policy,
        catalog=catalog,
        controller=controller,
    )
