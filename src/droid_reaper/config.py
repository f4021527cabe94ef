"""Configuration system for droid-reaper."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit


@dataclass
class ShellConfig:
    """Privileged shell configuration."""

    su_path: str = "su"  # Binary that opens the superuser session
    command_timeout: float = 30.0  # Seconds before a hung session is killed (0 disables)
    access_timeout: float = 10.0  # Seconds allowed for the root access probe


@dataclass
class ScanConfig:
    """Process scanning configuration.

    The listing command must print one header line followed by
    `pid uid command...` rows. When it fails, scanning falls back to
    walking /proc: one session per process up to batch_threshold processes,
    a single looped session above it.
    """

    listing_command: str = "ps -A -o PID,UID,ARGS"
    header_lines: int = 1  # Leading lines skipped by position
    batch_threshold: int = 48  # Above this many pids, query /proc in one session
    max_sessions: int = 8  # Concurrent su sessions during per-process fallback


@dataclass
class CleanupConfig:
    """Scenario filtering configuration."""

    # Scenarios that request aggressive cleanup (allow-listed packages removed)
    aggressive_scenarios: list[str] = field(
        default_factory=lambda: ["screen_off", "performance_mode", "game_mode"]
    )


@dataclass
class SystemConfig:
    """Log file rotation."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    shell: ShellConfig = field(default_factory=ShellConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    system: SystemConfig = field(default_factory=SystemConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "droid-reaper"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "droid-reaper"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "droid-reaper"

    @property
    def db_path(self) -> Path:
        """Policy database path."""
        return self.data_dir / "policy.db"

    @property
    def log_path(self) -> Path:
        """Log file path.

        Logs are expendable persistent state, so they go in XDG_STATE_HOME.
        """
        return self.state_dir / "reaper.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("shell", "scan", "cleanup", "system"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions, so Config() and
        Config.load() on a missing file are identical.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            shell=_load_shell_config(data.get("shell", {})),
            scan=_load_scan_config(data.get("scan", {})),
            cleanup=_load_cleanup_config(data.get("cleanup", {})),
            system=_load_system_config(data.get("system", {})),
        )


def _load_shell_config(data: dict) -> ShellConfig:
    """Load shell config from TOML data."""
    d = ShellConfig()

    su_path = data.get("su_path", d.su_path)
    command_timeout = data.get("command_timeout", d.command_timeout)
    access_timeout = data.get("access_timeout", d.access_timeout)

    if not su_path:
        raise ValueError("su_path must not be empty")
    if command_timeout < 0:
        raise ValueError(f"command_timeout must be >= 0, got {command_timeout}")
    if access_timeout <= 0:
        raise ValueError(f"access_timeout must be > 0, got {access_timeout}")

    return ShellConfig(
        su_path=str(su_path),
        command_timeout=float(command_timeout),
        access_timeout=float(access_timeout),
    )


def _load_scan_config(data: dict) -> ScanConfig:
    """Load scan config from TOML data, using dataclass defaults for missing fields."""
    d = ScanConfig()

    header_lines = data.get("header_lines", d.header_lines)
    batch_threshold = data.get("batch_threshold", d.batch_threshold)
    max_sessions = data.get("max_sessions", d.max_sessions)

    if header_lines < 0:
        raise ValueError(f"header_lines must be >= 0, got {header_lines}")
    if batch_threshold < 0:
        raise ValueError(f"batch_threshold must be >= 0, got {batch_threshold}")
    if max_sessions < 1:
        raise ValueError(f"max_sessions must be >= 1, got {max_sessions}")

    return ScanConfig(
        listing_command=str(data.get("listing_command", d.listing_command)),
        header_lines=header_lines,
        batch_threshold=batch_threshold,
        max_sessions=max_sessions,
    )


def _load_cleanup_config(data: dict) -> CleanupConfig:
    """Load cleanup config from TOML data."""
    d = CleanupConfig()
    scenarios = data.get("aggressive_scenarios", d.aggressive_scenarios)
    return CleanupConfig(aggressive_scenarios=[str(s) for s in scenarios])


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data."""
    d = SystemConfig()
    return SystemConfig(
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )
