"""Project configuration via YAML files."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .session import DEFAULT_PORT

MIRROR_DIR = ".mailmirror"
CONFIG_FILE = "config.yaml"
ACCOUNTS_FILE = "accounts.yaml"
ROOT_ENV = "MAILMIRROR_ROOT"
LOG_LEVEL_ENV = "MAILMIRROR_LOG_LEVEL"


@dataclass
class DiscoveryConfig:
    """Host discovery settings. Disabled means `imap.<domain>` is used as-is."""
    enabled: bool = True
    timeout: float = 10.0


@dataclass
class RetentionConfig:
    """Seconds a finished operation's status stays readable."""
    sync: float = 60.0
    export: float = 300.0


@dataclass
class MirrorConfig:
    """Top-level mailmirror project configuration."""
    root: Path = field(default_factory=Path.cwd)
    data_dir: str = "data"
    accounts_file: str = f"{MIRROR_DIR}/{ACCOUNTS_FILE}"
    port: int = DEFAULT_PORT
    connect_timeout: float = 30.0
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    max_workers: int = 4
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def data_path(self) -> Path:
        return self.root / self.data_dir

    @property
    def accounts_path(self) -> Path:
        return self.root / self.accounts_file

    @property
    def log_path(self) -> Path | None:
        return self.root / self.log_file if self.log_file else None


def find_root(start: Path | None = None) -> Path | None:
    """Find project root (directory containing .mailmirror/).

    First checks MAILMIRROR_ROOT environment variable, then walks up from start/cwd.
    """
    env_root = os.environ.get(ROOT_ENV)
    if env_root:
        env_path = Path(env_root).resolve()
        if (env_path / MIRROR_DIR).is_dir():
            return env_path

    path = (start or Path.cwd()).resolve()
    while path != path.parent:
        if (path / MIRROR_DIR).is_dir():
            return path
        path = path.parent
    return None


def get_root(require: bool = True) -> Path:
    """Get project root, raising if not found and require=True."""
    root = find_root()
    if not root and require:
        raise FileNotFoundError(
            "Not in a mailmirror project. Run 'mailmirror init' first."
        )
    return root or Path.cwd()


def get_config_path(root: Path | None = None) -> Path:
    root = root or get_root()
    return root / MIRROR_DIR / CONFIG_FILE


def load_config(root: Path | None = None) -> MirrorConfig:
    """Load config.yaml; missing keys (or a missing file) take defaults."""
    root = root or get_root()
    config_path = get_config_path(root)
    data = {}
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

    discovery = data.get("discovery") or {}
    retention = data.get("retention") or {}
    defaults = MirrorConfig(root=root)
    return MirrorConfig(
        root=root,
        data_dir=data.get("data_dir", defaults.data_dir),
        accounts_file=data.get("accounts_file", defaults.accounts_file),
        port=int(data.get("port", defaults.port)),
        connect_timeout=float(data.get("connect_timeout", defaults.connect_timeout)),
        discovery=DiscoveryConfig(
            enabled=bool(discovery.get("enabled", True)),
            timeout=float(discovery.get("timeout", 10.0)),
        ),
        retention=RetentionConfig(
            sync=float(retention.get("sync", 60.0)),
            export=float(retention.get("export", 300.0)),
        ),
        max_workers=int(data.get("max_workers", defaults.max_workers)),
        log_level=os.environ.get(LOG_LEVEL_ENV) or data.get("log_level", defaults.log_level),
        log_file=data.get("log_file"),
    )


def save_config(config: MirrorConfig) -> None:
    """Save config to config.yaml."""
    config_path = get_config_path(config.root)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "data_dir": config.data_dir,
        "accounts_file": config.accounts_file,
        "port": config.port,
        "connect_timeout": config.connect_timeout,
        "discovery": {
            "enabled": config.discovery.enabled,
            "timeout": config.discovery.timeout,
        },
        "retention": {
            "sync": config.retention.sync,
            "export": config.retention.export,
        },
        "max_workers": config.max_workers,
        "log_level": config.log_level,
    }
    if config.log_file:
        data["log_file"] = config.log_file

    with open(config_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def init_project(root: Path) -> MirrorConfig:
    """Create .mailmirror/ with a default config and an empty data dir."""
    root = root.resolve()
    config = MirrorConfig(root=root)
    save_config(config)
    config.data_path.mkdir(parents=True, exist_ok=True)
    return config
