"""
ReflectHunt - Configuration Management
Centralized configuration for all pipeline stages.
"""

import os
import json
import re
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from reflecthunt.errors import ConfigError


# Base paths
DATA_DIR = Path(os.environ.get("REFLECTHUNT_HOME", "~/.reflecthunt")).expanduser()

# Persistence files
CONFIG_FILE = DATA_DIR / "config.json"

# Scan artifacts live below the run workdir
SCAN_DIRNAME = "kxss_scan"

# Static assets dropped from passive results
STATIC_EXTENSIONS = (
    "json", "js", "css", "jpg", "jpeg", "png", "svg", "gif", "exe", "mp4",
    "flv", "pdf", "doc", "webm", "wmv", "webp", "mov", "mp3", "avi", "zip",
)
STATIC_EXT_RE = re.compile(
    r"\.(" + "|".join(STATIC_EXTENSIONS) + r")($|\?)",
    re.IGNORECASE,
)

DEFAULT_MARKER = "KXSS"
_MARKER_FORBIDDEN = re.compile(r"[&=#?\s]")


@dataclass
class ToolDefinition:
    """Definition of an external recon tool."""
    name: str
    command: str
    description: str
    category: str
    args_template: str = ""
    # Whether the tool reads its targets from stdin
    reads_stdin: bool = False


# Built-in tool definitions
BUILTIN_TOOLS: Dict[str, ToolDefinition] = {
    "waybackurls": ToolDefinition(
        name="waybackurls",
        command="waybackurls",
        description="Fetch URLs known to the Wayback Machine for a domain",
        category="harvest",
        reads_stdin=True,
    ),
    "gau": ToolDefinition(
        name="gau",
        command="gau",
        description="Fetch known URLs from AlienVault OTX, Wayback and Common Crawl",
        category="harvest",
        args_template="{target} --threads 5 --subs",
    ),
    "kxss": ToolDefinition(
        name="kxss",
        command="kxss",
        description="Report which special characters a reflected parameter lets through",
        category="probe",
        reads_stdin=True,
    ),
    "x8": ToolDefinition(
        name="x8",
        command="x8",
        description="Hidden parameter discovery with reflection detection",
        category="brute",
        args_template="-u {target} -w {wordlist} -X GET POST",
    ),
}


@dataclass
class HarvestConfig:
    """Passive URL collection."""
    enabled: bool = True
    timeout: float = 900.0
    tools: List[str] = field(default_factory=lambda: ["waybackurls", "gau"])


@dataclass
class LivenessConfig:
    """HTTP liveness filtering of dynamic URLs."""
    batch_size: int = 150
    concurrency: int = 100
    timeout: float = 2.0
    retries: int = 2
    verify_tls: bool = False


@dataclass
class ProbeConfig:
    """Reflection probing through kxss."""
    tool: str = "kxss"
    marker: str = DEFAULT_MARKER
    chunk_size: int = 100
    workers: int = 6
    timeout: float = 300.0
    # Health check candidate emitted ahead of everything else
    healthcheck_enabled: bool = True
    healthcheck_url: str = "https://1.bigdav.ir/test.php"
    healthcheck_param: str = "test"


@dataclass
class BruteConfig:
    """Optional x8 parameter brute-force."""
    enabled: bool = True
    tool: str = "x8"
    workers: int = 8
    timeout: float = 600.0


@dataclass
class ReconConfig:
    """Overall pipeline configuration."""
    harvest: HarvestConfig = field(default_factory=HarvestConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    brute: BruteConfig = field(default_factory=BruteConfig)
    tools: Dict[str, ToolDefinition] = field(default_factory=lambda: BUILTIN_TOOLS.copy())

    def validate(self) -> "ReconConfig":
        """Reject values the pipeline cannot run with."""
        probe = self.probe
        if not probe.marker or _MARKER_FORBIDDEN.search(probe.marker):
            raise ConfigError(f"Invalid marker {probe.marker!r}: must be non-empty without &, =, #, ? or whitespace")
        if probe.workers < 1:
            raise ConfigError(f"probe.workers must be >= 1, got {probe.workers}")
        if probe.chunk_size < 1:
            raise ConfigError(f"probe.chunk_size must be >= 1, got {probe.chunk_size}")
        if probe.timeout <= 0:
            raise ConfigError(f"probe.timeout must be > 0, got {probe.timeout}")
        if probe.healthcheck_enabled and not probe.healthcheck_param:
            raise ConfigError("probe.healthcheck_param is required when the health check is enabled")
        if self.liveness.batch_size < 1 or self.liveness.concurrency < 1:
            raise ConfigError("liveness.batch_size and liveness.concurrency must be >= 1")
        if self.brute.workers < 1:
            raise ConfigError(f"brute.workers must be >= 1, got {self.brute.workers}")
        for name in [probe.tool, self.brute.tool, *self.harvest.tools]:
            if name not in self.tools:
                raise ConfigError(f"Unknown tool: {name}")
        return self


@dataclass
class RunContext:
    """Everything a stage needs to know about the current run."""
    domain: str
    workdir: Path
    config: ReconConfig = field(default_factory=ReconConfig)
    headers: List[str] = field(default_factory=list)

    @property
    def scan_dir(self) -> Path:
        return self.workdir / SCAN_DIRNAME

    @property
    def marker(self) -> str:
        return self.config.probe.marker

    def artifact(self, name: str) -> Path:
        return self.workdir / name

    def scan_artifact(self, name: str) -> Path:
        return self.scan_dir / name

    def header_dict(self) -> Dict[str, str]:
        """Parse `Name: value` header strings into a dict."""
        headers = {}
        for h in self.headers:
            if ':' in h:
                key, value = h.split(':', 1)
                headers[key.strip()] = value.strip()
        return headers

    def ensure_dirs(self):
        """Create the workdir and scan directory."""
        for d in [self.workdir, self.scan_dir]:
            d.mkdir(parents=True, exist_ok=True)


def default_workdir(domain: str) -> Path:
    return Path.cwd() / f"{domain}_recon"


# ── User Config Persistence ───────────────────────────────────────

def load_user_config(path: Optional[Path] = None) -> dict:
    """Load user config overrides (workers, marker, etc)."""
    path = path or CONFIG_FILE
    if not path.exists():
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def save_user_config(config: dict, path: Optional[Path] = None):
    """Save user config overrides."""
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    # Merge with existing
    existing = load_user_config(path)
    existing.update(config)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(existing, f, indent=2)


def config_to_dict(cfg: ReconConfig) -> dict:
    data = asdict(cfg)
    data.pop("tools", None)
    return data


def _apply_section(section, overrides: dict, section_name: str):
    for key, value in overrides.items():
        if not hasattr(section, key):
            raise ConfigError(f"Unknown config key: {section_name}.{key}")
        current = getattr(section, key)
        try:
            if isinstance(current, bool):
                value = value if isinstance(value, bool) else str(value).lower() in ("1", "true", "yes", "on")
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {section_name}.{key}: {value!r}") from e
        if isinstance(current, list):
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ConfigError(f"{section_name}.{key} must be a list of strings, got {value!r}")
        elif not isinstance(value, type(current)):
            raise ConfigError(f"{section_name}.{key} must be {type(current).__name__}, got {value!r}")
        setattr(section, key, value)


def apply_overrides(cfg: ReconConfig, overrides: dict) -> ReconConfig:
    """Apply a nested {section: {key: value}} mapping onto a config."""
    for section_name, values in overrides.items():
        if section_name == "tools":
            if not isinstance(values, dict):
                raise ConfigError("tools must map tool names to definitions")
            for name, td in values.items():
                try:
                    cfg.tools[name] = ToolDefinition(**td)
                except TypeError as e:
                    raise ConfigError(f"Invalid tool definition {name!r}: {e}") from e
            continue
        section = getattr(cfg, section_name, None)
        if section is None or not isinstance(values, dict):
            raise ConfigError(f"Unknown config section: {section_name}")
        _apply_section(section, values, section_name)
    return cfg


ENV_OVERRIDES = {
    "REFLECTHUNT_MARKER": ("probe", "marker"),
    "REFLECTHUNT_WORKERS": ("probe", "workers"),
    "REFLECTHUNT_CHUNK_SIZE": ("probe", "chunk_size"),
    "REFLECTHUNT_TIMEOUT": ("probe", "timeout"),
}


def env_overrides(environ: Optional[Dict[str, str]] = None) -> dict:
    environ = os.environ if environ is None else environ
    overrides: Dict[str, dict] = {}
    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var, "").strip()
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def get_config(config_file: Optional[Path] = None,
               environ: Optional[Dict[str, str]] = None) -> ReconConfig:
    """Get the current configuration: defaults, then file overrides, then env."""
    cfg = ReconConfig()
    apply_overrides(cfg, load_user_config(config_file))
    apply_overrides(cfg, env_overrides(environ))
    return cfg.validate()
