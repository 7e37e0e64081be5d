import configparser
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError

# --- Configuration ---
USER_CONFIG = os.path.expanduser("~/.config/pipebench/config.ini")
DEFAULTS_CONFIG = os.path.join(os.path.dirname(__file__), "../../config/defaults.ini")
SECTION = "harness"

DATA_REPEATS_PLACEHOLDER = "data_repeats_placeholder"
GPU_MONITORS = ("none", "intel_gpu_top")


@dataclass(frozen=True)
class Settings:
    report_dir: str = "."
    snapshot_path: str = ""
    snapshot_interval_s: float = 0.0
    connect_timeout_s: float = 10.0
    # 0 disables the per-repeat deadline
    repeat_timeout_s: float = 0.0
    max_message_mb: int = 64
    cpu_process_name: str = ""
    gpu_monitor: str = "none"
    log_level: str = "INFO"


@dataclass(frozen=True)
class RunParameters:
    host: str
    port: int
    primary_config: str
    secondary_config: str
    total_stream_num: int
    repeats: int
    data_path: Path
    pipeline_repeats: int = 1
    cross_stream_num: int = 1
    warmup: bool = True

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"


def _read(cfg: configparser.ConfigParser, key: str, env: str, fallback: str) -> str:
    value = os.getenv(env)
    if value is not None and value != "":
        return value
    return cfg.get(SECTION, key, fallback=fallback)


def load_settings() -> Settings:
    """Layer PIPEBENCH_* env vars over the user INI over the repo defaults."""
    cfg = configparser.ConfigParser()
    cfg.read([DEFAULTS_CONFIG, USER_CONFIG])
    try:
        settings = Settings(
            report_dir=_read(cfg, "report_dir", "PIPEBENCH_REPORT_DIR", "."),
            snapshot_path=_read(cfg, "snapshot_path", "PIPEBENCH_SNAPSHOT_PATH", ""),
            snapshot_interval_s=float(_read(cfg, "snapshot_interval_s", "PIPEBENCH_SNAPSHOT_INTERVAL_S", "0")),
            connect_timeout_s=float(_read(cfg, "connect_timeout_s", "PIPEBENCH_CONNECT_TIMEOUT_S", "10")),
            repeat_timeout_s=float(_read(cfg, "repeat_timeout_s", "PIPEBENCH_REPEAT_TIMEOUT_S", "0")),
            max_message_mb=int(_read(cfg, "max_message_mb", "PIPEBENCH_MAX_MESSAGE_MB", "64")),
            cpu_process_name=_read(cfg, "cpu_process_name", "PIPEBENCH_CPU_PROCESS", ""),
            gpu_monitor=_read(cfg, "gpu_monitor", "PIPEBENCH_GPU_MONITOR", "none").lower(),
            log_level=_read(cfg, "log_level", "PIPEBENCH_LOG_LEVEL", "INFO").upper(),
        )
    except ValueError as e:
        raise ConfigError(f"invalid harness setting: {e}") from e
    if settings.gpu_monitor not in GPU_MONITORS:
        raise ConfigError(f"gpu_monitor must be one of {GPU_MONITORS}, got {settings.gpu_monitor!r}")
    return settings


def load_pipeline_config(path: Path, data_repeats: int) -> str:
    """Read a pipeline definition and fill in the data-repeats placeholder."""
    try:
        contents = Path(path).read_text()
    except OSError as e:
        raise ConfigError(f"cannot read pipeline config {path}: {e}") from e
    if DATA_REPEATS_PLACEHOLDER in contents:
        contents = contents.replace(DATA_REPEATS_PLACEHOLDER, str(data_repeats))
    return contents
