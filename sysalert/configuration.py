"""Configuration model and plugin entry decoding."""

from __future__ import annotations

import enum
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .outputs import OutputConfig, Priority

DEFAULT_BUF_SIZE_PRESET = 4
DEFAULT_CPUS_FOR_EACH_SYSCALL_BUFFER = 2
DEFAULT_DROP_FAILED_EXIT = False


class ConfigurationError(ValueError):
    """Raised when a configuration entry cannot be decoded."""


class EngineKind(enum.IntEnum):
    """Event capture engines."""

    KMOD = 0
    EBPF = 1
    MODERN_EBPF = 2
    REPLAY = 3
    GVISOR = 4
    NONE = 5


@dataclass
class PluginConfig:
    """One entry of the ``plugins`` list."""

    name: str = ""
    library_path: str = ""
    init_config: str = ""
    open_params: str = ""

    def to_mapping(self) -> dict[str, str]:
        """Encode as a mapping; map-valued init configs stay JSON strings."""
        return {
            "name": self.name,
            "library_path": self.library_path,
            "init_config": self.init_config,
            "open_params": self.open_params,
        }


def _scalar_to_str(value: Any, key: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConfigurationError(f"plugin config: '{key}' must be a scalar")


def decode_plugin_config(node: Any, plugins_dir: str) -> PluginConfig:
    """Decode a plugin entry; relative library paths are placed under ``plugins_dir``."""
    if not isinstance(node, Mapping):
        raise ConfigurationError("plugin config must be a map")

    if node.get("name") is None:
        raise ConfigurationError("plugin config is missing 'name'")
    config = PluginConfig(name=_scalar_to_str(node["name"], "name"))

    if node.get("library_path") is None:
        raise ConfigurationError("plugin config is missing 'library_path'")
    library_path = _scalar_to_str(node["library_path"], "library_path")
    if library_path and not library_path.startswith("/"):
        library_path = plugins_dir + library_path
    config.library_path = library_path

    init_config = node.get("init_config")
    if init_config is not None:
        if isinstance(init_config, Mapping):
            config.init_config = json.dumps(
                init_config, ensure_ascii=False, separators=(",", ":"), sort_keys=True
            )
        else:
            config.init_config = _scalar_to_str(init_config, "init_config")

    open_params = node.get("open_params")
    if open_params is not None:
        config.open_params = _scalar_to_str(open_params, "open_params").strip()

    return config


@dataclass
class KmodConfig:
    buf_size_preset: int = 0
    drop_failed_exit: bool = False


@dataclass
class EbpfConfig:
    probe_path: str = ""
    buf_size_preset: int = 0
    drop_failed_exit: bool = False


@dataclass
class ModernEbpfConfig:
    cpus_for_each_buffer: int = 0
    buf_size_preset: int = 0
    drop_failed_exit: bool = False


@dataclass
class ReplayConfig:
    capture_file: str = ""


@dataclass
class GvisorConfig:
    config: str = ""
    root: str = ""


@dataclass
class Configuration:
    """All settings of a running instance."""

    # Rules as passed by the user, then as actually loaded.
    rules_filenames: list[str] = field(default_factory=list)
    loaded_rules_filenames: list[str] = field(default_factory=list)
    loaded_rules_folders: list[str] = field(default_factory=list)

    json_output: bool = False
    json_include_output_property: bool = False
    json_include_tags_property: bool = False
    log_level: str = "info"
    outputs: list[OutputConfig] = field(default_factory=list)

    min_priority: Priority = Priority.DEBUG

    watch_config_files: bool = False
    buffered_outputs: bool = False
    outputs_queue_capacity: int = 0
    time_format_iso_8601: bool = False
    output_timeout: int = 0

    grpc_enabled: bool = False
    grpc_threadiness: int = 0
    grpc_bind_address: str = ""
    grpc_private_key: str = ""
    grpc_cert_chain: str = ""
    grpc_root_certs: str = ""

    webserver_enabled: bool = False
    webserver_threadiness: int = 0
    webserver_listen_port: int = 0
    webserver_listen_address: str = ""
    webserver_k8s_healthz_endpoint: str = ""
    webserver_ssl_enabled: bool = False
    webserver_ssl_certificate: str = ""

    syscall_evt_drop_actions: set = field(default_factory=set)
    syscall_evt_drop_threshold: float = 0.0
    syscall_evt_drop_rate: float = 0.0
    syscall_evt_drop_max_burst: float = 0.0
    syscall_evt_simulate_drops: bool = False
    syscall_evt_timeout_max_consecutives: int = 0

    base_syscalls_custom_set: set[str] = field(default_factory=set)
    base_syscalls_repair: bool = False

    metrics_enabled: bool = False
    metrics_interval_str: str = ""
    metrics_interval: int = 0
    metrics_stats_rule_enabled: bool = False
    metrics_output_file: str = ""
    metrics_flags: int = 0
    metrics_convert_memory_to_mb: bool = False
    metrics_include_empty_values: bool = False
    plugins: list[PluginConfig] = field(default_factory=list)

    engine_mode: EngineKind = EngineKind.KMOD
    kmod: KmodConfig = field(default_factory=KmodConfig)
    ebpf: EbpfConfig = field(default_factory=EbpfConfig)
    modern_ebpf: ModernEbpfConfig = field(default_factory=ModernEbpfConfig)
    replay: ReplayConfig = field(default_factory=ReplayConfig)
    gvisor: GvisorConfig = field(default_factory=GvisorConfig)

    # Deprecated syscall-level settings kept alongside the engine block.
    changes_in_engine_config: bool = False
    syscall_buf_size_preset: int = DEFAULT_BUF_SIZE_PRESET
    cpus_for_each_syscall_buffer: int = DEFAULT_CPUS_FOR_EACH_SYSCALL_BUFFER
    syscall_drop_failed_exit: bool = DEFAULT_DROP_FAILED_EXIT