from __future__ import annotations
import json
from pathlib import Path
from typing import Literal, Optional
import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from src.utils.logger import get_logger

logger = get_logger("config")

# Used when neither the environment nor a config file names any server
DEFAULT_SERVERS: dict[str, dict] = {
    "sequential-thinking": {
        "command": "npx",
        "args": ["-y", "@modelcontextprotocol/server-sequential-thinking"],
    },
}


class ServerConfig(BaseModel):
    name: str
    command: Optional[str] = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    type: Literal["stdio", "sse", "http", "streamablehttp"] = "stdio"


class AuditConfig(BaseModel):
    """Configuration for the tool-call audit trail."""
    log_dir: str = "./logs"
    rotation: str = "10 MB"
    retention: str = "30 days"
    compression: str = "gz"


class AutopilotConfig(BaseModel):
    max_consecutive_turns: int = Field(default=10, ge=0)
    delay_between_turns: float = Field(default=2.0, ge=0)  # seconds
    history_depth: int = Field(default=5, ge=1)
    error_threshold: int = Field(default=3, ge=1)


class MCPChatSettings(BaseSettings):
    """Runtime settings, overridable through MCPCHAT_* environment variables."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    config: Optional[str] = None
    servers_json: Optional[str] = None  # env: MCPCHAT_SERVERS_JSON
    connection_timeout: float = 30.0
    prune_retention: int = Field(default=1, ge=0)
    audit_enabled: bool = False
    audit_log_dir: str = "./logs"
    autopilot_max_turns: int = 10
    autopilot_delay: float = 2.0
    autopilot_history_depth: int = 5

    model_config = SettingsConfigDict(env_prefix="MCPCHAT_")

    def autopilot_config(self) -> AutopilotConfig:
        return AutopilotConfig(
            max_consecutive_turns=self.autopilot_max_turns,
            delay_between_turns=self.autopilot_delay,
            history_depth=self.autopilot_history_depth,
        )

    def audit_config(self) -> AuditConfig:
        return AuditConfig(log_dir=self.audit_log_dir)


def extract_server_entries(data: dict) -> dict[str, dict]:
    """Extract server entries from the config layouts in common use.

    Supports:
      - { "mcp": { "servers": { ... } } }   (chat client config.json)
      - { "mcpServers": { ... } }           (Claude Desktop and friends)
      - { "servers": { ... } }              (VSCode)
      - { "name": { "command": ..., "args": ... } }  (bare mapping)
    """
    if not isinstance(data, dict):
        return {}
    mcp_section = data.get("mcp")
    if isinstance(mcp_section, dict) and isinstance(mcp_section.get("servers"), dict):
        return _normalize_server_entries(mcp_section["servers"])
    for key in ("mcpServers", "servers"):
        section = data.get(key)
        if isinstance(section, dict) and section:
            return _normalize_server_entries(section)

    server_keys = {"command", "args", "url", "type"}
    if data and all(isinstance(v, dict) for v in data.values()):
        if any(server_keys & set(v.keys()) for v in data.values()):
            return _normalize_server_entries(data)
    return {}


def _normalize_server_entries(section: dict) -> dict[str, dict]:
    """Normalize server entries: handle command-as-list, filter non-dicts."""
    normalized = {}
    for name, srv in section.items():
        if not isinstance(srv, dict):
            continue
        if "command" in srv and isinstance(srv["command"], list):
            cmd_list = srv["command"]
            if not cmd_list:
                continue
            srv = {**srv, "command": cmd_list[0], "args": [*cmd_list[1:], *srv.get("args", [])]}
        normalized[name] = srv
    return normalized


def parse_server_configs(entries: dict[str, dict]) -> list[ServerConfig]:
    """Build ServerConfig objects; malformed entries are logged and skipped."""
    configs = []
    valid_fields = set(ServerConfig.model_fields.keys()) - {"name"}
    for name, srv in entries.items():
        filtered = {k: v for k, v in srv.items() if k in valid_fields}
        ignored = set(srv.keys()) - valid_fields
        if ignored:
            logger.warning(f"⚠️ '{name}': ignoring unknown config keys: {sorted(ignored)}")
        try:
            configs.append(ServerConfig(name=name, **filtered))
        except ValidationError as e:
            logger.error(f"❌ Invalid config for server '{name}': {e}")
    return configs


def load_config_file(path: Path) -> list[ServerConfig]:
    """Load server configs from a YAML or JSON file. Missing or invalid files yield []."""
    if not path.exists():
        logger.debug(f"No config file at {path}")
        return []
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                raw = json.load(f)
            else:
                raw = yaml.safe_load(f) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        logger.error(f"❌ Invalid config in {path}: {e}")
        return []
    except OSError as e:
        logger.error(f"❌ Could not read config {path}: {e}")
        return []
    return parse_server_configs(extract_server_entries(raw))


def load_server_configs(settings: Optional[MCPChatSettings] = None) -> list[ServerConfig]:
    """Resolve the server list.

    Priority:
    1. MCPCHAT_SERVERS_JSON environment variable
    2. Config file (settings.config, else ./config.json)
    3. Built-in defaults
    """
    settings = settings or MCPChatSettings()

    if settings.servers_json:
        try:
            data = json.loads(settings.servers_json)
            configs = parse_server_configs(extract_server_entries(data))
            logger.info(f"Loaded {len(configs)} server config(s) from environment")
            return configs
        except json.JSONDecodeError as e:
            logger.error(f"❌ Failed to parse MCPCHAT_SERVERS_JSON: {e}")

    path = Path(settings.config) if settings.config else Path.cwd() / "config.json"
    configs = load_config_file(path)
    if configs:
        logger.info(f"Loaded {len(configs)} server config(s) from {path}")
        return configs

    logger.info("No server configuration found, using defaults")
    return parse_server_configs(DEFAULT_SERVERS)
