from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from axe_desktop.agent_config import DEFAULT_INSTRUCTION
from axe_desktop.models import Provider, ProviderType, ToolEndpoint, ToolTransport

CONFIG_FILE_NAME = "config.json"

_PROVIDER_KEY_ENV = {
    ProviderType.ANTHROPIC: "ANTHROPIC_API_KEY",
    ProviderType.OPENAI: "OPENAI_API_KEY",
}
_FALLBACK_KEY_ENV = "AXE_API_KEY"


def default_home() -> Path:
    override = os.environ.get("AXE_DESKTOP_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".axe-desktop"


def _default_providers() -> list[Provider]:
    return [
        Provider(
            id="default-anthropic",
            name="Anthropic Claude",
            type=ProviderType.ANTHROPIC,
            model="claude-sonnet-4-5-20250929",
        ),
        Provider(
            id="default-openai",
            name="OpenAI",
            type=ProviderType.OPENAI,
            model="gpt-4o",
        ),
    ]


def _default_mcp_servers() -> list[ToolEndpoint]:
    return [
        ToolEndpoint(
            id="exa",
            name="Exa Search",
            transport=ToolTransport.HTTP,
            url="https://mcp.exa.ai/mcp",
        )
    ]


@dataclass
class AppConfig:
    home_dir: Path
    db_path: str
    providers: list[Provider] = field(default_factory=_default_providers)
    mcp_servers: list[ToolEndpoint] = field(default_factory=_default_mcp_servers)
    active_provider_id: str = "default-anthropic"
    system_prompt: str = DEFAULT_INSTRUCTION
    max_tokens: int = 8192
    temperature: float = 1.0
    max_tool_result_chars: int = 40_000
    log_level: str = "INFO"
    log_consumers: list | None = None

    @property
    def config_path(self) -> Path:
        return self.home_dir / CONFIG_FILE_NAME

    def get_active_provider(self) -> Provider | None:
        for provider in self.providers:
            if provider.id == self.active_provider_id:
                return provider
        if self.providers:
            return self.providers[0]
        return None

    def to_dict(self) -> dict:
        out: dict = {
            "db_path": self.db_path,
            "providers": [p.to_dict() for p in self.providers],
            "mcp_servers": [s.to_dict() for s in self.mcp_servers],
            "active_provider_id": self.active_provider_id,
            "system_prompt": self.system_prompt,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "max_tool_result_chars": self.max_tool_result_chars,
            "log_level": self.log_level,
        }
        if self.log_consumers is not None:
            out["log_consumers"] = self.log_consumers
        return out

    def save(self) -> None:
        self.home_dir.mkdir(parents=True, exist_ok=True)
        path = self.config_path
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        os.chmod(path, 0o600)


def parse_app_config(data: dict, home_dir: Path) -> AppConfig:
    config = AppConfig(home_dir=home_dir, db_path=str(home_dir / "axe-desktop.db"))
    if "db_path" in data:
        config.db_path = str(data["db_path"])
    if "providers" in data:
        config.providers = [Provider.from_dict(p) for p in data.get("providers") or []]
    if "mcp_servers" in data:
        config.mcp_servers = [ToolEndpoint.from_dict(s) for s in data.get("mcp_servers") or []]
    if data.get("active_provider_id"):
        config.active_provider_id = str(data["active_provider_id"])
    if data.get("system_prompt"):
        config.system_prompt = str(data["system_prompt"])
    config.max_tokens = int(data.get("max_tokens", config.max_tokens))
    config.temperature = float(data.get("temperature", config.temperature))
    config.max_tool_result_chars = int(data.get("max_tool_result_chars", config.max_tool_result_chars))
    config.log_level = str(data.get("log_level", config.log_level))
    config.log_consumers = data.get("log_consumers")
    return config


def apply_env_overrides(config: AppConfig) -> None:
    """Fill provider keys from the environment for bring-your-own-key setups."""
    fallback = os.environ.get(_FALLBACK_KEY_ENV, "")
    for provider in config.providers:
        env_var = _PROVIDER_KEY_ENV.get(provider.type)
        key = os.environ.get(env_var, "") if env_var else ""
        if key:
            provider.api_key = key
        elif fallback and not provider.api_key:
            provider.api_key = fallback


def load_app_config(home_dir: Path | None = None) -> AppConfig:
    load_dotenv()

    home = home_dir or default_home()
    home.mkdir(parents=True, exist_ok=True)

    data: dict = {}
    config_path = home / CONFIG_FILE_NAME
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as ex:
            logger.warning(f"Ignoring unreadable config file {config_path}: {ex}")
            data = {}

    config = parse_app_config(data, home)
    apply_env_overrides(config)
    return config
