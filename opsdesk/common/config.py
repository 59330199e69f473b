"""
Configuration Management for OpsDesk

Loads configuration from ~/.opsdesk/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import List
from dataclasses import dataclass, field

logger = logging.getLogger("opsdesk.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".opsdesk"
CONFIG_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"
DATA_DIR = CONFIG_DIR / "data"
HARVEST_STATE_DIR = CONFIG_DIR / "harvest"

DEFAULT_SOURCES = ["articles", "wiki", "tickets"]


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration"""
    mode: str = "femb"  # fastembed (on-device) or "openai"
    model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"
    openai_api_key: str = ""
    request_interval: float = 0.05  # seconds between cold-start calls
    max_retries: int = 3
    backoff_base: float = 0.5


@dataclass
class LLMConfig:
    """LLM provider configuration for the answer composer"""
    provider: str = "openai"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"


@dataclass
class SourcesConfig:
    """Knowledge source configuration"""
    data_dir: str = str(DATA_DIR)
    enabled: List[str] = field(default_factory=lambda: list(DEFAULT_SOURCES))
    # Tie-break order for equal scores during merge
    source_priority: List[str] = field(default_factory=lambda: list(DEFAULT_SOURCES))
    lookup_path: str = str(DATA_DIR / "sap_lookup.json")


@dataclass
class RetrieverConfig:
    """Retrieval and routing configuration"""
    per_source_k: int = 5
    total_cap: int = 8
    source_timeout: float = 5.0
    history_turns: int = 6


@dataclass
class HarvesterConfig:
    """Harvest job configuration"""
    enabled: bool = False
    period_seconds: int = 3600
    state_dir: str = str(HARVEST_STATE_DIR)
    target_source: str = "tickets"
    jira_base_url: str = ""
    jira_username: str = ""
    jira_api_token: str = ""
    jira_project: str = ""
    jira_jql: str = ""


@dataclass
class ServerConfig:
    """HTTP server configuration"""
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class OpsDeskConfig:
    """Main OpsDesk configuration"""
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    sources: SourcesConfig = field(default_factory=SourcesConfig)
    retriever: RetrieverConfig = field(default_factory=RetrieverConfig)
    harvester: HarvesterConfig = field(default_factory=HarvesterConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = data.get("embedding", {})
    defaults = EmbeddingConfig()
    return EmbeddingConfig(
        mode=embedding_data.get("mode", defaults.mode),
        model=embedding_data.get("model", defaults.model),
        openai_api_key=embedding_data.get("openai_api_key", ""),
        request_interval=float(embedding_data.get("request_interval", defaults.request_interval)),
        max_retries=int(embedding_data.get("max_retries", defaults.max_retries)),
        backoff_base=float(embedding_data.get("backoff_base", defaults.backoff_base)),
    )


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    defaults = LLMConfig()
    return LLMConfig(
        provider=llm_data.get("provider", defaults.provider),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", defaults.anthropic_model),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", defaults.openai_model),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", defaults.google_model),
    )


def _parse_sources_config(data: dict) -> SourcesConfig:
    """Parse sources section from config dict.

    ``source_priority`` defaults to the enabled list when absent, so a config
    that only narrows ``enabled`` keeps a consistent tie-break order.
    """
    sources_data = data.get("sources", {})
    defaults = SourcesConfig()
    enabled = sources_data.get("enabled", defaults.enabled)
    return SourcesConfig(
        data_dir=sources_data.get("data_dir", defaults.data_dir),
        enabled=list(enabled),
        source_priority=list(sources_data.get("source_priority", enabled)),
        lookup_path=sources_data.get("lookup_path", defaults.lookup_path),
    )


def _parse_retriever_config(data: dict) -> RetrieverConfig:
    """Parse retriever section from config dict"""
    retriever_data = data.get("retriever", {})
    defaults = RetrieverConfig()
    return RetrieverConfig(
        per_source_k=int(retriever_data.get("per_source_k", defaults.per_source_k)),
        total_cap=int(retriever_data.get("total_cap", defaults.total_cap)),
        source_timeout=float(retriever_data.get("source_timeout", defaults.source_timeout)),
        history_turns=int(retriever_data.get("history_turns", defaults.history_turns)),
    )


def _parse_harvester_config(data: dict) -> HarvesterConfig:
    """Parse harvester section from config dict"""
    harvester_data = data.get("harvester", {})
    defaults = HarvesterConfig()
    return HarvesterConfig(
        enabled=bool(harvester_data.get("enabled", defaults.enabled)),
        period_seconds=int(harvester_data.get("period_seconds", defaults.period_seconds)),
        state_dir=harvester_data.get("state_dir", defaults.state_dir),
        target_source=harvester_data.get("target_source", defaults.target_source),
        jira_base_url=harvester_data.get("jira_base_url", ""),
        jira_username=harvester_data.get("jira_username", ""),
        jira_api_token=harvester_data.get("jira_api_token", ""),
        jira_project=harvester_data.get("jira_project", ""),
        jira_jql=harvester_data.get("jira_jql", ""),
    )


def _parse_server_config(data: dict) -> ServerConfig:
    """Parse server section from config dict"""
    server_data = data.get("server", {})
    return ServerConfig(
        host=server_data.get("host", "0.0.0.0"),
        port=int(server_data.get("port", 8080)),
    )


def load_config() -> OpsDeskConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.opsdesk/config.json)
    3. Default values
    """
    config = OpsDeskConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.embedding = _parse_embedding_config(data)
            config.llm = _parse_llm_config(data)
            config.sources = _parse_sources_config(data)
            config.retriever = _parse_retriever_config(data)
            config.harvester = _parse_harvester_config(data)
            config.server = _parse_server_config(data)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file: %s", e)

    if os.getenv("EMBEDDING_MODE"):
        config.embedding.mode = os.getenv("EMBEDDING_MODE")
    if os.getenv("EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("EMBEDDING_MODEL")

    if os.getenv("OPSDESK_DATA_DIR"):
        config.sources.data_dir = os.getenv("OPSDESK_DATA_DIR")
    if os.getenv("OPSDESK_LOOKUP_PATH"):
        config.sources.lookup_path = os.getenv("OPSDESK_LOOKUP_PATH")
    if os.getenv("OPSDESK_PORT"):
        config.server.port = int(os.getenv("OPSDESK_PORT"))
    if os.getenv("OPSDESK_SOURCE_TIMEOUT"):
        config.retriever.source_timeout = float(os.getenv("OPSDESK_SOURCE_TIMEOUT"))

    # Secret and provider overrides (tracked so save_config never persists them)
    _env_secret_map = {
        "ANTHROPIC_API_KEY": (config.llm, "anthropic_api_key"),
        "ANTHROPIC_MODEL": (config.llm, "anthropic_model"),
        "OPENAI_API_KEY": (config.llm, "openai_api_key"),
        "OPENAI_MODEL": (config.llm, "openai_model"),
        "GOOGLE_API_KEY": (config.llm, "google_api_key"),
        "GEMINI_API_KEY": (config.llm, "google_api_key"),
        "GOOGLE_MODEL": (config.llm, "google_model"),
        "OPSDESK_LLM_PROVIDER": (config.llm, "provider"),
        "JIRA_BASE_URL": (config.harvester, "jira_base_url"),
        "JIRA_USERNAME": (config.harvester, "jira_username"),
        "JIRA_API_TOKEN": (config.harvester, "jira_api_token"),
    }
    for env_var, (section, attr) in _env_secret_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(section, attr, val)
            config._env_sourced_keys.add(attr)

    # The embedding provider shares the OpenAI key unless configured separately
    if not config.embedding.openai_api_key and config.llm.openai_api_key:
        config.embedding.openai_api_key = config.llm.openai_api_key
        if "openai_api_key" in config._env_sourced_keys:
            config._env_sourced_keys.add("embedding_openai_api_key")

    return config


def save_config(config: OpsDeskConfig) -> None:
    """Save configuration to file.

    Secret fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    def _secret(attr: str, value: str) -> str:
        return "" if attr in env_sourced else value

    data = {
        "embedding": {
            "mode": config.embedding.mode,
            "model": config.embedding.model,
            "openai_api_key": _secret("embedding_openai_api_key", config.embedding.openai_api_key),
            "request_interval": config.embedding.request_interval,
            "max_retries": config.embedding.max_retries,
            "backoff_base": config.embedding.backoff_base,
        },
        "llm": {
            "provider": config.llm.provider,
            "anthropic_api_key": _secret("anthropic_api_key", config.llm.anthropic_api_key),
            "anthropic_model": config.llm.anthropic_model,
            "openai_api_key": _secret("openai_api_key", config.llm.openai_api_key),
            "openai_model": config.llm.openai_model,
            "google_api_key": _secret("google_api_key", config.llm.google_api_key),
            "google_model": config.llm.google_model,
        },
        "sources": {
            "data_dir": config.sources.data_dir,
            "enabled": config.sources.enabled,
            "source_priority": config.sources.source_priority,
            "lookup_path": config.sources.lookup_path,
        },
        "retriever": {
            "per_source_k": config.retriever.per_source_k,
            "total_cap": config.retriever.total_cap,
            "source_timeout": config.retriever.source_timeout,
            "history_turns": config.retriever.history_turns,
        },
        "harvester": {
            "enabled": config.harvester.enabled,
            "period_seconds": config.harvester.period_seconds,
            "state_dir": config.harvester.state_dir,
            "target_source": config.harvester.target_source,
            "jira_base_url": config.harvester.jira_base_url,
            "jira_username": config.harvester.jira_username,
            "jira_api_token": _secret("jira_api_token", config.harvester.jira_api_token),
            "jira_project": config.harvester.jira_project,
            "jira_jql": config.harvester.jira_jql,
        },
        "server": {
            "host": config.server.host,
            "port": config.server.port,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories(config: OpsDeskConfig = None) -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    if config is not None:
        Path(config.sources.data_dir).mkdir(parents=True, exist_ok=True)
        Path(config.harvester.state_dir).mkdir(parents=True, exist_ok=True)
