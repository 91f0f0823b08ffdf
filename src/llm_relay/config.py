from __future__ import annotations

from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from llm_relay.core.routes import ModelCatalog, ModelInfo

DEFAULT_SYSTEM_INSTRUCTION = (
    "System: Reply in plain text only. Do NOT use Markdown. If you need emphasis, "
    "use <b>bold</b> for bold and <i>italic</i> for italic. Do not include backticks, "
    "triple-backtick code blocks, or Markdown headings. Keep the response concise."
)


def _strip_quotes(s: str) -> str:
    s = (s or "").strip()
    if len(s) >= 2 and ((s[0] == s[-1]) and s[0] in ("'", '"')):
        s = s[1:-1].strip()
    return s


def _env_files() -> tuple[str, str]:
    """
    Allow running CLI commands from subdirectories.
    We first check for a local .env, then fall back to the repo-root .env.
    """
    repo_root_env = str(Path(__file__).resolve().parents[2] / ".env")
    return (".env", repo_root_env)


class ServerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=_env_files(),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    port: int = Field(default=3000, alias="PORT")
    bind_host: str = Field(default="0.0.0.0", alias="BIND_HOST")
    ollama_url: str = Field(default="http://ollama:11434", alias="OLLAMA_URL")
    model_a: str = Field(default="gemma3:1b", alias="MODEL_A")
    model_b: str = Field(default="llama3.2:3b", alias="MODEL_B")
    timeout_ms: int = Field(default=120000, alias="OLLAMA_TIMEOUT_MS")
    fast_route_key: str = Field(default="a", alias="FAST_ROUTE_KEY")
    slow_route_key: str = Field(default="b", alias="SLOW_ROUTE_KEY")
    system_instruction: str = Field(default=DEFAULT_SYSTEM_INSTRUCTION, alias="SYSTEM_INSTRUCTION")
    # Comma-delimited list of allowed origins ("*" for any).
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")

    @field_validator(
        "bind_host",
        "ollama_url",
        "model_a",
        "model_b",
        "fast_route_key",
        "slow_route_key",
        "system_instruction",
        "cors_origins",
        mode="before",
    )
    @classmethod
    def _norm_str(cls, v: object) -> str:
        return _strip_quotes(str(v if v is not None else "")).strip()

    @field_validator("ollama_url")
    @classmethod
    def _require_url(cls, v: str) -> str:
        if not v:
            raise ValueError("Missing required environment variable: OLLAMA_URL")
        return v.rstrip("/")

    @field_validator("fast_route_key", "slow_route_key")
    @classmethod
    def _lower_key(cls, v: str) -> str:
        v = v.lower()
        if not v or v == "auto":
            raise ValueError("route keys must be non-empty and must not be 'auto'")
        return v

    @property
    def timeout_seconds(self) -> float:
        return max(1, int(self.timeout_ms)) / 1000.0

    @property
    def cors_origin_list(self) -> List[str]:
        return [p.strip() for p in self.cors_origins.split(",") if p.strip()]

    def catalog(self) -> ModelCatalog:
        return ModelCatalog(
            fast=ModelInfo(route=self.fast_route_key, name=self.model_a, label="Fast model"),
            slow=ModelInfo(route=self.slow_route_key, name=self.model_b, label="Slow model"),
        )


class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=_env_files(),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    api_base_url: str = Field(default="http://localhost:3000", alias="RELAY_API_BASE_URL")
    timeout_fast: float = Field(default=30, alias="RELAY_TIMEOUT_FAST")
    timeout_slow: float = Field(default=60, alias="RELAY_TIMEOUT_SLOW")
    # Floor applied to every per-attempt timeout so a zero/negative value never fires immediately.
    min_timeout: float = Field(default=1.0, alias="RELAY_MIN_TIMEOUT")

    @field_validator("api_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, v: object) -> str:
        return _strip_quotes(str(v)).rstrip("/")


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=_env_files(),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    name: str = Field(default="llm-relay", alias="LLM_RELAY_NAME")
    log_level: str = Field(default="INFO", alias="LLM_RELAY_LOG_LEVEL")

    server: ServerSettings = ServerSettings()
    client: ClientSettings = ClientSettings()
