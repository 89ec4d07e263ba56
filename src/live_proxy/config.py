"""Configuration loading and parsing."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_PROVIDER_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)
DEFAULT_MODEL = "gemini-2.5-flash-preview-native-audio-dialog"
DEFAULT_FRONTEND_ORIGIN = "http://localhost:5173"


@dataclass
class ProviderConfig:
    """Connection settings for the realtime streaming provider."""
    api_key: str
    url: str = DEFAULT_PROVIDER_URL
    model: str = DEFAULT_MODEL
    response_modalities: list[str] = field(default_factory=lambda: ["AUDIO"])
    voice: str | None = None
    system_instruction: str | None = None
    setup_timeout_seconds: float = 10.0


@dataclass
class TokenDefaults:
    """Quota and lifetime defaults for newly issued tokens."""
    expiration_minutes: int = 60
    max_sessions: int = 5
    max_messages: int = 1000
    cleanup_interval_seconds: int = 3600


@dataclass
class SessionPolicy:
    """Session admission and reclamation policy."""
    require_token: bool = False
    idle_timeout_seconds: int = 900
    sweep_interval_seconds: int = 300


@dataclass
class User:
    """A user known to the directory."""
    id: str
    name: str | None = None


@dataclass
class Config:
    """Full server configuration."""
    provider: ProviderConfig
    tokens: TokenDefaults = field(default_factory=TokenDefaults)
    sessions: SessionPolicy = field(default_factory=SessionPolicy)
    users: list[User] = field(default_factory=list)
    frontend_origin: str = DEFAULT_FRONTEND_ORIGIN


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR} patterns with environment variable values."""
    pattern = r'\$\{([^}]+)\}'

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            raise ValueError(f"Environment variable not set: {var_name}")
        return env_value

    return re.sub(pattern, replacer, value)


def _substitute_env_vars_recursive(obj):
    """Recursively substitute env vars in a data structure."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _substitute_env_vars_recursive(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_substitute_env_vars_recursive(item) for item in obj]
    return obj


def load_config(config_path: str) -> Config:
    """Load and parse configuration from YAML file."""
    path = Path(config_path)
    raw = yaml.safe_load(path.read_text()) or {}

    # Substitute environment variables
    raw = _substitute_env_vars_recursive(raw)

    provider_data = raw.get("provider") or {}
    if "api_key" not in provider_data:
        raise ValueError("Missing required config field: provider.api_key")

    provider = ProviderConfig(
        api_key=provider_data["api_key"],
        url=provider_data.get("url", DEFAULT_PROVIDER_URL),
        model=provider_data.get("model", DEFAULT_MODEL),
        response_modalities=provider_data.get("response_modalities", ["AUDIO"]),
        voice=provider_data.get("voice"),
        system_instruction=provider_data.get("system_instruction"),
        setup_timeout_seconds=float(provider_data.get("setup_timeout_seconds", 10.0)),
    )

    token_data = raw.get("tokens") or {}
    tokens = TokenDefaults(
        expiration_minutes=int(token_data.get("expiration_minutes", 60)),
        max_sessions=int(token_data.get("max_sessions", 5)),
        max_messages=int(token_data.get("max_messages", 1000)),
        cleanup_interval_seconds=int(token_data.get("cleanup_interval_seconds", 3600)),
    )

    session_data = raw.get("sessions") or {}
    sessions = SessionPolicy(
        require_token=bool(session_data.get("require_token", False)),
        idle_timeout_seconds=int(session_data.get("idle_timeout_seconds", 900)),
        sweep_interval_seconds=int(session_data.get("sweep_interval_seconds", 300)),
    )

    users = [
        User(id=str(u["id"]), name=u.get("name"))
        for u in raw.get("users", [])
    ]

    return Config(
        provider=provider,
        tokens=tokens,
        sessions=sessions,
        users=users,
        frontend_origin=raw.get("frontend_origin", DEFAULT_FRONTEND_ORIGIN),
    )
