"""
Voice client configuration.

Loads server, profile and collaborator settings from environment variables.
The profile allow-list may also come from a YAML file:

    allowed:
      - Alice
      - Bob
    sessionKeys:
      Alice: "agent:main:main"
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv


DEFAULT_MAX_AUDIO_BYTES = 10 * 1024 * 1024


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    Handles cases like:
    - "300  # comment" -> 300
    - "300" -> 300
    - None -> default
    """
    value = os.environ.get(key)
    if not value:
        return default

    if "#" in value:
        value = value.split("#")[0]

    value = value.strip()

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        return default


def _parse_list_env(key: str) -> List[str]:
    value = os.environ.get(key, "")
    return [item.strip() for item in value.split(",") if item.strip()]


def load_profiles_file(path: Path) -> Dict[str, object]:
    """
    Load a profiles file with PyYAML's safe_load.

    Returns a mapping with "allowed" (list of names) and "sessionKeys"
    (profile -> session key). safe_load parses plain JSON as well.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Profiles file {path} must contain a mapping at top-level")

    allowed = data.get("allowed") or []
    if not isinstance(allowed, list):
        raise ValueError(f"Profiles file {path}: 'allowed' must be a list")

    session_keys = data.get("sessionKeys") or {}
    if not isinstance(session_keys, dict):
        raise ValueError(f"Profiles file {path}: 'sessionKeys' must be a mapping")

    return {
        "allowed": [str(name) for name in allowed],
        "sessionKeys": {str(k): str(v) for k, v in session_keys.items()},
    }


@dataclass
class VoiceClientConfig:
    """Voice client gateway configuration."""

    # Soniox (STT)
    soniox_api_key: str = ""
    soniox_model: str = "stt-async-v4"
    soniox_language_hints: List[str] = field(default_factory=lambda: ["en"])

    # HTTP server
    port: int = 18790
    bind: str = "127.0.0.1"
    path: str = "/voice-client"

    # Profiles
    allowed_profiles: List[str] = field(default_factory=list)
    session_keys: Dict[str, str] = field(default_factory=dict)

    # Turn limits
    max_audio_bytes: int = DEFAULT_MAX_AUDIO_BYTES

    # Idle handling
    idle_timeout_seconds: int = 300
    sweep_interval_seconds: int = 30

    # Agent (OpenAI-compatible chat endpoint)
    agent_base_url: str = "http://127.0.0.1:8001/v1"
    agent_api_key: Optional[str] = None
    agent_model: str = "default"
    agent_name: str = "assistant"
    agent_timeout_seconds: int = 120

    log_level: str = "INFO"

    def is_profile_allowed(self, profile: str) -> bool:
        return profile in self.allowed_profiles

    def resolve_session_key(self, profile: str, header_key: Optional[str] = None) -> str:
        """
        Session-sharing key for the agent.

        Priority: X-Session-Key header > configured key for the profile >
        "voice-client:<profile>".
        """
        if header_key:
            return header_key
        if profile in self.session_keys:
            return self.session_keys[profile]
        return f"voice-client:{profile}"

    @classmethod
    def from_env(cls) -> "VoiceClientConfig":
        """Load configuration from environment variables."""
        allowed: List[str] = []
        session_keys: Dict[str, str] = {}

        profiles_file = os.environ.get("VOICE_CLIENT_PROFILES_FILE")
        if profiles_file:
            loaded = load_profiles_file(Path(profiles_file))
            allowed.extend(loaded["allowed"])
            session_keys.update(loaded["sessionKeys"])

        for name in _parse_list_env("VOICE_CLIENT_ALLOWED_PROFILES"):
            if name not in allowed:
                allowed.append(name)

        path = os.environ.get("VOICE_CLIENT_PATH", "/voice-client").rstrip("/")
        if path and not path.startswith("/"):
            path = "/" + path

        return cls(
            soniox_api_key=os.environ.get("SONIOX_API_KEY", ""),
            soniox_model=os.environ.get("SONIOX_MODEL", "stt-async-v4"),
            soniox_language_hints=_parse_list_env("SONIOX_LANGUAGE_HINTS") or ["en"],
            port=_parse_int_env("VOICE_CLIENT_PORT", default=18790),
            bind=os.environ.get("VOICE_CLIENT_BIND", "127.0.0.1"),
            path=path,
            allowed_profiles=allowed,
            session_keys=session_keys,
            max_audio_bytes=_parse_int_env("VOICE_CLIENT_MAX_AUDIO_BYTES", default=DEFAULT_MAX_AUDIO_BYTES),
            idle_timeout_seconds=_parse_int_env("VOICE_CLIENT_IDLE_TIMEOUT_SECONDS", default=300),
            sweep_interval_seconds=_parse_int_env("VOICE_CLIENT_SWEEP_INTERVAL_SECONDS", default=30),
            agent_base_url=os.environ.get("AGENT_BASE_URL", "http://127.0.0.1:8001/v1").rstrip("/"),
            agent_api_key=os.environ.get("AGENT_API_KEY") or None,
            agent_model=os.environ.get("AGENT_MODEL", "default"),
            agent_name=os.environ.get("AGENT_NAME", "assistant"),
            agent_timeout_seconds=_parse_int_env("AGENT_TIMEOUT_SECONDS", default=120),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )


def load_env_files(root: Optional[Path] = None) -> None:
    """
    Load .env_local / .env.local for local development.

    Already-exported variables win.
    """
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def get_config() -> VoiceClientConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = VoiceClientConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[VoiceClientConfig] = None
