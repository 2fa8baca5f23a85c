"""
Environment-driven settings for the agent bridge.

Values are read once, after an optional ``.env`` file has been loaded, and handed to
the runtime explicitly. Nothing here opens connections; a missing API key only becomes
an error when the upstream session is actually created.
"""

import os
from pathlib import Path
from typing import Optional

import dotenv
from pydantic import BaseModel, Field, field_validator

from agentbridge.config.constants import (
    CLAUDE_MAX_TURNS,
    CONTROL_READY_TIMEOUT,
    DEFAULT_REALTIME_MODEL,
    DEFAULT_REALTIME_VOICE,
    UPSTREAM_TRANSPORT_WEBRTC,
    UPSTREAM_TRANSPORT_WEBSOCKET,
)

TRUE_VALUES = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Runtime configuration for the bridge service."""

    host: str = "0.0.0.0"
    port: int = 8765
    openai_api_key: Optional[str] = None
    realtime_model: str = DEFAULT_REALTIME_MODEL
    realtime_voice: str = DEFAULT_REALTIME_VOICE
    upstream_transport: str = UPSTREAM_TRANSPORT_WEBRTC
    control_ready_timeout: float = CONTROL_READY_TIMEOUT
    data_dir: Path = Field(default_factory=lambda: Path("data"))
    workspace_dir: Path = Field(default_factory=Path.cwd)
    claude_cli_path: Optional[str] = None
    claude_model: Optional[str] = None
    claude_max_turns: int = CLAUDE_MAX_TURNS
    codex_command: str = "codex"
    show_inner_thoughts: bool = False

    @field_validator("upstream_transport")
    def validate_upstream_transport(cls, v):
        """Only the two supported upstream transports are accepted."""
        v = v.lower()
        if v not in (UPSTREAM_TRANSPORT_WEBRTC, UPSTREAM_TRANSPORT_WEBSOCKET):
            raise ValueError(f"Unsupported upstream transport: {v}")
        return v

    @field_validator("control_ready_timeout")
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("control_ready_timeout must be positive")
        return v

    @field_validator("claude_max_turns")
    def validate_max_turns(cls, v):
        if v < 1:
            raise ValueError("claude_max_turns must be at least 1")
        return v

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            env_file: Optional .env file to load first (defaults to ./.env if present)

        Returns:
            Settings: The populated settings object
        """
        env_path = env_file or Path(".") / ".env"
        if env_path.exists():
            dotenv.load_dotenv(env_path)

        values = {
            "host": os.getenv("HOST"),
            "port": os.getenv("PORT"),
            "openai_api_key": os.getenv("OPENAI_API_KEY"),
            "realtime_model": os.getenv("REALTIME_MODEL"),
            "realtime_voice": os.getenv("REALTIME_VOICE"),
            "upstream_transport": os.getenv("UPSTREAM_TRANSPORT"),
            "control_ready_timeout": os.getenv("CONTROL_READY_TIMEOUT"),
            "data_dir": os.getenv("DATA_DIR"),
            "workspace_dir": os.getenv("WORKSPACE_DIR"),
            "claude_cli_path": os.getenv("CLAUDE_CLI_PATH"),
            "claude_model": os.getenv("CLAUDE_MODEL"),
            "claude_max_turns": os.getenv("CLAUDE_MAX_TURNS"),
            "codex_command": os.getenv("CODEX_COMMAND"),
        }
        show = os.getenv("SHOW_INNER_THOUGHTS")
        if show is not None:
            values["show_inner_thoughts"] = show.strip().lower() in TRUE_VALUES

        return cls(**{k: v for k, v in values.items() if v is not None})
