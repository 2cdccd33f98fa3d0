"""Runtime settings for the kiroweb session server.

Values come from environment variables prefixed with KIROWEB_ (or a .env file).
Relative paths resolve against the repository root.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from kiroweb.kiro.process import default_data_path


def repo_root() -> Path:
    # kiroweb/web/settings.py -> kiroweb/web -> kiroweb -> repo root
    return Path(__file__).resolve().parents[2]


class KiroWebSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KIROWEB_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 4097

    # Session DB
    data_dir: str = "data"
    db_path: str | None = None

    # kiro-cli
    kiro_cli_path: str | None = None
    kiro_data_path: str | None = None
    kiro_agent: str = "kiro-assistant"
    default_model: str = "claude-sonnet-4"
    default_cwd: str | None = None

    # Runner
    poll_interval_s: float = 0.75
    permission_timeout_s: float = 120.0

    # SSE
    sse_wait_timeout_s: float = 15.0

    def resolved_data_dir(self) -> Path:
        p = Path(self.data_dir)
        return p if p.is_absolute() else repo_root() / p

    def resolved_db_path(self) -> Path:
        if self.db_path:
            p = Path(self.db_path)
            return p if p.is_absolute() else repo_root() / p
        return self.resolved_data_dir() / "sessions.db"

    def resolved_kiro_data_path(self) -> Path:
        if self.kiro_data_path:
            return Path(self.kiro_data_path).expanduser()
        return default_data_path()

    def resolved_model(self) -> str:
        return self.default_model.strip()
