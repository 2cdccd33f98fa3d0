"""kiro-cli invocation: binary lookup, arguments and execution environment."""

from __future__ import annotations

import os
import re
import shutil
import sys
from pathlib import Path

from kiroweb.errors import KiroBinaryNotFoundError

BINARY_NAME = "kiro-cli"

# Checked after PATH; GUI-launched servers often inherit a bare PATH.
FALLBACK_BINARY_PATHS = (
    "/Applications/Kiro CLI.app/Contents/MacOS/kiro-cli",
    "/Applications/Kiro.app/Contents/MacOS/kiro-cli",
    "~/.local/bin/kiro-cli",
    "/usr/local/bin/kiro-cli",
    "/opt/homebrew/bin/kiro-cli",
)


def extra_search_paths() -> list[str]:
    home = str(Path.home())
    return [
        "/usr/local/bin",
        "/opt/homebrew/bin",
        f"{home}/.bun/bin",
        f"{home}/.local/bin",
        f"{home}/.nvm/versions/node/v20.0.0/bin",
        f"{home}/.nvm/versions/node/v22.0.0/bin",
        f"{home}/.nvm/versions/node/v18.0.0/bin",
        f"{home}/.volta/bin",
        f"{home}/.fnm/aliases/default/bin",
        "/usr/bin",
        "/bin",
    ]


def enhanced_env(base: dict[str, str] | None = None) -> dict[str, str]:
    """Process environment with common tool-install dirs prepended to PATH.

    Color and paging are switched off so the worker's output stays plain.
    """
    env = dict(os.environ if base is None else base)
    current = env.get("PATH", "")
    env["PATH"] = os.pathsep.join([*extra_search_paths(), current] if current else extra_search_paths())
    env["NO_COLOR"] = "1"
    env["CLICOLOR"] = "0"
    env["KIRO_CLI_DISABLE_PAGER"] = "1"
    return env


def resolve_kiro_binary(override: str | None = None) -> str:
    """Locate the kiro-cli executable or raise KiroBinaryNotFoundError."""
    searched: list[str] = []
    if override:
        p = Path(override).expanduser()
        searched.append(str(p))
        if p.is_file() and os.access(p, os.X_OK):
            return str(p)
        raise KiroBinaryNotFoundError(searched)

    found = shutil.which(BINARY_NAME, path=enhanced_env().get("PATH"))
    if found:
        return found
    searched.append(f"PATH:{BINARY_NAME}")

    for raw in FALLBACK_BINARY_PATHS:
        p = Path(raw).expanduser()
        searched.append(str(p))
        if p.is_file() and os.access(p, os.X_OK):
            return str(p)
    raise KiroBinaryNotFoundError(searched)


def default_data_path() -> Path:
    """Platform default location of kiro-cli's SQLite data store."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "kiro-cli" / "data.sqlite3"
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "kiro-cli" / "data.sqlite3"
    base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / "kiro-cli" / "data.sqlite3"


def build_chat_args(
    *,
    prompt: str,
    interactive: bool,
    model: str = "",
    agent: str = "",
    resume: bool = False,
) -> list[str]:
    """Arguments for `kiro-cli chat` (binary not included)."""
    args = ["chat", "--trust-all-tools", "--wrap", "never"]
    if not interactive:
        args.insert(1, "--no-interactive")
    if model.strip():
        args += ["--model", model.strip()]
    if agent.strip():
        args += ["--agent", agent.strip()]
    if resume:
        args.append("--resume")
    if prompt.strip():
        args.append(prompt)
    return args


def normalize_working_directory(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    try:
        return str(Path(value.strip()).expanduser().resolve())
    except (OSError, RuntimeError):
        return value.strip()


def generate_session_title(user_intent: str | None) -> str:
    """First sentence of the prompt, capped at 64 characters."""
    if not user_intent:
        return "New Session"
    first = re.split(r"[.!?\n]", user_intent, maxsplit=1)[0]
    return first[:64].strip() or "New Session"
