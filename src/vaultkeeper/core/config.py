"""Runtime configuration: reads environment variables (and a local .env).

Resolution order for the vault directory:
  1. explicit ``vault_dir`` argument (``--vault-dir`` on the CLI)
  2. ``VAULTKEEPER_DIR``
  3. the platform data directory
"""

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from dotenv import load_dotenv

APP_NAME = "vaultkeeper"

ENV_VAULT_DIR = "VAULTKEEPER_DIR"
ENV_LOG_DIR = "VAULTKEEPER_LOG_DIR"
ENV_EDITOR = "VAULTKEEPER_EDITOR"
ENV_KDF_ITERATIONS = "VAULTKEEPER_KDF_ITERATIONS"


@dataclass
class VaultSettings:
    """Resolved settings for one CLI invocation."""
    vault_dir: Path
    log_dir: Path
    editor_command: List[str] = field(default_factory=list)
    kdf_iterations: int = 600_000


def default_data_dir() -> Path:
    """Platform data directory for vaultkeeper."""
    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA") or os.path.expanduser("~")
        return Path(base) / APP_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".local" / "share" / APP_NAME


def default_editor_command() -> List[str]:
    """Editor argv from VAULTKEEPER_EDITOR, VISUAL or EDITOR."""
    for var in (ENV_EDITOR, "VISUAL", "EDITOR"):
        value = os.environ.get(var, "").strip()
        if value:
            return shlex.split(value, posix=sys.platform != "win32")
    return ["notepad"] if sys.platform == "win32" else ["vi"]


def _parse_iterations(raw: Optional[str]) -> int:
    from ..vault.encryption import DEFAULT_ITERATIONS, MIN_ITERATIONS
    from ..vault.exceptions import InvalidInput

    if raw is None or not raw.strip():
        return DEFAULT_ITERATIONS
    try:
        iterations = int(raw)
    except ValueError:
        raise InvalidInput(f"{ENV_KDF_ITERATIONS} must be an integer, got {raw!r}")
    if iterations < MIN_ITERATIONS:
        raise InvalidInput(
            f"{ENV_KDF_ITERATIONS} must be at least {MIN_ITERATIONS}, got {iterations}"
        )
    return iterations


def load_settings(
    vault_dir: Optional[Union[str, Path]] = None,
    env_file: Optional[Union[str, Path]] = None,
) -> VaultSettings:
    """Build VaultSettings from arguments, environment and an optional .env.

    Values already present in the environment win over the .env file.
    """
    dotenv_path = Path(env_file) if env_file else Path.cwd() / ".env"
    if dotenv_path.exists():
        load_dotenv(dotenv_path, override=False)

    if vault_dir is not None:
        resolved_dir = Path(vault_dir)
    elif os.environ.get(ENV_VAULT_DIR):
        resolved_dir = Path(os.environ[ENV_VAULT_DIR])
    else:
        resolved_dir = default_data_dir()
    resolved_dir = resolved_dir.expanduser()

    log_dir_env = os.environ.get(ENV_LOG_DIR)
    log_dir = Path(log_dir_env).expanduser() if log_dir_env else resolved_dir / "audit_logs"

    return VaultSettings(
        vault_dir=resolved_dir,
        log_dir=log_dir,
        editor_command=default_editor_command(),
        kdf_iterations=_parse_iterations(os.environ.get(ENV_KDF_ITERATIONS)),
    )
