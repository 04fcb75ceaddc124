# keystore.py
"""
API key persistence for nimping.

The key lives in a single-line file (~/.nimping by default, mode 0600).
Resolution priority: CLI argument > NVIDIA_API_KEY env var > saved file > wizard.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import typer

logger = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / ".nimping"
ENV_VAR = "NVIDIA_API_KEY"


def load_api_key(path: Optional[Path] = None) -> Optional[str]:
    path = path or CONFIG_PATH
    try:
        key = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning("could not read key file %s: %s", path, e)
        return None
    return key or None


def save_api_key(key: str, path: Optional[Path] = None) -> bool:
    path = path or CONFIG_PATH
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(key)
    except OSError as e:
        logger.warning("could not save key file %s: %s", path, e)
        return False
    return True


def prompt_api_key(path: Optional[Path] = None) -> Optional[str]:
    """First-run wizard: ask for a key and persist it when one is given."""
    path = path or CONFIG_PATH
    typer.echo()
    typer.secho("  🔑 Setup your NVIDIA API key", dim=True)
    typer.secho("  📝 Get a free key at: ", dim=True, nl=False)
    typer.secho("https://build.nvidia.com", fg=typer.colors.BRIGHT_CYAN)
    typer.secho(f"  💾 Key will be saved to {path}", dim=True)
    typer.echo()
    answer = typer.prompt("  Enter your API key", default="", show_default=False)
    key = answer.strip()
    if not key:
        return None
    if save_api_key(key, path):
        typer.echo()
        typer.secho(f"  ✅ API key saved to {path}", fg=typer.colors.GREEN)
        typer.echo()
    return key


def resolve_api_key(cli_key: Optional[str], path: Optional[Path] = None, interactive: bool = True) -> Optional[str]:
    key = cli_key or os.environ.get(ENV_VAR) or load_api_key(path)
    if key:
        return key
    if not interactive:
        return None
    return prompt_api_key(path)
