"""Local storage hardening helpers and keypair files."""

from __future__ import annotations

import json
import os
from pathlib import Path

from solders.keypair import Keypair


DEFAULT_KEYPAIR_PATH = Path.home() / ".config" / "solana" / "id.json"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def read_keypair(path: Path) -> Keypair:
    """Load a keypair stored as a JSON array of 64 secret-key bytes."""
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Keypair file {path} is not valid JSON") from e
    if not isinstance(raw, list) or len(raw) != 64:
        raise ValueError(f"Keypair file {path} must hold a 64-byte array")
    return Keypair.from_bytes(bytes(raw))


def write_keypair(path: Path, keypair: Keypair) -> None:
    """Write a keypair in the same format, readable only by the owner."""
    if path.exists() and path.stat().st_size > 0:
        raise FileExistsError(f"Refusing to overwrite existing keypair at {path}")
    ensure_private_dir(path.parent)
    ensure_private_file(path)
    path.write_text(json.dumps(list(bytes(keypair))))
    ensure_private_file(path)
