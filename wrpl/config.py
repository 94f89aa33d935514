"""Decoder settings, optionally stored in the standard user data directory"""
from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, PositiveInt

from .chat import ChatFraming
from .decompress import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_CANDIDATES
from .header import WRPL_MAGIC
from .scan import DEFAULT_SCAN_WINDOW


def _platform_data_dir() -> Path:
    """Per-user data directory: %LOCALAPPDATA% on Windows, the XDG data home elsewhere."""
    if platform.system() == "Windows":
        return Path(os.environ["LOCALAPPDATA"])
    return Path(os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share")


def default_config_file() -> Path:
    """Where decoder settings live unless --config says otherwise. Not created here."""
    return _platform_data_dir() / "wrpl" / "config.yaml"


class DecoderConfig(BaseModel):
    expected_magic: int = WRPL_MAGIC
    max_scan_window: PositiveInt = DEFAULT_SCAN_WINDOW
    """How far past the header to look for the compressed body."""
    max_candidates: PositiveInt = DEFAULT_MAX_CANDIDATES
    """How many body offsets to try before giving up."""
    chunk_size: PositiveInt = DEFAULT_CHUNK_SIZE
    chat_framing: Optional[ChatFraming] = None
    """Force a chat framing instead of choosing one from the replay version."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    @staticmethod
    def load(path: Path) -> DecoderConfig:
        with path.open("rt", encoding="utf-8") as f:
            content = yaml.load(f, Loader=yaml.SafeLoader)
        return DecoderConfig.model_validate(content or {})

    def save(self, path: Path):
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wt", encoding="utf-8") as f:
            yaml.dump(self.model_dump(mode="json"), f, width=float("inf"))
