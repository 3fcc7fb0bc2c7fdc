"""
tally.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for the contest-level knobs: feed page sizing, the
flag threshold used by moderation, the comment length cap and the default
reaction symbol.  Secrets and connection strings stay in the environment
(``DATABASE_URL``, ``JWT_SECRET``).

Every key is optional; a missing file yields the defaults so tests and
local runs need no setup.

Usage::

    from tally.config import load_config

    cfg = load_config()          # reads $TALLY_CONFIG or ./config.yaml
    print(cfg.page_size)         # 10
    print(cfg.raw_window)        # 20
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TallyConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    contest_name: str = "Hot Dog Contest"
    default_group_id: str = "hotdog-contest"

    # Feed pagination: fetch ``raw_window`` rows, keep ``page_size`` live ones
    page_size: int = 10
    raw_window: int = 20
    # Live group feeds kept subscribed at once; least recently used are closed
    max_live_feeds: int = 8

    # Moderation
    flag_threshold: int = 3

    # Comments / reactions
    comment_max_length: int = 256
    default_reaction: str = "👍"

    # API
    api_port: int = 8000


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path | None = None) -> TallyConfig:
    """Read *path* and return a :class:`TallyConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  Defaults to
        ``$TALLY_CONFIG`` or ``config.yaml`` in the working directory.

    Raises
    ------
    ValueError
        If ``raw_window`` is smaller than ``page_size`` or a size is not
        positive.
    """
    config_path = Path(path or os.getenv("TALLY_CONFIG", "config.yaml"))
    raw: dict = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    else:
        logger.info("No config file at %s — using defaults", config_path.resolve())

    defaults = TallyConfig()
    cfg = TallyConfig(
        contest_name=str(raw.get("contest_name", defaults.contest_name)),
        default_group_id=str(raw.get("default_group_id", defaults.default_group_id)),
        page_size=int(raw.get("page_size", defaults.page_size)),
        raw_window=int(raw.get("raw_window", defaults.raw_window)),
        max_live_feeds=int(raw.get("max_live_feeds", defaults.max_live_feeds)),
        flag_threshold=int(raw.get("flag_threshold", defaults.flag_threshold)),
        comment_max_length=int(
            raw.get("comment_max_length", defaults.comment_max_length)
        ),
        default_reaction=str(raw.get("default_reaction", defaults.default_reaction)),
        api_port=int(raw.get("api_port", defaults.api_port)),
    )

    if cfg.page_size < 1 or cfg.raw_window < 1 or cfg.max_live_feeds < 1:
        raise ValueError("page_size, raw_window and max_live_feeds must be positive")
    if cfg.raw_window < cfg.page_size:
        raise ValueError(
            f"raw_window ({cfg.raw_window}) must be >= page_size ({cfg.page_size})"
        )
    return cfg
