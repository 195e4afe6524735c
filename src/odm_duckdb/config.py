# -*- coding: utf-8 -*-
"""Environment-driven configuration for the ODM store."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_DB_PATH = ":memory:"
DEFAULT_VOCABULARY_POLICY = "strict"
DEFAULT_LOG_LEVEL = "INFO"

_TRUE = ("1", "true", "yes", "on")


@dataclass
class ODMConfig:
    """
    Store settings.

    Attributes
    ----------
    db_path : str
        DuckDB file path, or ':memory:'.
    vocabulary_policy : str
        'strict' rejects unknown controlled terms, 'warn' logs and accepts them.
    read_only : bool
        Open the database read-only.
    log_level : str
        Level name handed to logging.basicConfig by the CLI.
    """

    db_path: str = DEFAULT_DB_PATH
    vocabulary_policy: str = DEFAULT_VOCABULARY_POLICY
    read_only: bool = False
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ODMConfig":
        """Build a config from ODM_* environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            db_path=env.get("ODM_DB_PATH", DEFAULT_DB_PATH),
            vocabulary_policy=env.get(
                "ODM_VOCABULARY_POLICY", DEFAULT_VOCABULARY_POLICY
            ).lower(),
            read_only=env.get("ODM_READ_ONLY", "").lower() in _TRUE,
            log_level=env.get("ODM_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        )
