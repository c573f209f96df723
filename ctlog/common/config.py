from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_FILE = Path(".env")


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class Settings:
    S3_REGION: str = "us-east-1"
    S3_BUCKET: str = ""
    S3_ENDPOINT_URL: str | None = None
    S3_KEY_PREFIX: str = ""
    LOG_LEVEL: str = "INFO"
    ENABLE_METRICS: bool = True

    def __post_init__(self) -> None:
        if self.S3_ENDPOINT_URL is not None:
            scheme = self.S3_ENDPOINT_URL.split(":", 1)[0].lower()
            if scheme not in {"http", "https"}:
                raise ValueError(
                    "S3_ENDPOINT_URL must be an http:// or https:// base URL."
                )
        self.LOG_LEVEL = self.LOG_LEVEL.upper()

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            S3_REGION=os.environ.get("S3_REGION", cls.S3_REGION),
            S3_BUCKET=os.environ.get("S3_BUCKET", cls.S3_BUCKET),
            S3_ENDPOINT_URL=_as_optional(os.environ.get("S3_ENDPOINT_URL")),
            # The prefix is used verbatim, trailing slashes included.
            S3_KEY_PREFIX=os.environ.get("S3_KEY_PREFIX", cls.S3_KEY_PREFIX),
            LOG_LEVEL=os.environ.get("LOG_LEVEL", cls.LOG_LEVEL),
            ENABLE_METRICS=_as_bool(
                os.environ.get("ENABLE_METRICS"), cls.ENABLE_METRICS
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
