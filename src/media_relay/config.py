import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from .cors import parse_allowed_origins

LOG_LEVELS = ("error", "warn", "info", "debug")


def _env_flag(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() == "true"

def _env_list(name):
    value = os.getenv(name, "")
    return frozenset(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class RelayConfig:
    cache_enabled: bool = True
    log_level: str = "info"
    detailed_logging: bool = False
    allowed_origins: FrozenSet[str] = field(default_factory=frozenset)
    # origins whose media must not get a synthesized Referer/Origin
    direct_origins: FrozenSet[str] = field(default_factory=frozenset)
    host: str = "0.0.0.0"
    port: int = 8080
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.log_level not in LOG_LEVELS:
            object.__setattr__(self, "log_level", "info")

    @classmethod
    def from_env(cls):
        try:
            port = int(os.getenv("PORT", "8080"))
        except ValueError:
            port = 8080

        return cls(
            cache_enabled=not _env_flag("DISABLE_CACHE"),
            log_level=os.getenv("LOG_LEVEL", "info").strip().lower(),
            detailed_logging=_env_flag("ENABLE_DETAILED_LOGGING"),
            allowed_origins=parse_allowed_origins(os.getenv("ALLOWED_ORIGINS")),
            direct_origins=_env_list("DIRECT_HLS_ORIGINS"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=port,
            log_file=os.getenv("LOG_FILE") or None,
        )
