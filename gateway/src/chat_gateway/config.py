from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping

ENV_PREFIX = "CHAT_"


class ConfigError(Exception):
    pass


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"invalid boolean: {raw!r}")


@dataclass
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    jwt_secret: str = ""
    identity_claim: str = "userId"
    token_leeway_s: int = 0
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 4 * 1024 * 1024
    outbound_queue_size: int = 1000
    db_path: str | None = None
    close_replaced_connections: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewayConfig":
        """Build a config from ``CHAT_*`` variables, e.g. ``CHAT_JWT_SECRET``."""

        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for field in fields(cls):
            raw = environ.get(ENV_PREFIX + field.name.upper())
            if raw is None:
                continue
            default = field.default
            try:
                if isinstance(default, bool):
                    values[field.name] = _parse_bool(raw)
                elif isinstance(default, int):
                    values[field.name] = int(raw)
                elif field.name == "db_path":
                    values[field.name] = raw or None
                else:
                    values[field.name] = raw
            except ValueError as exc:
                raise ConfigError(f"{ENV_PREFIX}{field.name.upper()}: {exc}") from exc
        return cls(**values)

    def validate(self) -> None:
        if not self.jwt_secret:
            raise ConfigError(f"{ENV_PREFIX}JWT_SECRET must be set")
        if self.ping_interval_s <= 0:
            raise ConfigError("ping_interval_s must be positive")
        if self.ping_miss_limit < 0:
            raise ConfigError("ping_miss_limit must be non-negative")
        if self.outbound_queue_size <= 0:
            raise ConfigError("outbound_queue_size must be positive")
