"""Runtime settings for the production tracker."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


@dataclass(slots=True)
class Settings:
    """Configuration values controlling storage, fan-out and numbering."""

    database_path: str = "textile.sqlite3"
    log_level: str = "INFO"
    fanout_workers: int = 8
    transaction_retries: int = 3
    order_number_prefix: str = "AT"
    allow_loom_double_booking: bool = False
    default_company_name: str = "ASHOK TEXTILES"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            database_path=env.get("TEXTILE_DB_PATH", defaults.database_path),
            log_level=env.get("TEXTILE_LOG_LEVEL", defaults.log_level).upper(),
            fanout_workers=max(1, int(env.get("TEXTILE_FANOUT_WORKERS", defaults.fanout_workers))),
            transaction_retries=max(0, int(env.get("TEXTILE_TX_RETRIES", defaults.transaction_retries))),
            order_number_prefix=env.get("TEXTILE_ORDER_PREFIX", defaults.order_number_prefix),
            allow_loom_double_booking=_flag(
                env.get("TEXTILE_ALLOW_LOOM_DOUBLE_BOOKING"),
                defaults.allow_loom_double_booking,
            ),
            default_company_name=env.get(
                "TEXTILE_DEFAULT_COMPANY", defaults.default_company_name
            ),
        )


__all__ = ["Settings"]
