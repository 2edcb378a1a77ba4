from __future__ import annotations

import os
from dataclasses import dataclass

from .shared import ValidationError

# IAM quotas: 6k chars for a managed policy, 2k for a trust policy. Both keep a 255 char buffer.
APP_ROLE_POLICY_MAX_SIZE = 6 * 1024 - 255
FS_ROLE_TRUST_MAX_SIZE = 2 * 1024 - 255


def _env_str(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _env_int(name: str, default: int, *, low: int, high: int) -> int:
    raw = _env_str(name)
    try:
        n = int(raw) if raw else default
    except ValueError:
        n = default
    return min(max(n, low), high)


def _env_float(name: str, default: float, *, low: float, high: float) -> float:
    raw = _env_str(name)
    try:
        n = float(raw) if raw else default
    except ValueError:
        n = default
    return min(max(n, low), high)


@dataclass(frozen=True)
class Settings:
    role_allocations_table: str = ""
    resource_usages_table: str = ""
    locks_table: str = ""
    environments_table: str = ""
    main_account_id: str = ""
    aws_region: str | None = None
    group_batch_size: int = 10
    lock_expires_in_seconds: int = 25
    lock_attempts: int = 15
    provision_pause_seconds: float = 0.5
    put_policy_attempts: int = 5
    fs_role_max_session_seconds: int = 43200
    app_role_policy_max_size: int = APP_ROLE_POLICY_MAX_SIZE
    fs_role_trust_max_size: int = FS_ROLE_TRUST_MAX_SIZE

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            role_allocations_table=_env_str("ROLE_ALLOCATIONS_TABLE_NAME"),
            resource_usages_table=_env_str("RESOURCE_USAGES_TABLE_NAME"),
            locks_table=_env_str("LOCKS_TABLE_NAME"),
            environments_table=_env_str("ENVIRONMENTS_TABLE_NAME"),
            main_account_id=_env_str("MAIN_ACCOUNT_ID"),
            aws_region=_env_str("AWS_REGION") or _env_str("AWS_DEFAULT_REGION") or None,
            group_batch_size=_env_int("GROUP_BATCH_SIZE", 10, low=1, high=50),
            lock_expires_in_seconds=_env_int("LOCK_EXPIRES_IN_SECONDS", 25, low=5, high=900),
            lock_attempts=_env_int("LOCK_ATTEMPTS", 15, low=1, high=120),
            provision_pause_seconds=_env_float("PROVISION_PAUSE_SECONDS", 0.5, low=0.0, high=10.0),
            put_policy_attempts=_env_int("PUT_POLICY_ATTEMPTS", 5, low=1, high=10),
            # IAM allows 1h..12h for MaxSessionDuration.
            fs_role_max_session_seconds=_env_int(
                "FS_ROLE_MAX_SESSION_SECONDS", 43200, low=3600, high=43200
            ),
        )

    def require_tables(self) -> "Settings":
        missing = [
            name
            for name, value in (
                ("ROLE_ALLOCATIONS_TABLE_NAME", self.role_allocations_table),
                ("RESOURCE_USAGES_TABLE_NAME", self.resource_usages_table),
                ("LOCKS_TABLE_NAME", self.locks_table),
                ("ENVIRONMENTS_TABLE_NAME", self.environments_table),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"missing table configuration: {', '.join(missing)}")
        return self
