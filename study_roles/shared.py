from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import Any

from botocore.exceptions import ClientError


class StudyRolesError(Exception):
    pass


class ValidationError(StudyRolesError):
    pass


class ForbiddenError(StudyRolesError):
    pass


class NotFoundError(StudyRolesError):
    pass


class LockUnavailableError(StudyRolesError):
    pass


class OpError(StudyRolesError):
    pass


class ProvisioningError(OpError):
    pass


class StoreShapeError(OpError):
    pass


def now_iso() -> str:
    # Fixed-format UTC timestamp for lexicographic ordering.
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def log_event(event: str, **fields: Any) -> None:
    """Print one structured wide-event line; callers must never pass credentials."""

    record: dict[str, Any] = {"event": event, "ts": now_iso()}
    record.update(fields)
    print(json.dumps(record, separators=(",", ":"), sort_keys=True, default=str))


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return ""


def _require_str(val: str | None, name: str, *, hint: str = "") -> str:
    v = (val or "").strip()
    if not v:
        suffix = f" ({hint})" if hint else ""
        raise ValidationError(f"missing {name}{suffix}")
    return v


def compact_json(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"))


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True, default=str) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True, default=str) + "\n")
