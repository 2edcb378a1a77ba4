"""Lambda entrypoint invoked directly by the environment provisioning workflow.

Event::

    {"action": "allocate" | "deallocate",
     "environment": {"id": "...", "studyRoles": {...}},
     "studies": [{...}, ...],
     "memberAccountId": "..."}
"""

from __future__ import annotations

import time
from typing import Any

from .context import RequestContext, SYSTEM_UID
from .entities import Environment, Study
from .services import Services, build_services
from .settings import Settings
from .shared import ValidationError, _require_str, log_event

ACTIONS = ("allocate", "deallocate")

_services: Services | None = None


def _get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(Settings.from_env())
    return _services


def _request_context(event: dict[str, Any]) -> RequestContext:
    # The workflow is the only caller; it acts as the system on behalf of the requester.
    requested_by = str(event.get("requestedBy") or "").strip()
    return RequestContext(uid=requested_by or SYSTEM_UID, is_admin=True, status="active")


def _parse(event: Any) -> tuple[str, Environment, list[Study], str]:
    if not isinstance(event, dict):
        raise ValidationError("event must be an object")
    action = str(event.get("action") or "").strip()
    if action not in ACTIONS:
        raise ValidationError(f"action must be one of: {', '.join(ACTIONS)}")
    environment = Environment.from_dict(event.get("environment") or {})
    raw_studies = event.get("studies") or []
    if not isinstance(raw_studies, list):
        raise ValidationError("studies must be a list")
    studies = [Study.from_dict(s) for s in raw_studies]
    member_account_id = _require_str(event.get("memberAccountId"), "memberAccountId")
    return action, environment, studies, member_account_id


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    raw_action = event.get("action") if isinstance(event, dict) else None
    wide_event: dict[str, Any] = {"action": str(raw_action or "")}
    try:
        action, environment, studies, member_account_id = _parse(event)
        wide_event["environment_id"] = environment.id
        wide_event["study_count"] = len(studies)

        services = _get_services()
        ctx = _request_context(event)
        if action == "allocate":
            study_roles = services.env_resources.allocate_study_resources(
                ctx, environment=environment, studies=studies, member_account_id=member_account_id
            )
        else:
            study_roles = services.env_resources.deallocate_study_resources(
                ctx, environment=environment, studies=studies, member_account_id=member_account_id
            )
        wide_event["outcome"] = "success"
        return {"environmentId": environment.id, "studyRoles": study_roles}
    except ValidationError as exc:
        wide_event["outcome"] = "invalid"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        return {"errorCode": "INVALID_REQUEST", "message": str(exc)}
    except Exception as exc:
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        raise
    finally:
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        log_event("study_access", **wide_event)
