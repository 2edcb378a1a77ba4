from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from .shared import ForbiddenError

SYSTEM_UID = "_system_"


@dataclass(frozen=True)
class RequestContext:
    """Caller identity threaded by value through every authorized call."""

    uid: str = ""
    is_admin: bool = False
    status: str = ""


def system_context() -> RequestContext:
    return RequestContext(uid=SYSTEM_UID, is_admin=True, status="active")


Condition = Callable[[RequestContext, str], bool]


def allow_if_active(ctx: RequestContext, action: str) -> bool:
    return ctx.status == "active"


def allow_if_admin(ctx: RequestContext, action: str) -> bool:
    return bool(ctx.is_admin)


DEFAULT_CONDITIONS: tuple[Condition, ...] = (allow_if_active, allow_if_admin)


class Authorizer(Protocol):
    def assert_authorized(
        self,
        ctx: RequestContext,
        *,
        action: str,
        conditions: Sequence[Condition],
        subjects: Sequence[Any] = (),
    ) -> None: ...


class ConditionAuthorizer:
    def __init__(self, extension_point: str = "") -> None:
        self.extension_point = extension_point

    def assert_authorized(
        self,
        ctx: RequestContext,
        *,
        action: str,
        conditions: Sequence[Condition],
        subjects: Sequence[Any] = (),
    ) -> None:
        del subjects
        for condition in conditions:
            if not condition(ctx, action):
                raise ForbiddenError(
                    f"{ctx.uid or 'anonymous'} is not authorized to {action}"
                    + (f" ({self.extension_point})" if self.extension_point else "")
                )
