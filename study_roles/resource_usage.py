"""Set-backed reference counter keyed by (resource, set name).

Used for two relations:

* filesystem role pool: (study variant, ``fs-roles-study-<id>``) -> role arns
* consumers:            (study variant, member account id)     -> environment ids
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .context import DEFAULT_CONDITIONS, Authorizer, ConditionAuthorizer, RequestContext
from .entities import RESOURCE_PREFIX, SET_NAME_PREFIX, usage_key
from .shared import _require_str, log_event
from .store import DynamoStore

ITEMS_ATTR = "items"


@dataclass(frozen=True)
class UsageChange:
    resource: str
    set_name: str
    items: list[str]
    # added for add_usage, removed for remove_usage
    changed: bool


class ResourceUsageService:
    def __init__(self, store: DynamoStore, authorizer: Authorizer | None = None) -> None:
        self.store = store
        self.authorizer = authorizer or ConditionAuthorizer("resource-usage")

    def _authorize(self, ctx: RequestContext, action: str, subject: Any) -> None:
        self.authorizer.assert_authorized(ctx, action=action, conditions=DEFAULT_CONDITIONS, subjects=(subject,))

    def add_usage(self, ctx: RequestContext, *, resource: str, set_name: str, item: str) -> UsageChange:
        resource, set_name, item = _check(resource, set_name, item)
        self._authorize(ctx, "increment-resource-usage", {"resource": resource, "setName": set_name})
        old = self.store.add_to_set(usage_key(resource, set_name), ITEMS_ATTR, {item})
        before = set(old.get(ITEMS_ATTR) or ())
        change = UsageChange(
            resource=resource,
            set_name=set_name,
            items=sorted(before | {item}),
            changed=item not in before,
        )
        log_event(
            "resource_usage",
            op="increment-resource-usage",
            uid=ctx.uid,
            resource=resource,
            set_name=set_name,
            item=item,
            added=change.changed,
            count=len(change.items),
        )
        return change

    def remove_usage(self, ctx: RequestContext, *, resource: str, set_name: str, item: str) -> UsageChange:
        resource, set_name, item = _check(resource, set_name, item)
        self._authorize(ctx, "decrement-resource-usage", {"resource": resource, "setName": set_name})
        old = self.store.delete_from_set(usage_key(resource, set_name), ITEMS_ATTR, {item})
        before = set(old.get(ITEMS_ATTR) or ())
        change = UsageChange(
            resource=resource,
            set_name=set_name,
            items=sorted(before - {item}),
            changed=item in before,
        )
        log_event(
            "resource_usage",
            op="decrement-resource-usage",
            uid=ctx.uid,
            resource=resource,
            set_name=set_name,
            item=item,
            removed=change.changed,
            count=len(change.items),
        )
        return change

    def get_resource_usage(
        self, ctx: RequestContext, *, resource: str, set_name: str | None = None
    ) -> dict[str, list[str]]:
        resource = _require_str(resource, "resource")
        self._authorize(ctx, "get-resource-usage", {"resource": resource, "setName": set_name})
        if set_name:
            item = self.store.get(usage_key(resource, set_name))
            return {set_name: sorted((item or {}).get(ITEMS_ATTR) or ())}
        out: dict[str, list[str]] = {}
        for row in self.store.query(f"{RESOURCE_PREFIX}{resource}", SET_NAME_PREFIX):
            name = str(row.get("sk") or "")[len(SET_NAME_PREFIX) :]
            out[name] = sorted(row.get(ITEMS_ATTR) or ())
        return out


def _check(resource: str, set_name: str, item: str) -> tuple[str, str, str]:
    return (
        _require_str(resource, "resource"),
        _require_str(set_name, "setName"),
        _require_str(item, "item"),
    )
