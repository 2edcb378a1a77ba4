from __future__ import annotations

import threading
from typing import Any, Iterable, Mapping, Protocol

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from .context import RequestContext
from .entities import (
    ACCOUNT_PREFIX,
    APP_ROLE_PREFIX,
    FS_ROLE_PREFIX,
    AppRole,
    FsRole,
    app_role_key,
    fs_role_key,
)
from .shared import NotFoundError, error_code, now_iso

QUERY_PAGE_LIMIT = 1000


class ThreadLocalDynamo:
    """Hands each thread its own session, DynamoDB resource and Table objects."""

    def __init__(self, region: str | None = None) -> None:
        self.region = region
        self._local = threading.local()

    def table(self, name: str) -> Any:
        tables = getattr(self._local, "tables", None)
        if tables is None:
            session = boto3.session.Session(region_name=self.region)
            self._local.resource = session.resource("dynamodb")
            tables = self._local.tables = {}
        if name not in tables:
            tables[name] = self._local.resource.Table(name)
        return tables[name]

    def Table(self, name: str) -> "_ThreadLocalTable":
        return _ThreadLocalTable(self, name)


class _ThreadLocalTable:
    def __init__(self, dynamo: ThreadLocalDynamo, name: str) -> None:
        self._dynamo = dynamo
        self._name = name

    def __getattr__(self, attr: str) -> Any:
        return getattr(self._dynamo.table(self._name), attr)


def _update_kwargs(
    key: Mapping[str, str],
    item: Mapping[str, Any],
) -> dict[str, Any]:
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    sets: list[str] = []
    removes: list[str] = []

    def _name(attr: str) -> str:
        token = f"#a{len(names)}"
        names[token] = attr
        return token

    for attr, value in item.items():
        if attr in key:
            continue
        if value is None or (isinstance(value, (set, frozenset)) and not value):
            removes.append(_name(attr))
            continue
        token = f":v{len(values)}"
        values[token] = value
        sets.append(f"{_name(attr)} = {token}")

    values[":now"] = now_iso()
    sets.append(f"{_name('updatedAt')} = :now")
    created = _name("createdAt")
    sets.append(f"{created} = if_not_exists({created}, :now)")

    expr = "SET " + ", ".join(sets)
    if removes:
        expr += " REMOVE " + ", ".join(removes)
    return {
        "Key": dict(key),
        "UpdateExpression": expr,
        "ExpressionAttributeNames": names,
        "ExpressionAttributeValues": values,
    }


class DynamoStore:
    """Thin composite-key adapter over a boto3 Table resource."""

    def __init__(self, table: Any) -> None:
        self.table = table

    def get(self, key: Mapping[str, str], projection: Iterable[str] | None = None) -> dict[str, Any] | None:
        kwargs: dict[str, Any] = {"Key": dict(key)}
        if projection:
            names = {f"#p{i}": attr for i, attr in enumerate(projection)}
            kwargs["ProjectionExpression"] = ", ".join(names)
            kwargs["ExpressionAttributeNames"] = names
        out = self.table.get_item(**kwargs)
        item = out.get("Item")
        return dict(item) if item else None

    def update(
        self,
        key: Mapping[str, str],
        item: Mapping[str, Any],
        condition: Any = None,
    ) -> dict[str, Any]:
        kwargs = _update_kwargs(key, item)
        kwargs["ReturnValues"] = "ALL_NEW"
        if condition is not None:
            kwargs["ConditionExpression"] = condition
        out = self.table.update_item(**kwargs)
        return dict(out.get("Attributes") or {})

    def delete(self, key: Mapping[str, str], condition: Any = None) -> None:
        kwargs: dict[str, Any] = {"Key": dict(key)}
        if condition is not None:
            kwargs["ConditionExpression"] = condition
        self.table.delete_item(**kwargs)

    def query(self, pk: str, sk_prefix: str, limit: int = QUERY_PAGE_LIMIT) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": Key("pk").eq(pk) & Key("sk").begins_with(sk_prefix),
            "Limit": limit,
        }
        while True:
            out = self.table.query(**kwargs)
            items.extend(dict(i) for i in out.get("Items") or [])
            last = out.get("LastEvaluatedKey")
            if not last:
                return items
            kwargs["ExclusiveStartKey"] = last

    def _change_set(
        self,
        op: str,
        key: Mapping[str, str],
        attribute: str,
        values: Iterable[str],
    ) -> dict[str, Any]:
        out = self.table.update_item(
            Key=dict(key),
            UpdateExpression=f"{op} #s :items SET #u = :now",
            ExpressionAttributeNames={"#s": attribute, "#u": "updatedAt"},
            ExpressionAttributeValues={":items": set(values), ":now": now_iso()},
            ReturnValues="ALL_OLD",
        )
        return dict(out.get("Attributes") or {})

    def add_to_set(self, key: Mapping[str, str], attribute: str, values: Iterable[str]) -> dict[str, Any]:
        """Atomic set union; returns the item as it was before the update."""

        return self._change_set("ADD", key, attribute, values)

    def delete_from_set(self, key: Mapping[str, str], attribute: str, values: Iterable[str]) -> dict[str, Any]:
        return self._change_set("DELETE", key, attribute, values)


class RoleAllocationStore(DynamoStore):
    def get_app_role(self, account_id: str, bucket: str, arn: str) -> AppRole | None:
        item = self.get(app_role_key(account_id, bucket, arn))
        return AppRole.from_item(item) if item else None

    def list_app_roles(self, account_id: str, bucket: str | None = None) -> list[AppRole]:
        prefix = f"{APP_ROLE_PREFIX}{bucket}#" if bucket else APP_ROLE_PREFIX
        return [AppRole.from_item(i) for i in self.query(f"{ACCOUNT_PREFIX}{account_id}", prefix)]

    def put_app_role(self, role: AppRole, condition: Any = None) -> AppRole:
        return AppRole.from_item(self.update(role.key(), role.to_item(), condition=condition))

    def get_fs_role(self, account_id: str, bucket: str, arn: str) -> FsRole | None:
        item = self.get(fs_role_key(account_id, bucket, arn))
        return FsRole.from_item(item) if item else None

    def list_fs_roles(self, account_id: str, bucket: str | None = None) -> list[FsRole]:
        prefix = f"{FS_ROLE_PREFIX}{bucket}#" if bucket else FS_ROLE_PREFIX
        return [FsRole.from_item(i) for i in self.query(f"{ACCOUNT_PREFIX}{account_id}", prefix)]

    def put_fs_role(self, role: FsRole) -> FsRole:
        return FsRole.from_item(self.update(role.key(), role.to_item()))

    def delete_fs_role(self, role: FsRole) -> None:
        self.delete(role.key())


class EnvironmentStore(Protocol):
    def update_study_roles(self, ctx: RequestContext, env_id: str, study_roles: Mapping[str, str]) -> None: ...


class EnvironmentStudyRolesStore:
    """Writes the study-to-role map onto an existing environment record."""

    def __init__(self, table: Any) -> None:
        self.table = table

    def update_study_roles(self, ctx: RequestContext, env_id: str, study_roles: Mapping[str, str]) -> None:
        try:
            self.table.update_item(
                Key={"id": env_id},
                UpdateExpression="SET #r = :roles, #u = :now, #b = :by",
                ExpressionAttributeNames={"#r": "studyRoles", "#u": "updatedAt", "#b": "updatedBy"},
                ExpressionAttributeValues={
                    ":roles": dict(study_roles),
                    ":now": now_iso(),
                    ":by": ctx.uid,
                },
                ConditionExpression=Attr("id").exists(),
            )
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                raise NotFoundError(f"environment '{env_id}' does not exist") from e
            raise
