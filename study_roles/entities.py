"""Records exchanged with callers and persisted in the role allocations table.

Store items use camelCase attribute names and composite ``pk``/``sk`` keys:

* AppRole: ``pk=ACT#<accountId>``, ``sk=APP#<bucket>#<arn>``
* FsRole:  ``pk=ACT#<accountId>``, ``sk=FS#<bucket>#<arn>``
* usage:   ``pk=RES#<resource>``,  ``sk=SN#<setName>``
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .shared import StoreShapeError, ValidationError

ACCOUNT_PREFIX = "ACT#"
APP_ROLE_PREFIX = "APP#"
FS_ROLE_PREFIX = "FS#"
RESOURCE_PREFIX = "RES#"
SET_NAME_PREFIX = "SN#"

ACCESS_TYPES = ("readonly", "readwrite", "writeonly")
KMS_SCOPES = ("none", "bucket", "study")


class Status(str, Enum):
    PENDING = "pending"
    REACHABLE = "reachable"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Any) -> "Status":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise ValidationError(
                f"invalid status '{value}' (expected one of: {', '.join(s.value for s in cls)})"
            ) from None


def app_role_key(account_id: str, bucket: str, arn: str) -> dict[str, str]:
    return {"pk": f"{ACCOUNT_PREFIX}{account_id}", "sk": f"{APP_ROLE_PREFIX}{bucket}#{arn}"}


def fs_role_key(account_id: str, bucket: str, arn: str) -> dict[str, str]:
    return {"pk": f"{ACCOUNT_PREFIX}{account_id}", "sk": f"{FS_ROLE_PREFIX}{bucket}#{arn}"}


def usage_key(resource: str, set_name: str) -> dict[str, str]:
    return {"pk": f"{RESOURCE_PREFIX}{resource}", "sk": f"{SET_NAME_PREFIX}{set_name}"}


def account_id_from_role_arn(arn: str) -> str:
    # arn:<partition>:iam::<account>:role/<name>
    parts = str(arn or "").split(":")
    if len(parts) < 6 or parts[2] != "iam":
        raise ValidationError(f"not an IAM role arn: '{arn}'")
    return parts[4]


@dataclass(frozen=True)
class EnvPermission:
    read: bool = False
    write: bool = False

    @classmethod
    def from_dict(cls, raw: Any) -> "EnvPermission":
        if isinstance(raw, EnvPermission):
            return raw
        if not isinstance(raw, Mapping):
            raise ValidationError("envPermission must be an object with read and write")
        return cls(read=bool(raw.get("read")), write=bool(raw.get("write")))

    @classmethod
    def from_access_type(cls, access_type: str) -> "EnvPermission":
        return cls(
            read=access_type in ("readonly", "readwrite"),
            write=access_type in ("readwrite", "writeonly"),
        )

    def to_dict(self) -> dict[str, bool]:
        return {"read": self.read, "write": self.write}


@dataclass(frozen=True)
class Study:
    id: str
    account_id: str = ""
    bucket: str = ""
    folder: str = ""
    kms_arn: str = ""
    kms_scope: str = "none"
    access_type: str = "readonly"
    bucket_access: str = ""
    app_role_arn: str = ""
    qualifier: str = ""
    aws_partition: str = "aws"
    region: str = ""
    vpce_id: str = ""
    env_permission: EnvPermission = field(default_factory=EnvPermission)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Study":
        if not isinstance(raw, Mapping):
            raise ValidationError("study must be an object")
        study_id = str(raw.get("id") or "").strip()
        if not study_id:
            raise ValidationError("study id is required")
        access_type = str(raw.get("accessType") or "readonly")
        if access_type not in ACCESS_TYPES:
            raise ValidationError(f"study '{study_id}' has invalid accessType '{access_type}'")
        kms_scope = str(raw.get("kmsScope") or "none")
        if kms_scope not in KMS_SCOPES:
            raise ValidationError(f"study '{study_id}' has invalid kmsScope '{kms_scope}'")
        perm_raw = raw.get("envPermission")
        env_permission = (
            EnvPermission.from_access_type(access_type)
            if perm_raw is None
            else EnvPermission.from_dict(perm_raw)
        )
        return cls(
            id=study_id,
            account_id=str(raw.get("accountId") or ""),
            bucket=str(raw.get("bucket") or ""),
            folder=str(raw.get("folder") or ""),
            kms_arn=str(raw.get("kmsArn") or ""),
            kms_scope=kms_scope,
            access_type=access_type,
            bucket_access=str(raw.get("bucketAccess") or ""),
            app_role_arn=str(raw.get("appRoleArn") or ""),
            qualifier=str(raw.get("qualifier") or ""),
            aws_partition=str(raw.get("awsPartition") or "aws"),
            region=str(raw.get("region") or ""),
            vpce_id=str(raw.get("vpceId") or ""),
            env_permission=env_permission,
        )

    @property
    def uses_roles(self) -> bool:
        return self.bucket_access == "roles"


@dataclass(frozen=True)
class StudyEntry:
    """What a role remembers about one study it grants access to."""

    folder: str
    kms_arn: str = ""
    kms_scope: str = "none"
    access_type: str = "readonly"
    env_permission: EnvPermission | None = None
    vpce_id: str = ""

    @classmethod
    def for_app_role(cls, study: Study) -> "StudyEntry":
        return cls(
            folder=study.folder,
            kms_arn=study.kms_arn,
            kms_scope=study.kms_scope,
            access_type=study.access_type,
        )

    @classmethod
    def for_fs_role(cls, study: Study) -> "StudyEntry":
        return cls(
            folder=study.folder,
            kms_arn=study.kms_arn,
            kms_scope=study.kms_scope,
            access_type=study.access_type,
            env_permission=study.env_permission,
            vpce_id=study.vpce_id,
        )

    @classmethod
    def from_dict(cls, raw: Any, *, where: str) -> "StudyEntry":
        if not isinstance(raw, Mapping) or "folder" not in raw:
            raise StoreShapeError(f"{where}: malformed study entry")
        perm = raw.get("envPermission")
        return cls(
            folder=str(raw.get("folder") or ""),
            kms_arn=str(raw.get("kmsArn") or ""),
            kms_scope=str(raw.get("kmsScope") or "none"),
            access_type=str(raw.get("accessType") or "readonly"),
            env_permission=None if perm is None else EnvPermission.from_dict(perm),
            vpce_id=str(raw.get("vpceId") or ""),
        )

    def policy_kms_arn(self, bucket_kms_arn: str) -> str:
        if self.kms_scope == "bucket":
            return bucket_kms_arn
        if self.kms_scope == "study":
            return self.kms_arn
        return ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "folder": self.folder,
            "kmsArn": self.kms_arn,
            "kmsScope": self.kms_scope,
            "accessType": self.access_type,
        }
        if self.env_permission is not None:
            out["envPermission"] = self.env_permission.to_dict()
        if self.vpce_id:
            out["vpceId"] = self.vpce_id
        return out


def _studies_from_item(raw: Any, *, where: str) -> dict[str, StudyEntry]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise StoreShapeError(f"{where}: studies must be a map")
    return {str(k): StudyEntry.from_dict(v, where=where) for k, v in raw.items()}


def _check_item(item: Mapping[str, Any], *, allowed: frozenset[str], sk_prefix: str, kind: str) -> str:
    pk = str(item.get("pk") or "")
    sk = str(item.get("sk") or "")
    where = f"{kind} {pk}/{sk}"
    if not pk.startswith(ACCOUNT_PREFIX) or not sk.startswith(sk_prefix):
        raise StoreShapeError(f"{where}: unexpected key shape")
    unknown = sorted(set(item) - allowed)
    if unknown:
        raise StoreShapeError(f"{where}: unknown attributes {', '.join(unknown)}")
    for required in ("accountId", "arn", "name", "bucket"):
        if not item.get(required):
            raise StoreShapeError(f"{where}: missing {required}")
    return where


_ROLE_ATTRS = frozenset(
    {
        "pk",
        "sk",
        "accountId",
        "arn",
        "name",
        "qualifier",
        "boundaryPolicyArn",
        "bucket",
        "bucketKmsArn",
        "bucketRegion",
        "mainRegion",
        "awsPartition",
        "studies",
        "createdAt",
        "updatedAt",
    }
)
_APP_ROLE_ATTRS = _ROLE_ATTRS | {"status", "statusMsg", "statusAt"}
_FS_ROLE_ATTRS = _ROLE_ATTRS | {"appRoleArn", "trust"}


@dataclass
class AppRole:
    account_id: str
    arn: str
    name: str
    bucket: str
    qualifier: str = ""
    boundary_policy_arn: str = ""
    bucket_kms_arn: str = ""
    bucket_region: str = ""
    main_region: str = ""
    aws_partition: str = "aws"
    status: Status = Status.REACHABLE
    status_msg: str = ""
    status_at: str = ""
    studies: dict[str, StudyEntry] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    def key(self) -> dict[str, str]:
        return app_role_key(self.account_id, self.bucket, self.arn)

    def copy(self) -> "AppRole":
        return copy.deepcopy(self)

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "AppRole":
        where = _check_item(item, allowed=_APP_ROLE_ATTRS, sk_prefix=APP_ROLE_PREFIX, kind="app role")
        raw_status = item.get("status")
        try:
            status = Status.REACHABLE if raw_status in (None, "") else Status(str(raw_status))
        except ValueError:
            raise StoreShapeError(f"{where}: unknown status '{raw_status}'") from None
        return cls(
            account_id=str(item["accountId"]),
            arn=str(item["arn"]),
            name=str(item["name"]),
            bucket=str(item["bucket"]),
            qualifier=str(item.get("qualifier") or ""),
            boundary_policy_arn=str(item.get("boundaryPolicyArn") or ""),
            bucket_kms_arn=str(item.get("bucketKmsArn") or ""),
            bucket_region=str(item.get("bucketRegion") or ""),
            main_region=str(item.get("mainRegion") or ""),
            aws_partition=str(item.get("awsPartition") or "aws"),
            status=status,
            status_msg=str(item.get("statusMsg") or ""),
            status_at=str(item.get("statusAt") or ""),
            studies=_studies_from_item(item.get("studies"), where=where),
            created_at=str(item.get("createdAt") or ""),
            updated_at=str(item.get("updatedAt") or ""),
        )

    def to_item(self) -> dict[str, Any]:
        """Attribute values for an update; ``None`` means the attribute is removed."""

        return {
            "accountId": self.account_id,
            "arn": self.arn,
            "name": self.name,
            "bucket": self.bucket,
            "qualifier": self.qualifier,
            "boundaryPolicyArn": self.boundary_policy_arn,
            "bucketKmsArn": self.bucket_kms_arn or None,
            "bucketRegion": self.bucket_region or None,
            "mainRegion": self.main_region or None,
            "awsPartition": self.aws_partition,
            # reachable is the default and is never stored.
            "status": None if self.status == Status.REACHABLE else self.status.value,
            "statusMsg": self.status_msg or None,
            "statusAt": self.status_at or None,
            "studies": {k: v.to_dict() for k, v in self.studies.items()},
        }

    def to_json(self) -> dict[str, Any]:
        out = {k: v for k, v in self.to_item().items() if v is not None}
        out["status"] = self.status.value
        out["createdAt"] = self.created_at
        out["updatedAt"] = self.updated_at
        return out


@dataclass
class FsRole:
    account_id: str
    arn: str
    name: str
    bucket: str
    app_role_arn: str
    qualifier: str = ""
    boundary_policy_arn: str = ""
    bucket_kms_arn: str = ""
    bucket_region: str = ""
    main_region: str = ""
    aws_partition: str = "aws"
    studies: dict[str, StudyEntry] = field(default_factory=dict)
    trust: set[str] = field(default_factory=set)
    created_at: str = ""
    updated_at: str = ""

    def key(self) -> dict[str, str]:
        return fs_role_key(self.account_id, self.bucket, self.arn)

    def copy(self) -> "FsRole":
        return copy.deepcopy(self)

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "FsRole":
        where = _check_item(item, allowed=_FS_ROLE_ATTRS, sk_prefix=FS_ROLE_PREFIX, kind="fs role")
        trust = item.get("trust")
        if trust is not None and not isinstance(trust, (set, frozenset, list)):
            raise StoreShapeError(f"{where}: trust must be a string set")
        return cls(
            account_id=str(item["accountId"]),
            arn=str(item["arn"]),
            name=str(item["name"]),
            bucket=str(item["bucket"]),
            app_role_arn=str(item.get("appRoleArn") or ""),
            qualifier=str(item.get("qualifier") or ""),
            boundary_policy_arn=str(item.get("boundaryPolicyArn") or ""),
            bucket_kms_arn=str(item.get("bucketKmsArn") or ""),
            bucket_region=str(item.get("bucketRegion") or ""),
            main_region=str(item.get("mainRegion") or ""),
            aws_partition=str(item.get("awsPartition") or "aws"),
            studies=_studies_from_item(item.get("studies"), where=where),
            trust={str(t) for t in (trust or ())},
            created_at=str(item.get("createdAt") or ""),
            updated_at=str(item.get("updatedAt") or ""),
        )

    def to_item(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "arn": self.arn,
            "name": self.name,
            "bucket": self.bucket,
            "appRoleArn": self.app_role_arn,
            "qualifier": self.qualifier,
            "boundaryPolicyArn": self.boundary_policy_arn,
            "bucketKmsArn": self.bucket_kms_arn or None,
            "bucketRegion": self.bucket_region or None,
            "mainRegion": self.main_region or None,
            "awsPartition": self.aws_partition,
            "studies": {k: v.to_dict() for k, v in self.studies.items()},
            # DynamoDB rejects empty sets.
            "trust": set(self.trust) or None,
        }

    def to_json(self) -> dict[str, Any]:
        out = {k: v for k, v in self.to_item().items() if v is not None}
        out["trust"] = sorted(self.trust)
        out["createdAt"] = self.created_at
        out["updatedAt"] = self.updated_at
        return out


@dataclass
class Environment:
    id: str
    study_roles: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Environment":
        if not isinstance(raw, Mapping):
            raise ValidationError("environment must be an object")
        env_id = str(raw.get("id") or "").strip()
        if not env_id:
            raise ValidationError("environment id is required")
        roles = raw.get("studyRoles") or {}
        if not isinstance(roles, Mapping):
            raise ValidationError("environment studyRoles must be an object")
        return cls(id=env_id, study_roles={str(k): str(v) for k, v in roles.items()})
