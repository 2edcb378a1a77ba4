"""Permission and trust document rendering for study access.

``StudyPolicy`` accumulates (bucket, folder, key, permission) authorizations and
renders them as an IAM policy document. The rendering is deterministic: the
same accumulated input always yields the same statements, Sids and ordering,
so documents can be diffed and measured for size.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

from .shared import ValidationError

POLICY_VERSION = "2012-10-17"

READ_ACTIONS = [
    "s3:GetObject",
    "s3:GetObjectTagging",
    "s3:GetObjectTorrent",
    "s3:GetObjectVersion",
    "s3:GetObjectVersionTagging",
    "s3:GetObjectVersionTorrent",
]

WRITE_ACTIONS = [
    "s3:AbortMultipartUpload",
    "s3:ListMultipartUploadParts",
    "s3:PutObject",
    "s3:PutObjectAcl",
    "s3:PutObjectTagging",
    "s3:PutObjectVersionTagging",
    "s3:DeleteObject",
    "s3:DeleteObjectTagging",
    "s3:DeleteObjectVersion",
    "s3:DeleteObjectVersionTagging",
]

LIST_ACTIONS = ["s3:ListBucket", "s3:ListBucketVersions"]

KMS_ACTIONS = ["kms:Decrypt", "kms:DescribeKey", "kms:Encrypt", "kms:GenerateDataKey", "kms:ReEncrypt*"]

WHOLE_BUCKET = "/"


def normalize_prefix(folder: str) -> str:
    f = str(folder or "").strip()
    if f == WHOLE_BUCKET:
        return WHOLE_BUCKET
    f = f.lstrip("/")
    if not f:
        # Only a literal "/" grants the whole bucket.
        raise ValidationError(f"study folder '{folder}' does not name a prefix")
    return f if f.endswith("/") else f + "/"


def bucket_arn(bucket: str, aws_partition: str = "aws") -> str:
    return f"arn:{aws_partition}:s3:::{bucket}"


def to_s3_arn(*, bucket: str, folder: str, aws_partition: str = "aws") -> str:
    prefix = normalize_prefix(folder)
    if prefix == WHOLE_BUCKET:
        return f"{bucket_arn(bucket, aws_partition)}/"
    return f"{bucket_arn(bucket, aws_partition)}/{prefix}"


def _permission_flags(permission: Any, *, folder: str) -> tuple[bool, bool]:
    if isinstance(permission, Mapping):
        has_both = "read" in permission and "write" in permission
        read, write = permission.get("read"), permission.get("write")
    else:
        has_both = hasattr(permission, "read") and hasattr(permission, "write")
        read, write = getattr(permission, "read", None), getattr(permission, "write", None)
    if not has_both:
        raise ValidationError(
            f"Invalid permission object '{permission}' for study '{folder}' was provided to a study policy instance"
        )
    return bool(read), bool(write)


@dataclass(frozen=True)
class _StudyItem:
    bucket_arn: str
    kms_arn: str
    prefix: str
    prefix_arn: str
    read: bool
    write: bool
    vpce_id: str = ""

    def list_prefix(self) -> str:
        # A study might be the whole bucket; s3:prefix must then be "*" and not "/*".
        return "*" if self.prefix == WHOLE_BUCKET else f"{self.prefix}*"


def _sid_token(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "", value)


class StudyPolicy:
    def __init__(self) -> None:
        # Keyed by normalized prefix arn, insertion ordered.
        self.studies: dict[str, _StudyItem] = {}
        self.role_arns: list[str] = []

    def add_study_role(self, role_arn: str | None) -> None:
        if not role_arn:
            return
        if role_arn not in self.role_arns:
            self.role_arns.append(role_arn)

    def add_study(
        self,
        *,
        bucket: str,
        folder: str,
        permission: Any,
        kms_arn: str | None = None,
        aws_partition: str = "aws",
        vpce_id: str | None = None,
    ) -> "StudyPolicy":
        _assert_study(bucket=bucket, folder=folder)
        read, write = _permission_flags(permission, folder=folder)
        prefix_arn = to_s3_arn(bucket=bucket, folder=folder, aws_partition=aws_partition)
        self.studies[prefix_arn] = _StudyItem(
            bucket_arn=bucket_arn(bucket, aws_partition),
            kms_arn=str(kms_arn or ""),
            prefix=normalize_prefix(folder),
            prefix_arn=prefix_arn,
            read=read,
            write=write,
            vpce_id=str(vpce_id or ""),
        )
        return self

    def remove_study(self, *, bucket: str, folder: str, aws_partition: str = "aws") -> "StudyPolicy":
        _assert_study(bucket=bucket, folder=folder)
        self.studies.pop(to_s3_arn(bucket=bucket, folder=folder, aws_partition=aws_partition), None)
        return self

    def group_by_bucket(self, studies: list[_StudyItem] | None = None) -> dict[str, list[_StudyItem]]:
        out: dict[str, list[_StudyItem]] = {}
        for study in self.studies.values() if studies is None else studies:
            out.setdefault(study.bucket_arn, []).append(study)
        return out

    def kms_arns(self) -> list[str]:
        out: list[str] = []
        for study in self.studies.values():
            if study.kms_arn and study.kms_arn not in out:
                out.append(study.kms_arn)
        return out

    def _object_and_list_statements(
        self,
        studies: list[_StudyItem],
        *,
        sid_suffix: str = "",
        condition: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        readonly = [s for s in studies if s.read and not s.write]
        readwrite = [s for s in studies if s.read and s.write]
        statements: list[dict[str, Any]] = []

        def _with_condition(stmt: dict[str, Any], extra: dict[str, Any] | None = None) -> dict[str, Any]:
            merged: dict[str, Any] = dict(extra or {})
            merged.update(condition or {})
            if merged:
                stmt["Condition"] = merged
            return stmt

        if readonly:
            statements.append(
                _with_condition(
                    {
                        "Sid": f"S3StudyReadAccess{sid_suffix}",
                        "Effect": "Allow",
                        "Action": list(READ_ACTIONS),
                        "Resource": [f"{s.prefix_arn}*" for s in readonly],
                    }
                )
            )
        if readwrite:
            statements.append(
                _with_condition(
                    {
                        "Sid": f"S3StudyReadWriteAccess{sid_suffix}",
                        "Effect": "Allow",
                        "Action": list(READ_ACTIONS) + list(WRITE_ACTIONS),
                        "Resource": [f"{s.prefix_arn}*" for s in readwrite],
                    }
                )
            )

        # One list statement per bucket, each enumerating the allowed prefixes.
        counter = 0
        for bucket, bucket_studies in self.group_by_bucket(studies).items():
            counter += 1
            statements.append(
                _with_condition(
                    {
                        "Sid": f"studyListS3Access{sid_suffix}{counter}",
                        "Effect": "Allow",
                        "Action": list(LIST_ACTIONS),
                        "Resource": bucket,
                    },
                    {"StringLike": {"s3:prefix": [s.list_prefix() for s in bucket_studies]}},
                )
            )
        return statements

    def _shared_statements(self) -> list[dict[str, Any]]:
        statements: list[dict[str, Any]] = []
        kms_arns = self.kms_arns()
        if kms_arns:
            statements.append(
                {
                    "Sid": "studyKMSAccess",
                    "Action": list(KMS_ACTIONS),
                    "Effect": "Allow",
                    "Resource": kms_arns,
                }
            )
        if self.role_arns:
            statements.append(
                {
                    "Sid": "studyAssumeRoles",
                    "Action": ["sts:AssumeRole"],
                    "Effect": "Allow",
                    "Resource": list(self.role_arns),
                }
            )
        return statements

    def to_policy_doc(self) -> dict[str, Any]:
        statements = self._object_and_list_statements(list(self.studies.values()))
        statements.extend(self._shared_statements())
        if not statements:
            return {}
        return {"Version": POLICY_VERSION, "Statement": statements}

    def to_policy_doc_vpce_separated(self) -> dict[str, Any]:
        """Like ``to_policy_doc`` but object/list access is pinned to each study's VPC endpoint."""

        by_vpce: dict[str, list[_StudyItem]] = {}
        for study in self.studies.values():
            by_vpce.setdefault(study.vpce_id, []).append(study)

        statements: list[dict[str, Any]] = []
        for vpce_id, studies in by_vpce.items():
            if not vpce_id:
                statements.extend(self._object_and_list_statements(studies))
                continue
            statements.extend(
                self._object_and_list_statements(
                    studies,
                    sid_suffix=_sid_token(vpce_id),
                    condition={"StringEquals": {"aws:SourceVpce": vpce_id}},
                )
            )
        statements.extend(self._shared_statements())
        if not statements:
            return {}
        return {"Version": POLICY_VERSION, "Statement": statements}

    def has_vpce_studies(self) -> bool:
        return any(s.vpce_id for s in self.studies.values())


def trust_policy_doc(principals: Any) -> dict[str, Any]:
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"AWS": sorted(str(p) for p in principals)},
                "Action": ["sts:AssumeRole"],
            }
        ],
    }


def _assert_study(*, bucket: str, folder: str) -> None:
    folder = str(folder or "").strip()
    errors: list[str] = []
    if not folder:
        errors.append("A study without a folder was provided to a study policy instance")
    if folder and not bucket:
        errors.append(f"A study folder '{folder}' was provided without a bucket name to a study policy instance")
    if errors:
        raise ValidationError(
            f"Invalid study '{folder}' and/or bucket information was provided to a study policy instance. "
            + ". ".join(errors)
        )
