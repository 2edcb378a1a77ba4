from __future__ import annotations

from typing import Any

from .entities import AppRole, EnvPermission, FsRole, Study, StudyEntry
from .id58 import digest_base58_22
from .settings import FS_ROLE_TRUST_MAX_SIZE
from .shared import compact_json
from .study_policy import StudyPolicy, trust_policy_doc

INLINE_POLICY_NAME = "StudyS3AccessPolicy"


def resource_id(study: Study) -> str:
    perm = study.env_permission
    return f"roles-only-access-study-{study.id}-r{int(perm.read)}w{int(perm.write)}"


def pool_set_name(study_id: str) -> str:
    return f"fs-roles-study-{study_id}"


def role_name(*, qualifier: str, app_role_arn: str, resource: str, slot: int) -> str:
    # Deterministic per slot so a retried allocation lands on the same IAM role.
    return f"{qualifier}-fs-{digest_base58_22(app_role_arn, resource, str(slot))}"


def role_arn(*, aws_partition: str, account_id: str, name: str) -> str:
    return f"arn:{aws_partition}:iam::{account_id}:role/{name}"


def has_study(fs_role: FsRole, study: Study) -> bool:
    entry = fs_role.studies.get(study.id)
    return entry is not None and entry.env_permission == study.env_permission


def add_study(fs_role: FsRole, study: Study) -> FsRole:
    updated = fs_role.copy()
    updated.studies[study.id] = StudyEntry.for_fs_role(study)
    return updated


def remove_study(fs_role: FsRole, study: Study) -> FsRole:
    updated = fs_role.copy()
    updated.studies.pop(study.id, None)
    return updated


def is_trusted(fs_role: FsRole, member_account_id: str) -> bool:
    return member_account_id in fs_role.trust


def add_member(fs_role: FsRole, member_account_id: str) -> FsRole:
    updated = fs_role.copy()
    updated.trust.add(member_account_id)
    return updated


def remove_member(fs_role: FsRole, member_account_id: str) -> FsRole:
    updated = fs_role.copy()
    updated.trust.discard(member_account_id)
    return updated


def to_study_policy(fs_role: FsRole) -> StudyPolicy:
    policy = StudyPolicy()
    for entry in fs_role.studies.values():
        policy.add_study(
            bucket=fs_role.bucket,
            folder=entry.folder,
            permission=entry.env_permission or EnvPermission.from_access_type(entry.access_type),
            kms_arn=entry.policy_kms_arn(fs_role.bucket_kms_arn),
            aws_partition=fs_role.aws_partition,
            vpce_id=entry.vpce_id,
        )
    return policy


def to_inline_policy_doc(fs_role: FsRole) -> dict[str, Any]:
    policy = to_study_policy(fs_role)
    if policy.has_vpce_studies():
        return policy.to_policy_doc_vpce_separated()
    return policy.to_policy_doc()


def to_trust_policy_doc(fs_role: FsRole) -> dict[str, Any]:
    return trust_policy_doc(fs_role.trust)


def trust_max_reached(fs_role: FsRole, max_size: int = FS_ROLE_TRUST_MAX_SIZE) -> bool:
    return len(compact_json(to_trust_policy_doc(fs_role))) >= max_size


def new_fs_role(app_role: AppRole, study: Study, *, name: str) -> FsRole:
    return FsRole(
        account_id=app_role.account_id,
        arn=role_arn(aws_partition=app_role.aws_partition, account_id=app_role.account_id, name=name),
        name=name,
        bucket=app_role.bucket,
        app_role_arn=app_role.arn,
        qualifier=app_role.qualifier or study.qualifier,
        boundary_policy_arn=app_role.boundary_policy_arn,
        bucket_kms_arn=app_role.bucket_kms_arn,
        bucket_region=app_role.bucket_region,
        main_region=app_role.main_region,
        aws_partition=app_role.aws_partition,
    )
