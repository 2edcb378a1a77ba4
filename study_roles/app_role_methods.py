"""Pure operations on AppRole records: study membership, documents, CloudFormation."""

from __future__ import annotations

from typing import Any

from .entities import AppRole, EnvPermission, Status, Study, StudyEntry
from .retry import epoch_millis
from .settings import APP_ROLE_POLICY_MAX_SIZE
from .shared import compact_json
from .study_policy import POLICY_VERSION, StudyPolicy

APP_ROLE_MAX_SESSION_SECONDS = 43200
ESSENTIALS_POLICY_NAME = "swb-app-role-essentials"


def has_study(app_role: AppRole, study: Study) -> bool:
    return study.id in app_role.studies


def add_study(app_role: AppRole, study: Study) -> AppRole:
    updated = app_role.copy()
    updated.studies[study.id] = StudyEntry.for_app_role(study)
    return updated


def to_study_policy(app_role: AppRole) -> StudyPolicy:
    policy = StudyPolicy()
    for entry in app_role.studies.values():
        policy.add_study(
            bucket=app_role.bucket,
            folder=entry.folder,
            permission=EnvPermission.from_access_type(entry.access_type),
            kms_arn=entry.policy_kms_arn(app_role.bucket_kms_arn),
            aws_partition=app_role.aws_partition,
        )
    return policy


def to_policy_doc(app_role: AppRole) -> dict[str, Any]:
    return to_study_policy(app_role).to_policy_doc()


def _logical_suffix(app_role: AppRole) -> str:
    return app_role.name.replace("-", "")


def managed_policy_logical_id(app_role: AppRole) -> str:
    return f"ManagedPolicy{_logical_suffix(app_role)}"


def role_logical_id(app_role: AppRole) -> str:
    return f"AppRole{_logical_suffix(app_role)}"


def managed_policy_resource(app_role: AppRole) -> dict[str, Any]:
    return {
        "Type": "AWS::IAM::ManagedPolicy",
        "Properties": {
            "Description": "Permission boundary for the study access application role",
            "ManagedPolicyName": app_role.name,
            "PolicyDocument": to_policy_doc(app_role),
        },
    }


def role_resource(app_role: AppRole, main_account_id: str) -> dict[str, Any]:
    partition = app_role.aws_partition
    account = app_role.account_id
    qualifier = app_role.qualifier
    return {
        "Type": "AWS::IAM::Role",
        "Properties": {
            "RoleName": app_role.name,
            "AssumeRolePolicyDocument": {
                "Version": POLICY_VERSION,
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Principal": {"AWS": f"arn:{partition}:iam::{main_account_id}:root"},
                        "Action": ["sts:AssumeRole"],
                    }
                ],
            },
            "Description": "An application role that allows the main account to manage study filesystem roles",
            "ManagedPolicyArns": [{"Ref": managed_policy_logical_id(app_role)}],
            "MaxSessionDuration": APP_ROLE_MAX_SESSION_SECONDS,
            "Policies": [
                {
                    "PolicyName": ESSENTIALS_POLICY_NAME,
                    "PolicyDocument": {
                        "Version": POLICY_VERSION,
                        "Statement": [
                            {
                                "Sid": "RoleAndPolicyManagement",
                                "Effect": "Allow",
                                "Action": [
                                    "iam:CreatePolicy",
                                    "iam:UpdateAssumeRolePolicy",
                                    "iam:AttachRolePolicy",
                                    "iam:PutRolePolicy",
                                    "iam:DeletePolicy",
                                    "iam:DeleteRolePolicy",
                                    "iam:DeleteRole",
                                    "iam:GetPolicy",
                                    "iam:GetRole",
                                    "iam:GetRolePolicy",
                                ],
                                "Resource": [
                                    f"arn:{partition}:iam::{account}:role/{qualifier}-*",
                                    f"arn:{partition}:iam::{account}:policy/{qualifier}-*",
                                ],
                            },
                            {
                                "Sid": "RoleCreation",
                                "Effect": "Allow",
                                "Action": ["iam:CreateRole"],
                                "Resource": "*",
                                "Condition": {
                                    "StringEquals": {"iam:PermissionsBoundary": app_role.boundary_policy_arn}
                                },
                            },
                        ],
                    },
                }
            ],
        },
    }


def cfn_resources(app_role: AppRole, main_account_id: str) -> dict[str, Any]:
    return {
        managed_policy_logical_id(app_role): managed_policy_resource(app_role),
        role_logical_id(app_role): role_resource(app_role, main_account_id),
    }


def max_reached(app_role: AppRole, max_size: int = APP_ROLE_POLICY_MAX_SIZE) -> bool:
    rendered = compact_json({managed_policy_logical_id(app_role): managed_policy_resource(app_role)})
    return len(rendered) >= max_size


def new_app_role(
    study: Study,
    *,
    main_region: str = "",
    created_ms: int | None = None,
) -> AppRole:
    partition = study.aws_partition or "aws"
    name = f"{study.qualifier}-app-{epoch_millis() if created_ms is None else created_ms}"
    return AppRole(
        account_id=study.account_id,
        arn=f"arn:{partition}:iam::{study.account_id}:role/{name}",
        name=name,
        bucket=study.bucket,
        qualifier=study.qualifier,
        boundary_policy_arn=f"arn:{partition}:iam::{study.account_id}:policy/{name}",
        bucket_kms_arn=study.kms_arn if study.kms_scope == "bucket" else "",
        bucket_region=study.region,
        main_region=main_region,
        aws_partition=partition,
        status=Status.PENDING,
    )
