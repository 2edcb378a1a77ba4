"""IAM side of filesystem roles, executed as the owning application role."""

from __future__ import annotations

from typing import Any, Callable, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .entities import FsRole
from .fs_role_methods import INLINE_POLICY_NAME, to_inline_policy_doc, to_trust_policy_doc
from .retry import exponential_interval, retry, sleep
from .settings import Settings
from .shared import ForbiddenError, ProvisioningError, compact_json, error_code, log_event

SESSION_NAME = "study-roles"


class IamClients(Protocol):
    def iam_for(self, app_role_arn: str, *, study_id: str = "") -> Any: ...


class AppRoleIamClients:
    """Builds IAM clients from STS credentials of an application role.

    Each call builds its own session: calls arrive from concurrent group workers.
    """

    def __init__(
        self,
        session_factory: Callable[[], Any] | None = None,
        *,
        region: str | None = None,
    ) -> None:
        self.session_factory = session_factory or (lambda: boto3.session.Session(region_name=region))
        self.region = region

    def iam_for(self, app_role_arn: str, *, study_id: str = "") -> Any:
        session = self.session_factory()
        try:
            assumed = session.client("sts", region_name=self.region).assume_role(
                RoleArn=app_role_arn,
                RoleSessionName=SESSION_NAME,
            )
        except (ClientError, BotoCoreError) as e:
            raise ForbiddenError(
                f"unable to assume application role '{app_role_arn}' for study '{study_id}' ({error_code(e) or e})"
            ) from e
        creds = assumed.get("Credentials") or {}
        return session.client(
            "iam",
            aws_access_key_id=creds.get("AccessKeyId"),
            aws_secret_access_key=creds.get("SecretAccessKey"),
            aws_session_token=creds.get("SessionToken"),
        )


class FsRoleProvisioner:
    def __init__(
        self,
        clients: IamClients,
        settings: Settings,
        *,
        sleep_fn: Callable[[float], None] = sleep,
    ) -> None:
        self.clients = clients
        self.settings = settings
        self.sleep_fn = sleep_fn

    def _iam(self, fs_role: FsRole, study_id: str) -> Any:
        return self.clients.iam_for(fs_role.app_role_arn, study_id=study_id)

    def provision_role(self, fs_role: FsRole, *, study_id: str) -> None:
        iam = self._iam(fs_role, study_id)
        trust_doc = compact_json(to_trust_policy_doc(fs_role))
        try:
            iam.create_role(
                RoleName=fs_role.name,
                AssumeRolePolicyDocument=trust_doc,
                PermissionsBoundary=fs_role.boundary_policy_arn,
                MaxSessionDuration=self.settings.fs_role_max_session_seconds,
                Description="A role that allows member accounts to access study data",
            )
        except ClientError as e:
            if error_code(e) != "EntityAlreadyExists":
                raise ProvisioningError(
                    f"unable to create filesystem role '{fs_role.name}' for study '{study_id}'"
                ) from e
            # Left over from an interrupted attempt; bring its trust up to date.
            self._put_trust(iam, fs_role, study_id, trust_doc)

        # New roles are not immediately usable as policy targets.
        self.sleep_fn(self.settings.provision_pause_seconds)

        policy_doc = compact_json(to_inline_policy_doc(fs_role))
        try:
            retry(
                lambda: iam.put_role_policy(
                    RoleName=fs_role.name,
                    PolicyName=INLINE_POLICY_NAME,
                    PolicyDocument=policy_doc,
                ),
                attempts=self.settings.put_policy_attempts,
                interval_fn=exponential_interval,
                should_retry=lambda e: isinstance(e, ClientError),
                sleep_fn=self.sleep_fn,
            )
        except ClientError as e:
            raise ProvisioningError(
                f"unable to attach the inline policy to filesystem role '{fs_role.name}' for study '{study_id}'"
            ) from e
        log_event(
            "fs_role_provisioned",
            role=fs_role.arn,
            study_id=study_id,
            trust_count=len(fs_role.trust),
            policy_size=len(policy_doc),
        )

    def _put_trust(self, iam: Any, fs_role: FsRole, study_id: str, trust_doc: str) -> None:
        try:
            iam.update_assume_role_policy(RoleName=fs_role.name, PolicyDocument=trust_doc)
        except ClientError as e:
            raise ProvisioningError(
                f"unable to update the trust policy of filesystem role '{fs_role.name}' for study '{study_id}'"
            ) from e

    def update_assume_role_policy(self, fs_role: FsRole, *, study_id: str) -> None:
        iam = self._iam(fs_role, study_id)
        trust_doc = compact_json(to_trust_policy_doc(fs_role))
        self._put_trust(iam, fs_role, study_id, trust_doc)
        log_event(
            "fs_role_trust_updated",
            role=fs_role.arn,
            study_id=study_id,
            trust_count=len(fs_role.trust),
            trust_size=len(trust_doc),
        )

    def deprovision_role(self, fs_role: FsRole, *, study_id: str) -> None:
        iam = self._iam(fs_role, study_id)
        steps = (
            (
                "delete the inline policy of",
                lambda: iam.delete_role_policy(RoleName=fs_role.name, PolicyName=INLINE_POLICY_NAME),
            ),
            ("delete", lambda: iam.delete_role(RoleName=fs_role.name)),
        )
        for what, step in steps:
            try:
                step()
            except ClientError as e:
                if error_code(e) == "NoSuchEntity":
                    continue
                raise ProvisioningError(
                    f"unable to {what} filesystem role '{fs_role.name}' for study '{study_id}'"
                ) from e
        log_event("fs_role_deprovisioned", role=fs_role.arn, study_id=study_id)
