"""Allocation and reclamation of filesystem roles.

A filesystem role grants one study variant (study id plus read/write flags) to
a set of trusted member accounts. Roles for a variant form a pool tracked in the
usage ledger; consumers (environments) are tracked per member account. A role
is deleted once nobody trusts it and it grants no study.
"""

from __future__ import annotations

from typing import Any

from . import fs_role_methods
from .app_roles import ApplicationRoleService
from .context import DEFAULT_CONDITIONS, Authorizer, ConditionAuthorizer, RequestContext
from .entities import Environment, FsRole, Study, account_id_from_role_arn
from .iam_provisioner import FsRoleProvisioner
from .resource_usage import ResourceUsageService
from .settings import Settings
from .shared import _require_str, log_event
from .store import RoleAllocationStore


class FilesystemRoleService:
    def __init__(
        self,
        store: RoleAllocationStore,
        usage: ResourceUsageService,
        app_roles: ApplicationRoleService,
        provisioner: FsRoleProvisioner,
        settings: Settings,
        *,
        authorizer: Authorizer | None = None,
    ) -> None:
        self.store = store
        self.usage = usage
        self.app_roles = app_roles
        self.provisioner = provisioner
        self.settings = settings
        self.authorizer = authorizer or ConditionAuthorizer("filesystem-roles")

    def _authorize(self, ctx: RequestContext, action: str, subject: Any) -> None:
        self.authorizer.assert_authorized(ctx, action=action, conditions=DEFAULT_CONDITIONS, subjects=(subject,))

    def list(self, ctx: RequestContext, account_id: str, bucket: str | None = None) -> list[FsRole]:
        account_id = _require_str(account_id, "account id")
        self._authorize(ctx, "list", {"accountId": account_id, "bucket": bucket})
        return self.store.list_fs_roles(account_id, bucket)

    def _add_consumer(
        self, ctx: RequestContext, resource: str, environment: Environment, member_account_id: str
    ) -> None:
        self.usage.add_usage(ctx, resource=resource, set_name=member_account_id, item=environment.id)

    def allocate_role(
        self,
        ctx: RequestContext,
        study: Study,
        environment: Environment,
        member_account_id: str,
    ) -> FsRole | None:
        if not study.uses_roles:
            return None
        member_account_id = _require_str(member_account_id, "member account id")
        self._authorize(
            ctx,
            "allocate",
            {"studyId": study.id, "environmentId": environment.id, "memberAccountId": member_account_id},
        )

        app_role = self.app_roles.find_for_study(ctx, study)
        resource = fs_role_methods.resource_id(study)
        set_name = fs_role_methods.pool_set_name(study.id)
        pool = self.usage.get_resource_usage(ctx, resource=resource, set_name=set_name).get(set_name, [])

        for arn in pool:
            role = self.store.get_fs_role(app_role.account_id, app_role.bucket, arn)
            if role is None or not fs_role_methods.has_study(role, study):
                continue
            if fs_role_methods.is_trusted(role, member_account_id):
                self._add_consumer(ctx, resource, environment, member_account_id)
                return role
            candidate = fs_role_methods.add_member(role, member_account_id)
            if fs_role_methods.trust_max_reached(candidate, self.settings.fs_role_trust_max_size):
                continue
            self.provisioner.update_assume_role_policy(candidate, study_id=study.id)
            saved = self.store.put_fs_role(candidate)
            self._add_consumer(ctx, resource, environment, member_account_id)
            return saved

        name = self._next_role_name(app_role.arn, app_role.qualifier or study.qualifier, resource, pool)
        arn = fs_role_methods.role_arn(
            aws_partition=app_role.aws_partition, account_id=app_role.account_id, name=name
        )
        # A record without a pool entry is left over from an interrupted allocation.
        orphan = self.store.get_fs_role(app_role.account_id, app_role.bucket, arn)
        if orphan is not None and fs_role_methods.has_study(orphan, study):
            # The record is only written after provisioning, so the IAM role exists.
            if fs_role_methods.is_trusted(orphan, member_account_id):
                saved = orphan
            else:
                role = fs_role_methods.add_member(orphan, member_account_id)
                self.provisioner.update_assume_role_policy(role, study_id=study.id)
                saved = self.store.put_fs_role(role)
        else:
            base = orphan or fs_role_methods.new_fs_role(app_role, study, name=name)
            role = fs_role_methods.add_member(fs_role_methods.add_study(base, study), member_account_id)
            self.provisioner.provision_role(role, study_id=study.id)
            saved = self.store.put_fs_role(role)

        self._add_consumer(ctx, resource, environment, member_account_id)
        self.usage.add_usage(ctx, resource=resource, set_name=set_name, item=saved.arn)
        log_event(
            "fs_role_allocated",
            role=saved.arn,
            study_id=study.id,
            environment_id=environment.id,
            adopted=orphan is not None,
        )
        return saved

    def _next_role_name(self, app_role_arn: str, qualifier: str, resource: str, pool: list[str]) -> str:
        taken = {arn.rpartition("/")[2] for arn in pool}
        slot = 0
        while True:
            name = fs_role_methods.role_name(
                qualifier=qualifier, app_role_arn=app_role_arn, resource=resource, slot=slot
            )
            if name not in taken:
                return name
            slot += 1

    def deallocate_role(
        self,
        ctx: RequestContext,
        fs_role_arn: str,
        study: Study,
        environment: Environment,
        member_account_id: str,
    ) -> FsRole | None:
        """Release one consumer. Returns the role if it was changed and kept; ``None`` if untouched or deleted."""

        if not study.uses_roles:
            return None
        fs_role_arn = _require_str(fs_role_arn, "filesystem role arn")
        member_account_id = _require_str(member_account_id, "member account id")
        self._authorize(
            ctx,
            "deallocate",
            {"studyId": study.id, "environmentId": environment.id, "memberAccountId": member_account_id},
        )

        resource = fs_role_methods.resource_id(study)
        change = self.usage.remove_usage(ctx, resource=resource, set_name=member_account_id, item=environment.id)
        if change.items:
            return None

        role = self.store.get_fs_role(account_id_from_role_arn(fs_role_arn), study.bucket, fs_role_arn)
        if role is None:
            return None

        if fs_role_methods.is_trusted(role, member_account_id):
            role = fs_role_methods.remove_member(role, member_account_id)
            if role.trust:
                self.provisioner.update_assume_role_policy(role, study_id=study.id)
            role = self.store.put_fs_role(role)
        if role.trust:
            return role

        role = self.store.put_fs_role(fs_role_methods.remove_study(role, study))
        if role.studies:
            return role

        self.provisioner.deprovision_role(role, study_id=study.id)
        self.store.delete_fs_role(role)
        self.usage.remove_usage(
            ctx, resource=resource, set_name=fs_role_methods.pool_set_name(study.id), item=role.arn
        )
        log_event("fs_role_reclaimed", role=role.arn, study_id=study.id, environment_id=environment.id)
        return None
