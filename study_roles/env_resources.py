from __future__ import annotations

from typing import Any, Callable, Iterable, TypeVar

from .context import DEFAULT_CONDITIONS, Authorizer, ConditionAuthorizer, RequestContext, system_context
from .entities import Environment, Study
from .fs_roles import FilesystemRoleService
from .locks import LockService
from .retry import process_in_batches
from .settings import Settings
from .store import EnvironmentStore
from .study_policy import StudyPolicy

T = TypeVar("T")


def app_role_lock_id(app_role_arn: str) -> str:
    return f"roles-only-access-app-role-{app_role_arn}"


def group_by_app_role(studies: Iterable[Study]) -> dict[str, list[Study]]:
    groups: dict[str, list[Study]] = {}
    for study in studies:
        if study.uses_roles:
            groups.setdefault(study.app_role_arn, []).append(study)
    return groups


class EnvironmentResourceService:
    """Drives filesystem role (de)allocation for an environment, one lock per application role."""

    def __init__(
        self,
        fs_roles: FilesystemRoleService,
        locks: LockService,
        environments: EnvironmentStore,
        settings: Settings,
        *,
        authorizer: Authorizer | None = None,
    ) -> None:
        self.fs_roles = fs_roles
        self.locks = locks
        self.environments = environments
        self.settings = settings
        self.authorizer = authorizer or ConditionAuthorizer("environment-resources")

    def _authorize(self, ctx: RequestContext, action: str, environment: Environment) -> None:
        self.authorizer.assert_authorized(
            ctx, action=action, conditions=DEFAULT_CONDITIONS, subjects=({"environmentId": environment.id},)
        )

    def _run_groups(
        self,
        groups: dict[str, list[Study]],
        work: Callable[[list[Study]], T],
    ) -> list[T]:
        def _locked(entry: tuple[str, list[Study]]) -> T:
            app_role_arn, group = entry
            return self.locks.try_write_lock_and_run(
                app_role_lock_id(app_role_arn),
                lambda: work(group),
                expires_in=self.settings.lock_expires_in_seconds,
                attempts=self.settings.lock_attempts,
            )

        return process_in_batches(list(groups.items()), self.settings.group_batch_size, _locked)

    def allocate_study_resources(
        self,
        ctx: RequestContext,
        *,
        environment: Environment,
        studies: Iterable[Study],
        member_account_id: str,
    ) -> dict[str, str]:
        self._authorize(ctx, "allocate-study-resources", environment)
        groups = group_by_app_role(studies)
        if not groups:
            return dict(environment.study_roles)
        inner = system_context()

        def _allocate(group: list[Study]) -> dict[str, str]:
            out: dict[str, str] = {}
            for study in group:
                role = self.fs_roles.allocate_role(inner, study, environment, member_account_id)
                if role is not None:
                    out[study.id] = role.arn
            return out

        study_roles = dict(environment.study_roles)
        for allocated in self._run_groups(groups, _allocate):
            study_roles.update(allocated)
        self.environments.update_study_roles(ctx, environment.id, study_roles)
        environment.study_roles = study_roles
        return study_roles

    def deallocate_study_resources(
        self,
        ctx: RequestContext,
        *,
        environment: Environment,
        studies: Iterable[Study],
        member_account_id: str,
    ) -> dict[str, str]:
        self._authorize(ctx, "deallocate-study-resources", environment)
        mapped = [s for s in studies if environment.study_roles.get(s.id)]
        groups = group_by_app_role(mapped)
        if not groups:
            return dict(environment.study_roles)
        inner = system_context()

        def _deallocate(group: list[Study]) -> list[str]:
            released: list[str] = []
            for study in group:
                self.fs_roles.deallocate_role(
                    inner, environment.study_roles[study.id], study, environment, member_account_id
                )
                released.append(study.id)
            return released

        study_roles = dict(environment.study_roles)
        for released in self._run_groups(groups, _deallocate):
            for study_id in released:
                study_roles.pop(study_id, None)
        self.environments.update_study_roles(ctx, environment.id, study_roles)
        environment.study_roles = study_roles
        return study_roles

    def provide_env_role_policy(
        self,
        ctx: RequestContext,
        *,
        policy_doc: StudyPolicy,
        studies: Iterable[Study],
        environment: Environment,
    ) -> StudyPolicy:
        self._authorize(ctx, "provide-env-role-policy", environment)
        for study in studies:
            if study.uses_roles:
                policy_doc.add_study_role(environment.study_roles.get(study.id))
        return policy_doc

    def provide_study_mount(
        self,
        ctx: RequestContext,
        *,
        studies: Iterable[Study],
        s3_mounts: list[dict[str, Any]],
        environment: Environment,
    ) -> list[dict[str, Any]]:
        self._authorize(ctx, "provide-study-mount", environment)
        for study in studies:
            role_arn = environment.study_roles.get(study.id)
            if not study.uses_roles or not role_arn:
                continue
            mount: dict[str, Any] = {
                "id": study.id,
                "bucket": study.bucket,
                "region": study.region,
                "roleArn": role_arn,
                "prefix": study.folder,
                "readable": study.env_permission.read,
                "writeable": study.env_permission.write,
            }
            if study.kms_scope == "study" and study.kms_arn:
                mount["kmsArn"] = study.kms_arn
            if study.aws_partition != "aws":
                mount["awsPartition"] = study.aws_partition
            s3_mounts.append(mount)
        return s3_mounts
