from __future__ import annotations

from typing import Any, Callable

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from . import app_role_methods
from .context import DEFAULT_CONDITIONS, Authorizer, ConditionAuthorizer, RequestContext
from .entities import AppRole, Status, Study, account_id_from_role_arn
from .retry import epoch_millis
from .settings import Settings
from .shared import NotFoundError, OpError, _require_str, error_code, log_event, now_iso
from .store import RoleAllocationStore

WRITE_CONFLICT_ATTEMPTS = 5


class ApplicationRoleService:
    """First-fit bin packing of studies into boundary (application) roles."""

    def __init__(
        self,
        store: RoleAllocationStore,
        settings: Settings,
        *,
        authorizer: Authorizer | None = None,
        clock: Callable[[], int] = epoch_millis,
    ) -> None:
        self.store = store
        self.settings = settings
        self.authorizer = authorizer or ConditionAuthorizer("application-roles")
        self.clock = clock

    def _authorize(self, ctx: RequestContext, action: str, subject: Any = None) -> None:
        self.authorizer.assert_authorized(
            ctx,
            action=action,
            conditions=DEFAULT_CONDITIONS,
            subjects=() if subject is None else (subject,),
        )

    def find(self, ctx: RequestContext, account_id: str, bucket: str, arn: str) -> AppRole | None:
        self._authorize(ctx, "read", {"accountId": account_id, "bucket": bucket, "arn": arn})
        return self.store.get_app_role(account_id, bucket, arn)

    def must_find(self, ctx: RequestContext, account_id: str, bucket: str, arn: str) -> AppRole:
        role = self.find(ctx, account_id, bucket, arn)
        if role is None:
            raise NotFoundError(f"application role '{arn}' for bucket '{bucket}' does not exist")
        return role

    def find_for_study(self, ctx: RequestContext, study: Study) -> AppRole:
        account_id = study.account_id or account_id_from_role_arn(study.app_role_arn)
        return self.must_find(ctx, account_id, study.bucket, study.app_role_arn)

    def list(self, ctx: RequestContext, account_id: str, bucket: str | None = None) -> list[AppRole]:
        account_id = _require_str(account_id, "account id")
        self._authorize(ctx, "list", {"accountId": account_id, "bucket": bucket})
        return self.store.list_app_roles(account_id, bucket)

    def allocate_role(self, ctx: RequestContext, account_id: str, bucket: str, study: Study) -> AppRole | None:
        if not study.uses_roles:
            return None
        self._authorize(ctx, "allocate", {"accountId": account_id, "bucket": bucket, "studyId": study.id})

        for _ in range(WRITE_CONFLICT_ATTEMPTS):
            roles = self.store.list_app_roles(account_id, bucket)
            for role in roles:
                if app_role_methods.has_study(role, study):
                    return role

            selected, condition = self._first_fit(roles, study)
            created = condition is None
            if created:
                selected = self._fresh_role(roles, study)
                condition = Attr("pk").not_exists()
            try:
                saved = self.store.put_app_role(selected, condition=condition)
            except ClientError as e:
                if error_code(e) != "ConditionalCheckFailedException":
                    raise
                # Another allocation changed the role list; rescan.
                log_event("app_role_write_conflict", role=selected.arn, study_id=study.id)
                continue
            if created:
                log_event(
                    "app_role_created",
                    role=saved.arn,
                    account_id=account_id,
                    bucket=bucket,
                    study_id=study.id,
                )
            return saved
        raise OpError(
            f"unable to place study '{study.id}' in an application role for bucket '{bucket}' "
            f"after {WRITE_CONFLICT_ATTEMPTS} conflicting writes"
        )

    def _first_fit(self, roles: list[AppRole], study: Study) -> tuple[AppRole | None, Any]:
        for role in roles:
            candidate = app_role_methods.add_study(role, study)
            if not app_role_methods.max_reached(candidate, self.settings.app_role_policy_max_size):
                # Written only if nobody has updated the role since it was read.
                return candidate, Attr("updatedAt").eq(role.updated_at)
        return None, None

    def _fresh_role(self, roles: list[AppRole], study: Study) -> AppRole:
        taken = {r.name for r in roles}
        created_ms = self.clock()
        main_region = self.settings.aws_region or ""
        fresh = app_role_methods.new_app_role(study, main_region=main_region, created_ms=created_ms)
        # Two roles created within the same millisecond would share a name.
        while fresh.name in taken:
            created_ms += 1
            fresh = app_role_methods.new_app_role(study, main_region=main_region, created_ms=created_ms)
        return app_role_methods.add_study(fresh, study)


    def update_status(
        self,
        ctx: RequestContext,
        app_role: AppRole,
        status: Status | str,
        status_msg: str | None = None,
    ) -> AppRole:
        parsed = status if isinstance(status, Status) else Status.parse(status)
        self._authorize(ctx, "update-status", {"arn": app_role.arn, "status": parsed.value})
        item = {
            "status": None if parsed == Status.REACHABLE else parsed.value,
            "statusMsg": (status_msg or "").strip() or None,
            "statusAt": now_iso(),
        }
        try:
            out = self.store.update(app_role.key(), item, condition=Attr("pk").exists())
        except ClientError as e:
            if error_code(e) == "ConditionalCheckFailedException":
                raise NotFoundError(f"application role '{app_role.arn}' does not exist") from e
            raise
        return AppRole.from_item(out)

    def provide_cfn_resources(self, ctx: RequestContext, account_id: str) -> dict[str, Any]:
        main_account_id = _require_str(self.settings.main_account_id, "main account id", hint="MAIN_ACCOUNT_ID")
        resources: dict[str, Any] = {}
        for role in self.list(ctx, account_id):
            resources.update(app_role_methods.cfn_resources(role, main_account_id))
        return resources
