from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .app_roles import ApplicationRoleService
from .env_resources import EnvironmentResourceService
from .fs_roles import FilesystemRoleService
from .iam_provisioner import AppRoleIamClients, FsRoleProvisioner, IamClients
from .locks import LockService
from .resource_usage import ResourceUsageService
from .settings import Settings
from .store import DynamoStore, EnvironmentStudyRolesStore, RoleAllocationStore, ThreadLocalDynamo


@dataclass(frozen=True)
class Services:
    settings: Settings
    store: RoleAllocationStore
    usage: ResourceUsageService
    locks: LockService
    app_roles: ApplicationRoleService
    fs_roles: FilesystemRoleService
    env_resources: EnvironmentResourceService


def build_services(
    settings: Settings,
    *,
    dynamodb: Any = None,
    iam_clients: IamClients | None = None,
) -> Services:
    """Wire the services against real tables; tests pass fakes for ``dynamodb`` and ``iam_clients``."""

    settings.require_tables()
    # Group workers run on threads; boto3 resources and sessions stay per thread.
    ddb = dynamodb if dynamodb is not None else ThreadLocalDynamo(settings.aws_region)

    store = RoleAllocationStore(ddb.Table(settings.role_allocations_table))
    usage = ResourceUsageService(DynamoStore(ddb.Table(settings.resource_usages_table)))
    locks = LockService(ddb.Table(settings.locks_table))
    app_roles = ApplicationRoleService(store, settings)
    provisioner = FsRoleProvisioner(iam_clients or AppRoleIamClients(region=settings.aws_region), settings)
    fs_roles = FilesystemRoleService(store, usage, app_roles, provisioner, settings)
    env_resources = EnvironmentResourceService(
        fs_roles,
        locks,
        EnvironmentStudyRolesStore(ddb.Table(settings.environments_table)),
        settings,
    )
    return Services(
        settings=settings,
        store=store,
        usage=usage,
        locks=locks,
        app_roles=app_roles,
        fs_roles=fs_roles,
        env_resources=env_resources,
    )
