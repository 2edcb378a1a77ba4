import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
for path in (ROOT, ROOT / "tests"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from fakes import MAIN_ACCOUNT, FakeDynamo, FakeIam, FakeIamClients  # noqa: E402
from study_roles.services import build_services  # noqa: E402
from study_roles.settings import Settings  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        role_allocations_table="RoleAllocations",
        resource_usages_table="ResourceUsages",
        locks_table="Locks",
        environments_table="Environments",
        main_account_id=MAIN_ACCOUNT,
        aws_region="us-east-1",
        provision_pause_seconds=0.0,
    )


@pytest.fixture
def ddb():
    return FakeDynamo()


@pytest.fixture
def iam():
    return FakeIam()


@pytest.fixture
def services(settings, ddb, iam):
    svc = build_services(settings, dynamodb=ddb, iam_clients=FakeIamClients(iam))
    # No real waiting between IAM retries.
    svc.fs_roles.provisioner.sleep_fn = lambda seconds: None
    return svc
