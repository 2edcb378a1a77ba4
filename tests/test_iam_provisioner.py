import json

import pytest
from botocore.exceptions import ClientError

from fakes import FakeIam, FakeIamClients, client_error
from study_roles.entities import EnvPermission, FsRole, StudyEntry
from study_roles.iam_provisioner import AppRoleIamClients, FsRoleProvisioner
from study_roles.settings import Settings
from study_roles.shared import ForbiddenError, ProvisioningError

APP_ROLE_ARN = "arn:aws:iam::222222222222:role/swb-t1-app-1700000000000"


def _role(trust=("333333333333",)) -> FsRole:
    return FsRole(
        account_id="222222222222",
        arn="arn:aws:iam::222222222222:role/swb-t1-fs-abc",
        name="swb-t1-fs-abc",
        bucket="study-data",
        app_role_arn=APP_ROLE_ARN,
        qualifier="swb-t1",
        boundary_policy_arn="arn:aws:iam::222222222222:policy/swb-t1-app-1700000000000",
        studies={
            "s1": StudyEntry(
                folder="studies/s1/",
                access_type="readwrite",
                env_permission=EnvPermission(read=True, write=True),
            )
        },
        trust=set(trust),
    )


def _provisioner(iam: FakeIam, sleeps: list[float]) -> FsRoleProvisioner:
    return FsRoleProvisioner(FakeIamClients(iam), Settings(), sleep_fn=sleeps.append)


def test_provision_creates_role_then_puts_policy():
    iam, sleeps = FakeIam(), []
    _provisioner(iam, sleeps).provision_role(_role(), study_id="s1")

    assert [name for name, _ in iam.calls] == ["create_role", "put_role_policy"]
    created = iam.calls[0][1]
    assert created["MaxSessionDuration"] == 43200
    assert json.loads(created["AssumeRolePolicyDocument"])["Statement"][0]["Principal"] == {
        "AWS": ["333333333333"]
    }
    assert sleeps == [0.5]
    policy = json.loads(iam.roles["swb-t1-fs-abc"]["policies"]["StudyS3AccessPolicy"])
    assert policy["Statement"][0]["Sid"] == "S3StudyReadWriteAccess"


def test_put_policy_retried_with_backoff():
    iam, sleeps = FakeIam(), []
    iam.fail("put_role_policy", "NoSuchEntity", "NoSuchEntity")

    _provisioner(iam, sleeps).provision_role(_role(), study_id="s1")

    assert iam.count("put_role_policy") == 3
    assert sleeps == [0.5, 0.5, 1.0]


def test_put_policy_gives_up_after_five_attempts():
    iam, sleeps = FakeIam(), []
    iam.fail("put_role_policy", *["MalformedPolicyDocument"] * 5)

    with pytest.raises(ProvisioningError) as err:
        _provisioner(iam, sleeps).provision_role(_role(), study_id="s1")

    assert "swb-t1-fs-abc" in str(err.value)
    assert "s1" in str(err.value)
    assert isinstance(err.value.__cause__, ClientError)
    assert sleeps == [0.5, 0.5, 1.0, 2.0, 4.0]


def test_existing_role_gets_trust_repushed():
    iam, sleeps = FakeIam(), []
    provisioner = _provisioner(iam, sleeps)
    provisioner.provision_role(_role(), study_id="s1")

    provisioner.provision_role(_role(trust=("333333333333", "444444444444")), study_id="s1")

    assert iam.count("update_assume_role_policy") == 1
    trust = json.loads(iam.roles["swb-t1-fs-abc"]["trust"])
    assert trust["Statement"][0]["Principal"]["AWS"] == ["333333333333", "444444444444"]


def test_unexpected_create_error_is_wrapped():
    iam, sleeps = FakeIam(), []
    iam.fail("create_role", "LimitExceeded")

    with pytest.raises(ProvisioningError):
        _provisioner(iam, sleeps).provision_role(_role(), study_id="s1")
    assert iam.count("put_role_policy") == 0


def test_deprovision_absorbs_missing_entities():
    iam, sleeps = FakeIam(), []
    provisioner = _provisioner(iam, sleeps)

    provisioner.deprovision_role(_role(), study_id="s1")

    assert [name for name, _ in iam.calls] == ["delete_role_policy", "delete_role"]


def test_deprovision_wraps_other_errors():
    iam, sleeps = FakeIam(), []
    provisioner = _provisioner(iam, sleeps)
    provisioner.provision_role(_role(), study_id="s1")
    iam.fail("delete_role", "DeleteConflict")

    with pytest.raises(ProvisioningError):
        provisioner.deprovision_role(_role(), study_id="s1")


class _FakeSts:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def assume_role(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return {"Credentials": {"AccessKeyId": "AK", "SecretAccessKey": "SK", "SessionToken": "ST"}}


class _FakeSession:
    def __init__(self, sts):
        self.sts = sts
        self.clients = []

    def client(self, name, **kwargs):
        self.clients.append((name, kwargs))
        return self.sts if name == "sts" else {"service": name, **kwargs}


def test_iam_client_uses_assumed_app_role_credentials():
    sts = _FakeSts()
    session = _FakeSession(sts)

    iam = AppRoleIamClients(lambda: session, region="us-east-1").iam_for(APP_ROLE_ARN, study_id="s1")

    assert sts.calls[0]["RoleArn"] == APP_ROLE_ARN
    assert iam["service"] == "iam"
    assert iam["aws_session_token"] == "ST"


def test_iam_client_assume_failure_is_forbidden():
    session = _FakeSession(_FakeSts(error=client_error("AccessDenied", "AssumeRole")))

    with pytest.raises(ForbiddenError) as err:
        AppRoleIamClients(lambda: session).iam_for(APP_ROLE_ARN, study_id="s1")
    assert "s1" in str(err.value)


def test_each_iam_client_comes_from_its_own_session():
    sessions = []

    def new_session():
        sessions.append(_FakeSession(_FakeSts()))
        return sessions[-1]

    clients = AppRoleIamClients(new_session, region="us-east-1")
    clients.iam_for(APP_ROLE_ARN, study_id="s1")
    clients.iam_for(APP_ROLE_ARN, study_id="s2")

    assert len(sessions) == 2
    assert [name for name, _ in sessions[0].clients] == ["sts", "iam"]
