import pytest

from fakes import study_dict
from study_roles.entities import (
    EnvPermission,
    Environment,
    Status,
    Study,
    StudyEntry,
    account_id_from_role_arn,
)
from study_roles.shared import ValidationError


def test_study_from_camel_case():
    study = Study.from_dict(study_dict("s1", vpceId="vpce-1"))

    assert study.account_id == "222222222222"
    assert study.kms_scope == "study"
    assert study.env_permission == EnvPermission(read=True, write=False)
    assert study.vpce_id == "vpce-1"
    assert study.uses_roles


def test_env_permission_defaults_from_access_type():
    raw = study_dict("s1", accessType="writeonly")
    raw.pop("envPermission")
    assert Study.from_dict(raw).env_permission == EnvPermission(read=False, write=True)


@pytest.mark.parametrize(
    "overrides",
    [{"id": ""}, {"accessType": "admin"}, {"kmsScope": "everything"}, {"envPermission": "rw"}],
)
def test_invalid_study_input(overrides):
    with pytest.raises(ValidationError):
        Study.from_dict(study_dict("s1", **overrides))


def test_environment_from_dict():
    env = Environment.from_dict({"id": "env-1", "studyRoles": {"s1": "arn"}})
    assert env.study_roles == {"s1": "arn"}
    with pytest.raises(ValidationError):
        Environment.from_dict({"studyRoles": {}})


def test_status_parse():
    assert Status.parse(" Reachable ") == Status.REACHABLE
    with pytest.raises(ValidationError):
        Status.parse("unknown")


def test_account_id_from_role_arn():
    assert account_id_from_role_arn("arn:aws-us-gov:iam::123456789012:role/x") == "123456789012"
    with pytest.raises(ValidationError):
        account_id_from_role_arn("arn:aws:s3:::bucket")


def test_bucket_scoped_entry_always_uses_the_bucket_key():
    entry = StudyEntry.for_app_role(
        Study.from_dict(study_dict("s1", kmsScope="bucket", kmsArn="arn:aws:kms:us-east-1:2:key/study"))
    )
    assert entry.policy_kms_arn("arn:aws:kms:us-east-1:2:key/bucket") == "arn:aws:kms:us-east-1:2:key/bucket"

    study_scoped = StudyEntry.for_app_role(Study.from_dict(study_dict("s2")))
    assert study_scoped.policy_kms_arn("arn:aws:kms:us-east-1:2:key/bucket") == study_scoped.kms_arn
    unencrypted = StudyEntry.for_app_role(Study.from_dict(study_dict("s3", kmsScope="none")))
    assert unencrypted.policy_kms_arn("arn:aws:kms:us-east-1:2:key/bucket") == ""
