from concurrent.futures import ThreadPoolExecutor

import boto3
import pytest

from fakes import FakeTable
from study_roles.context import system_context
from study_roles.entities import AppRole, EnvPermission, FsRole, Status, StudyEntry, app_role_key, fs_role_key
from study_roles.shared import NotFoundError, StoreShapeError
from study_roles.store import DynamoStore, EnvironmentStudyRolesStore, RoleAllocationStore, ThreadLocalDynamo

ARN = "arn:aws:iam::222222222222:role/swb-t1-fs-abc"


def _fs_role(**overrides) -> FsRole:
    values = dict(
        account_id="222222222222",
        arn=ARN,
        name="swb-t1-fs-abc",
        bucket="study-data",
        app_role_arn="arn:aws:iam::222222222222:role/swb-t1-app-1",
        studies={"s1": StudyEntry(folder="a/", env_permission=EnvPermission(read=True), vpce_id="vpce-1")},
        trust={"333333333333"},
    )
    values.update(overrides)
    return FsRole(**values)


def test_fs_role_roundtrip_keeps_trust_as_set():
    store = RoleAllocationStore(FakeTable())
    saved = store.put_fs_role(_fs_role())

    assert saved.trust == {"333333333333"}
    assert saved.studies["s1"].env_permission == EnvPermission(read=True, write=False)
    assert saved.studies["s1"].vpce_id == "vpce-1"
    assert saved.created_at == saved.updated_at


def test_empty_trust_is_removed_from_item():
    table = FakeTable()
    store = RoleAllocationStore(table)
    store.put_fs_role(_fs_role())
    saved = store.put_fs_role(_fs_role(trust=set()))

    key = fs_role_key("222222222222", "study-data", ARN)
    assert "trust" not in table.items[(key["pk"], key["sk"])]
    assert saved.trust == set()


def test_created_at_survives_updates():
    table = FakeTable()
    store = RoleAllocationStore(table)
    first = store.put_fs_role(_fs_role())
    key = fs_role_key("222222222222", "study-data", ARN)
    table.items[(key["pk"], key["sk"])]["createdAt"] = "2020-01-01T00:00:00.000000Z"

    second = store.put_fs_role(_fs_role(trust={"1", "2"}))

    assert second.created_at == "2020-01-01T00:00:00.000000Z"
    assert second.updated_at >= first.updated_at


def test_query_follows_pagination():
    table = FakeTable()
    store = RoleAllocationStore(table)
    for i in range(5):
        store.put_fs_role(_fs_role(arn=f"{ARN}{i}", name=f"n{i}"))

    rows = store.query("ACT#222222222222", "FS#study-data#", limit=2)

    assert len(rows) == 5
    assert [c[1]["ExclusiveStartKey"] is not None for c in table.calls if c[0] == "query"] == [False, True, True]


def test_app_role_without_status_reads_reachable():
    table = FakeTable()
    key = app_role_key("222222222222", "study-data", "arn:aws:iam::2:role/a")
    table.put(dict(key, accountId="222222222222", arn="arn:aws:iam::2:role/a", name="a", bucket="study-data"))

    role = RoleAllocationStore(table).get_app_role("222222222222", "study-data", "arn:aws:iam::2:role/a")

    assert role.status == Status.REACHABLE


def test_pending_app_role_status_is_stored():
    table = FakeTable()
    role = AppRole(
        account_id="222222222222", arn="arn:aws:iam::2:role/a", name="a", bucket="b", status=Status.PENDING
    )
    saved = RoleAllocationStore(table).put_app_role(role)
    assert saved.status == Status.PENDING
    assert table.items[(role.key()["pk"], role.key()["sk"])]["status"] == "pending"


def test_unknown_attributes_are_rejected():
    item = dict(fs_role_key("2", "b", ARN), accountId="2", arn=ARN, name="n", bucket="b", surprise=1)
    with pytest.raises(StoreShapeError):
        FsRole.from_item(item)


def test_mismatched_key_prefix_is_rejected():
    item = dict(app_role_key("2", "b", ARN), accountId="2", arn=ARN, name="n", bucket="b")
    with pytest.raises(StoreShapeError):
        FsRole.from_item(item)


def test_set_changes_return_previous_item():
    store = DynamoStore(FakeTable())
    key = {"pk": "RES#r", "sk": "SN#s"}

    assert store.add_to_set(key, "items", {"a"}) == {}
    old = store.add_to_set(key, "items", {"b"})
    assert old["items"] == {"a"}
    old = store.delete_from_set(key, "items", {"a", "b"})
    assert old["items"] == {"a", "b"}
    assert "items" not in store.get(key)


def test_get_with_projection():
    store = DynamoStore(FakeTable())
    store.update({"pk": "p", "sk": "s"}, {"a": 1, "b": 2})
    assert store.get({"pk": "p", "sk": "s"}, projection=["a"]) == {"a": 1}


def test_environment_store_requires_existing_environment():
    table = FakeTable("Environments", ("id",))
    envs = EnvironmentStudyRolesStore(table)

    with pytest.raises(NotFoundError):
        envs.update_study_roles(system_context(), "env-1", {"s1": ARN})

    table.put({"id": "env-1"})
    envs.update_study_roles(system_context(), "env-1", {"s1": ARN})
    assert table.items[("env-1",)]["studyRoles"] == {"s1": ARN}
    assert table.items[("env-1",)]["updatedBy"] == "_system_"


class _FakeResource:
    def Table(self, name):
        return FakeTable(name, ("pk", "sk"))


class _FakeSession:
    created: list["_FakeSession"] = []

    def __init__(self, region_name=None):
        self.region_name = region_name
        _FakeSession.created.append(self)

    def resource(self, service):
        assert service == "dynamodb"
        return _FakeResource()


def test_thread_local_tables_are_not_shared_between_threads(monkeypatch):
    _FakeSession.created = []
    monkeypatch.setattr(boto3.session, "Session", _FakeSession)
    dynamo = ThreadLocalDynamo("us-east-1")
    handle = dynamo.Table("RoleAllocations")

    here = dynamo.table("RoleAllocations")
    assert dynamo.table("RoleAllocations") is here
    assert handle.key_names == ("pk", "sk")
    with ThreadPoolExecutor(max_workers=1) as pool:
        there = pool.submit(dynamo.table, "RoleAllocations").result()

    assert there is not here
    assert [s.region_name for s in _FakeSession.created] == ["us-east-1", "us-east-1"]
