import json

import pytest

from study_roles.context import RequestContext, system_context
from study_roles.shared import ForbiddenError, ValidationError


def test_add_usage_reports_first_add_only(services):
    ctx = system_context()
    first = services.usage.add_usage(ctx, resource="r1", set_name="acct-1", item="env-1")
    again = services.usage.add_usage(ctx, resource="r1", set_name="acct-1", item="env-1")
    second = services.usage.add_usage(ctx, resource="r1", set_name="acct-1", item="env-0")

    assert first.changed is True
    assert first.items == ["env-1"]
    assert again.changed is False
    assert again.items == ["env-1"]
    assert second.items == ["env-0", "env-1"]


def test_remove_usage_reports_last_remove(services):
    ctx = system_context()
    services.usage.add_usage(ctx, resource="r1", set_name="acct-1", item="env-1")
    services.usage.add_usage(ctx, resource="r1", set_name="acct-1", item="env-2")

    partial = services.usage.remove_usage(ctx, resource="r1", set_name="acct-1", item="env-1")
    last = services.usage.remove_usage(ctx, resource="r1", set_name="acct-1", item="env-2")
    repeat = services.usage.remove_usage(ctx, resource="r1", set_name="acct-1", item="env-2")

    assert partial.changed is True and partial.items == ["env-2"]
    assert last.changed is True and last.items == []
    assert repeat.changed is False and repeat.items == []


def test_remove_from_unknown_set_is_noop(services):
    change = services.usage.remove_usage(system_context(), resource="nope", set_name="x", item="y")
    assert change.changed is False
    assert change.items == []


def test_get_resource_usage_by_set_and_all_sets(services):
    ctx = system_context()
    services.usage.add_usage(ctx, resource="r1", set_name="acct-1", item="env-2")
    services.usage.add_usage(ctx, resource="r1", set_name="acct-1", item="env-1")
    services.usage.add_usage(ctx, resource="r1", set_name="fs-roles-study-s1", item="arn:role/a")
    services.usage.add_usage(ctx, resource="r10", set_name="acct-1", item="env-9")

    assert services.usage.get_resource_usage(ctx, resource="r1", set_name="acct-1") == {
        "acct-1": ["env-1", "env-2"]
    }
    assert services.usage.get_resource_usage(ctx, resource="r1") == {
        "acct-1": ["env-1", "env-2"],
        "fs-roles-study-s1": ["arn:role/a"],
    }
    assert services.usage.get_resource_usage(ctx, resource="r2", set_name="acct-1") == {"acct-1": []}


def test_usage_requires_active_admin(services):
    with pytest.raises(ForbiddenError):
        services.usage.add_usage(RequestContext(uid="u1", status="active"), resource="r", set_name="s", item="i")
    with pytest.raises(ForbiddenError):
        services.usage.add_usage(RequestContext(uid="u1", is_admin=True), resource="r", set_name="s", item="i")


def test_usage_rejects_blank_inputs(services):
    with pytest.raises(ValidationError):
        services.usage.add_usage(system_context(), resource="", set_name="s", item="i")


def test_usage_mutations_are_logged(services, capsys):
    services.usage.add_usage(system_context(), resource="r1", set_name="acct-1", item="env-1")
    line = capsys.readouterr().out.strip().splitlines()[-1]
    event = json.loads(line)

    assert event["event"] == "resource_usage"
    assert event["op"] == "increment-resource-usage"
    assert event["added"] is True
