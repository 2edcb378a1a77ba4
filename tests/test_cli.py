from __future__ import annotations

import itertools
import json

from typer.testing import CliRunner

from fakes import BUCKET, DATA_ACCOUNT, study_dict
from study_roles import cli
from study_roles.context import system_context
from study_roles.entities import Study

runner = CliRunner()


def _seed(monkeypatch, services) -> str:
    monkeypatch.setattr(cli, "_build_services", lambda g: services)
    ticks = itertools.count(1700000000000)
    services.app_roles.clock = lambda: next(ticks)
    role = services.app_roles.allocate_role(
        system_context(), DATA_ACCOUNT, BUCKET, Study.from_dict(study_dict("s1"))
    )
    return role.arn


def _json(output: str) -> dict:
    return json.loads(output.strip().splitlines()[-1])


def test_app_roles_list(monkeypatch, services) -> None:
    arn = _seed(monkeypatch, services)

    result = runner.invoke(cli.app, ["app-roles", "list", DATA_ACCOUNT, "--bucket", BUCKET])

    assert result.exit_code == 0, result.output
    roles = _json(result.output)["appRoles"]
    assert [r["arn"] for r in roles] == [arn]
    assert roles[0]["status"] == "pending"


def test_app_roles_set_status_and_cfn(monkeypatch, services) -> None:
    arn = _seed(monkeypatch, services)

    result = runner.invoke(cli.app, ["app-roles", "set-status", DATA_ACCOUNT, BUCKET, arn, "reachable"])
    assert result.exit_code == 0, result.output
    assert _json(result.output)["status"] == "reachable"

    result = runner.invoke(cli.app, ["app-roles", "cfn", DATA_ACCOUNT])
    assert result.exit_code == 0, result.output
    template = _json(result.output)
    assert template["AWSTemplateFormatVersion"] == "2010-09-09"
    assert sorted(r["Type"] for r in template["Resources"].values()) == [
        "AWS::IAM::ManagedPolicy",
        "AWS::IAM::Role",
    ]


def test_usage_show(monkeypatch, services) -> None:
    _seed(monkeypatch, services)
    services.usage.add_usage(system_context(), resource="r1", set_name="acct", item="env-1")

    result = runner.invoke(cli.app, ["usage", "show", "r1"])

    assert result.exit_code == 0, result.output
    assert _json(result.output) == {"resource": "r1", "sets": {"acct": ["env-1"]}}


def test_fs_roles_list_empty(monkeypatch, services) -> None:
    _seed(monkeypatch, services)

    result = runner.invoke(cli.app, ["fs-roles", "list", DATA_ACCOUNT])

    assert result.exit_code == 0, result.output
    assert _json(result.output) == {"fsRoles": []}


def test_main_maps_validation_error_to_exit_2(monkeypatch, services, capsys) -> None:
    arn = _seed(monkeypatch, services)

    code = cli.main(["app-roles", "set-status", DATA_ACCOUNT, BUCKET, arn, "sideways"])

    assert code == 2
    assert "invalid status" in " ".join(capsys.readouterr().err.split())


def test_main_maps_not_found_to_exit_1(monkeypatch, services, capsys) -> None:
    _seed(monkeypatch, services)

    code = cli.main(["app-roles", "set-status", DATA_ACCOUNT, BUCKET, "arn:aws:iam::2:role/none", "error"])

    assert code == 1
    assert "does not exist" in " ".join(capsys.readouterr().err.split())
