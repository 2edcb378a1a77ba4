from __future__ import annotations

import os
import sys
from dataclasses import dataclass, replace

import click
import typer
from rich.console import Console
from rich.markup import escape

from . import __version__
from .context import RequestContext
from .entities import Status
from .services import Services, build_services
from .settings import Settings
from .shared import StudyRolesError, ValidationError, _print_json

_ERROR_CONSOLE = Console(stderr=True)


def _rich_error(msg: str) -> None:
    _ERROR_CONSOLE.print(f"[bold red]error:[/bold red] {escape(msg)}")


@dataclass(frozen=True)
class GlobalOpts:
    region: str | None = None
    pretty: bool = False


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"study-roles {__version__}")
        raise typer.Exit(code=0)


app = typer.Typer(
    name="study-roles",
    help="Inspect and operate study access roles.",
    no_args_is_help=True,
    add_completion=False,
)
usage_app = typer.Typer(help="Resource usage ledger", no_args_is_help=True)
app_roles_app = typer.Typer(help="Application (boundary) roles", no_args_is_help=True)
fs_roles_app = typer.Typer(help="Filesystem roles", no_args_is_help=True)
app.add_typer(usage_app, name="usage")
app.add_typer(app_roles_app, name="app-roles")
app.add_typer(fs_roles_app, name="fs-roles")


@app.callback()
def app_callback(
    ctx: typer.Context,
    region: str | None = typer.Option(None, "--region", help="AWS region (sets AWS_REGION)"),
    pretty: bool = typer.Option(False, "--pretty", help="Indent JSON output"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
) -> None:
    del version
    if region:
        os.environ["AWS_REGION"] = region
    ctx.obj = {"g": GlobalOpts(region=region, pretty=pretty)}


def _g(ctx: typer.Context) -> GlobalOpts:
    if isinstance(ctx.obj, dict) and isinstance(ctx.obj.get("g"), GlobalOpts):
        return ctx.obj["g"]
    return GlobalOpts()


def _build_services(g: GlobalOpts) -> Services:
    settings = Settings.from_env()
    if g.region:
        settings = replace(settings, aws_region=g.region)
    return build_services(settings)


def _operator_context() -> RequestContext:
    user = os.environ.get("USER") or os.environ.get("USERNAME") or "operator"
    return RequestContext(uid=f"cli:{user}", is_admin=True, status="active")


@usage_app.command("show")
def usage_show(
    ctx: typer.Context,
    resource: str = typer.Argument(..., help="Resource id, e.g. roles-only-access-study-<id>-r1w0"),
    set_name: str | None = typer.Option(None, "--set-name", help="Only this set"),
) -> None:
    g = _g(ctx)
    services = _build_services(g)
    out = services.usage.get_resource_usage(_operator_context(), resource=resource, set_name=set_name)
    _print_json({"resource": resource, "sets": out}, pretty=g.pretty)


@app_roles_app.command("list")
def app_roles_list(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Data source account id"),
    bucket: str | None = typer.Option(None, "--bucket", help="Only roles for this bucket"),
) -> None:
    g = _g(ctx)
    services = _build_services(g)
    roles = services.app_roles.list(_operator_context(), account_id, bucket)
    _print_json({"appRoles": [r.to_json() for r in roles]}, pretty=g.pretty)


@app_roles_app.command("cfn")
def app_roles_cfn(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Data source account id"),
) -> None:
    g = _g(ctx)
    services = _build_services(g)
    resources = services.app_roles.provide_cfn_resources(_operator_context(), account_id)
    _print_json({"AWSTemplateFormatVersion": "2010-09-09", "Resources": resources}, pretty=g.pretty)


@app_roles_app.command("set-status")
def app_roles_set_status(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Data source account id"),
    bucket: str = typer.Argument(..., help="Bucket name"),
    arn: str = typer.Argument(..., help="Application role arn"),
    status: str = typer.Argument(..., help=f"One of: {', '.join(s.value for s in Status)}"),
    message: str | None = typer.Option(None, "--message", help="Status message"),
) -> None:
    g = _g(ctx)
    parsed = Status.parse(status)
    services = _build_services(g)
    op_ctx = _operator_context()
    role = services.app_roles.must_find(op_ctx, account_id, bucket, arn)
    updated = services.app_roles.update_status(op_ctx, role, parsed, message)
    _print_json(updated.to_json(), pretty=g.pretty)


@fs_roles_app.command("list")
def fs_roles_list(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Data source account id"),
    bucket: str | None = typer.Option(None, "--bucket", help="Only roles for this bucket"),
) -> None:
    g = _g(ctx)
    services = _build_services(g)
    roles = services.fs_roles.list(_operator_context(), account_id, bucket)
    _print_json({"fsRoles": [r.to_json() for r in roles]}, pretty=g.pretty)


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    try:
        result = app(args=argv, prog_name="study-roles", standalone_mode=False)
        if result is None:
            return 0
        return int(result)
    except typer.Exit as e:
        return int(e.exit_code)
    except click.ClickException as e:
        _rich_error(e.format_message())
        return int(e.exit_code)
    except ValidationError as e:
        _rich_error(str(e))
        return 2
    except StudyRolesError as e:
        _rich_error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
