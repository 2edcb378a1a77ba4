from aws_cdk import App
from aws_cdk import assertions

from stacks.role_allocation_stack import RoleAllocationStack


def _template(monkeypatch, mode: str | None = None, environments_table: str | None = None) -> assertions.Template:
    if mode is None:
        monkeypatch.delenv("DATA_RETENTION_MODE", raising=False)
    else:
        monkeypatch.setenv("DATA_RETENTION_MODE", mode)
    if environments_table is None:
        monkeypatch.delenv("ENVIRONMENTS_TABLE_NAME", raising=False)
    else:
        monkeypatch.setenv("ENVIRONMENTS_TABLE_NAME", environments_table)
    monkeypatch.setenv("MAIN_ACCOUNT_ID", "111111111111")
    app = App()
    stack = RoleAllocationStack(app, "RoleAllocationTestStack")
    return assertions.Template.from_stack(stack)


def _deletion_policies(template: dict, resource_type: str) -> set[str]:
    return {
        resource.get("DeletionPolicy", "")
        for resource in template["Resources"].values()
        if resource.get("Type") == resource_type
    }


def test_tables_and_key_schema(monkeypatch):
    template = _template(monkeypatch)

    template.resource_count_is("AWS::DynamoDB::Table", 4)
    template.has_resource_properties(
        "AWS::DynamoDB::Table",
        {
            "KeySchema": [
                {"AttributeName": "id", "KeyType": "HASH"},
            ],
            "TimeToLiveSpecification": {"AttributeName": "ttl", "Enabled": True},
            "BillingMode": "PAY_PER_REQUEST",
        },
    )
    template.has_resource_properties(
        "AWS::DynamoDB::Table",
        {
            "KeySchema": [
                {"AttributeName": "pk", "KeyType": "HASH"},
                {"AttributeName": "sk", "KeyType": "RANGE"},
            ],
        },
    )


def test_handler_function_and_permissions(monkeypatch):
    template = _template(monkeypatch)

    template.has_resource_properties(
        "AWS::Lambda::Function",
        {
            "Handler": "study_roles.handler.handler",
            "Runtime": "python3.12",
            "Environment": {
                "Variables": assertions.Match.object_like({"MAIN_ACCOUNT_ID": "111111111111"})
            },
        },
    )
    template.has_resource_properties(
        "AWS::IAM::Policy",
        {
            "PolicyDocument": {
                "Statement": assertions.Match.array_with(
                    [
                        assertions.Match.object_like(
                            {
                                "Action": "sts:AssumeRole",
                                "Effect": "Allow",
                                "Resource": "arn:aws:iam::*:role/*-app-*",
                            }
                        )
                    ]
                )
            }
        },
    )


def test_retention_mode(monkeypatch):
    destroy = _template(monkeypatch).to_json()
    assert _deletion_policies(destroy, "AWS::DynamoDB::Table") == {"Delete"}

    retain = _template(monkeypatch, mode="retain").to_json()
    assert _deletion_policies(retain, "AWS::DynamoDB::Table") == {"Retain"}


def test_existing_environments_table_is_imported(monkeypatch):
    template = _template(monkeypatch, environments_table="Environments-prod")

    template.resource_count_is("AWS::DynamoDB::Table", 3)
