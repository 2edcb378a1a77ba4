import os
from pathlib import Path

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_dynamodb as ddb,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_logs as logs,
)
from constructs import Construct

ROOT = Path(__file__).resolve().parents[1]


class RoleAllocationStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        # For production deployments, set DATA_RETENTION_MODE=retain.
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        main_account_id = (os.getenv("MAIN_ACCOUNT_ID") or "").strip() or self.account
        environments_table_name = (os.getenv("ENVIRONMENTS_TABLE_NAME") or "").strip()

        role_allocations_table = ddb.Table(
            self,
            "RoleAllocations",
            partition_key=ddb.Attribute(name="pk", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="sk", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        resource_usages_table = ddb.Table(
            self,
            "ResourceUsages",
            partition_key=ddb.Attribute(name="pk", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="sk", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        locks_table = ddb.Table(
            self,
            "Locks",
            partition_key=ddb.Attribute(name="id", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            time_to_live_attribute="ttl",
            removal_policy=stateful_removal_policy,
        )

        if environments_table_name:
            environments_table = ddb.Table.from_table_name(self, "Environments", environments_table_name)
        else:
            environments_table = ddb.Table(
                self,
                "Environments",
                partition_key=ddb.Attribute(name="id", type=ddb.AttributeType.STRING),
                billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
                point_in_time_recovery=True,
                removal_policy=stateful_removal_policy,
            )

        handler_log_group = logs.LogGroup(
            self,
            "StudyAccessHandlerLogs",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=stateful_removal_policy,
        )

        study_access_fn = _lambda.Function(
            self,
            "StudyAccessHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="study_roles.handler.handler",
            code=_lambda.Code.from_asset(
                str(ROOT),
                exclude=["*", "!study_roles", "!study_roles/**", "**/__pycache__"],
            ),
            # Lock waits (15 x 1s) plus IAM retries for a batch of groups.
            timeout=Duration.minutes(5),
            memory_size=512,
            log_group=handler_log_group,
            environment={
                "ROLE_ALLOCATIONS_TABLE_NAME": role_allocations_table.table_name,
                "RESOURCE_USAGES_TABLE_NAME": resource_usages_table.table_name,
                "LOCKS_TABLE_NAME": locks_table.table_name,
                "ENVIRONMENTS_TABLE_NAME": environments_table.table_name,
                "MAIN_ACCOUNT_ID": main_account_id,
            },
        )
        role_allocations_table.grant_read_write_data(study_access_fn)
        resource_usages_table.grant_read_write_data(study_access_fn)
        locks_table.grant_read_write_data(study_access_fn)
        environments_table.grant_read_write_data(study_access_fn)
        # Filesystem roles are managed as the application role of the data source account.
        study_access_fn.add_to_role_policy(
            iam.PolicyStatement(
                actions=["sts:AssumeRole"],
                resources=["arn:aws:iam::*:role/*-app-*"],
            )
        )

        CfnOutput(
            self,
            "RoleAllocationsTableName",
            value=role_allocations_table.table_name,
            description="Application and filesystem role records.",
        )
        CfnOutput(
            self,
            "ResourceUsagesTableName",
            value=resource_usages_table.table_name,
            description="Resource usage ledger.",
        )
        CfnOutput(
            self,
            "LocksTableName",
            value=locks_table.table_name,
            description="Application role write locks.",
        )
        CfnOutput(
            self,
            "StudyAccessFunctionName",
            value=study_access_fn.function_name,
            description="Lambda invoked to allocate or deallocate study roles for an environment.",
        )
