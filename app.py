#!/usr/bin/env python3
import os

import aws_cdk as cdk

from stacks.role_allocation_stack import RoleAllocationStack

app = cdk.App()

stack_name = os.getenv("CDK_STACK_NAME", "StudyRoleAllocationStack")

RoleAllocationStack(
    app,
    stack_name,
    env=cdk.Environment(
        account=os.getenv("CDK_DEFAULT_ACCOUNT"),
        region=os.getenv("CDK_DEFAULT_REGION", "us-east-2"),
    ),
)

app.synth()
