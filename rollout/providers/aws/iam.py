"""IAM execution role for ECS tasks."""

import json
import logging
from typing import Any

from botocore.exceptions import ClientError

from rollout.providers.aws.base import error_code, tag_list, translate_errors

LOG = logging.getLogger(__name__)

ASSUME_ECS_TASKS = json.dumps(
    {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": "sts:AssumeRole",
                "Effect": "Allow",
                "Principal": {"Service": "ecs-tasks.amazonaws.com"},
            }
        ],
    }
)


def execution_policy(permissions: list[str] | tuple[str, ...]) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [{"Effect": "Allow", "Action": sorted(permissions), "Resource": "*"}],
        }
    )


class IamIdentityProvider:
    """Issues an execution role per task family; callers only ever see the role ARN."""

    def __init__(self, iam: Any, tags: dict[str, str] | None = None) -> None:
        self.iam = iam
        self.tags = dict(tags or {})

    def issue(self, name: str, permissions: list[str] | tuple[str, ...]) -> str:
        """Create or adopt ``{name}-ecs-exec`` and set its inline policy to ``permissions``."""
        role_name = f"{name}-ecs-exec"[:64]
        with translate_errors(f"issue execution role {role_name}"):
            try:
                arn = self.iam.get_role(RoleName=role_name)["Role"]["Arn"]
            except ClientError as e:
                if error_code(e) != "NoSuchEntity":
                    raise
                arn = self.iam.create_role(
                    RoleName=role_name,
                    AssumeRolePolicyDocument=ASSUME_ECS_TASKS,
                    Tags=tag_list(self.tags),
                )["Role"]["Arn"]
                LOG.info("created execution role %s", role_name)
            self.iam.put_role_policy(
                RoleName=role_name,
                PolicyName="execution",
                PolicyDocument=execution_policy(permissions),
            )
        return arn
