from attrs import define, field
from aws_cdk import RemovalPolicy, Stack, aws_logs as logs
from typing import Optional

import common.constants as constants
from common.errors import ConfigurationError

RETENTION_DAYS = {
    1: logs.RetentionDays.ONE_DAY,
    3: logs.RetentionDays.THREE_DAYS,
    5: logs.RetentionDays.FIVE_DAYS,
    7: logs.RetentionDays.ONE_WEEK,
    14: logs.RetentionDays.TWO_WEEKS,
    30: logs.RetentionDays.ONE_MONTH,
    60: logs.RetentionDays.TWO_MONTHS,
    90: logs.RetentionDays.THREE_MONTHS,
    180: logs.RetentionDays.SIX_MONTHS,
    365: logs.RetentionDays.ONE_YEAR,
}


@define(slots=True, frozen=True)
class StackContext:
    scope: Stack
    env: str = field(
        default=constants.DEFAULT_STAGE,
        metadata={"description": "Deployment stage (prod, staging, dev)"},
    )
    service: str = field(default=constants.SERVICE_NAME, init=False)
    domain: str = field(default=constants.DOMAIN)

    @property
    def aws_account_id(self) -> str:
        return Stack.of(self.scope).account

    @property
    def aws_region(self) -> str:
        return Stack.of(self.scope).region

    # ---------- naming ----------
    def build_resource_name(
        self, resource_type: str, action: Optional[str] = None
    ) -> str:
        """Build resource name with optional action.

        Examples:
            - Without action: moodtracker-backend-function-prod
            - With action: moodtracker-backend-database-sg-prod
        """
        if action:
            return f"{self.service}-{self.domain}-{action}-{resource_type}-{self.env}".lower()
        return f"{self.service}-{self.domain}-{resource_type}-{self.env}".lower()

    def build_resource_id(self, resource_type: str, action: Optional[str] = None) -> str:
        """Build resource ID with optional action.

        Examples:
            - Without action: MoodtrackerBackendFunction
            - With action: MoodtrackerBackendDatabaseSecuritygroup
        """
        if action:
            return (
                f"{self.service.capitalize()}"
                f"{self.domain.capitalize()}"
                f"{action.capitalize()}"
                f"{resource_type.capitalize()}"
            )
        return (
            f"{self.service.capitalize()}"
            f"{self.domain.capitalize()}"
            f"{resource_type.capitalize()}"
        )

    def build_log_group(
        self, function_name: str, retention_days: int = constants.LOG_RETENTION_DAYS
    ) -> logs.LogGroup:
        retention = RETENTION_DAYS.get(retention_days)
        if retention is None:
            raise ConfigurationError(
                f"log retention of {retention_days} days is not supported, "
                f"use one of {sorted(RETENTION_DAYS)}"
            )
        return logs.LogGroup(
            self.scope,
            self.build_resource_id("LogGroup"),
            log_group_name=f"/aws/lambda/{self.build_resource_name(function_name)}",
            removal_policy=RemovalPolicy.DESTROY,
            retention=retention,
        )
