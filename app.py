#!/usr/bin/env python3
"""AWS CDK entrypoint for provisioning the MoodTracker backend.

Configuration is resolved once from CDK context (``-c key=value``), the
environment and the ``.env.aws`` file, then handed to the stack. A missing
IAM role ARN or a malformed value stops synthesis before any resource is
declared.
"""
import sys

import aws_cdk as cdk
from aws_cdk import Environment

from common.config import resolve_config
from common.errors import ConfigurationError
from common.log import get_logger
from moodtracker.moodtracker_stack import MoodTrackerStack

logger = get_logger("moodtracker-infra", stderr=True)

app = cdk.App()

try:
    config = resolve_config(app.node.try_get_context)
    logger.info("Creating MoodTracker stack", extra=config.describe())
    MoodTrackerStack(
        app,
        "MoodTrackerStack",
        config=config,
        env=Environment(account=config.account, region=config.region),
    )
except ConfigurationError as exc:
    logger.error(f"Invalid deployment configuration: {exc}")
    sys.exit(f"Configuration error: {exc}")

app.synth()
