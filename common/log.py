import logging
import os
import sys

from aws_lambda_powertools import Logger


def get_logger(service: str, stderr: bool = False) -> Logger:
    """Build a structured JSON logger for a tooling service.

    The level comes from ``LOG_LEVEL`` (default ``INFO``). Command line tools
    pass ``stderr=True`` so standard output stays free for their results.
    """
    handler = logging.StreamHandler(sys.stderr) if stderr else None
    return Logger(
        service=service,
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        logger_handler=handler,
    )
