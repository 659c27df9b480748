"""
Build-time commands that point the built frontend at an API Gateway stage.

Both commands take no options. The stage comes from ``API_STAGE`` (default
``prod``) and the directories are the conventional build output paths,
relative to the repository root.
"""
from typing import Sequence

import click

from artifacts.patcher import patch
from artifacts.rules import API_BASE_URL, ASSET_RULES, PatchRule
from common import constants
from common.config import resolve_stage
from common.errors import MoodTrackerError


def _run(directory: str, rules: Sequence[PatchRule], extensions: Sequence[str]) -> None:
    try:
        stage = resolve_stage()
        report = patch(directory, stage, rules=rules, extensions=extensions)
    except MoodTrackerError as exc:
        raise click.ClickException(str(exc)) from exc

    if report.skipped:
        click.echo(f"Nothing to do ({report.skipped}): {directory}")
    else:
        click.echo(
            f"Updated {report.files_changed} of {len(report.files)} file(s) "
            f"in {directory} for stage /{stage}/"
        )


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
def fix_html_paths() -> None:
    """Prefix asset paths in the built HTML with the API Gateway stage."""
    _run(constants.FRONTEND_DIST_DIR, ASSET_RULES, (".html",))


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
def update_api_base_url() -> None:
    """Point the API base URL in the built scripts at /<stage>/api/v1."""
    _run(constants.FRONTEND_ASSETS_DIR, (API_BASE_URL,), (".js",))
