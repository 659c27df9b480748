"""Text substitutions that point built frontend files at a deployment stage.

Each category of reference has its own rule so it can be tested on its own.
Rules are applied in order: relative and root-absolute asset paths are first
turned into staged paths, and ``STAGED_ASSETS`` then normalizes any staged
path to the current stage. That is what makes re-running the patcher with a
new stage replace the old one.

``STAGED_ASSETS`` treats any single path segment in front of ``/assets/`` as
a previous stage. A legitimate directory such as ``src="/static/assets/..."``
is rewritten as well.
"""
import re
from typing import Pattern, Tuple

from attrs import define, field
from attrs.validators import instance_of

from common import constants


def _compile(value) -> Pattern:
    return value if isinstance(value, re.Pattern) else re.compile(value)


@define(slots=True, frozen=True)
class PatchRule:
    name: str
    pattern: Pattern = field(converter=_compile)
    # Replacement with a ``{stage}`` placeholder; may use backreferences.
    template: str = field(validator=instance_of(str))

    def replacement(self, stage: str) -> str:
        return self.template.replace("{stage}", stage)

    def apply(self, content: str, stage: str) -> Tuple[str, int]:
        """Return the rewritten content and the number of matches."""
        return self.pattern.subn(self.replacement(stage), content)


RELATIVE_ASSETS = PatchRule(
    name="relative-assets",
    pattern=r'\b(src|href)="\./assets/',
    template=r'\1="/{stage}/assets/',
)

ROOT_ASSETS = PatchRule(
    name="root-assets",
    pattern=r'\b(src|href)="/assets/',
    template=r'\1="/{stage}/assets/',
)

STAGED_ASSETS = PatchRule(
    name="staged-assets",
    pattern=r'\b(src|href)="/[^/"\s]+/assets/',
    template=r'\1="/{stage}/assets/',
)

API_BASE_URL = PatchRule(
    name="api-base-url",
    pattern=r"""(?P<quote>["'`])(?:/[^/"'`\s]+/|/)?""" + re.escape(constants.API_BASE_PATH) + r"(?P=quote)",
    template=r"\g<quote>/{stage}/" + constants.API_BASE_PATH + r"\g<quote>",
)

ASSET_RULES = (RELATIVE_ASSETS, ROOT_ASSETS, STAGED_ASSETS)
ALL_RULES = ASSET_RULES + (API_BASE_URL,)
