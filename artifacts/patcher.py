import os
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from attrs import define, field

from artifacts.rules import ALL_RULES, PatchRule
from common import constants
from common.config import validate_stage
from common.errors import PatchError
from common.log import get_logger

logger = get_logger("artifact-patcher", stderr=True)

SKIP_DIRECTORY_MISSING = "directory-missing"
SKIP_NO_ELIGIBLE_FILES = "no-eligible-files"


class FileState(str, Enum):
    UNSCANNED = "unscanned"
    SCANNED_NO_MATCH = "scanned-no-match"
    SCANNED_MATCH = "scanned-match"
    REWRITTEN = "rewritten"
    DONE = "done"


_TRANSITIONS = {
    FileState.UNSCANNED: (FileState.SCANNED_NO_MATCH, FileState.SCANNED_MATCH),
    FileState.SCANNED_NO_MATCH: (FileState.DONE,),
    FileState.SCANNED_MATCH: (FileState.REWRITTEN,),
    FileState.REWRITTEN: (FileState.DONE,),
    FileState.DONE: (),
}


@define(slots=True)
class FilePatch:
    path: str
    state: FileState = FileState.UNSCANNED
    changed: bool = False
    # Matches per rule name, including matches that left the text as it was.
    replacements: Dict[str, int] = field(factory=dict)

    def advance(self, state: FileState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"{self.path}: cannot move from {self.state.value} to {state.value}")
        self.state = state
        if state is FileState.REWRITTEN:
            self.changed = True


@define(slots=True)
class PatchReport:
    directory: str
    stage: str
    files: List[FilePatch] = field(factory=list)
    skipped: Optional[str] = None

    @property
    def changed(self) -> List[FilePatch]:
        return [f for f in self.files if f.changed]

    @property
    def unchanged(self) -> List[FilePatch]:
        return [f for f in self.files if not f.changed]

    @property
    def files_changed(self) -> int:
        return len(self.changed)

    @property
    def nothing_to_do(self) -> bool:
        return self.skipped is not None or not self.changed


def eligible_files(directory: str, extensions: Sequence[str]) -> List[str]:
    """All files under ``directory`` with one of ``extensions``, in a stable order."""
    suffixes = tuple(ext.lower() for ext in extensions)
    paths = []
    for root, dirs, fnames in os.walk(directory):
        dirs.sort()
        for fname in sorted(fnames):
            if fname.lower().endswith(suffixes):
                paths.append(os.path.join(root, fname))
    return paths


def patch_file(path: str, stage: str, rules: Iterable[PatchRule] = ALL_RULES) -> FilePatch:
    """Apply ``rules`` to one file, writing it back only if its content changed."""
    result = FilePatch(path=path)
    try:
        # newline="" keeps line endings byte for byte.
        with open(path, encoding="utf-8", newline="") as fh:
            original = fh.read()
    except (OSError, UnicodeDecodeError) as exc:
        raise PatchError(path, f"cannot read file: {exc}") from exc

    content = original
    for rule in rules:
        content, count = rule.apply(content, stage)
        if count:
            result.replacements[rule.name] = count

    if content == original:
        result.advance(FileState.SCANNED_NO_MATCH)
        result.advance(FileState.DONE)
        return result

    result.advance(FileState.SCANNED_MATCH)
    try:
        with open(path, "w", encoding="utf-8", newline="") as fh:
            fh.write(content)
    except OSError as exc:
        raise PatchError(path, f"cannot write file: {exc}") from exc
    result.advance(FileState.REWRITTEN)
    result.advance(FileState.DONE)
    logger.info(f"Updated {path}", extra={"stage": stage, "replacements": result.replacements})
    return result


def patch(
    directory: str,
    stage: str = constants.DEFAULT_STAGE,
    rules: Sequence[PatchRule] = ALL_RULES,
    extensions: Sequence[str] = constants.DEFAULT_PATCH_EXTENSIONS,
) -> PatchReport:
    """Rewrite asset paths and the API base URL under ``directory`` for ``stage``.

    A missing directory or a directory without eligible files is not an
    error: the returned report carries the reason in ``skipped``. Read and
    write failures raise :class:`PatchError` naming the file.
    """
    validate_stage(stage)
    report = PatchReport(directory=directory, stage=stage)

    if not os.path.isdir(directory):
        logger.warning(f"Directory not found: {directory}")
        report.skipped = SKIP_DIRECTORY_MISSING
        return report

    paths = eligible_files(directory, extensions)
    if not paths:
        logger.warning(f"No {', '.join(extensions)} files found in {directory}")
        report.skipped = SKIP_NO_ELIGIBLE_FILES
        return report

    for path in paths:
        report.files.append(patch_file(path, stage, rules))

    if report.files_changed:
        logger.info(
            f"Updated {report.files_changed} of {len(report.files)} file(s) for stage {stage}"
        )
    else:
        logger.info("No files needed updating; paths may already match the stage", extra={"stage": stage})
    return report
