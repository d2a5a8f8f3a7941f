import re
import shutil
from pathlib import Path
from typing import Optional

from .errors import StageError
from .flags import FeatureSelection, Layout
from .kconfig import KernelConfig
from .log import log_message
from .plan import (
    ApplyDiff, ApplyPatchSeries, CloneExternal, CopyTree, ExtractVersion,
    FailIfMissing, RegisterLsm, RunSetupScript, SetConfig, SUSFS_VERSION_VAR,
    plan_branches,
)
from .shell import apply_patch, git_clone, run_remote_script

# Runs to end of file when no unindented 'help' line closes the entry
LSM_BLOCK_RE = re.compile(r"^config LSM$.*?(?:^help$|\Z)", re.MULTILINE | re.DOTALL)
LSM_DEFAULT_RE = re.compile(r"^([ \t]*default.*)$", re.MULTILINE)


def resolve_glob(pattern: Path) -> Path:
    """
    Picks the first lexical match of a patch glob. More than one match
    is applied anyway but logged, since the choice is arbitrary
    """
    matches = sorted(pattern.parent.glob(pattern.name))
    if not matches:
        raise StageError(f"No patch matches {pattern}")
    if len(matches) > 1:
        log_message(
            f"{len(matches)} patches match {pattern.name}, using {matches[0].name}",
            "WARN"
        )
    return matches[0]


def read_define(header: Path, symbol: str) -> str:
    """Value of '#define <symbol> "<value>"' in header, quotes stripped"""
    if not header.is_file():
        raise StageError(f"Header not found: {header}")
    match = re.search(
        rf"^#define {re.escape(symbol)} (\S+)",
        header.read_text(encoding="utf-8", errors="replace"),
        re.MULTILINE,
    )
    if not match:
        raise StageError(f"{symbol} not defined in {header}")
    return match.group(1).replace('"', "")


def register_lsm(text: str, module: str, after: str = "bpf") -> str:
    """
    Appends module after 'after' on the default lines of the LSM
    Kconfig entry. Lines that already list module are left alone
    """
    def fix_default(m: re.Match) -> str:
        line = m.group(1)
        if module in line:
            return line
        return line.replace(after, f"{after},{module}", 1)

    def fix_block(m: re.Match) -> str:
        return LSM_DEFAULT_RE.sub(fix_default, m.group(0))

    return LSM_BLOCK_RE.sub(fix_block, text)


class PatchComposer:
    """
    Executes a patch plan against the kernel tree

    Steps run one after another; any failure raises StageError and the
    rest of the plan is abandoned. The exception is an ApplyDiff with
    required=False, whose failure is only logged.
    """

    def __init__(self, layout: Layout, kconfig: KernelConfig):
        self.layout = layout
        self.kconfig = kconfig
        self.variables: dict[str, str] = {}
        self._handlers = {
            RunSetupScript: self._run_setup_script,
            CloneExternal: self._clone,
            CopyTree: self._copy_tree,
            ApplyDiff: self._apply_diff,
            ExtractVersion: self._extract_version,
            FailIfMissing: self._fail_if_missing,
            ApplyPatchSeries: self._apply_series,
            SetConfig: self._set_config,
            RegisterLsm: self._register_lsm,
        }

    @property
    def susfs_version(self) -> Optional[str]:
        return self.variables.get(SUSFS_VERSION_VAR)

    def resolve(self, path: Path) -> Path:
        """Fills '{var}' placeholders in a planned path"""
        if "{" not in str(path):
            return path
        try:
            return Path(str(path).format(**self.variables))
        except KeyError as e:
            raise StageError(f"{path} needs {e.args[0]}, which no step has set") from None

    def compose(self, selection: FeatureSelection):
        """Plans and executes every branch for selection"""
        for branch in plan_branches(selection, self.layout):
            if branch.disabled:
                log_message(f"Disable {branch.name}")
                self.execute(branch.steps)
                continue
            log_message(f"Apply {branch.name}")
            self.execute(branch.steps)
            log_message(f"{branch.name} done", "SUCCESS")

    def execute(self, steps: list):
        for step in steps:
            self._handlers[type(step)](step)

    def _run_setup_script(self, step: RunSetupScript):
        run_remote_script(step.url, list(step.args), cwd=self.layout.kernel, quiet=step.quiet)

    def _clone(self, step: CloneExternal):
        git_clone(step.source, step.dest)

    def _copy_tree(self, step: CopyTree):
        if not step.src.is_dir():
            raise StageError(f"Directory not found: {step.src}")
        shutil.copytree(step.src, step.dst, dirs_exist_ok=True)

    def _apply_diff(self, step: ApplyDiff):
        patch_file = resolve_glob(step.patch) if step.glob else self.resolve(step.patch)
        log_message(f"Apply patch {patch_file.name}")
        applied = apply_patch(patch_file, cwd=step.cwd, fuzz=step.fuzz,
                              fatal_on_error=step.required)
        if not applied:
            log_message(f"Patch {patch_file.name} did not apply, continuing", "WARN")

    def _extract_version(self, step: ExtractVersion):
        value = read_define(step.header, step.symbol)
        self.variables[step.var] = value
        log_message(f"{step.symbol}: {value}")

    def _fail_if_missing(self, step: FailIfMissing):
        if not self.resolve(step.path).exists():
            raise StageError(step.message.format(**self.variables))

    def _apply_series(self, step: ApplyPatchSeries):
        directory = self.resolve(step.directory)
        series = sorted(directory.glob("*.patch"))
        if not series:
            raise StageError(f"No patches in {directory}")
        for patch_file in series:
            log_message(f"Apply patch {patch_file.name}")
            apply_patch(patch_file, cwd=step.cwd)

    def _set_config(self, step: SetConfig):
        self.kconfig.set_config(step.key, step.enabled)

    def _register_lsm(self, step: RegisterLsm):
        if not step.kconfig.is_file():
            raise StageError(f"Kconfig not found: {step.kconfig}")
        text = step.kconfig.read_text(encoding="utf-8")
        new_text = register_lsm(text, step.module, step.after)
        if new_text != text:
            step.kconfig.write_text(new_text, encoding="utf-8")
