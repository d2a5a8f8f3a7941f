"""
Patch plan composition

plan() maps a FeatureSelection to the ordered list of source tree
mutations for a run. It does no I/O; PatchComposer executes the result.

Branch order:
    1. KernelSU variant setup, manual hooks and KSU config keys
    2. SuSFS (otherwise CONFIG_KSU_SUSFS is switched off)
    3. LXC support
    4. Baseband Guard LSM, only with a KernelSU variant

Paths under the SuSFS fix patch tree carry a '{susfs_version}'
placeholder. The executor fills it from the version read out of
include/linux/susfs.h by the ExtractVersion step.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from . import constants
from .flags import FeatureSelection, Layout, Variant

SUSFS_VERSION_VAR = "susfs_version"
SUSFS_BASE_PATCH_GLOB = "50_add_susfs_in_gki-android*-*.patch"

# Variant -> (repo, ref); SUKI's ref depends on SuSFS
KSU_SOURCES = {
    Variant.OFFICIAL: ("tiann/KernelSU", "main"),
    Variant.NEXT: ("KernelSU-Next/KernelSU-Next", "next"),
    Variant.SUKI: ("SukiSU-Ultra/SukiSU-Ultra", None),
}

# Directory each variant's setup.sh checks KernelSU out to
KSU_DIRS = {
    Variant.OFFICIAL: "KernelSU",
    Variant.NEXT: "KernelSU-Next",
}

KSU_ENABLE = ["CONFIG_KSU", "CONFIG_KSU_TRACEPOINT_HOOK", "CONFIG_KSU_MANUAL_HOOK", "CONFIG_KPM"]
KSU_DISABLE = ["CONFIG_KSU_KPROBES_HOOK", "CONFIG_KSU_MANUAL_SU"]


@dataclass(frozen=True)
class RunSetupScript:
    url: str
    args: tuple = ()
    quiet: bool = False


@dataclass(frozen=True)
class CloneExternal:
    source: str
    dest: Path


@dataclass(frozen=True)
class CopyTree:
    src: Path
    dst: Path


@dataclass(frozen=True)
class ApplyDiff:
    """
    A unified diff applied with 'patch -p1' from cwd. With glob=True,
    patch is a pattern and the first lexical match is applied
    """
    patch: Path
    cwd: Path
    fuzz: Optional[int] = None
    required: bool = True
    glob: bool = False


@dataclass(frozen=True)
class ExtractVersion:
    """Reads '#define <symbol> "<value>"' from header into a variable"""
    header: Path
    symbol: str
    var: str


@dataclass(frozen=True)
class FailIfMissing:
    path: Path
    message: str


@dataclass(frozen=True)
class ApplyPatchSeries:
    """Applies every *.patch under directory in sorted order"""
    directory: Path
    cwd: Path


@dataclass(frozen=True)
class SetConfig:
    key: str
    enabled: bool


@dataclass(frozen=True)
class RegisterLsm:
    """Adds module to the 'default' list of the LSM Kconfig entry"""
    kconfig: Path
    module: str
    after: str = "bpf"


PatchStep = Union[
    RunSetupScript, CloneExternal, CopyTree, ApplyDiff, ExtractVersion,
    FailIfMissing, ApplyPatchSeries, SetConfig, RegisterLsm,
]


@dataclass
class Branch:
    """A named run of steps, used for logging the plan"""
    name: str
    steps: list = field(default_factory=list)
    # Only switches the feature's config off
    disabled: bool = False


def ksu_source(selection: FeatureSelection) -> tuple[str, str]:
    repo, ref = KSU_SOURCES[selection.variant]
    if selection.variant is Variant.SUKI:
        ref = "susfs-main" if selection.susfs else "nongki"
    return repo, ref


def hook_branch(selection: FeatureSelection, layout: Layout) -> Branch:
    branch = Branch("KernelSU")
    variant = selection.variant
    repo, ref = ksu_source(selection)
    branch.steps.append(RunSetupScript(
        constants.KSU_SETUP_URL.format(repo=repo, ref=ref), args=(ref,)
    ))

    if variant in (Variant.NEXT, Variant.SUKI):
        sub = "next" if variant is Variant.NEXT else "suki"
        branch.steps.append(ApplyDiff(
            layout.kernel_patches / sub / "manual_hooks.patch",
            cwd=layout.kernel, fuzz=3,
        ))
        branch.steps.append(SetConfig("CONFIG_KSU_SUSFS_SUS_SU", False))

    branch.steps += [SetConfig(key, True) for key in KSU_ENABLE]
    branch.steps += [SetConfig(key, False) for key in KSU_DISABLE]
    return branch


def susfs_branch(selection: FeatureSelection, layout: Layout) -> Branch:
    if not selection.susfs:
        return Branch("SuSFS", [SetConfig("CONFIG_KSU_SUSFS", False)], disabled=True)

    branch = Branch("SuSFS")

    variant = selection.variant
    patches = layout.susfs / "kernel_patches"
    branch.steps += [
        CloneExternal(constants.SUSFS_REPO, layout.susfs),
        CopyTree(patches / "fs", layout.kernel / "fs"),
        CopyTree(patches / "include", layout.kernel / "include"),
        ApplyDiff(patches / SUSFS_BASE_PATCH_GLOB, cwd=layout.kernel, glob=True),
        ExtractVersion(
            layout.kernel / "include" / "linux" / "susfs.h",
            symbol="SUSFS_VERSION", var=SUSFS_VERSION_VAR,
        ),
    ]

    if variant in KSU_DIRS:
        # The only step in the whole plan allowed to fail
        branch.steps.append(ApplyDiff(
            patches / "KernelSU" / "10_enable_susfs_for_ksu.patch",
            cwd=layout.kernel / KSU_DIRS[variant], required=False,
        ))

    if variant is Variant.NEXT:
        fix_dir = layout.wild_patches / "next" / "susfs_fix_patches" / f"{{{SUSFS_VERSION_VAR}}}"
        branch.steps += [
            CloneExternal(constants.WILD_PATCHES_REPO, layout.wild_patches),
            FailIfMissing(
                fix_dir,
                f"SuSFS fix patches are unavailable for SuSFS {{{SUSFS_VERSION_VAR}}}",
            ),
            ApplyPatchSeries(fix_dir, cwd=layout.kernel / KSU_DIRS[variant]),
        ]

    branch.steps.append(SetConfig("CONFIG_KSU_SUSFS", True))
    return branch


def lxc_branch(layout: Layout) -> Branch:
    return Branch("LXC", [
        ApplyDiff(layout.kernel_patches / "lxc_support.patch", cwd=layout.kernel, fuzz=3),
    ])


def bbg_branch(layout: Layout) -> Branch:
    return Branch("Baseband Guard", [
        RunSetupScript(constants.BBG_SETUP_URL, quiet=True),
        RegisterLsm(layout.kernel / "security" / "Kconfig", module="baseband_guard"),
        SetConfig("CONFIG_BBG", True),
    ])


def plan_branches(selection: FeatureSelection, layout: Layout) -> list[Branch]:
    branches = []
    if selection.hook_enabled:
        branches.append(hook_branch(selection, layout))
    branches.append(susfs_branch(selection, layout))
    if selection.lxc:
        branches.append(lxc_branch(layout))
    if selection.hook_enabled:
        branches.append(bbg_branch(layout))
    return branches


def plan(selection: FeatureSelection, layout: Layout) -> list[PatchStep]:
    """
    Flattens the branches for selection into one ordered step list

    Args:
        selection (FeatureSelection): Normalized feature flags
        layout (Layout): Workspace paths the steps refer to

    Returns:
        list[PatchStep]: Steps in execution order
    """
    return [step for branch in plan_branches(selection, layout) for step in branch.steps]
