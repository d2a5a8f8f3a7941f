"""
Turns raw environment input into the validated, frozen settings
every other stage is handed. Nothing reads os.environ after this
"""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from .errors import ValidationError

TRUE_TOKENS = {"1", "y", "yes", "t", "true", "on"}
FALSE_TOKENS = {"0", "n", "no", "f", "false", "off"}

REQUIRED_ENV = {
    "GH_TOKEN": "Required GitHub PAT missing",
    "TG_BOT_TOKEN": "Required Telegram Bot Token missing",
    "TG_CHAT_ID": "Required chat ID missing",
}


class Variant(Enum):
    """KernelSU root hook implementation"""
    NONE = "NONE"
    OFFICIAL = "OFFICIAL"
    NEXT = "NEXT"
    SUKI = "SUKI"


@dataclass(frozen=True)
class FeatureSelection:
    variant: Variant = Variant.NONE
    susfs: bool = False
    lxc: bool = False

    @property
    def hook_enabled(self) -> bool:
        return self.variant is not Variant.NONE


@dataclass(frozen=True)
class Credentials:
    gh_token: str
    tg_bot_token: str
    tg_chat_id: str


@dataclass(frozen=True)
class Layout:
    """Every path a run touches, rooted at the workspace"""
    workspace: Path

    @property
    def kernel_patches(self) -> Path:
        return self.workspace / "kernel_patches"

    @property
    def kernel(self) -> Path:
        return self.workspace / "kernel"

    @property
    def kernel_out(self) -> Path:
        return self.kernel / "out"

    @property
    def anykernel(self) -> Path:
        return self.workspace / "anykernel3"

    @property
    def clang(self) -> Path:
        return self.workspace / "clang"

    @property
    def clang_bin(self) -> Path:
        return self.clang / "bin"

    @property
    def out_dir(self) -> Path:
        return self.workspace / "out"

    @property
    def susfs(self) -> Path:
        return self.workspace / "susfs"

    @property
    def wild_patches(self) -> Path:
        return self.workspace / "wild_patches"

    @property
    def log_file(self) -> Path:
        return self.workspace / "build.log"

    @property
    def metadata_file(self) -> Path:
        return self.workspace / "github.env"

    @property
    def image(self) -> Path:
        return self.kernel_out / "arch" / "arm64" / "boot" / "Image"


@dataclass(frozen=True)
class BuildSettings:
    selection: FeatureSelection
    credentials: Credentials
    layout: Layout
    jobs: int
    release_build: bool = False


def norm_bool(value: Optional[str]) -> bool:
    """
    Coerces a flag token to a bool

    Accepted true spellings are 1/y/yes/t/true/on and false spellings
    0/n/no/f/false/off, case-insensitive. Surrounding whitespace is
    ignored. Any other token, including an empty one, is read as False
    rather than rejected
    """
    if value is None:
        return False
    token = value.strip().lower()
    if token in TRUE_TOKENS:
        return True
    if token in FALSE_TOKENS:
        return False
    return False


def normalize_variant(value: Optional[str]) -> Variant:
    """
    Uppercases a KSU token and checks it names a known variant.
    Surrounding whitespace is ignored; a missing token means NONE

    Raises:
        ValidationError: If the token is not NONE|OFFICIAL|NEXT|SUKI
    """
    token = (value or "NONE").strip().upper()
    try:
        return Variant(token)
    except ValueError:
        raise ValidationError(
            f"Invalid KSU='{token}' (expected: NONE|OFFICIAL|NEXT|SUKI)"
        ) from None


def load_credentials(environ: Mapping[str, str]) -> Credentials:
    missing = [
        f"{msg}: {name}" for name, msg in REQUIRED_ENV.items()
        if not environ.get(name)
    ]
    if missing:
        raise ValidationError("; ".join(missing))
    return Credentials(
        gh_token=environ["GH_TOKEN"],
        tg_bot_token=environ["TG_BOT_TOKEN"],
        tg_chat_id=environ["TG_CHAT_ID"],
    )


def load_selection(environ: Mapping[str, str]) -> FeatureSelection:
    return FeatureSelection(
        variant=normalize_variant(environ.get("KSU")),
        susfs=norm_bool(environ.get("SUSFS", "false")),
        lxc=norm_bool(environ.get("LXC", "false")),
    )


def load_settings(environ: Mapping[str, str],
                  workspace: Path,
                  jobs: Optional[int] = None) -> BuildSettings:
    """
    Builds the run settings. Credentials are checked first so a run
    without them fails before anything else is looked at
    """
    credentials = load_credentials(environ)
    return BuildSettings(
        selection=load_selection(environ),
        credentials=credentials,
        layout=Layout(workspace),
        jobs=jobs or os.cpu_count() or 1,
        release_build=norm_bool(environ.get("RELEASE_BUILD", "false")),
    )
