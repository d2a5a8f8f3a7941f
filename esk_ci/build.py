import datetime
import os
import re
import shlex
from pathlib import Path

from . import constants
from .errors import StageError
from .flags import BuildSettings, Layout
from .kconfig import KernelConfig, find_defconfig
from .log import log_message
from .shell import download_file, latest_release_asset, run_cmd


def make_args(jobs: int, layout: Layout) -> str:
    """Fixed argument template passed to every make invocation"""
    return " ".join([
        f"-j{jobs}",
        f"O={shlex.quote(str(layout.kernel_out))}",
        f"ARCH={constants.ARCH}",
        f"CC={shlex.quote(constants.CC)}",
        f"CROSS_COMPILE={constants.CROSS_COMPILE_PREFIX}",
        "LLVM=1",
        f"LD={shlex.quote(str(layout.clang_bin / 'ld.lld'))}",
    ])


def parse_compiler_string(clang_v: str) -> str:
    """
    First line of 'clang -v' without the source URL and ' version', e.g.
    'Android (12833971, +pgo) clang 20.0.0 (https://...)' ->
    'Android (12833971, +pgo) clang 20.0.0'
    """
    first = clang_v.strip().splitlines()[0] if clang_v.strip() else ""
    first = re.sub(r"\(https.*", "", first)
    return first.replace(" version", "", 1).strip()


class BuildStage:
    """
    Toolchain setup and the kernel compile

    Args:
        settings (BuildSettings): Run settings
    """

    def __init__(self, settings: BuildSettings):
        self.settings = settings
        self.layout = settings.layout
        self.make_args = make_args(settings.jobs, self.layout)
        self.compiler_string = ""
        self.build_timestamp = ""
        self.kernel_version = ""

    def fetch_toolchain(self):
        """Downloads the latest AOSP Clang mirror release into clang/"""
        log_message("Fetch AOSP Clang toolchain")
        url = latest_release_asset(
            constants.CLANG_RELEASE_API,
            self.settings.credentials.gh_token,
            lambda name: name.endswith(".tar.gz"),
        )
        archive = self.layout.workspace / "clang-archive"
        self.layout.clang.mkdir(parents=True, exist_ok=True)
        download_file(url, archive)
        try:
            run_cmd(f"tar -xzf {shlex.quote(str(archive))} -C {shlex.quote(str(self.layout.clang))}")
        finally:
            archive.unlink(missing_ok=True)

    def setup_environment(self):
        """
        Puts clang on PATH and exports the KBUILD identity variables
        """
        clang_bin = str(self.layout.clang_bin)
        path_dirs = os.environ.get("PATH", "").split(os.pathsep)
        if clang_bin not in path_dirs:
            os.environ["PATH"] = os.pathsep.join([clang_bin] + path_dirs)

        out = run_cmd(f"{shlex.quote(str(self.layout.clang_bin / 'clang'))} -v 2>&1")
        self.compiler_string = parse_compiler_string(out or "")
        self.build_timestamp = datetime.datetime.now().astimezone().strftime("%a %b %d %H:%M:%S %Z %Y")

        os.environ["KBUILD_COMPILER_STRING"] = self.compiler_string
        os.environ["KBUILD_BUILD_TIMESTAMP"] = self.build_timestamp
        os.environ["KBUILD_BUILD_USER"] = constants.KBUILD_BUILD_USER
        os.environ["KBUILD_BUILD_HOST"] = constants.KBUILD_BUILD_HOST
        log_message(f"Compiler: {self.compiler_string}")

    def read_kernel_version(self) -> str:
        out = run_cmd("make -s kernelversion", cwd=self.layout.kernel)
        self.kernel_version = (out or "").strip()
        if not self.kernel_version:
            raise StageError("Could not read kernel version")
        log_message(f"Kernel version: {self.kernel_version}")
        return self.kernel_version

    def kernel_config(self) -> KernelConfig:
        """Config overlay over the defconfig template and out/.config"""
        configs_dir = self.layout.kernel / "arch" / constants.ARCH / "configs"
        template = find_defconfig(configs_dir, constants.KERNEL_DEFCONFIG)
        return KernelConfig(
            template=template,
            generated=self.layout.kernel_out / ".config",
            kernel_dir=self.layout.kernel,
            make_args=self.make_args,
        )

    def build(self, kconfig: KernelConfig) -> Path:
        """
        Generates .config from the patched defconfig, applies the LTO
        mode and compiles Image

        Returns:
            Path: The compiled kernel Image
        """
        log_message(f"Generate defconfig: {constants.KERNEL_DEFCONFIG}")
        run_cmd(f"make {self.make_args} {constants.KERNEL_DEFCONFIG}", cwd=self.layout.kernel)
        log_message("Defconfig generated", "SUCCESS")

        kconfig.set_lto(constants.CLANG_LTO)

        log_message(f"Starting kernel build with {self.settings.jobs} parallel jobs...")
        run_cmd(f"make {self.make_args} Image", cwd=self.layout.kernel)

        if not self.layout.image.is_file():
            raise StageError(f"Kernel image not found: {self.layout.image}")
        log_message("Kernel built successfully", "SUCCESS")
        return self.layout.image
