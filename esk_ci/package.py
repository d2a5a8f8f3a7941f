import hashlib
import shlex
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants
from .errors import StageError
from .flags import BuildSettings, FeatureSelection, Variant
from .log import log_message
from .shell import download_file, latest_release_asset, run_cmd


@dataclass(frozen=True)
class BuildArtifact:
    image: Path
    compressed: Path
    image_sha256: str
    package: Path
    sha256: str
    size: str


def variant_label(selection: FeatureSelection) -> str:
    label = selection.variant.value
    if selection.susfs:
        label += "-SUSFS"
    if selection.lxc:
        label += "-LXC"
    return label


def package_name(kernel_version: str, selection: FeatureSelection,
                 kernel_name: str = constants.KERNEL_NAME) -> str:
    return f"{kernel_name}-{kernel_version}-{variant_label(selection)}"


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def human_size(num_bytes: int) -> str:
    """Size the way 'du -h' prints it, e.g. 512, 4.0K, 21M"""
    size = float(num_bytes)
    for unit in ["", "K", "M", "G"]:
        if size < 1024 or unit == "G":
            if unit == "":
                return str(int(size))
            return f"{size:.1f}{unit}" if size < 10 else f"{size:.0f}{unit}"
        size /= 1024
    return str(num_bytes)


def write_metadata(path: Path, values: dict):
    """
    Writes flat key=value build metadata for the release workflow
    """
    lines = [f"{key}={'' if value is None else value}" for key, value in values.items()]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


class Packager:
    """
    Builds the AnyKernel3 flashable zip from a compiled Image
    """

    def __init__(self, settings: BuildSettings):
        self.settings = settings
        self.layout = settings.layout

    def stage_image(self, image: Path) -> Path:
        """Copies Image into AnyKernel3, KPM-patched for SukiSU"""
        dest = self.layout.anykernel / "Image"
        if self.settings.selection.variant is Variant.SUKI:
            self.patch_kpm(image, dest)
        else:
            shutil.copy2(image, dest)
        return dest

    def patch_kpm(self, image: Path, dest: Path):
        log_message("Patching KPM for SukiSU variant...")
        url = latest_release_asset(
            constants.SUKISU_PATCH_RELEASE_API,
            self.settings.credentials.gh_token,
            lambda name: "patch_linux" in name,
        )
        with tempfile.TemporaryDirectory(prefix="kpm_") as tmp:
            tmpdir = Path(tmp)
            shutil.copy2(image, tmpdir / "Image")
            tool = tmpdir / "patch_linux"
            download_file(url, tool)
            tool.chmod(0o755)
            run_cmd("./patch_linux", cwd=tmpdir)
            patched = tmpdir / "oImage"
            if not patched.is_file():
                raise StageError("patch_linux failed to produce patched Image")
            shutil.move(str(patched), dest)
        log_message("Patched KPM for SukiSU variant", "SUCCESS")

    def compress_image(self, staged: Path) -> tuple[Path, str]:
        """zstd-compresses the staged Image and writes its sha256 file"""
        log_message("Compressing kernel image...")
        compressed = staged.with_name("Image.zst")
        run_cmd(f"zstd -19 -T0 --no-progress -o {compressed.name} {staged.name}",
                cwd=staged.parent)
        staged.unlink()

        digest = sha256_file(compressed)
        (compressed.parent / "Image.zst.sha256").write_text(
            f"{digest}  {compressed.name}\n", encoding="utf-8"
        )
        return compressed, digest

    def compress_binaries(self):
        """upx the AnyKernel3 tools. Failures only warn"""
        log_message("Compressing static binaries with upx...")
        for binary in constants.UPX_LIST:
            path = self.layout.anykernel / binary
            if not path.is_file():
                continue
            if run_cmd(f"upx -9 --lzma --no-progress {shlex.quote(str(path))}",
                       fatal_on_error=False) is not None:
                log_message(f"[UPX] Compressed: {path.name}", "SUCCESS")
            else:
                log_message(f"[UPX] Failed: {path.name}", "WARN")

    def package(self, image: Path, kernel_version: str) -> BuildArtifact:
        """
        Runs every packaging step and zips AnyKernel3

        Args:
            image (Path): Compiled kernel Image
            kernel_version (str): Version string for the package name

        Returns:
            BuildArtifact: Package and digests
        """
        log_message("Packaging AnyKernel3 zip...")
        staged = self.stage_image(image)
        compressed, image_digest = self.compress_image(staged)
        self.compress_binaries()

        name = package_name(kernel_version, self.settings.selection)
        zip_path = self.layout.workspace / f"{name}.zip"
        zip_path.unlink(missing_ok=True)
        run_cmd(
            f"zip -r9q -T -X -y -n .zst {shlex.quote(str(zip_path))} . -x '.git/*' '*.log'",
            cwd=self.layout.anykernel
        )
        if not zip_path.is_file():
            raise StageError(f"Package not created: {zip_path}")

        artifact = BuildArtifact(
            image=image,
            compressed=compressed,
            image_sha256=image_digest,
            package=zip_path,
            sha256=sha256_file(zip_path),
            size=human_size(zip_path.stat().st_size),
        )
        log_message(f"Package: {zip_path.name} ({artifact.size})", "SUCCESS")
        return artifact


def build_metadata(kernel_version: str, toolchain: str, build_date: str,
                   selection: FeatureSelection, workspace: Path,
                   susfs_version: Optional[str]) -> dict:
    label = variant_label(selection)
    return {
        "kernel_version": kernel_version,
        "kernel_name": constants.KERNEL_NAME,
        "toolchain": toolchain,
        "build_date": build_date,
        "package_name": package_name(kernel_version, selection),
        "susfs_version": susfs_version or "",
        "variant": label,
        "name": constants.KERNEL_NAME,
        "out_dir": str(workspace),
        "release_repo": constants.RELEASE_REPO,
        "release_branch": constants.RELEASE_BRANCH,
    }
