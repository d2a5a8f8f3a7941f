import hashlib
from unittest.mock import patch

import pytest

from esk_ci.errors import StageError
from esk_ci.flags import Credentials, FeatureSelection, Layout, BuildSettings, Variant
from esk_ci.package import (
    Packager, build_metadata, human_size, package_name, variant_label, write_metadata,
)


@pytest.mark.parametrize("selection,label", [
    (FeatureSelection(), "NONE"),
    (FeatureSelection(Variant.NEXT, susfs=True), "NEXT-SUSFS"),
    (FeatureSelection(Variant.OFFICIAL, lxc=True), "OFFICIAL-LXC"),
    (FeatureSelection(Variant.SUKI, True, True), "SUKI-SUSFS-LXC"),
])
def test_variant_label(selection, label):
    assert variant_label(selection) == label


def test_package_name():
    sel = FeatureSelection(Variant.SUKI, susfs=True, lxc=True)
    assert package_name("5.10.200", sel) == "ESK-5.10.200-SUKI-SUSFS-LXC"
    assert package_name("5.10.200", sel, kernel_name="X") == "X-5.10.200-SUKI-SUSFS-LXC"


@pytest.mark.parametrize("num,expected", [
    (512, "512"),
    (4096, "4.0K"),
    (21 * 1024 * 1024, "21M"),
])
def test_human_size(num, expected):
    assert human_size(num) == expected


def test_metadata_file(tmp_path):
    sel = FeatureSelection(Variant.NEXT, susfs=True)
    values = build_metadata("5.10.200", "clang 20", "Sun Oct 19", sel, tmp_path, "v1.5.9")
    path = tmp_path / "github.env"
    write_metadata(path, values)
    lines = path.read_text().splitlines()
    assert "kernel_version=5.10.200" in lines
    assert "package_name=ESK-5.10.200-NEXT-SUSFS" in lines
    assert "variant=NEXT-SUSFS" in lines
    assert "susfs_version=v1.5.9" in lines
    assert "release_repo=ESK-Project/esk-releases" in lines
    assert f"out_dir={tmp_path}" in lines


def test_metadata_without_susfs(tmp_path):
    values = build_metadata("5.10.200", "clang", "d", FeatureSelection(), tmp_path, None)
    assert values["susfs_version"] == ""


def settings_for(tmp_path, selection):
    return BuildSettings(
        selection=selection,
        credentials=Credentials("ghp", "t", "c"),
        layout=Layout(tmp_path),
        jobs=2,
    )


def test_compress_image_writes_digest(tmp_path):
    settings = settings_for(tmp_path, FeatureSelection())
    staged = tmp_path / "anykernel3" / "Image"
    staged.parent.mkdir()
    staged.write_bytes(b"kernel")

    def fake_zstd(command, cwd=None, **kwargs):
        (cwd / "Image.zst").write_bytes(b"zst")
        return ""

    with patch("esk_ci.package.run_cmd", side_effect=fake_zstd):
        compressed, digest = Packager(settings).compress_image(staged)

    assert not staged.exists()
    assert digest == hashlib.sha256(b"zst").hexdigest()
    assert (compressed.parent / "Image.zst.sha256").read_text() == f"{digest}  Image.zst\n"


def test_upx_failures_only_warn(tmp_path):
    settings = settings_for(tmp_path, FeatureSelection())
    tools = tmp_path / "anykernel3" / "tools"
    tools.mkdir(parents=True)
    (tools / "magiskboot").write_bytes(b"elf")
    (tools / "zstd").write_bytes(b"elf")

    with patch("esk_ci.package.run_cmd", return_value=None) as run_cmd:
        Packager(settings).compress_binaries()

    assert run_cmd.call_count == 2
    assert all(c.kwargs["fatal_on_error"] is False for c in run_cmd.call_args_list)


def test_stage_image_copies_for_non_suki(tmp_path):
    settings = settings_for(tmp_path, FeatureSelection(Variant.NEXT))
    (tmp_path / "anykernel3").mkdir()
    image = tmp_path / "Image"
    image.write_bytes(b"img")
    staged = Packager(settings).stage_image(image)
    assert staged.read_bytes() == b"img"


def kpm_tools(produce_image):
    def fake_download(url, dest):
        dest.write_bytes(b"#!/bin/sh\n")

    def fake_patch_linux(command, cwd=None, **kwargs):
        assert command == "./patch_linux"
        if produce_image:
            (cwd / "oImage").write_bytes((cwd / "Image").read_bytes() + b"+kpm")
        return ""

    return (
        patch("esk_ci.package.latest_release_asset", return_value="https://example.invalid/patch_linux"),
        patch("esk_ci.package.download_file", side_effect=fake_download),
        patch("esk_ci.package.run_cmd", side_effect=fake_patch_linux),
    )


def test_suki_image_is_kpm_patched(tmp_path):
    settings = settings_for(tmp_path, FeatureSelection(Variant.SUKI))
    (tmp_path / "anykernel3").mkdir()
    image = tmp_path / "Image"
    image.write_bytes(b"img")
    asset, download, run_cmd = kpm_tools(produce_image=True)
    with asset, download, run_cmd:
        staged = Packager(settings).stage_image(image)
    assert staged.read_bytes() == b"img+kpm"


def test_kpm_patch_without_output_is_fatal(tmp_path):
    settings = settings_for(tmp_path, FeatureSelection(Variant.SUKI))
    (tmp_path / "anykernel3").mkdir()
    image = tmp_path / "Image"
    image.write_bytes(b"img")
    asset, download, run_cmd = kpm_tools(produce_image=False)
    with asset, download, run_cmd:
        with pytest.raises(StageError, match="patch_linux failed"):
            Packager(settings).stage_image(image)
    assert not (tmp_path / "anykernel3" / "Image").exists()


def fake_packaging_tools(write_zip):
    commands = []

    def fake_run(command, cwd=None, **kwargs):
        commands.append((command, cwd))
        if command.startswith("zstd"):
            (cwd / "Image.zst").write_bytes(b"zst")
        elif command.startswith("zip") and write_zip:
            (cwd.parent / "ESK-5.10.200-NEXT-LXC.zip").write_bytes(b"PK-zip")
        return ""

    return commands, fake_run


def test_package_zips_anykernel(tmp_path):
    settings = settings_for(tmp_path, FeatureSelection(Variant.NEXT, lxc=True))
    (tmp_path / "anykernel3").mkdir()
    image = tmp_path / "Image"
    image.write_bytes(b"img")
    commands, fake_run = fake_packaging_tools(write_zip=True)

    with patch("esk_ci.package.run_cmd", side_effect=fake_run):
        artifact = Packager(settings).package(image, "5.10.200")

    zip_cmd, zip_cwd = commands[-1]
    assert zip_cmd.startswith("zip -r9q -T -X -y -n .zst ")
    assert str(tmp_path / "ESK-5.10.200-NEXT-LXC.zip") in zip_cmd
    assert zip_cwd == tmp_path / "anykernel3"
    assert artifact.package == tmp_path / "ESK-5.10.200-NEXT-LXC.zip"
    assert artifact.sha256 == hashlib.sha256(b"PK-zip").hexdigest()
    assert artifact.size == "6"
    assert artifact.image_sha256 == hashlib.sha256(b"zst").hexdigest()
    assert artifact.compressed == tmp_path / "anykernel3" / "Image.zst"


def test_package_without_zip_fails(tmp_path):
    settings = settings_for(tmp_path, FeatureSelection(Variant.NEXT, lxc=True))
    (tmp_path / "anykernel3").mkdir()
    image = tmp_path / "Image"
    image.write_bytes(b"img")
    _, fake_run = fake_packaging_tools(write_zip=False)

    with patch("esk_ci.package.run_cmd", side_effect=fake_run):
        with pytest.raises(StageError, match="Package not created"):
            Packager(settings).package(image, "5.10.200")
