from pathlib import Path

import pytest

from esk_ci.flags import Layout
from esk_ci.kconfig import KernelConfig


@pytest.fixture
def layout(tmp_path: Path) -> Layout:
    return Layout(tmp_path)


@pytest.fixture
def defconfig(layout: Layout) -> Path:
    configs = layout.kernel / "arch" / "arm64" / "configs"
    configs.mkdir(parents=True)
    path = configs / "gki_defconfig"
    path.write_text(
        "CONFIG_LOCALVERSION=\"-esk\"\n"
        "CONFIG_KSU_SUSFS=y\n"
        "# CONFIG_KSU is not set\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def kconfig(layout: Layout, defconfig: Path) -> KernelConfig:
    return KernelConfig(
        template=defconfig,
        generated=layout.kernel_out / ".config",
        kernel_dir=layout.kernel,
        make_args="-j1",
    )


@pytest.fixture(autouse=True)
def no_run_log(monkeypatch):
    monkeypatch.setattr("esk_ci.log.LOG_FILE", None)
