import re
from pathlib import Path
from typing import Optional

from .errors import StageError
from .log import log_message
from .shell import run_cmd


def find_defconfig(configs_dir: Path, name: str) -> Path:
    """
    Locates the template defconfig. The exact path wins, otherwise the
    first match of a recursive search under configs_dir is used
    """
    exact = configs_dir / name
    if exact.is_file():
        return exact

    found = sorted(p for p in configs_dir.rglob(name) if p.is_file())
    if not found:
        raise StageError(f"Defconfig not found: {name}")
    return found[0]


def _config_line(key: str, enabled: bool) -> str:
    return f"{key}=y" if enabled else f"# {key} is not set"


class KernelConfig:
    """
    Boolean Kconfig toggles against the single active config file

    The generated out/.config is used once it exists; until then edits
    go to the template defconfig, which 'make <defconfig>' later reads
    """

    def __init__(self, template: Path, generated: Path, kernel_dir: Path, make_args: str):
        self.template = template
        self.generated = generated
        self.kernel_dir = kernel_dir
        self.make_args = make_args

    @property
    def active_file(self) -> Path:
        if self.generated.is_file():
            return self.generated
        return self.template

    def _pattern(self, key: str) -> re.Pattern:
        return re.compile(
            rf"^(?:{re.escape(key)}=.*|# {re.escape(key)} is not set)$",
            re.MULTILINE,
        )

    def get_config(self, key: str) -> Optional[bool]:
        """Returns True/False for a set key, None if the key is absent"""
        text = self.active_file.read_text(encoding="utf-8")
        matches = self._pattern(key).findall(text)
        if not matches:
            return None
        # Kconfig honours the last assignment
        last = matches[-1]
        return last != f"# {key} is not set" and not last.endswith("=n")

    def set_config(self, key: str, enabled: bool):
        """
        Sets key to y or 'is not set', replacing every existing line for
        it or appending one. Re-applying the same state leaves the file
        as is
        """
        path = self.active_file
        text = path.read_text(encoding="utf-8")
        line = _config_line(key, enabled)
        pattern = self._pattern(key)

        if pattern.search(text):
            new_text = pattern.sub(line, text)
        else:
            if text and not text.endswith("\n"):
                text += "\n"
            new_text = f"{text}{line}\n"

        if new_text != text:
            path.write_text(new_text, encoding="utf-8")
        log_message(f"config {'--enable' if enabled else '--disable'} {key} ({path.name})")

    def regenerate(self):
        """Resolves dependent symbols with 'make olddefconfig'"""
        run_cmd(f"make {self.make_args} -s olddefconfig", cwd=self.kernel_dir)

    def set_lto(self, mode: str):
        """Switches Clang LTO between thin and full, then regenerates"""
        self.set_config("CONFIG_LTO_CLANG", True)
        if mode not in ("thin", "full"):
            log_message("Unknown Clang LTO mode, falling back to Thin LTO", "WARN")
            mode = "thin"
        self.set_config("CONFIG_LTO_CLANG_THIN", mode == "thin")
        self.set_config("CONFIG_LTO_CLANG_FULL", mode == "full")
        self.regenerate()
