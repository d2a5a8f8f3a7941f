import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from .errors import StageError, ValidationError
from .log import log_message


@dataclass(frozen=True)
class SourceLocator:
    host: str
    repo: str
    ref: str

    @property
    def url(self) -> str:
        return f"https://{self.host}/{self.repo}"


def parse_source(locator: str) -> SourceLocator:
    """
    Splits a 'host:owner/repo@ref' locator into its parts

    Raises:
        ValidationError: If any of the three parts is missing
    """
    host, sep, rest = locator.partition(":")
    repo, sep2, ref = rest.partition("@")
    if not (sep and sep2 and host and repo and ref):
        raise ValidationError(
            f"Invalid source '{locator}' (expected: host:owner/repo@ref)"
        )
    return SourceLocator(host, repo, ref)


def run_cmd(command: str,
            cwd: Optional[Path] = None,
            fatal_on_error: bool = True,
            input_text: Optional[str] = None
            ) -> Optional[str]:
    """
    Runs a shell command. PATH is expected to already contain the
    toolchain once the build stage has prepared it

    Args:
        command: Shell command to run
        cwd: Working directory (optional)
        fatal_on_error: Raise StageError on failure if True
        input_text: Text fed to the command's stdin (optional)

    Returns:
        Command stdout, or None if failed and not fatal
    """
    log_message(
        f"Running: '{command}' in '{cwd.resolve()}'"
        if cwd else f"Running: '{command}'"
    )

    try:
        result = subprocess.run(
            command, shell=True, check=True, cwd=cwd, input=input_text,
            capture_output=True, text=True, encoding="utf-8", errors="replace"
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        level = "ERROR" if fatal_on_error else "WARN"
        log_message(f"Command failed (exit {e.returncode}): '{command}'", level)
        if e.stdout:
            log_message(f"stdout:\n{e.stdout.strip()}", level)
        if e.stderr:
            log_message(f"stderr:\n{e.stderr.strip()}", level)
        if fatal_on_error:
            raise StageError(
                f"Command failed (exit {e.returncode}): {command}"
            ) from e
        return None
    except OSError as e:
        raise StageError(f"Could not run '{command}': {e}") from e


def reset_dir(path: Path):
    """Recreates a directory so no state survives from a previous run"""
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)


def git_clone(source: str, dest: Path):
    """Shallow clones host:owner/repo@ref into dest"""
    loc = parse_source(source)
    log_message(f"Clone {source} -> {dest}")
    run_cmd(
        f"git clone -q --depth=1 --single-branch --no-tags "
        f"{shlex.quote(loc.url)} -b {shlex.quote(loc.ref)} {shlex.quote(str(dest))}"
    )


def apply_patch(patch_file: Path,
                cwd: Path,
                fuzz: Optional[int] = None,
                fatal_on_error: bool = True) -> bool:
    """
    Applies a unified diff with 'patch -p1'

    Args:
        patch_file: Diff to apply
        cwd: Tree the diff is relative to
        fuzz: Allowed context slack (patch default when None)
        fatal_on_error: Raise StageError on failure if True

    Returns:
        True if the patch applied
    """
    if not patch_file.is_file():
        if fatal_on_error:
            raise StageError(f"Patch not found: {patch_file}")
        log_message(f"Patch not found: {patch_file}", "WARN")
        return False

    fuzz_arg = f" --fuzz={fuzz}" if fuzz is not None else ""
    out = run_cmd(
        f"patch -s -p1{fuzz_arg} --no-backup-if-mismatch < {shlex.quote(str(patch_file))}",
        cwd=cwd,
        fatal_on_error=fatal_on_error
    )
    return out is not None


def http_get(url: str, token: Optional[str] = None, **kwargs) -> requests.Response:
    """GET with an optional GitHub bearer token; non-2xx raises StageError"""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    try:
        resp = requests.get(url, headers=headers, timeout=kwargs.pop("timeout", 60), **kwargs)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise StageError(f"Request failed: {url}: {e}") from e
    return resp


def latest_release_asset(api_url: str, token: str, match) -> str:
    """
    Returns the download URL of the first asset of a repo's latest
    release whose name satisfies match(name)
    """
    assets = http_get(api_url, token=token).json().get("assets", [])
    for asset in assets:
        if match(asset.get("name", "")):
            return asset["browser_download_url"]
    raise StageError(f"No matching asset in latest release: {api_url}")


def download_file(url: str, dest: Path):
    """Streams url into dest"""
    log_message(f"Downloading {url} -> {dest}")
    dest.parent.mkdir(parents=True, exist_ok=True)
    resp = http_get(url, stream=True, timeout=600)
    with open(dest, "wb") as f:
        for chunk in resp.iter_content(chunk_size=1 << 20):
            f.write(chunk)


def run_remote_script(url: str, args: list[str], cwd: Path, quiet: bool = False):
    """Fetches a shell script and pipes it into 'bash -s'"""
    log_message(f"Run setup script: {url} {' '.join(args)}".rstrip())
    script = http_get(url).text
    arg_str = " ".join(shlex.quote(a) for a in args)
    out = run_cmd(f"bash -s {arg_str}".rstrip(), cwd=cwd, input_text=script)
    if out and not quiet:
        log_message(out.strip())
