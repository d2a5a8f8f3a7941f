import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from . import constants
from .errors import ReporterError
from .log import log_message

# Backslash goes first so escapes added later are not escaped again
MD_V2_RESERVED = "\\_*[]()~`>#+-=|{}.!"
UNESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)


def escape_md_v2(text: str) -> str:
    """Escapes every Telegram MarkdownV2 reserved character"""
    for ch in MD_V2_RESERVED:
        text = text.replace(ch, "\\" + ch)
    return text


def unescape_md_v2(text: str) -> str:
    return UNESCAPE_RE.sub(r"\1", text)


@dataclass(frozen=True)
class RunReport:
    """The one terminal outcome of a run"""
    outcome: str
    message: str
    log_path: Optional[Path] = None
    artifact_path: Optional[Path] = None


class TelegramReporter:
    """
    Sends MarkdownV2 messages and documents to one chat

    In silent mode (release builds) nothing is sent, to avoid flooding
    the chat with one message per build variant
    """

    def __init__(self, bot_token: str, chat_id: str, silent: bool = False, timeout: int = 60):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.silent = silent
        self.timeout = timeout

    def _post(self, method: str, data: dict, files: Optional[dict] = None) -> dict:
        url = constants.TELEGRAM_API.format(token=self.bot_token, method=method)
        try:
            resp = requests.post(url, data=data, files=files, timeout=self.timeout)
            body = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise ReporterError(f"{method}: {e}") from e

        if not isinstance(body, dict) or body.get("ok") is not True:
            err = body.get("description") if isinstance(body, dict) else None
            raise ReporterError(f"{method}: {err or 'Unknown error'}")
        return body

    def send_message(self, text: str):
        """Sends text, which must already be MarkdownV2-escaped"""
        if self.silent:
            return
        self._post("sendMessage", {
            "chat_id": self.chat_id,
            "parse_mode": "MarkdownV2",
            "disable_web_page_preview": "true",
            "text": text,
        })

    def send_document(self, path: Path, caption: str):
        """Uploads path with an already-escaped caption"""
        if self.silent:
            return
        log_message(f"Uploading {path.name}")
        with open(path, "rb") as f:
            self._post(
                "sendDocument",
                {"chat_id": self.chat_id, "parse_mode": "MarkdownV2", "caption": caption},
                files={"document": (path.name, f)},
            )


def _bold(text: str) -> str:
    return f"*{escape_md_v2(text)}*"


def start_message(selection, jobs: int) -> str:
    return "\n".join([
        _bold(f"{constants.KERNEL_NAME} Kernel Build Started!"),
        "",
        f"*Kernel*: {escape_md_v2(constants.KERNEL_NAME)}",
        f"*Defconfig*: {escape_md_v2(constants.KERNEL_DEFCONFIG)}",
        f"*Builder*: {escape_md_v2(f'{constants.KBUILD_BUILD_USER}@{constants.KBUILD_BUILD_HOST}')}",
        f"*KSU*: {escape_md_v2(selection.variant.value)}",
        f"*SuSFS*: {escape_md_v2(str(selection.susfs).lower())}",
        f"*LXC*: {escape_md_v2(str(selection.lxc).lower())}",
        f"*Jobs*: {escape_md_v2(str(jobs))}",
    ])


def failure_message(message: str) -> str:
    return "\n".join([
        _bold(f"{constants.KERNEL_NAME} Kernel CI"),
        escape_md_v2(f"ERROR: {message}"),
    ])


def success_caption(selection, info: dict, artifact) -> str:
    """
    Caption for the uploaded package

    Args:
        selection: FeatureSelection of the run
        info (dict): kernel_version, build_date, susfs_version, toolchain
        artifact: BuildArtifact for the package
    """
    susfs = escape_md_v2(info.get("susfs_version") or "") if selection.susfs else "None"
    return "\n".join([
        _bold(f"{constants.KERNEL_NAME} Build Successfully!"),
        "",
        f"*Builder*: {escape_md_v2(f'{constants.KBUILD_BUILD_USER}@{constants.KBUILD_BUILD_HOST}')}",
        f"*Kernel*: {escape_md_v2(constants.KERNEL_NAME)}",
        "",
        "*Build info*",
        f"• Linux: {escape_md_v2(info['kernel_version'])}",
        f"• Date: {escape_md_v2(info['build_date'])}",
        f"• KernelSU: {escape_md_v2(selection.variant.value)}",
        f"• SuSFS: {susfs}",
        f"• Compiler: {escape_md_v2(info['toolchain'])}",
        "",
        "*Artifact*",
        f"• Name: {escape_md_v2(artifact.package.name)}",
        f"• Size: {escape_md_v2(artifact.size)}",
        f"• SHA256: `{escape_md_v2(artifact.sha256)}`",
    ])
