import datetime
import sys
from pathlib import Path
from typing import Optional

# ANSI colors per level, console only
COLORS = {
    "INFO": "\033[0;34m",
    "SUCCESS": "\033[0;32m",
    "WARN": "\033[1;33m",
    "ERROR": "\033[0;31m",
}
NC = "\033[0m"

# Run log, set by init_log()
LOG_FILE: Optional[Path] = None


def init_log(path: Path):
    """
    Starts a fresh run log. Everything logged afterwards is duplicated
    to this file so the uploaded log covers the whole run

    Args:
        path (Path): Log file, truncated if it already exists
    """
    global LOG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("", encoding="utf-8")
    LOG_FILE = path


def log_message(message: str, level: str = "INFO"):
    """
    Logs a message to console and appends it to the run log

    Args:
        message (str): Message to log
        level (str): One of INFO, SUCCESS, WARN, ERROR
    """
    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    prefix = f"[{timestamp}] [{level}]"
    color = COLORS.get(level, "")
    stream = sys.stderr if level == "ERROR" else sys.stdout
    print(f"{color}{prefix}{NC} {message}", file=stream)

    if LOG_FILE is None:
        return
    try:
        with open(LOG_FILE, "a", encoding="utf-8") as log_file:
            log_file.write(f"{prefix} {message}\n")
    except OSError as e:
        print(f"Logging failed: {e}", file=sys.stderr)


def info(message: str):
    log_message(message, "INFO")


def success(message: str):
    log_message(message, "SUCCESS")


def warn(message: str):
    log_message(message, "WARN")


def error(message: str):
    log_message(message, "ERROR")
