"""
Locating the adb executable.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from droidtail.errors import AdbNotFoundError

logger = logging.getLogger(__name__)

SDK_ENV_VARS = ("ANDROID_HOME", "ANDROID_SDK_ROOT")


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def locate_adb(explicit: Optional[str] = None) -> Path:
    """
    Find the adb executable.

    Lookup order: the explicit path, <sdk>/platform-tools/adb for each SDK
    environment variable, then PATH.

    Raises:
        AdbNotFoundError: If no executable adb is found
    """
    if explicit:
        path = Path(explicit).expanduser()
        if _is_executable(path):
            return path
        raise AdbNotFoundError(f"Configured adb is not an executable file: {path}")

    for var in SDK_ENV_VARS:
        sdk = os.getenv(var)
        if not sdk:
            continue
        path = Path(sdk).expanduser() / "platform-tools" / "adb"
        if _is_executable(path):
            logger.debug(f"Using adb from {var}: {path}")
            return path

    found = shutil.which("adb")
    if found:
        return Path(found)

    raise AdbNotFoundError("Cannot find adb. Set ANDROID_HOME or add adb to PATH")


def logcat_command(adb: Path, buffers: str = "all", tail: Optional[int] = None, dump: bool = False) -> str:
    """
    Build the logcat command line.

    Returns:
        Whitespace-delimited command string, e.g. "adb logcat -b all -t 100"
    """
    args = [str(adb), "logcat", "-b", buffers]
    if tail is not None:
        args.append(f"-t {tail}")
    if dump:
        args.append("-d")
    return " ".join(args)
