#!/usr/bin/env python3
"""
Shared helpers for the ESXi USB scripts
Purpose: Colored console output, optional file logging, prompts and errors
"""

import getpass
from datetime import datetime
from typing import Optional


# Color output
# pylint: disable=too-few-public-methods
class Colors:
    """ANSI color codes for terminal output"""

    RED = "\033[0;31m"
    GREEN = "\033[0;32m"
    YELLOW = "\033[1;33m"
    BLUE = "\033[0;34m"
    NC = "\033[0m"  # No Color


# Global log file, set from --log
_log_file: Optional[str] = None


def set_log_file(path: Optional[str]) -> Optional[str]:
    """Start a fresh log file, returns the path or None if it can't be created"""
    global _log_file
    _log_file = None
    if not path:
        return None

    try:
        with open(path, "w", encoding="utf-8") as f:
            f.write(f"ESXi Kickstart USB Creator Log - {datetime.now()}\n")
    except (IOError, OSError) as e:
        print(f"{Colors.YELLOW}Warning: Could not create log file: {e}{Colors.NC}")
        return None

    _log_file = path
    log("Log started")
    return path


def get_log_file() -> Optional[str]:
    return _log_file


def log(message: str):
    """Write message to log file if logging is enabled"""
    if _log_file:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        try:
            with open(_log_file, "a", encoding="utf-8") as f:
                f.write(f"[{timestamp}] {message}\n")
        except (IOError, OSError):
            pass  # Silently ignore log write failures


def print_message(color: str, message: str):
    """Print colored message and log it"""
    print(f"{color}{message}{Colors.NC}")
    log(message)


def print_banner(title: str, color: str = Colors.GREEN):
    print(f"{color}========================================{Colors.NC}")
    print(f"{color}{title}{Colors.NC}")
    print(f"{color}========================================{Colors.NC}")


class Console:
    """Interactive terminal I/O used by the workflow"""

    def ask(self, prompt: str) -> str:
        answer = input(prompt)
        log(f"Prompt '{prompt.strip()}' answered '{answer}'")
        return answer

    def ask_secret(self, prompt: str) -> str:
        return getpass.getpass(prompt)

    def say(self, message: str, color: Optional[str] = None):
        if color:
            print_message(color, message)
        else:
            print(message)
            log(message)


class UsbCreationError(Exception):
    """Base class for every failure that ends a USB creation run"""


class UserAborted(UsbCreationError):
    """The operator did not confirm the destructive step"""


class MissingSource(UsbCreationError):
    """The installer image path is not a regular file"""


class DeviceNotFound(UsbCreationError):
    """The requested disk number is not an attached removable device"""


class DriveLetterUnavailable(UsbCreationError):
    """No drive letter could be computed for the new partition"""


class ImageVolumeNotFound(UsbCreationError):
    """The mounted ISO volume could not be located by its label"""


class ConfigError(UsbCreationError):
    """Configuration file or parameters are unusable"""


class CommandFailed(UsbCreationError):
    """An external OS command returned a failure"""

    def __init__(self, cmd, returncode: int, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed ({returncode}): {' '.join(self.cmd)}"
        if stderr:
            message += f"\n{stderr.strip()}"
        super().__init__(message)
