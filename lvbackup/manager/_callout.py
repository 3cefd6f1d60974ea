# Copyright Red Hat
#
# lvbackup/manager/_callout.py - External program execution
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Execution of external programs, with support for dry-run mode.
"""
from subprocess import run, CompletedProcess
from typing import List, Optional, TextIO
import logging
import shlex
import sys
import os

from lvbackup import LvbackupSystemError

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_error = _log.error

#: Exit status reported when a program cannot be found.
STATUS_NOT_FOUND = 127


def format_command(cmd_args: List[str]) -> str:
    """
    Format a command argument list as a shell-quoted string.
    """
    return " ".join(shlex.quote(str(arg)) for arg in cmd_args)


class Callout:
    """
    Runs external programs on behalf of the manager.

    In dry-run mode every call that changes system state is printed to
    ``out`` and reported as successful without running anything. Queries
    (``effect=False``) always run.
    """

    def __init__(self, dry_run: bool = False, out: Optional[TextIO] = None):
        self.dry_run = dry_run
        self.out = out or sys.stdout

    def _print(self, cmd_args):
        print(format_command(cmd_args), file=self.out)

    def run(self, cmd_args: List[str], effect: bool = True, **kwargs):
        """
        Thin wrapper around ``subprocess.run``.

        Keyword arguments are passed through unchanged. If ``effect`` is
        ``True`` and dry-run mode is enabled the command is printed and a
        successful ``CompletedProcess`` with empty output is returned.
        """
        if self.dry_run and effect:
            self._print(cmd_args)
            empty = "" if kwargs.get("encoding") or kwargs.get("text") else b""
            return CompletedProcess(cmd_args, 0, stdout=empty, stderr=empty)
        _log_debug("Calling %s", format_command(cmd_args))
        return run(cmd_args, **kwargs)

    def execute(self, cmd_args: List[str]) -> int:
        """
        Run an interactive command with inherited standard streams and
        return its exit status.

        :returns: The exit status, or 127 if the program was not found.
        """
        if self.dry_run:
            self._print(cmd_args)
            return 0
        _log_debug("Executing %s", format_command(cmd_args))
        try:
            status = run(cmd_args, check=False)
        except FileNotFoundError as err:
            _log_error("Failed to execute %s: %s", cmd_args[0], err)
            return STATUS_NOT_FOUND
        return status.returncode

    def makedirs(self, path: str, mode: int = 0o700):
        """
        Create directory ``path`` and any missing parents.
        """
        if self.dry_run:
            self._print(["mkdir", "-p", path])
            return
        try:
            os.makedirs(path, mode=mode, exist_ok=True)
        except OSError as err:
            raise LvbackupSystemError(
                f"Failed to create directory {path}: {err}"
            ) from err

    def rmdir(self, path: str):
        """
        Remove the empty directory ``path``.
        """
        if self.dry_run:
            self._print(["rmdir", path])
            return
        try:
            os.rmdir(path)
        except OSError as err:
            raise LvbackupSystemError(
                f"Failed to remove directory {path}: {err}"
            ) from err


__all__ = [
    "STATUS_NOT_FOUND",
    "Callout",
    "format_command",
]
