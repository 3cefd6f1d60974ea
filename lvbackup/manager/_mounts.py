# Copyright Red Hat
#
# lvbackup/manager/_mounts.py - Mount table and mount support
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Mount table lookups and mount helpers for snapshot volumes.
"""
from subprocess import CalledProcessError, TimeoutExpired
from typing import Optional
import logging
import os

from lvbackup import (
    LVBACKUP_SUBSYSTEM_MOUNTS,
    FSTYPE_SWAP,
    LvbackupCalloutError,
    LvbackupNotFoundError,
    LvbackupSystemError,
    LvbackupMountError,
    LvbackupUmountError,
    MountInfo,
)

from ._callout import Callout, format_command

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVBACKUP_SUBSYSTEM_MOUNTS}, **kwargs)


#: Path to /proc/self/mounts
PROC_MOUNTS = "/proc/self/mounts"

#: Path to /proc/swaps
PROC_SWAPS = "/proc/swaps"

#: Timeout for mount helper programs
_LVBACKUP_MOUNT_HELPER_TIMEOUT = int(os.getenv("LVBACKUP_MOUNT_TIMEOUT", "60"))


def _unescape_mounts(escaped: str) -> str:
    """
    Unescape octal escapes in values read from /proc/*mounts

    :param escaped: The string to unescape.
    :type escaped: str
    :returns: The unescaped string with octal values replaced by literal
              character values.
    :rtype: str
    """
    return (
        escaped.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def parse_mounts_line(line: str) -> Optional[MountInfo]:
    """
    Parse one line of ``/proc/mounts`` format data.

    :param line: The line to parse.
    :returns: A ``MountInfo`` tuple, or ``None`` if the line is blank or
              malformed.
    """
    parts = line.split()
    if len(parts) != 6:
        return None
    what, where, fstype, options, _, _ = parts
    return MountInfo(
        _unescape_mounts(what),
        _unescape_mounts(where),
        fstype,
        _unescape_mounts(options),
    )


def parse_swaps_line(line: str) -> Optional[MountInfo]:
    """
    Parse one line of ``/proc/swaps`` format data into a ``MountInfo``
    with the ``swap`` file system type.

    :param line: The line to parse.
    :returns: A ``MountInfo`` tuple, or ``None`` for the header line or a
              malformed line.
    """
    parts = line.split()
    if len(parts) != 5 or parts[0] == "Filename":
        return None
    return MountInfo(_unescape_mounts(parts[0]), "none", FSTYPE_SWAP, "defaults")


class MountTableReader:
    """
    A class to read and query the system mount table and the list of
    active swap devices.
    """

    def __init__(self, path=PROC_MOUNTS, swaps_path=PROC_SWAPS):
        """
        Initialise a new ``MountTableReader`` for the mounts file at
        ``path``. The file is read afresh for every lookup.

        :param path: Path to the mounts file. Defaults to
                     ``/proc/self/mounts``.
        :param swaps_path: Path to the active swaps file. Defaults to
                           ``/proc/swaps``.
        """
        self.path = path
        self.swaps_path = swaps_path

    def swaps(self):
        """
        Iterate over the active swap devices.

        :yields: A ``MountInfo`` tuple with the ``swap`` file system type
                 for each active swap device. A missing swaps file yields
                 nothing.
        :raises LvbackupSystemError: If the swaps file cannot be read.
        """
        try:
            with open(self.swaps_path, "r", encoding="utf8") as fp:
                for line in fp:
                    entry = parse_swaps_line(line.strip())
                    if entry is not None:
                        yield entry
        except FileNotFoundError:
            _log_debug_mounts("Swaps file %s not found", self.swaps_path)
        except OSError as err:
            raise LvbackupSystemError(
                f"Error reading swaps file {self.swaps_path}: {err}"
            ) from err

    def __iter__(self):
        """
        Iterate over the entries of the mount table.

        :yields: A ``MountInfo`` tuple for each well-formed entry.
        :raises LvbackupNotFoundError: If the mounts file does not exist.
        :raises LvbackupSystemError: If the mounts file cannot be read.
        """
        try:
            with open(self.path, "r", encoding="utf8") as fp:
                for line in fp:
                    line = line.strip()
                    if not line:
                        continue
                    entry = parse_mounts_line(line)
                    if entry is None:
                        _log_warn("Skipping malformed %s line: %s", self.path, line)
                        continue
                    yield entry
        except FileNotFoundError as err:
            raise LvbackupNotFoundError(f"Mounts file not found: {self.path}") from err
        except OSError as err:
            raise LvbackupSystemError(
                f"Error reading mounts file {self.path}: {err}"
            ) from err

    def lookup(self, devpath) -> Optional[MountInfo]:
        """
        Return the first mount table entry for device ``devpath``, or a
        ``swap`` entry if ``devpath`` is an active swap device, or ``None``
        if the device is neither mounted nor in use as swap.
        """
        for entry in self:
            if entry.what == devpath:
                _log_debug_mounts("Found mount entry for %s: %s", devpath, entry)
                return entry

        # The kernel lists swap devices by their /dev/dm-N node.
        realpath = os.path.realpath(devpath)
        for entry in self.swaps():
            if entry.what in (devpath, realpath):
                _log_debug_mounts("Found swap entry for %s: %s", devpath, entry)
                return entry
        return None

    def __repr__(self):
        return f"MountTableReader(path='{self.path}', swaps_path='{self.swaps_path}')"


def _merge_options(opts_a, opts_b):
    """
    Merge two comma-separated mount options strings.

    :param opts_a: The first set of options.
    :param opts_b: The second set of options.
    :returns: Merged "opts_a,opts_b"
    :rtype: ``str``
    """
    return ",".join(filter(None, [opts_a, opts_b]))


def mount(
    callout: Callout,
    what: str,
    where: str,
    fstype: Optional[str] = None,
    options: str = "defaults",
    readonly: bool = True,
):
    """
    Call the mount program to mount a file system.

    :param callout: The ``Callout`` used to run the mount program.
    :param what: The source for the mount operation.
    :param where: The path to the mount point.
    :param fstype: An optional file system type.
    :param options: Options to pass to the mount program.
    :param readonly: Mount the filesystem read-only.
    """
    mount_cmd = ["mount"]

    if options in ("defaults", ""):
        options = ""

    if readonly:
        options = _merge_options(options, "ro")

    # An XFS snapshot shares its origin's UUID.
    if fstype == "xfs":
        options = _merge_options(options, "nouuid")

    if fstype:
        mount_cmd.extend(["--types", fstype])

    mount_cmd.extend(["--options", options or "defaults", what, where])
    _log_debug_mounts("Calling %s", format_command(mount_cmd))

    try:
        callout.run(
            mount_cmd,
            check=True,
            capture_output=True,
            encoding="utf8",
            timeout=_LVBACKUP_MOUNT_HELPER_TIMEOUT,
        )
    except FileNotFoundError as err:
        raise LvbackupCalloutError(f"mount program not found: {err}") from err
    except TimeoutExpired as err:
        raise LvbackupCalloutError(
            f"Timed out calling mount for {what} -> {where}: {err}"
        ) from err
    except CalledProcessError as err:
        raise LvbackupMountError(what, where, err.returncode, err.stderr) from err


def umount(callout: Callout, where: str):
    """
    Call the umount program to unmount a file system.

    :param callout: The ``Callout`` used to run the umount program.
    :param where: The mount point to be unmounted.
    """
    umount_cmd = ["umount", where]
    _log_debug_mounts("Calling %s", format_command(umount_cmd))
    try:
        callout.run(
            umount_cmd,
            check=True,
            capture_output=True,
            encoding="utf8",
            timeout=_LVBACKUP_MOUNT_HELPER_TIMEOUT,
        )
    except FileNotFoundError as err:
        raise LvbackupCalloutError(f"umount program not found: {err}") from err
    except TimeoutExpired as err:
        raise LvbackupCalloutError(f"Timed out calling umount for {where}: {err}") from err
    except CalledProcessError as err:
        raise LvbackupUmountError(where, err.returncode, err.stderr) from err


__all__ = [
    "PROC_MOUNTS",
    "MountTableReader",
    "PROC_SWAPS",
    "parse_mounts_line",
    "parse_swaps_line",
    "mount",
    "umount",
]
