# Copyright Red Hat
#
# lvbackup/_lvbackup.py - LVM snapshot backup global definitions
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level lvbackup package.
"""
from dataclasses import dataclass
from os.path import join as path_join
import collections
import logging
import math
import re

_log = logging.getLogger("lvbackup")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Lvbackup debugging subsystem mask (legacy interface)
LVBACKUP_DEBUG_MANAGER = 1
LVBACKUP_DEBUG_COMMAND = 2
LVBACKUP_DEBUG_LVM = 4
LVBACKUP_DEBUG_MOUNTS = 8
LVBACKUP_DEBUG_ALL = (
    LVBACKUP_DEBUG_MANAGER
    | LVBACKUP_DEBUG_COMMAND
    | LVBACKUP_DEBUG_LVM
    | LVBACKUP_DEBUG_MOUNTS
)

# Lvbackup debugging subsystem names
LVBACKUP_SUBSYSTEM_MANAGER = "lvbackup.manager"
LVBACKUP_SUBSYSTEM_COMMAND = "lvbackup.command"
LVBACKUP_SUBSYSTEM_LVM = "lvbackup.lvm"
LVBACKUP_SUBSYSTEM_MOUNTS = "lvbackup.mounts"

_DEBUG_MASK_TO_SUBSYSTEM = {
    LVBACKUP_DEBUG_MANAGER: LVBACKUP_SUBSYSTEM_MANAGER,
    LVBACKUP_DEBUG_COMMAND: LVBACKUP_SUBSYSTEM_COMMAND,
    LVBACKUP_DEBUG_LVM: LVBACKUP_SUBSYSTEM_LVM,
    LVBACKUP_DEBUG_MOUNTS: LVBACKUP_SUBSYSTEM_MOUNTS,
}

_debug_subsystems = set()

#: Top-level state directory for snapshot mount points.
LVBACKUP_RUNTIME_DIR = "/run/lvbackup"

#: Default base directory for snapshot mounts.
LVBACKUP_MOUNTS_DIR = path_join(LVBACKUP_RUNTIME_DIR, "mounts")

DEV_PREFIX = "/dev"
DEV_MAPPER_PREFIX = "/dev/mapper"

#: Suffix appended to an origin volume name to form its snapshot name.
SNAPSHOT_SUFFIX = "-snapshot"

#: File system type marker for swap devices.
FSTYPE_SWAP = "swap"

_SIZE_RE = re.compile(r"^(?P<size>[0-9]+)(?P<units>[EPTGMKBeptgmkb]?)$")

#: Upper case suffixes are decimal, lower case suffixes are powers of two.
_SIZE_SUFFIXES = {
    "": 1,
    "B": 1,
    "K": 10**3,
    "M": 10**6,
    "G": 10**9,
    "T": 10**12,
    "P": 10**15,
    "E": 10**18,
    "b": 1,
    "k": 2**10,
    "m": 2**20,
    "g": 2**30,
    "t": 2**40,
    "p": 2**50,
    "e": 2**60,
}


class SubsystemFilter(logging.Filter):
    """
    Filters DEBUG records based on a set of enabled subsystem names.
    Non-DEBUG records or DEBUG records without a 'subsystem' attribute
    are always passed through.
    """

    def __init__(self, name=""):
        super().__init__(name)
        self.enabled_subsystems = set(_debug_subsystems)

    def filter(self, record):
        # Always pass non-DEBUG messages.
        if record.levelno != logging.DEBUG:
            return True

        # Always pass DEBUG messages that aren't for a specific subsystem.
        if not hasattr(record, "subsystem"):
            return True

        return record.subsystem in self.enabled_subsystems

    def set_debug_subsystems(self, subsystems):
        """Sets the collection of subsystems to allow."""
        self.enabled_subsystems = set(subsystems)


def get_debug_mask():
    """
    Return the current debug mask for the ``lvbackup`` package.

    :returns: The current debug mask value
    :rtype: int
    """
    enabled_subsystems = set(_debug_subsystems)
    lvbackup_log = logging.getLogger("lvbackup")

    for handler in lvbackup_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                enabled_subsystems.update(f.enabled_subsystems)

    mask_map = {v: k for k, v in _DEBUG_MASK_TO_SUBSYSTEM.items()}
    mask = 0
    for subsystem_name in enabled_subsystems:
        mask |= mask_map.get(subsystem_name, 0)
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``lvbackup`` package.

    :param mask: the logical OR of the ``LVBACKUP_DEBUG_*``
                 values to log.
    :rtype: None
    """
    # pylint: disable=global-statement
    global _debug_subsystems

    if mask < 0 or mask > LVBACKUP_DEBUG_ALL:
        raise ValueError(f"Invalid lvbackup debug mask: {mask}")

    enabled_subsystems = []
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if mask & flag:
            enabled_subsystems.append(subsystem_name)

    lvbackup_log = logging.getLogger("lvbackup")
    for handler in lvbackup_log.handlers:
        for f in handler.filters:
            if isinstance(f, SubsystemFilter):
                f.set_debug_subsystems(enabled_subsystems)

    _debug_subsystems = set(enabled_subsystems)


#
# Lvbackup exception types
#


class LvbackupError(Exception):
    """
    Base class for lvbackup errors.
    """


class LvbackupSystemError(LvbackupError):
    """
    An error when calling the operating system.
    """


class LvbackupCalloutError(LvbackupError):
    """
    An error calling out to an external program.
    """


class LvbackupNotFoundError(LvbackupError):
    """
    The requested object does not exist.
    """


class LvbackupArgumentError(LvbackupError):
    """
    An invalid or missing command line option or argument.
    """


class LvbackupConflictingTargetError(LvbackupArgumentError):
    """
    Both ``--all`` and explicit target names were given.
    """


class LvbackupInvalidSizeError(LvbackupArgumentError):
    """
    A size expression could not be parsed.
    """


class LvbackupSizePolicyError(LvbackupError):
    """
    An invalid snapshot size policy was specified.
    """


class LvbackupPreconditionError(LvbackupError):
    """
    A volume cannot be snapshotted: it has no mount table entry, or it is
    a swap device.
    """


class LvbackupMountError(LvbackupError):
    """
    An error performing a mount operation.
    """

    def __init__(self, what: str, where: str, status: int, stderr: str):
        """
        Initialise a new `LvbackupMountError` exception.

        :param what: The source for the failed mount operation.
        :param where: The intended mount point of the operation.
        :param status: The exit status of the mount(8) program.
        :param stderr: The error message from mount(8).
        """
        self.what, self.where, self.status, self.stderr = what, where, status, stderr
        msg = f"Failed to mount {what} to {where} (status={status}): {stderr}"
        super().__init__(msg)


class LvbackupUmountError(LvbackupError):
    """
    An error performing an unmount operation.
    """

    def __init__(self, where: str, status: int, stderr: str):
        """
        Initialise a new `LvbackupUmountError` exception.

        :param where: The mount point for the failed umount operation.
        :param status: The exit status of the umount(8) program.
        :param stderr: The error message from umount(8).
        """
        self.where, self.status, self.stderr = where, status, stderr
        msg = f"Failed to unmount {where} (status={status}): {stderr}"
        super().__init__(msg)


def size_fmt(value):
    """
    Format a size in bytes as a human readable string.

    :param value: The integer value to format.
    :returns: A human readable string reflecting value.
    """
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB"]
    if value == 0:
        return "0B"
    magnitude = math.floor(math.log(abs(value), 1024))
    val = value / math.pow(1024, magnitude)
    if magnitude > 7:
        return f"{val:.1f}YiB"
    return f"{val:3.1f}{suffixes[magnitude]}"


def parse_size_with_units(value):
    """
    Parse a size string with optional unit suffix and return a value in bytes.

    Upper case units (``K``, ``M``, ``G``, ``T``, ``P``, ``E``) are powers of
    1000 and lower case units (``k`` .. ``e``) are powers of 1024. A ``B``
    or ``b`` suffix, or no suffix at all, means the value is already a byte
    count.

    :param value: The size string to parse.
    :returns: an integer size in bytes.
    :raises: ``LvbackupInvalidSizeError`` if the string could not be parsed
             as a valid size value.
    """
    match = _SIZE_RE.search(str(value).strip())
    if match is None:
        raise LvbackupInvalidSizeError(f"Malformed size expression: '{value}'")
    (size, unit) = (match.group("size"), match.group("units"))
    return int(size) * _SIZE_SUFFIXES[unit]


class SnapshotSizePolicy:
    """
    Class representing the snapshot sizing rules: a fraction of the origin
    volume size, bounded by a configured minimum, an optional maximum, and
    the free space of the volume group.
    """

    def __init__(self, ratio=1, minimum=0, maximum=0):
        """
        Initialise a new `SnapshotSizePolicy`.

        :param ratio: The origin volume size is divided by this value.
        :param minimum: The minimum snapshot size in bytes.
        :param maximum: The maximum snapshot size in bytes, or zero for no
                        maximum.
        :raises: ``LvbackupSizePolicyError`` if a parameter is out of range.
        """
        if int(ratio) < 1:
            raise LvbackupSizePolicyError(
                f"Snapshot size ratio must be at least 1: {ratio}"
            )
        if minimum < 0 or maximum < 0:
            raise LvbackupSizePolicyError(
                f"Snapshot size limits cannot be negative: min={minimum}, max={maximum}"
            )
        self.ratio = int(ratio)
        self.minimum = minimum
        self.maximum = maximum

    def __repr__(self):
        return (
            f"SnapshotSizePolicy(ratio={self.ratio}, "
            f"minimum={self.minimum}, maximum={self.maximum})"
        )

    def size(self, volume_size, free_space):
        """
        Return the snapshot size in bytes for an origin volume of
        ``volume_size`` bytes in a volume group with ``free_space`` bytes
        available.

        The steps are applied in a fixed order: divide by the ratio, raise
        to the minimum, lower to the maximum (if set), and lower to the
        available free space.
        """
        candidate = volume_size // self.ratio
        candidate = max(candidate, self.minimum)
        if self.maximum > 0:
            candidate = min(candidate, self.maximum)
        return min(candidate, free_space)


def _dm_escape(name):
    """
    Escape a VG or LV name for use in a device-mapper device name.
    """
    return name.replace("-", "--")


@dataclass(frozen=True)
class Volume:
    """
    An LVM2 logical volume as reported by the volume inventory.
    """

    vg_name: str
    lv_name: str
    size: int
    vg_free: int

    def __str__(self):
        return f"{self.vg_name}/{self.lv_name}"

    @property
    def devpath(self):
        """
        The ``/dev/<vg>/<lv>`` device path for this volume.
        """
        return path_join(DEV_PREFIX, self.vg_name, self.lv_name)

    @property
    def mapper_path(self):
        """
        The ``/dev/mapper/<vg>-<lv>`` device path for this volume.
        """
        return path_join(
            DEV_MAPPER_PREFIX,
            f"{_dm_escape(self.vg_name)}-{_dm_escape(self.lv_name)}",
        )

    @property
    def aliases(self):
        """
        The canonical device path spellings for this volume.
        """
        return [self.devpath, self.mapper_path]

    @property
    def backup_name(self):
        """
        The name used for this volume's backup archive and restore directory.
        """
        return f"{self.vg_name}-{self.lv_name}"


#: An entry in the mount table: device, mount point, type and options.
MountInfo = collections.namedtuple("MountInfo", ["what", "where", "fstype", "options"])


@dataclass(frozen=True)
class SnapshotSpec:
    """
    The snapshot to be provisioned for one volume during one lifecycle run.
    """

    volume: Volume
    size: int
    mount_dir: str

    @classmethod
    def for_volume(cls, volume, policy, mounts_dir):
        """
        Build a ``SnapshotSpec`` for ``volume`` sized by ``policy`` and
        mounted below ``mounts_dir``.
        """
        size = policy.size(volume.size, volume.vg_free)
        return cls(volume, size, path_join(mounts_dir, volume.backup_name))

    @property
    def name(self):
        """
        The snapshot logical volume name.
        """
        return f"{self.volume.lv_name}{SNAPSHOT_SUFFIX}"

    @property
    def vg_lv(self):
        """
        The ``vg/lv`` name of the snapshot logical volume.
        """
        return f"{self.volume.vg_name}/{self.name}"

    @property
    def devpath(self):
        """
        The device path of the snapshot logical volume.
        """
        return path_join(DEV_PREFIX, self.volume.vg_name, self.name)

    @property
    def size_kib(self):
        """
        The snapshot size in whole KiB, truncated.
        """
        return self.size // 1024


__all__ = [
    "LVBACKUP_DEBUG_MANAGER",
    "LVBACKUP_DEBUG_COMMAND",
    "LVBACKUP_DEBUG_LVM",
    "LVBACKUP_DEBUG_MOUNTS",
    "LVBACKUP_DEBUG_ALL",
    "LVBACKUP_SUBSYSTEM_MANAGER",
    "LVBACKUP_SUBSYSTEM_COMMAND",
    "LVBACKUP_SUBSYSTEM_LVM",
    "LVBACKUP_SUBSYSTEM_MOUNTS",
    "LVBACKUP_RUNTIME_DIR",
    "LVBACKUP_MOUNTS_DIR",
    "DEV_PREFIX",
    "DEV_MAPPER_PREFIX",
    "SNAPSHOT_SUFFIX",
    "FSTYPE_SWAP",
    # Debug logging
    "SubsystemFilter",
    "set_debug_mask",
    "get_debug_mask",
    # Exceptions
    "LvbackupError",
    "LvbackupSystemError",
    "LvbackupCalloutError",
    "LvbackupNotFoundError",
    "LvbackupArgumentError",
    "LvbackupConflictingTargetError",
    "LvbackupInvalidSizeError",
    "LvbackupSizePolicyError",
    "LvbackupPreconditionError",
    "LvbackupMountError",
    "LvbackupUmountError",
    # Sizes
    "size_fmt",
    "parse_size_with_units",
    "SnapshotSizePolicy",
    # Records
    "Volume",
    "MountInfo",
    "SnapshotSpec",
]
