# Copyright Red Hat
#
# lvbackup/manager/_manager.py - Backup manager
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Backup manager: target resolution, volume lookup and batch processing.
"""
from typing import List, Optional, TextIO, Tuple
import logging
import sys

from lvbackup import (
    LVBACKUP_SUBSYSTEM_MANAGER,
    FSTYPE_SWAP,
    LvbackupConflictingTargetError,
    LvbackupArgumentError,
    LvbackupCalloutError,
    LvbackupNotFoundError,
    LvbackupPreconditionError,
    MountInfo,
    Volume,
)

from ._callout import Callout
from ._lifecycle import run_operation
from ._lvm2 import Lvm2
from ._mounts import MountTableReader

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVBACKUP_SUBSYSTEM_MANAGER}, **kwargs)


#: Backup tool verbosity at which per-volume headers are printed.
HEADER_VERBOSITY = 4

#: Named backup tool verbosity levels.
_VERBOSITY_NAMES = {
    "error": 0,
    "e": 0,
    "warning": 2,
    "w": 2,
    "notice": 4,
    "n": 4,
    "info": 8,
    "i": 8,
    "debug": 9,
    "d": 9,
}


def verbosity_level(verbosity: Optional[str]) -> int:
    """
    Convert a backup tool verbosity value (a number or a level name) to
    an integer level. An unset or unrecognised value counts as notice.
    """
    if verbosity is None:
        return HEADER_VERBOSITY
    value = str(verbosity).strip().lower()
    if value.isdigit():
        return int(value)
    return _VERBOSITY_NAMES.get(value, HEADER_VERBOSITY)


class BackupManager:
    """
    Process each requested volume in turn, isolating per-volume failures
    and aggregating an exit status for the batch.
    """

    def __init__(
        self,
        config,
        lvm=None,
        mount_table: Optional[MountTableReader] = None,
        callout: Optional[Callout] = None,
        out: Optional[TextIO] = None,
    ):
        """
        Initialise a new ``BackupManager``.

        :param config: The ``Configuration`` for this run.
        :param lvm: The volume inventory and snapshot provider. Defaults to
                    an ``Lvm2`` instance.
        :param mount_table: The mount table reader. Defaults to reading
                            ``/proc/self/mounts``.
        :param callout: The ``Callout`` used to run external programs.
        :param out: Stream for per-volume headers.
        """
        self.config = config
        self.callout = callout or Callout(dry_run=config.dry_run)
        self.lvm = lvm or Lvm2(self.callout)
        self.mount_table = mount_table or MountTableReader()
        self.out = out or sys.stdout
        self.failed_groups = []

    @property
    def silent_skips(self):
        """
        ``True`` if volumes without a usable mount entry are skipped
        silently: backups in ``--all`` mode.
        """
        return self.config.all_groups and self.config.operation.type.is_backup

    def resolve_targets(self) -> List[str]:
        """
        Expand the configured targets into an ordered list of device paths.

        With ``--all`` every logical volume of every volume group is
        returned. Otherwise each target naming a volume group is expanded to
        that group's logical volumes and any other target is returned as a
        literal device path. Duplicates are preserved.
        """
        if self.config.all_groups and self.config.targets:
            raise LvbackupConflictingTargetError(
                "--all cannot be combined with volume group or device names"
            )
        self.failed_groups = []
        if self.config.all_groups:
            devices = []
            for vg_name in self.lvm.list_groups():
                devices.extend(self._expand_group(vg_name))
            _log_debug_manager("Resolved all volume groups to %s", devices)
            return devices

        if not self.config.targets:
            raise LvbackupArgumentError("No volume groups or devices given")

        devices = []
        for name in self.config.targets:
            if self.lvm.group_info(name):
                devices.extend(self._expand_group(name))
            else:
                devices.append(name)
        _log_debug_manager("Resolved targets %s to %s", self.config.targets, devices)
        return devices

    def _expand_group(self, vg_name) -> List[str]:
        """
        Return the logical volume paths of ``vg_name``. A group that cannot
        be listed is logged, recorded in ``failed_groups`` and contributes
        no volumes.
        """
        try:
            return self.lvm.list_volumes(vg_name)
        except LvbackupCalloutError as err:
            _log_error("Cannot list volumes in volume group %s: %s", vg_name, err)
            self.failed_groups.append(vg_name)
            return []

    def _find_mount(self, devpath, volume) -> Optional[MountInfo]:
        """
        Look ``devpath`` up in the mount table, falling back to the
        canonical device aliases of ``volume``.
        """
        tried = [devpath]
        mount_info = self.mount_table.lookup(devpath)
        for alias in volume.aliases:
            if mount_info is not None:
                break
            if alias in tried:
                continue
            tried.append(alias)
            mount_info = self.mount_table.lookup(alias)
        if mount_info is None:
            _log_debug_manager("No mount entry for %s (tried %s)", volume, tried)
        return mount_info

    def lookup(self, devpath) -> Tuple[Volume, MountInfo]:
        """
        Return the ``Volume`` and ``MountInfo`` records for ``devpath``.

        :raises LvbackupNotFoundError: If ``devpath`` is not a logical volume.
        :raises LvbackupPreconditionError: If the volume is not in the mount
                                           table or is a swap device.
        """
        volume = self.lvm.volume_info(devpath)
        if volume is None:
            raise LvbackupNotFoundError(f"{devpath} is not a valid logical volume")

        mount_info = self._find_mount(devpath, volume)
        if mount_info is None:
            raise LvbackupPreconditionError(f"{volume} has no mount table entry")
        if mount_info.fstype == FSTYPE_SWAP:
            raise LvbackupPreconditionError(f"{volume} is a swap device")
        return (volume, mount_info)

    def process(self, devpath) -> int:
        """
        Look up and process a single device path.

        :returns: The volume's exit status: zero on success or silent skip.
        """
        try:
            volume, mount_info = self.lookup(devpath)
        except LvbackupNotFoundError as err:
            _log_error("%s", err)
            return 1
        except LvbackupPreconditionError as err:
            if self.silent_skips:
                _log_debug_manager("Skipping %s: %s", devpath, err)
                return 0
            _log_error("Skipping %s: %s", devpath, err)
            return 1

        _log_info(
            "Running %s for %s (mounted at %s)",
            self.config.operation.type.value or "backup",
            volume,
            mount_info.where,
        )
        return run_operation(self.config, self.lvm, self.callout, volume, mount_info)

    def run(self) -> int:
        """
        Process every resolved volume in order.

        :returns: The last non-zero per-volume status, or zero if every
                  volume succeeded.
        """
        devices = self.resolve_targets()
        headers = (
            len(devices) > 1
            and verbosity_level(self.config.tool_options.verbosity) >= HEADER_VERBOSITY
        )

        status = 1 if self.failed_groups else 0
        for devpath in devices:
            if headers:
                print(f"===== {devpath} =====", file=self.out)
            volume_status = self.process(devpath)
            if volume_status:
                _log_warn("Processing %s failed with status %d", devpath, volume_status)
                status = volume_status
            if headers:
                print(f"===== {devpath}: status {volume_status} =====", file=self.out)
        return status


__all__ = [
    "HEADER_VERBOSITY",
    "BackupManager",
    "verbosity_level",
]
