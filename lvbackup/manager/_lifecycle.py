# Copyright Red Hat
#
# lvbackup/manager/_lifecycle.py - Snapshot lifecycle
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Snapshot lifecycle for a single volume: create, mount, run the backup
tool, unmount and remove.
"""
from contextlib import contextmanager
import logging

from lvbackup import (
    LVBACKUP_SUBSYSTEM_MANAGER,
    LvbackupError,
    LvbackupSystemError,
    SnapshotSpec,
    size_fmt,
)

from ._config import OperationType
from ._duplicity import build_command, restore_dir
from ._mounts import mount, umount

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_manager(msg, *args, **kwargs):
    """A wrapper for manager subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVBACKUP_SUBSYSTEM_MANAGER}, **kwargs)


class SnapshotLifecycle:
    """
    Back up one volume from a temporary, read-only mounted snapshot.

    Once the snapshot has been created it is always removed again, and
    once it has been mounted it is always unmounted again, whatever the
    outcome of the later steps. Every failure is logged and the last
    failure determines the volume's exit status.
    """

    # pylint: disable=too-many-arguments
    def __init__(self, config, lvm, callout, volume, mount_info):
        """
        Initialise a new ``SnapshotLifecycle``.

        :param config: The ``Configuration`` for this run.
        :param lvm: The volume inventory and snapshot provider.
        :param callout: The ``Callout`` used to run external programs.
        :param volume: The ``Volume`` to back up.
        :param mount_info: The volume's ``MountInfo`` entry.
        """
        self.config = config
        self.lvm = lvm
        self.callout = callout
        self.volume = volume
        self.mount_info = mount_info
        self.spec = SnapshotSpec.for_volume(volume, config.size_policy, config.mounts_dir)
        self.status = 0
        self._umount_failed = False

    def _fail(self, status, msg, *args):
        _log_error(msg, *args)
        self.status = status

    @contextmanager
    def _snapshot(self):
        """
        Create the snapshot and remove it when the scope exits.
        """
        _log_info(
            "Creating %s snapshot %s of %s",
            size_fmt(self.spec.size),
            self.spec.vg_lv,
            self.volume,
        )
        self.lvm.create_snapshot(self.spec)
        try:
            yield self.spec
        finally:
            _log_debug_manager("Removing snapshot %s", self.spec.vg_lv)
            try:
                self.lvm.remove_snapshot(self.spec)
            except LvbackupError as err:
                self._fail(1, "Failed to remove snapshot %s: %s", self.spec.vg_lv, err)

    @contextmanager
    def _mounted(self):
        """
        Mount the snapshot read-only and unmount it when the scope exits.
        """
        mount_dir = self.spec.mount_dir
        _log_debug_manager("Mounting %s at %s", self.spec.devpath, mount_dir)
        mount(
            self.callout,
            self.spec.devpath,
            mount_dir,
            fstype=self.mount_info.fstype,
            options=self.mount_info.options,
        )
        try:
            yield mount_dir
        finally:
            _log_debug_manager("Unmounting %s", mount_dir)
            try:
                umount(self.callout, mount_dir)
            except LvbackupError as err:
                self._umount_failed = True
                self._fail(1, "Failed to unmount snapshot %s: %s", mount_dir, err)

    @contextmanager
    def _mount_dir(self):
        """
        Create the snapshot mount directory and remove it when the scope
        exits. A directory that may still have a file system mounted on it
        is left in place.
        """
        self.callout.makedirs(self.spec.mount_dir)
        try:
            yield self.spec.mount_dir
        finally:
            if not self._umount_failed:
                self._remove_mount_dir()

    def _remove_mount_dir(self):
        try:
            self.callout.rmdir(self.spec.mount_dir)
        except LvbackupSystemError as err:
            _log_warn("Could not remove snapshot mount directory: %s", err)

    def _run_tool(self, mount_dir):
        cmd_args = build_command(self.config, self.volume, source_dir=mount_dir)
        status = self.callout.execute(cmd_args)
        if status:
            self._fail(status, "Backup of %s failed with status %d", self.volume, status)

    def run(self):
        """
        Run the snapshot lifecycle for this volume.

        :returns: The volume's exit status: zero on success.
        """
        self.status = 0
        self._umount_failed = False
        try:
            with self._mount_dir():
                with self._snapshot():
                    with self._mounted() as mount_dir:
                        self._run_tool(mount_dir)
        except LvbackupError as err:
            self._fail(1, "Snapshot backup of %s failed: %s", self.volume, err)
        return self.status


def run_without_snapshot(config, callout, volume, mount_info):
    """
    Run an operation that does not need a snapshot source: restore,
    verify, and the archive query and retention operations.

    :returns: The exit status of the backup tool, or 1 if the operation
              could not be started.
    """
    op_type = config.operation.type
    try:
        if op_type == OperationType.RESTORE:
            callout.makedirs(restore_dir(config.operation, volume))
        cmd_args = build_command(config, volume, mount_point=mount_info.where)
    except LvbackupError as err:
        _log_error("Cannot run %s for %s: %s", op_type.value, volume, err)
        return 1
    status = callout.execute(cmd_args)
    if status:
        _log_error("%s of %s failed with status %d", op_type.value, volume, status)
    return status


def run_operation(config, lvm, callout, volume, mount_info):
    """
    Run the configured operation for one volume.

    :returns: The volume's exit status: zero on success.
    """
    if config.operation.type.is_backup:
        return SnapshotLifecycle(config, lvm, callout, volume, mount_info).run()
    return run_without_snapshot(config, callout, volume, mount_info)


__all__ = [
    "SnapshotLifecycle",
    "run_operation",
    "run_without_snapshot",
]
