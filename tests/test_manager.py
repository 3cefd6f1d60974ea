# Copyright Red Hat
#
# tests/test_manager.py - Backup manager tests
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
from io import StringIO
import unittest
import logging

log = logging.getLogger()

from lvbackup import (
    LvbackupConflictingTargetError,
    LvbackupNotFoundError,
    LvbackupPreconditionError,
    MountInfo,
    SnapshotSizePolicy,
    Volume,
)
from lvbackup.manager import (
    BackupManager,
    BackupTarget,
    Configuration,
    OperationRequest,
    OperationType,
    ToolOptions,
    verbosity_level,
)

from tests import FakeCallout, FakeLvm, FakeMountTable, make_mount

GB = 10**9


def _config(targets=(), all_groups=False, op=OperationType.UNSET, policy=None, verbosity=None):
    return Configuration(
        targets=tuple(targets),
        all_groups=all_groups,
        size_policy=policy or SnapshotSizePolicy(),
        operation=OperationRequest(op),
        tool_options=ToolOptions(verbosity=verbosity),
        backup_target=BackupTarget(directory="/backup"),
        mounts_dir="/run/lvbackup/mounts",
    )


class BackupManagerTests(unittest.TestCase):
    """Test target resolution, lookup and batch processing"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self.lv0 = Volume("vg0", "lv0", 100 * GB, 50 * GB)
        self.lv1 = Volume("vg0", "lv1", 20 * GB, 50 * GB)
        self.data = Volume("vg1", "data", 40 * GB, 10 * GB)
        self.swap = Volume("vg1", "swap", 4 * GB, 10 * GB)
        self.lvm = FakeLvm([self.lv0, self.lv1, self.data, self.swap])
        self.mounts = FakeMountTable([
            make_mount(self.lv0, where="/"),
            MountInfo(self.lv1.mapper_path, "/home", "xfs", "rw"),
            make_mount(self.swap, where="swap", fstype="swap", options="defaults"),
        ])
        self.callout = FakeCallout()
        self.out = StringIO()

    def _manager(self, config):
        return BackupManager(
            config,
            lvm=self.lvm,
            mount_table=self.mounts,
            callout=self.callout,
            out=self.out,
        )

    def test_resolve_all(self):
        manager = self._manager(_config(all_groups=True))
        self.assertEqual(
            manager.resolve_targets(),
            ["/dev/vg0/lv0", "/dev/vg0/lv1", "/dev/vg1/data", "/dev/vg1/swap"],
        )

    def test_resolve_names(self):
        manager = self._manager(_config(targets=["vg1", "/dev/sdz1", "vg1"]))
        self.assertEqual(
            manager.resolve_targets(),
            ["/dev/vg1/data", "/dev/vg1/swap", "/dev/sdz1", "/dev/vg1/data", "/dev/vg1/swap"],
        )

    def test_resolve_conflict(self):
        manager = self._manager(_config(targets=["vg0"], all_groups=True))
        with self.assertRaises(LvbackupConflictingTargetError):
            manager.resolve_targets()

    def test_lookup(self):
        manager = self._manager(_config(targets=["vg0"]))
        volume, mount_info = manager.lookup("/dev/vg0/lv0")
        self.assertEqual(volume, self.lv0)
        self.assertEqual(mount_info.where, "/")

    def test_lookup_alias(self):
        manager = self._manager(_config(targets=["vg0"]))
        volume, mount_info = manager.lookup("/dev/vg0/lv1")
        self.assertEqual(volume, self.lv1)
        self.assertEqual(mount_info.where, "/home")

    def test_lookup_not_a_volume(self):
        manager = self._manager(_config(targets=["/dev/sdz1"]))
        with self.assertRaises(LvbackupNotFoundError):
            manager.lookup("/dev/sdz1")

    def test_lookup_not_mounted(self):
        manager = self._manager(_config(targets=["vg1"]))
        with self.assertRaises(LvbackupPreconditionError):
            manager.lookup("/dev/vg1/data")

    def test_lookup_swap(self):
        manager = self._manager(_config(targets=["vg1"]))
        with self.assertRaisesRegex(LvbackupPreconditionError, "swap"):
            manager.lookup("/dev/vg1/swap")

    def test_full_backup_ratio(self):
        config = _config(
            targets=["/dev/vg0/lv0"],
            op=OperationType.FULL,
            policy=SnapshotSizePolicy(ratio=4),
        )
        self.assertEqual(self._manager(config).run(), 0)
        self.assertEqual(
            self.lvm.calls,
            [("create", "vg0/lv0-snapshot", 25 * GB // 1024), ("remove", "vg0/lv0-snapshot")],
        )
        self.assertEqual(
            self.callout.names(),
            ["makedirs", "mount", "duplicity", "umount", "rmdir"],
        )
        self.assertEqual(self.callout.calls[2][1][:2], ["duplicity", "full"])

    def test_full_backup_maximum(self):
        config = _config(
            targets=["/dev/vg0/lv0"],
            op=OperationType.FULL,
            policy=SnapshotSizePolicy(ratio=1, maximum=10 * GB),
        )
        self.assertEqual(self._manager(config).run(), 0)
        self.assertEqual(self.lvm.calls[0], ("create", "vg0/lv0-snapshot", 10 * GB // 1024))

    def test_unmounted_silent_in_all_mode(self):
        self.lvm = FakeLvm([self.data])
        config = _config(all_groups=True)
        self.assertEqual(self._manager(config).run(), 0)
        self.assertEqual(self.lvm.calls, [])
        self.assertEqual(self.callout.calls, [])

    def test_unmounted_reported_with_targets(self):
        config = _config(targets=["/dev/vg1/data"])
        with self.assertLogs("lvbackup", level="WARNING") as cm:
            self.assertEqual(self._manager(config).run(), 1)
        self.assertTrue(any("no mount table entry" in line for line in cm.output))
        self.assertEqual(self.lvm.calls, [])

    def test_unmounted_reported_in_all_mode_for_queries(self):
        self.lvm = FakeLvm([self.data])
        config = _config(all_groups=True, op=OperationType.COLLECTION_STATUS)
        self.assertEqual(self._manager(config).run(), 1)

    def test_swap_skipped(self):
        config = _config(targets=["/dev/vg1/swap"])
        self.assertEqual(self._manager(config).run(), 1)
        self.assertEqual(self.lvm.calls, [])

    def test_swap_silent_in_all_mode(self):
        self.lvm = FakeLvm([self.swap])
        self.assertEqual(self._manager(_config(all_groups=True)).run(), 0)
        self.assertEqual(self.lvm.calls, [])

    def test_not_a_volume_reported(self):
        config = _config(targets=["/dev/sdz1", "/dev/vg0/lv0"])
        self.assertEqual(self._manager(config).run(), 1)
        self.assertEqual([call[0] for call in self.lvm.calls], ["create", "remove"])

    def test_tool_failure_status(self):
        self.callout = FakeCallout(tool_status=30)
        config = _config(targets=["/dev/vg0/lv0"], op=OperationType.FULL)
        self.assertEqual(self._manager(config).run(), 30)
        self.assertEqual(self.callout.names().count("umount"), 1)
        self.assertEqual([call[0] for call in self.lvm.calls].count("remove"), 1)

    def test_tool_failure_then_umount_failure(self):
        self.callout = FakeCallout(fail=["umount"], tool_status=30)
        config = _config(targets=["/dev/vg0/lv0"], op=OperationType.FULL)
        self.assertEqual(self._manager(config).run(), 1)

    def test_last_error_wins(self):
        self.callout = FakeCallout(tool_status=30)
        config = _config(targets=["/dev/vg0/lv0", "/dev/sdz1"])
        self.assertEqual(self._manager(config).run(), 1)

        self.callout = FakeCallout(tool_status=30)
        config = _config(targets=["/dev/sdz1", "/dev/vg0/lv0"])
        self.assertEqual(self._manager(config).run(), 30)

    def test_failure_does_not_stop_batch(self):
        config = _config(targets=["/dev/vg1/data", "/dev/vg0/lv0", "/dev/vg0/lv1"])
        self.assertEqual(self._manager(config).run(), 1)
        self.assertEqual(self.callout.names().count("duplicity"), 2)

    def test_group_listing_failure_does_not_stop_batch(self):
        self.lvm.fail_list = {"vg1"}
        manager = self._manager(_config(targets=["vg1", "vg0"]))
        self.assertEqual(manager.run(), 1)
        self.assertEqual(manager.failed_groups, ["vg1"])
        self.assertEqual(self.callout.names().count("duplicity"), 2)

    def test_group_listing_failure_in_all_mode(self):
        self.lvm.fail_list = {"vg1"}
        manager = self._manager(_config(all_groups=True))
        self.assertEqual(manager.resolve_targets(), ["/dev/vg0/lv0", "/dev/vg0/lv1"])
        self.assertEqual(manager.run(), 1)
        self.assertEqual(self.callout.names().count("duplicity"), 2)

    def test_headers_for_multiple_volumes(self):
        config = _config(targets=["vg0"])
        self.assertEqual(self._manager(config).run(), 0)
        output = self.out.getvalue()
        self.assertIn("/dev/vg0/lv0", output)
        self.assertIn("/dev/vg0/lv1", output)

    def test_no_headers_for_single_volume(self):
        self._manager(_config(targets=["/dev/vg0/lv0"])).run()
        self.assertEqual(self.out.getvalue(), "")

    def test_no_headers_at_low_verbosity(self):
        self._manager(_config(targets=["vg0"], verbosity="warning")).run()
        self.assertEqual(self.out.getvalue(), "")

    def test_verify_without_snapshot(self):
        config = _config(targets=["/dev/vg0/lv0"], op=OperationType.VERIFY)
        self.assertEqual(self._manager(config).run(), 0)
        self.assertEqual(self.lvm.calls, [])
        self.assertEqual(
            self.callout.calls,
            [("execute", ["duplicity", "verify", "file:///backup/vg0-lv0", "/"])],
        )

    def test_verbosity_level(self):
        self.assertEqual(verbosity_level(None), 4)
        self.assertEqual(verbosity_level("9"), 9)
        self.assertEqual(verbosity_level("warning"), 2)
        self.assertEqual(verbosity_level("e"), 0)
        self.assertEqual(verbosity_level("Info"), 8)
