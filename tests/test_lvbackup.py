# Copyright Red Hat
#
# tests/test_lvbackup.py - LVM snapshot backup global definition tests
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
import logging

import lvbackup
from lvbackup import (
    LvbackupInvalidSizeError,
    LvbackupArgumentError,
    LvbackupSizePolicyError,
    SnapshotSizePolicy,
    SnapshotSpec,
    Volume,
)

log = logging.getLogger()

GiB = 2**30
MiB = 2**20


class LvbackupTests(unittest.TestCase):
    """Test lvbackup package globals"""

    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)

    def tearDown(self):
        lvbackup.set_debug_mask(0)

    def test_parse_size_with_units_binary(self):
        self.assertEqual(lvbackup.parse_size_with_units("10g"), 10737418240)
        self.assertEqual(lvbackup.parse_size_with_units("1k"), 1024)
        self.assertEqual(lvbackup.parse_size_with_units("3m"), 3 * MiB)
        self.assertEqual(lvbackup.parse_size_with_units("1e"), 2**60)

    def test_parse_size_with_units_decimal(self):
        self.assertEqual(lvbackup.parse_size_with_units("10G"), 10000000000)
        self.assertEqual(lvbackup.parse_size_with_units("2K"), 2000)
        self.assertEqual(lvbackup.parse_size_with_units("1T"), 10**12)

    def test_parse_size_with_units_bytes(self):
        self.assertEqual(lvbackup.parse_size_with_units("5B"), 5)
        self.assertEqual(lvbackup.parse_size_with_units("5b"), 5)
        self.assertEqual(lvbackup.parse_size_with_units("5"), 5)
        self.assertEqual(lvbackup.parse_size_with_units("0"), 0)

    def test_parse_size_with_units_bad(self):
        for bad in ("5x", "", "G", "-1G", "1.5G", "ten"):
            with self.subTest(bad=bad):
                with self.assertRaises(LvbackupInvalidSizeError):
                    lvbackup.parse_size_with_units(bad)

    def test_invalid_size_is_argument_error(self):
        with self.assertRaises(LvbackupArgumentError):
            lvbackup.parse_size_with_units("5x")

    def test_size_fmt(self):
        self.assertEqual(lvbackup.size_fmt(0), "0B")
        self.assertEqual(lvbackup.size_fmt(1024), "1.0KiB")
        self.assertEqual(lvbackup.size_fmt(10 * GiB), "10.0GiB")

    def test_size_policy_ratio_only(self):
        policy = SnapshotSizePolicy(ratio=4)
        self.assertEqual(policy.size(100 * GiB, 200 * GiB), 25 * GiB)

    def test_size_policy_minimum(self):
        policy = SnapshotSizePolicy(ratio=10, minimum=5 * GiB)
        self.assertEqual(policy.size(20 * GiB, 100 * GiB), 5 * GiB)

    def test_size_policy_maximum(self):
        policy = SnapshotSizePolicy(ratio=1, maximum=8 * GiB)
        self.assertEqual(policy.size(20 * GiB, 100 * GiB), 8 * GiB)

    def test_size_policy_zero_maximum_is_unbounded(self):
        policy = SnapshotSizePolicy(ratio=1, maximum=0)
        self.assertEqual(policy.size(20 * GiB, 100 * GiB), 20 * GiB)

    def test_size_policy_free_space_last(self):
        # The minimum is applied before the free space ceiling.
        policy = SnapshotSizePolicy(ratio=10, minimum=5 * GiB, maximum=8 * GiB)
        self.assertEqual(policy.size(20 * GiB, 3 * GiB), 3 * GiB)

    def test_size_policy_maximum_below_minimum(self):
        # The maximum is applied after the minimum.
        policy = SnapshotSizePolicy(ratio=1, minimum=10 * GiB, maximum=4 * GiB)
        self.assertEqual(policy.size(1 * GiB, 100 * GiB), 4 * GiB)

    def test_size_policy_bad_ratio(self):
        with self.assertRaises(LvbackupSizePolicyError):
            SnapshotSizePolicy(ratio=0)

    def test_size_policy_negative_limit(self):
        with self.assertRaises(LvbackupSizePolicyError):
            SnapshotSizePolicy(minimum=-1)

    def test_volume_paths(self):
        vol = Volume("vg-data", "home", 10 * GiB, GiB)
        self.assertEqual(str(vol), "vg-data/home")
        self.assertEqual(vol.devpath, "/dev/vg-data/home")
        self.assertEqual(vol.mapper_path, "/dev/mapper/vg--data-home")
        self.assertEqual(vol.aliases, ["/dev/vg-data/home", "/dev/mapper/vg--data-home"])
        self.assertEqual(vol.backup_name, "vg-data-home")

    def test_snapshot_spec_for_volume(self):
        vol = Volume("vg0", "root", 10 * GiB, 4 * GiB)
        policy = SnapshotSizePolicy(ratio=5)
        spec = SnapshotSpec.for_volume(vol, policy, "/run/lvbackup/mounts")
        self.assertEqual(spec.name, "root-snapshot")
        self.assertEqual(spec.vg_lv, "vg0/root-snapshot")
        self.assertEqual(spec.devpath, "/dev/vg0/root-snapshot")
        self.assertEqual(spec.mount_dir, "/run/lvbackup/mounts/vg0-root")
        self.assertEqual(spec.size, 2 * GiB)
        self.assertEqual(spec.size_kib, 2 * GiB // 1024)

    def test_snapshot_spec_size_kib_truncates(self):
        vol = Volume("vg0", "root", 3000, 10**9)
        spec = SnapshotSpec.for_volume(vol, SnapshotSizePolicy(), "/mnt")
        self.assertEqual(spec.size_kib, 2)

    def test_set_debug_mask(self):
        lvbackup.set_debug_mask(lvbackup.LVBACKUP_DEBUG_LVM)
        self.assertEqual(lvbackup.get_debug_mask(), lvbackup.LVBACKUP_DEBUG_LVM)
        lvbackup.set_debug_mask(lvbackup.LVBACKUP_DEBUG_ALL)
        self.assertEqual(lvbackup.get_debug_mask(), lvbackup.LVBACKUP_DEBUG_ALL)

    def test_set_debug_mask_bad(self):
        with self.assertRaises(ValueError):
            lvbackup.set_debug_mask(lvbackup.LVBACKUP_DEBUG_ALL + 1)
        with self.assertRaises(ValueError):
            lvbackup.set_debug_mask(-1)

    def test_subsystem_filter(self):
        subsystem_filter = lvbackup.SubsystemFilter("lvbackup")
        subsystem_filter.set_debug_subsystems([lvbackup.LVBACKUP_SUBSYSTEM_LVM])

        record = logging.LogRecord("lvbackup", logging.DEBUG, __file__, 1, "msg", (), None)
        self.assertTrue(subsystem_filter.filter(record))

        record.subsystem = lvbackup.LVBACKUP_SUBSYSTEM_LVM
        self.assertTrue(subsystem_filter.filter(record))

        record.subsystem = lvbackup.LVBACKUP_SUBSYSTEM_MOUNTS
        self.assertFalse(subsystem_filter.filter(record))

        record.levelno = logging.INFO
        self.assertTrue(subsystem_filter.filter(record))

    def test_mount_error_message(self):
        err = lvbackup.LvbackupMountError("/dev/vg0/root-snapshot", "/mnt", 32, "bad fs")
        self.assertEqual(err.status, 32)
        self.assertIn("/dev/vg0/root-snapshot", str(err))
        self.assertIn("bad fs", str(err))
