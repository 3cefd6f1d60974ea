# Copyright Red Hat
#
# tests/__init__.py - LVM snapshot backup test package
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
import logging
from subprocess import CalledProcessError, CompletedProcess
from json import dumps

from lvbackup import LvbackupCalloutError, MountInfo, Volume

log = logging.getLogger()
log.setLevel(logging.DEBUG)
formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
file_handler = logging.FileHandler("test.log")
file_handler.setFormatter(formatter)
console_handler = logging.StreamHandler()
console_handler.setFormatter(formatter)
log.addHandler(file_handler)
log.addHandler(console_handler)


class MockArgs(object):
    targets = []
    all = False
    debug = None
    verbose = 0
    version = False
    config = None
    dry_run = False
    backup_scheme = None
    backup_host = None
    backup_port = None
    backup_user = None
    backup_password = None
    backup_dir = None
    lvm_snapshot_size_min = None
    lvm_snapshot_size_max = None
    lvm_snapshot_size_ratio = None
    snapshot_mount_dir = None
    full = False
    incremental = False
    restore = None
    verify = False
    collection_status = False
    list_current_files = False
    cleanup = False
    remove_older_than = None
    remove_all_but_n_full = None
    force = False
    verbosity = None
    encrypt_key = None
    sign_key = None
    scp_command = None
    duplicity_command = None


def lvs_report(*rows):
    """
    Return ``lvs`` JSON report text for ``rows`` of
    ``(vg_name, lv_name, lv_attr, lv_size, vg_free)``.
    """
    return dumps({
        "report": [{
            "lv": [
                {
                    "vg_name": vg_name,
                    "lv_name": lv_name,
                    "lv_attr": lv_attr,
                    "lv_size": f"{lv_size}B",
                    "vg_free": f"{vg_free}B",
                }
                for (vg_name, lv_name, lv_attr, lv_size, vg_free) in rows
            ]
        }]
    })


def vgs_report(*names):
    """Return ``vgs`` JSON report text for volume groups ``names``."""
    return dumps({
        "report": [{
            "vg": [{"vg_name": name, "vg_free": "0B"} for name in names]
        }]
    })


class FakeLvm(object):
    """
    In-memory volume inventory recording snapshot operations.
    """

    def __init__(self, volumes=(), fail_create=False, fail_remove=False, fail_list=()):
        self.volumes = {vol.devpath: vol for vol in volumes}
        self.fail_create = fail_create
        self.fail_remove = fail_remove
        self.fail_list = set(fail_list)
        self.calls = []

    def list_groups(self):
        groups = []
        for vol in self.volumes.values():
            if vol.vg_name not in groups:
                groups.append(vol.vg_name)
        return groups

    def list_volumes(self, vg_name):
        if vg_name in self.fail_list:
            raise LvbackupCalloutError(f"Error calling lvs: cannot read {vg_name}")
        return [path for path, vol in self.volumes.items() if vol.vg_name == vg_name]

    def group_info(self, vg_name):
        return vg_name if vg_name in self.list_groups() else None

    def volume_info(self, devpath):
        if devpath in self.volumes:
            return self.volumes[devpath]
        for vol in self.volumes.values():
            if devpath == vol.mapper_path:
                return vol
        return None

    def create_snapshot(self, spec):
        self.calls.append(("create", spec.vg_lv, spec.size_kib))
        if self.fail_create:
            raise LvbackupCalloutError("lvcreate failed with: no space")

    def remove_snapshot(self, spec):
        self.calls.append(("remove", spec.vg_lv))
        if self.fail_remove:
            raise LvbackupCalloutError("lvremove failed with: busy")


class FakeMountTable(object):
    """A mount table backed by a list of ``MountInfo`` entries."""

    def __init__(self, entries=()):
        self.entries = list(entries)

    def lookup(self, devpath):
        for entry in self.entries:
            if entry.what == devpath:
                return entry
        return None


class FakeCallout(object):
    """
    Records external program calls and returns canned results.

    ``run()`` calls for ``mount``/``umount`` fail with ``CalledProcessError``
    when the program name is in ``fail``; ``execute()`` returns
    ``tool_status``.
    """

    def __init__(self, fail=(), tool_status=0):
        self.dry_run = False
        self.fail = set(fail)
        self.tool_status = tool_status
        self.calls = []

    def run(self, cmd_args, effect=True, **kwargs):
        self.calls.append(("run", list(cmd_args)))
        if cmd_args[0] in self.fail:
            raise CalledProcessError(32, cmd_args, output="", stderr=f"{cmd_args[0]} failed")
        return CompletedProcess(cmd_args, 0, stdout="", stderr="")

    def execute(self, cmd_args):
        self.calls.append(("execute", list(cmd_args)))
        return self.tool_status

    def makedirs(self, path, mode=0o700):
        self.calls.append(("makedirs", path))

    def rmdir(self, path):
        self.calls.append(("rmdir", path))

    def names(self):
        """Return the program (or helper) name of each recorded call."""
        names = []
        for kind, arg in self.calls:
            names.append(arg[0] if kind in ("run", "execute") else kind)
        return names


def make_volume(vg_name="vg0", lv_name="root", size=10 * 2**30, vg_free=4 * 2**30):
    return Volume(vg_name, lv_name, size, vg_free)


def make_mount(volume, where="/", fstype="ext4", options="rw,relatime"):
    return MountInfo(volume.devpath, where, fstype, options)
