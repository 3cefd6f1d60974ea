# Copyright Red Hat
#
# lvbackup/manager/_lvm2.py - LVM2 volume inventory and snapshots
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
LVM2 volume inventory and copy-on-write snapshot provisioning.
"""
from subprocess import CalledProcessError
from json import loads, JSONDecodeError
from typing import List, Optional
from shutil import which
from os import environ
import collections
import logging

from lvbackup import (
    LVBACKUP_SUBSYSTEM_LVM,
    LvbackupCalloutError,
    LvbackupNotFoundError,
    Volume,
    size_fmt,
)

from ._callout import Callout

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_lvm(msg, *args, **kwargs):
    """A wrapper for LVM subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVBACKUP_SUBSYSTEM_LVM}, **kwargs)


# Global LVM2 report options
LVM_REPORT_FORMAT = "--reportformat"
LVM_JSON = "json"
LVM_OPTIONS = "--options"
LVM_UNITS = "--units"
LVM_BYTES = "b"

# lvs report options
LVS_CMD = "lvs"
LVS_REPORT = "report"
LVS_LV = "lv"
LVS_FIELD_OPTIONS = "vg_name,lv_name,lv_attr,lv_size,vg_free"

# vgs report options
VGS_CMD = "vgs"
VGS_REPORT = "report"
VGS_VG = "vg"
VGS_FIELD_OPTIONS = "vg_name,vg_free"

# lv_attr flag values
LVM_COW_SNAP_ATTR = "s"
LVM_MERGE_SNAP_ATTR = "S"

# lvcreate command options
LVCREATE_CMD = "lvcreate"
LVCREATE_SNAPSHOT = "--snapshot"
LVCREATE_NAME = "--name"
LVCREATE_SIZE = "--size"

# lvremove command options
LVREMOVE_CMD = "lvremove"
LVREMOVE_FORCE = "--force"

# LVM commands required by the inventory
_LVM_CMDS = [
    LVS_CMD,
    VGS_CMD,
    LVCREATE_CMD,
    LVREMOVE_CMD,
]

# LVM2 environment variables to filter out
_LVM_ENV_FILTER = [
    "LVM_OUT_FD",
    "LVM_ERR_FD",
    "LVM_REPORT_FD",
    "LVM_COMMAND_PROFILE",
    "LVM_RUN_BY_DMEVENTD",
    "LVM_SUPPRESS_FD_WARNINGS",
    "LVM_SUPPRESS_SYSLOG",
    "LVM_VG_NAME",
    "LVM_LOG_FILE_EPOCH",
    "LVM_LOG_FILE_MAX_LINES",
    "LVM_EXPECTED_EXIT_STATUS",
]

#: One row of an ``lvs`` report.
LvsEntry = collections.namedtuple(
    "LvsEntry", ["vg_name", "lv_name", "lv_attr", "lv_size", "vg_free"]
)


def _decode_stderr(err):
    """
    Decode and strip the stderr member of a ``CalledProcessError`` and
    return the result as a string.

    :param err: A ``CalledProcessError`` like exception.
    :returns: A stripped string representation of the exception's stderr
              member.
    """
    if err.stderr is None:
        return ""
    if isinstance(err.stderr, bytes):
        return err.stderr.decode("utf8").strip()
    return err.stderr.strip()


def _parse_bytes(value):
    """
    Parse an LVM2 size value reported with ``--units b``.
    """
    return int(str(value).strip().rstrip("B"))


def _report_rows(output, cmd, report_key, row_key):
    try:
        report = loads(output)
    except JSONDecodeError as err:
        raise LvbackupCalloutError(f"Unable to decode {cmd} JSON output: {err}") from err
    try:
        rows = []
        for section in report[report_key]:
            rows.extend(section.get(row_key, []))
        return rows
    except (KeyError, TypeError, AttributeError) as err:
        raise LvbackupCalloutError(f"Malformed {cmd} report: {err}") from err


def parse_lvs_report(output) -> List[LvsEntry]:
    """
    Parse the JSON output of an ``lvs`` report with the fields given by
    ``LVS_FIELD_OPTIONS``.

    :param output: The report text.
    :returns: A list of ``LvsEntry`` tuples, one per logical volume.
    :raises: ``LvbackupCalloutError`` if the report cannot be parsed.
    """
    entries = []
    for lv_dict in _report_rows(output, LVS_CMD, LVS_REPORT, LVS_LV):
        try:
            entries.append(
                LvsEntry(
                    lv_dict["vg_name"],
                    lv_dict["lv_name"],
                    lv_dict.get("lv_attr", ""),
                    _parse_bytes(lv_dict["lv_size"]),
                    _parse_bytes(lv_dict["vg_free"]),
                )
            )
        except (KeyError, ValueError) as err:
            raise LvbackupCalloutError(
                f"Malformed {LVS_CMD} report entry {lv_dict}: {err}"
            ) from err
    return entries


def parse_vgs_report(output) -> List[str]:
    """
    Parse the JSON output of a ``vgs`` report and return the volume group
    names it contains, in report order.

    :raises: ``LvbackupCalloutError`` if the report cannot be parsed.
    """
    names = []
    for vg_dict in _report_rows(output, VGS_CMD, VGS_REPORT, VGS_VG):
        try:
            names.append(vg_dict["vg_name"])
        except KeyError as err:
            raise LvbackupCalloutError(
                f"Malformed {VGS_CMD} report entry {vg_dict}: {err}"
            ) from err
    return names


def is_snapshot_entry(entry: LvsEntry) -> bool:
    """
    Return ``True`` if the ``lvs`` row ``entry`` is a copy-on-write snapshot
    (including a merging snapshot), or ``False`` otherwise.
    """
    return entry.lv_attr.startswith((LVM_COW_SNAP_ATTR, LVM_MERGE_SNAP_ATTR))


def _check_lvm_present():
    """
    Check for the presence of the required LVM2 commands.

    :raises: ``LvbackupNotFoundError`` if required commands are not found.
    """
    if not all(which(cmd) for cmd in _LVM_CMDS):
        raise LvbackupNotFoundError("LVM2 commands not found")


def _sanitize_environment():
    env = environ.copy()
    for var in _LVM_ENV_FILTER:
        if var in env:
            env.pop(var)
    return env


class Lvm2:
    """
    Volume inventory and snapshot provisioning backed by the LVM2 command
    line tools.
    """

    def __init__(self, callout: Optional[Callout] = None):
        self.callout = callout or Callout()

        # Sanitize environment for LVM2 callouts.
        self._env = _sanitize_environment()

        # Export LC_ALL=C
        self._env["LC_ALL"] = "C"

        # Check for presence of required LVM2 binaries.
        _check_lvm_present()

    def _run(self, cmd_args, effect=False):
        """
        Run an LVM2 command with a sanitized environment and captured
        output.

        :raises: ``CalledProcessError`` if the command fails.
        """
        return self.callout.run(
            cmd_args,
            effect=effect,
            capture_output=True,
            check=True,
            encoding="utf8",
            env=self._env,
        )

    def get_lvs_report(self, vg_lv=None) -> List[LvsEntry]:
        """
        Call out to the ``lvs`` program and return the parsed report.

        :param vg_lv: An optional VG name, ``vg/lv`` name or device path to
                      restrict the report to.
        """
        lvs_cmd_args = [
            LVS_CMD,
            LVM_REPORT_FORMAT,
            LVM_JSON,
            LVM_UNITS,
            LVM_BYTES,
            LVM_OPTIONS,
            LVS_FIELD_OPTIONS,
        ]
        if vg_lv:
            lvs_cmd_args.append(vg_lv)
        try:
            lvs_cmd = self._run(lvs_cmd_args)
        except CalledProcessError as err:
            raise LvbackupCalloutError(
                f"Error calling {LVS_CMD}: {_decode_stderr(err)}"
            ) from err
        return parse_lvs_report(lvs_cmd.stdout)

    def get_vgs_report(self, vg_name=None) -> List[str]:
        """
        Call out to the ``vgs`` program and return the volume group names
        reported.
        """
        vgs_cmd_args = [
            VGS_CMD,
            LVM_REPORT_FORMAT,
            LVM_JSON,
            LVM_UNITS,
            LVM_BYTES,
            LVM_OPTIONS,
            VGS_FIELD_OPTIONS,
        ]
        if vg_name:
            vgs_cmd_args.append(vg_name)
        try:
            vgs_cmd = self._run(vgs_cmd_args)
        except CalledProcessError as err:
            raise LvbackupCalloutError(
                f"Error calling {VGS_CMD}: {_decode_stderr(err)}"
            ) from err
        return parse_vgs_report(vgs_cmd.stdout)

    def list_groups(self) -> List[str]:
        """
        Return the names of all volume groups on the system.
        """
        return self.get_vgs_report()

    def list_volumes(self, vg_name) -> List[str]:
        """
        Return the device paths of the logical volumes in ``vg_name``,
        excluding copy-on-write snapshots.
        """
        paths = []
        for entry in self.get_lvs_report(vg_name):
            if is_snapshot_entry(entry):
                _log_debug_lvm("Skipping snapshot volume %s/%s", *entry[:2])
                continue
            paths.append(Volume(entry.vg_name, entry.lv_name, 0, 0).devpath)
        return paths

    def group_info(self, vg_name) -> Optional[str]:
        """
        Return ``vg_name`` if it names an existing volume group, or ``None``
        otherwise.
        """
        try:
            names = self.get_vgs_report(vg_name)
        except LvbackupCalloutError as err:
            _log_debug_lvm("%s is not a volume group: %s", vg_name, err)
            return None
        return vg_name if vg_name in names else None

    def volume_info(self, devpath) -> Optional[Volume]:
        """
        Return a ``Volume`` describing the logical volume at ``devpath``, or
        ``None`` if ``devpath`` is not a managed logical volume.
        """
        try:
            entries = self.get_lvs_report(devpath)
        except LvbackupCalloutError as err:
            _log_debug_lvm("%s is not a logical volume: %s", devpath, err)
            return None
        if len(entries) != 1:
            _log_debug_lvm("Expected one logical volume for %s, found %d", devpath, len(entries))
            return None
        entry = entries[0]
        volume = Volume(entry.vg_name, entry.lv_name, entry.lv_size, entry.vg_free)
        _log_debug_lvm(
            "Found volume %s (size=%s, vg_free=%s)",
            volume,
            size_fmt(volume.size),
            size_fmt(volume.vg_free),
        )
        return volume

    def create_snapshot(self, spec):
        """
        Create the copy-on-write snapshot described by ``spec``.

        :param spec: A ``SnapshotSpec`` describing the snapshot.
        :raises: ``LvbackupCalloutError`` if ``lvcreate`` fails.
        """
        _log_debug_lvm(
            "Creating %s CoW snapshot %s of %s",
            size_fmt(spec.size_kib * 1024),
            spec.vg_lv,
            spec.volume.devpath,
        )
        lvcreate_cmd = [
            LVCREATE_CMD,
            LVCREATE_SNAPSHOT,
            LVCREATE_SIZE,
            f"{spec.size_kib}k",
            LVCREATE_NAME,
            spec.name,
            spec.volume.devpath,
        ]
        try:
            self._run(lvcreate_cmd, effect=True)
        except CalledProcessError as err:
            raise LvbackupCalloutError(
                f"{LVCREATE_CMD} failed with: {_decode_stderr(err)}"
            ) from err

    def remove_snapshot(self, spec):
        """
        Forcibly remove the snapshot described by ``spec``.

        :raises: ``LvbackupCalloutError`` if ``lvremove`` fails.
        """
        _log_debug_lvm("Removing snapshot %s", spec.vg_lv)
        lvremove_cmd = [LVREMOVE_CMD, LVREMOVE_FORCE, spec.vg_lv]
        try:
            self._run(lvremove_cmd, effect=True)
        except CalledProcessError as err:
            raise LvbackupCalloutError(
                f"{LVREMOVE_CMD} failed with: {_decode_stderr(err)}"
            ) from err


__all__ = [
    "LvsEntry",
    "Lvm2",
    "is_snapshot_entry",
    "parse_lvs_report",
    "parse_vgs_report",
]
