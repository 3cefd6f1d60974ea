# Copyright Red Hat
#
# lvbackup/manager/_config.py - Backup configuration
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Configuration records for lvbackup and the configuration file reader.
"""
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from os.path import exists
from enum import Enum
import logging

from lvbackup import (
    LVBACKUP_MOUNTS_DIR,
    LvbackupArgumentError,
    LvbackupConflictingTargetError,
    LvbackupNotFoundError,
    LvbackupSystemError,
    SnapshotSizePolicy,
    parse_size_with_units,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug

#: Default configuration file path
LVBACKUP_CFG_PATH = "/etc/lvbackup/lvbackup.conf"

#: Implicit section for the section-less configuration file
_LVBACKUP_CFG_SECTION = "lvbackup"

#: Default backup tool command
DEFAULT_TOOL_COMMAND = "duplicity"


class OperationType(Enum):
    """
    Enum class representing the operations that can be performed for each
    volume. The value is the backup tool's operation word.
    """

    UNSET = ""
    FULL = "full"
    INCREMENTAL = "incremental"
    RESTORE = "restore"
    VERIFY = "verify"
    COLLECTION_STATUS = "collection-status"
    LIST_CURRENT_FILES = "list-current-files"
    CLEANUP = "cleanup"
    REMOVE_OLDER_THAN = "remove-older-than"
    REMOVE_ALL_BUT_N_FULL = "remove-all-but-n-full"

    @property
    def is_backup(self):
        """
        ``True`` for operations that read from a mounted snapshot.
        """
        return self in (OperationType.UNSET, OperationType.FULL, OperationType.INCREMENTAL)


@dataclass(frozen=True)
class OperationRequest:
    """
    The operation selected by the user and its parameters.
    """

    type: OperationType = OperationType.UNSET
    restore_dir: Optional[str] = None
    remove_time: Optional[str] = None
    remove_count: Optional[int] = None

    # pylint: disable=too-many-return-statements
    @classmethod
    def from_cmd_args(cls, cmd_args):
        """
        Build an ``OperationRequest`` from parsed command line arguments.
        """
        if getattr(cmd_args, "full", False):
            return cls(OperationType.FULL)
        if getattr(cmd_args, "incremental", False):
            return cls(OperationType.INCREMENTAL)
        if getattr(cmd_args, "restore", None):
            return cls(OperationType.RESTORE, restore_dir=cmd_args.restore)
        if getattr(cmd_args, "verify", False):
            return cls(OperationType.VERIFY)
        if getattr(cmd_args, "collection_status", False):
            return cls(OperationType.COLLECTION_STATUS)
        if getattr(cmd_args, "list_current_files", False):
            return cls(OperationType.LIST_CURRENT_FILES)
        if getattr(cmd_args, "cleanup", False):
            return cls(OperationType.CLEANUP)
        if getattr(cmd_args, "remove_older_than", None):
            return cls(
                OperationType.REMOVE_OLDER_THAN, remove_time=cmd_args.remove_older_than
            )
        if getattr(cmd_args, "remove_all_but_n_full", None) is not None:
            count = cmd_args.remove_all_but_n_full
            if count < 1:
                raise LvbackupArgumentError(
                    f"--remove-all-but-n-full requires a positive count: {count}"
                )
            return cls(OperationType.REMOVE_ALL_BUT_N_FULL, remove_count=count)
        return cls(OperationType.UNSET)


@dataclass(frozen=True)
class ToolOptions:
    """
    Options passed through to the backup tool.
    """

    force: bool = False
    verbosity: Optional[str] = None
    encrypt_key: Optional[str] = None
    sign_key: Optional[str] = None
    scp_command: Optional[str] = None


@dataclass(frozen=True)
class BackupTarget:
    """
    The parts used to compose the backup destination URL.
    """

    scheme: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None
    directory: Optional[str] = None


# pylint: disable=too-many-instance-attributes
@dataclass(frozen=True)
class Configuration:
    """
    The complete, immutable configuration for one lvbackup run.
    """

    targets: Tuple[str, ...] = ()
    all_groups: bool = False
    size_policy: SnapshotSizePolicy = field(default_factory=SnapshotSizePolicy)
    operation: OperationRequest = field(default_factory=OperationRequest)
    tool_options: ToolOptions = field(default_factory=ToolOptions)
    backup_target: BackupTarget = field(default_factory=BackupTarget)
    dry_run: bool = False
    tool_command: str = DEFAULT_TOOL_COMMAND
    mounts_dir: str = LVBACKUP_MOUNTS_DIR

    @classmethod
    def from_cmd_args(cls, cmd_args):
        """
        Initialise a ``Configuration`` from command line arguments.

        :param cmd_args: The parsed command line arguments.
        :returns: A new ``Configuration`` instance.
        :raises LvbackupConflictingTargetError: If both ``--all`` and target
                                                names were given.
        :raises LvbackupArgumentError: If no target was given or an argument
                                       value is invalid.
        """
        targets = tuple(getattr(cmd_args, "targets", None) or ())
        all_groups = bool(getattr(cmd_args, "all", False))

        if all_groups and targets:
            raise LvbackupConflictingTargetError(
                "--all cannot be combined with volume group or device names"
            )
        if not all_groups and not targets:
            raise LvbackupArgumentError(
                "No volume groups or devices given: use --all or name a target"
            )

        ratio = getattr(cmd_args, "lvm_snapshot_size_ratio", None)
        if ratio is None:
            ratio = 1
        if ratio < 1:
            raise LvbackupArgumentError(
                f"--lvm-snapshot-size-ratio must be at least 1: {ratio}"
            )

        size_min = parse_size_with_units(getattr(cmd_args, "lvm_snapshot_size_min", None) or "0")
        size_max = parse_size_with_units(getattr(cmd_args, "lvm_snapshot_size_max", None) or "0")

        tool_options = ToolOptions(
            force=bool(getattr(cmd_args, "force", False)),
            verbosity=getattr(cmd_args, "verbosity", None),
            encrypt_key=getattr(cmd_args, "encrypt_key", None),
            sign_key=getattr(cmd_args, "sign_key", None),
            scp_command=getattr(cmd_args, "scp_command", None),
        )

        backup_target = BackupTarget(
            scheme=getattr(cmd_args, "backup_scheme", None),
            host=getattr(cmd_args, "backup_host", None),
            port=getattr(cmd_args, "backup_port", None),
            user=getattr(cmd_args, "backup_user", None),
            password=getattr(cmd_args, "backup_password", None),
            directory=getattr(cmd_args, "backup_dir", None),
        )

        return cls(
            targets=targets,
            all_groups=all_groups,
            size_policy=SnapshotSizePolicy(ratio, size_min, size_max),
            operation=OperationRequest.from_cmd_args(cmd_args),
            tool_options=tool_options,
            backup_target=backup_target,
            dry_run=bool(getattr(cmd_args, "dry_run", False)),
            tool_command=getattr(cmd_args, "duplicity_command", None) or DEFAULT_TOOL_COMMAND,
            mounts_dir=getattr(cmd_args, "snapshot_mount_dir", None) or LVBACKUP_MOUNTS_DIR,
        )


def _option_from_entry(key, value) -> Optional[str]:
    """
    Convert one configuration file entry into a long command line option.

    :returns: The option string, or ``None`` if the entry disables a flag.
    """
    key = key.strip().lstrip("-")
    if value is None:
        return f"--{key}"
    value = value.strip()
    if value.lower() == "yes":
        return f"--{key}"
    if value.lower() == "no":
        return None
    return f"--{key}={value}"


def read_config_file(config_file: str = LVBACKUP_CFG_PATH, missing_ok: bool = True) -> List[str]:
    """
    Read a line-oriented ``key=value`` configuration file and return its
    entries as a list of long command line options, in file order.

    ``key=value`` becomes ``--key=value``, ``key=yes`` and a bare ``key``
    become ``--key``, and ``key=no`` is dropped. Blank lines and lines
    starting with ``#`` are ignored. Leading indentation is not
    significant and a key may appear only once.

    :param config_file: The path to the configuration file.
    :param missing_ok: Return an empty list if the file does not exist.
    :returns: A list of option strings.
    """
    if not exists(config_file):
        if missing_ok:
            return []
        raise LvbackupNotFoundError(f"Configuration file not found: {config_file}")

    _log_debug("Loading configuration from '%s'", config_file)
    cfg = ConfigParser(
        allow_no_value=True,
        delimiters=("=",),
        comment_prefixes=("#",),
        strict=True,
        interpolation=None,
    )
    cfg.optionxform = str
    try:
        with open(config_file, "r", encoding="utf8") as fp:
            # One entry per line: no indented continuation values.
            lines = [line.strip() for line in fp]
        cfg.read_string(
            "\n".join([f"[{_LVBACKUP_CFG_SECTION}]"] + lines), source=config_file
        )
    except OSError as err:
        raise LvbackupSystemError(
            f"Error reading configuration file {config_file}: {err}"
        ) from err
    except ConfigParserError as err:
        raise LvbackupArgumentError(
            f"Malformed configuration file {config_file}: {err}"
        ) from err

    options = []
    for key, value in cfg.items(_LVBACKUP_CFG_SECTION):
        option = _option_from_entry(key, value)
        if option:
            options.append(option)
    return options


__all__ = [
    "LVBACKUP_CFG_PATH",
    "DEFAULT_TOOL_COMMAND",
    "OperationType",
    "OperationRequest",
    "ToolOptions",
    "BackupTarget",
    "Configuration",
    "read_config_file",
]
