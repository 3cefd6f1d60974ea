# Copyright Red Hat
#
# lvbackup/manager/_duplicity.py - Backup tool command construction
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Construction of backup destination URLs and backup tool command lines.
"""
from os.path import join as path_join
from typing import List, Optional

from lvbackup import LvbackupArgumentError

from ._config import OperationType

#: Scheme used for local backups.
SCHEME_FILE = "file"

#: Scheme used when a backup host is configured.
SCHEME_REMOTE = "scp"

# Pass-through tool options
TOOL_FORCE = "--force"
TOOL_VERBOSITY = "--verbosity"
TOOL_ENCRYPT_KEY = "--encrypt-key"
TOOL_SIGN_KEY = "--sign-key"
TOOL_SCP_COMMAND = "--scp-command"


def backup_url(target, volume) -> str:
    """
    Compose the destination URL for ``volume``:

        scheme://[user[:password]@]host[:port][/dir]/<vg>-<lv>

    The scheme defaults to ``file`` when no host is configured and to
    ``scp`` otherwise.

    :param target: A ``BackupTarget`` with the URL parts.
    :param volume: The ``Volume`` being backed up.
    :returns: The destination URL string.
    """
    scheme = target.scheme or (SCHEME_REMOTE if target.host else SCHEME_FILE)

    auth = ""
    if target.user:
        auth = target.user
        if target.password:
            auth += f":{target.password}"
        auth += "@"

    location = target.host or ""
    if target.port:
        location += f":{target.port}"

    directory = (target.directory or "").rstrip("/")
    if directory and not directory.startswith("/"):
        directory = "/" + directory

    return f"{scheme}://{auth}{location}{directory}/{volume.backup_name}"


def tool_options(options) -> List[str]:
    """
    Return the pass-through option arguments for ``options``, a
    ``ToolOptions`` instance.
    """
    args = []
    if options.force:
        args.append(TOOL_FORCE)
    if options.verbosity is not None:
        args.extend([TOOL_VERBOSITY, str(options.verbosity)])
    if options.encrypt_key:
        args.extend([TOOL_ENCRYPT_KEY, options.encrypt_key])
    if options.sign_key:
        args.extend([TOOL_SIGN_KEY, options.sign_key])
    if options.scp_command:
        args.extend([TOOL_SCP_COMMAND, options.scp_command])
    return args


def restore_dir(operation, volume) -> str:
    """
    Return the directory that ``volume`` is restored into.
    """
    return path_join(operation.restore_dir, volume.backup_name)


# pylint: disable=too-many-arguments
def build_command(
    config,
    volume,
    source_dir: Optional[str] = None,
    mount_point: Optional[str] = None,
) -> List[str]:
    """
    Build the backup tool command line for the configured operation on
    ``volume``.

    :param config: The ``Configuration`` for this run.
    :param volume: The ``Volume`` to operate on.
    :param source_dir: The mounted snapshot directory for backup operations.
    :param mount_point: The live mount point of the volume for verify.
    :returns: A command argument list starting with the tool command.
    """
    operation = config.operation
    op_type = operation.type
    url = backup_url(config.backup_target, volume)
    options = tool_options(config.tool_options)

    cmd_args = [config.tool_command]
    if op_type != OperationType.UNSET:
        cmd_args.append(op_type.value)

    if op_type in (OperationType.UNSET, OperationType.FULL, OperationType.INCREMENTAL):
        if not source_dir:
            raise LvbackupArgumentError(f"No source directory for {volume} backup")
        return cmd_args + options + [source_dir, url]
    if op_type == OperationType.RESTORE:
        return cmd_args + options + [url, restore_dir(operation, volume)]
    if op_type == OperationType.VERIFY:
        if not mount_point:
            raise LvbackupArgumentError(f"No mount point to verify {volume} against")
        return cmd_args + options + [url, mount_point]
    if op_type in (
        OperationType.COLLECTION_STATUS,
        OperationType.LIST_CURRENT_FILES,
        OperationType.CLEANUP,
    ):
        return cmd_args + options + [url]
    if op_type == OperationType.REMOVE_OLDER_THAN:
        return cmd_args + [operation.remove_time] + options + [url]
    if op_type == OperationType.REMOVE_ALL_BUT_N_FULL:
        return cmd_args + [str(operation.remove_count)] + options + [url]
    raise LvbackupArgumentError(
        f"Invalid operation type: {op_type}"
    )  # pragma: no cover


__all__ = [
    "SCHEME_FILE",
    "SCHEME_REMOTE",
    "backup_url",
    "build_command",
    "restore_dir",
    "tool_options",
]
