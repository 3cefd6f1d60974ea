# Copyright Red Hat
#
# lvbackup/command.py - LVM snapshot backup command interface
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``lvbackup.command`` module.

This module contains the ``lvbackup`` command line interface: argument
parsing, configuration file handling, logging setup and the ``main()``
entry point that hands a ``Configuration`` to the ``BackupManager``.
"""
from argparse import ArgumentParser
from os.path import basename
import logging
import os
import sys

from lvbackup import (
    LVBACKUP_DEBUG_MANAGER,
    LVBACKUP_DEBUG_COMMAND,
    LVBACKUP_DEBUG_LVM,
    LVBACKUP_DEBUG_MOUNTS,
    LVBACKUP_DEBUG_ALL,
    LVBACKUP_SUBSYSTEM_COMMAND,
    LVBACKUP_MOUNTS_DIR,
    LvbackupArgumentError,
    LvbackupError,
    SubsystemFilter,
    set_debug_mask,
    __version__,
)
from lvbackup.manager import (
    LVBACKUP_CFG_PATH,
    BackupManager,
    Configuration,
    read_config_file,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": LVBACKUP_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None


class _ArgumentParser(ArgumentParser):
    """
    An ``ArgumentParser`` that raises ``LvbackupArgumentError`` for usage
    errors instead of exiting.
    """

    def error(self, message):
        raise LvbackupArgumentError(message)


def setup_logging(cmd_args):
    """
    Set up lvbackup logging.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _DEFAULT_LOG_LEVEL
    if cmd_args.verbose and cmd_args.verbose > 1:
        level = logging.DEBUG
    elif cmd_args.verbose and cmd_args.verbose > 0:
        level = logging.INFO

    lvbackup_log = logging.getLogger("lvbackup")
    formatter = logging.Formatter("%(levelname)s - %(message)s")
    lvbackup_log.setLevel(level)
    if lvbackup_log.hasHandlers():
        lvbackup_log.handlers.clear()

    # Subsystem log filtering
    _lvbackup_subsystem_filter = SubsystemFilter("lvbackup")

    # Main console handler
    _CONSOLE_HANDLER = logging.StreamHandler()

    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(formatter)
    _CONSOLE_HANDLER.addFilter(_lvbackup_subsystem_filter)

    lvbackup_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down lvbackup logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set debugging mask from command line argument.
    """
    if not debug_arg:
        return

    mask_map = {
        "manager": LVBACKUP_DEBUG_MANAGER,
        "command": LVBACKUP_DEBUG_COMMAND,
        "lvm": LVBACKUP_DEBUG_LVM,
        "mounts": LVBACKUP_DEBUG_MOUNTS,
        "all": LVBACKUP_DEBUG_ALL,
    }

    mask = 0
    for name in debug_arg.split(","):
        if name not in mask_map:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= mask_map[name]
    set_debug_mask(mask)


def _add_target_args(parser):
    """
    Add volume selection arguments.
    """
    parser.add_argument(
        "targets",
        metavar="VG_OR_DEVICE",
        type=str,
        nargs="*",
        default=[],
        help="A volume group name or logical volume device path to process",
    )
    parser.add_argument(
        "-a",
        "--all",
        action="store_true",
        help="Process every logical volume in every volume group",
    )


def _add_destination_args(parser):
    """
    Add backup destination arguments.
    """
    parser.add_argument(
        "--backup-scheme",
        metavar="SCHEME",
        type=str,
        help="The backup URL scheme (default: 'file', or 'scp' with --backup-host)",
    )
    parser.add_argument("--backup-host", metavar="HOST", type=str, help="The backup host")
    parser.add_argument("--backup-port", metavar="PORT", type=int, help="The backup host port")
    parser.add_argument("--backup-user", metavar="USER", type=str, help="The backup user name")
    parser.add_argument(
        "--backup-password",
        metavar="PASSWORD",
        type=str,
        help="The backup user password",
    )
    parser.add_argument(
        "--backup-dir",
        metavar="DIR",
        type=str,
        help="The directory on the backup destination",
    )


def _add_snapshot_args(parser):
    """
    Add snapshot sizing and placement arguments.
    """
    parser.add_argument(
        "--lvm-snapshot-size-min",
        metavar="SIZE",
        type=str,
        help="The minimum snapshot size, with an optional unit suffix",
    )
    parser.add_argument(
        "--lvm-snapshot-size-max",
        metavar="SIZE",
        type=str,
        help="The maximum snapshot size, with an optional unit suffix",
    )
    parser.add_argument(
        "--lvm-snapshot-size-ratio",
        metavar="RATIO",
        type=int,
        help="Size snapshots at 1/RATIO of the origin volume size",
    )
    parser.add_argument(
        "--snapshot-mount-dir",
        metavar="DIR",
        type=str,
        help=f"The base directory for snapshot mounts (default: {LVBACKUP_MOUNTS_DIR})",
    )


def _add_operation_args(parser):
    """
    Add the mutually exclusive operation arguments.
    """
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--full", action="store_true", help="Force a full backup")
    group.add_argument(
        "--incremental",
        action="store_true",
        help="Force an incremental backup",
    )
    group.add_argument(
        "--restore",
        metavar="DIR",
        type=str,
        help="Restore each volume into a subdirectory of DIR",
    )
    group.add_argument(
        "--verify",
        action="store_true",
        help="Verify each backup against the mounted volume",
    )
    group.add_argument(
        "--collection-status",
        action="store_true",
        help="Show the backup collection status for each volume",
    )
    group.add_argument(
        "--list-current-files",
        action="store_true",
        help="List the files in the latest backup of each volume",
    )
    group.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove extraneous backup files",
    )
    group.add_argument(
        "--remove-older-than",
        metavar="TIME",
        type=str,
        help="Remove backups older than TIME",
    )
    group.add_argument(
        "--remove-all-but-n-full",
        metavar="COUNT",
        type=int,
        help="Remove all but the last COUNT full backups",
    )


def _add_tool_args(parser):
    """
    Add arguments passed through to the backup tool.
    """
    parser.add_argument(
        "--force",
        action="store_true",
        help="Pass --force to the backup tool",
    )
    parser.add_argument(
        "--verbosity",
        metavar="LEVEL",
        type=str,
        help="The backup tool verbosity level",
    )
    parser.add_argument("--encrypt-key", metavar="KEY", type=str, help="The encryption key ID")
    parser.add_argument("--sign-key", metavar="KEY", type=str, help="The signing key ID")
    parser.add_argument(
        "--scp-command",
        metavar="COMMAND",
        type=str,
        help="The scp command for the backup tool to use",
    )
    parser.add_argument(
        "--duplicity-command",
        metavar="COMMAND",
        type=str,
        help="The backup tool command (default: duplicity)",
    )


def _config_file_args(args):
    """
    Return the options from the configuration file named by ``--config``
    in ``args``, or from the default configuration file.
    """
    pre_parser = _ArgumentParser(add_help=False)
    pre_parser.add_argument("-c", "--config", metavar="FILE", type=str)
    (pre_args, _unknown) = pre_parser.parse_known_args(args)
    if pre_args.config:
        return read_config_file(pre_args.config, missing_ok=False)
    return read_config_file(LVBACKUP_CFG_PATH)


#: Option destinations that select the operation.
_OPERATION_DESTS = (
    "full",
    "incremental",
    "restore",
    "verify",
    "collection_status",
    "list_current_files",
    "cleanup",
    "remove_older_than",
    "remove_all_but_n_full",
)

#: Option destinations that select the volumes to process.
_TARGET_DESTS = ("all", "targets")


def _is_set(parser, cmd_args, dest):
    return getattr(cmd_args, dest) != parser.get_default(dest)


def _merge_config_args(parser, file_args, cmd_args):
    """
    Merge the options parsed from the configuration file into ``cmd_args``.

    An option given on the command line overrides the same option from the
    file. Selecting an operation, or ``--all`` or target names, on the
    command line discards the file's operation or target selection.

    :param parser: The parser used for both argument sets.
    :param file_args: The parsed configuration file options.
    :param cmd_args: The parsed command line arguments.
    :returns: The merged ``cmd_args``.
    """
    skip = set()
    for dests in (_OPERATION_DESTS, _TARGET_DESTS):
        if any(_is_set(parser, cmd_args, dest) for dest in dests):
            skip.update(dests)

    for dest, value in vars(file_args).items():
        if dest in skip or _is_set(parser, cmd_args, dest):
            continue
        setattr(cmd_args, dest, value)
    return cmd_args


def _build_parser(prog):
    """
    Build the ``lvbackup`` argument parser.
    """
    parser = _ArgumentParser(description="LVM snapshot backup", prog=prog)

    # Global arguments
    parser.add_argument(
        "-d",
        "--debug",
        metavar="DEBUGOPTS",
        type=str,
        help="A list of debug options to enable",
    )
    parser.add_argument("-v", "--verbose", help="Enable verbose output", action="count")
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        help="Report the version number of lvbackup",
        version=__version__,
    )
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        type=str,
        help=f"The configuration file to read (default: {LVBACKUP_CFG_PATH})",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Print the commands that would be run without running them",
    )

    _add_target_args(parser)
    _add_destination_args(parser)
    _add_snapshot_args(parser)
    _add_operation_args(parser)
    _add_tool_args(parser)
    return parser


def main(args):
    """
    Main entry point for lvbackup.
    """
    parser = _build_parser(basename(args[0]))

    status = 1

    try:
        cmd_args = parser.parse_args(args[1:])
        config_args = _config_file_args(args[1:])
        file_args = parser.parse_args(config_args)
        cmd_args = _merge_config_args(parser, file_args, cmd_args)
    except LvbackupError as err:
        print(err, file=sys.stderr)
        parser.print_usage(sys.stderr)
        return status

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return status

    setup_logging(cmd_args)

    _log_debug_command("Parsed %s", " ".join(config_args + args[1:]))

    try:
        config = Configuration.from_cmd_args(cmd_args)
    except LvbackupArgumentError as err:
        _log_error("%s", err)
        parser.print_usage(sys.stderr)
        shutdown_logging()
        return status

    if not config.dry_run and os.geteuid() != 0:
        _log_error("lvbackup must be run as the root user (or with --dry-run)")
        shutdown_logging()
        return status

    if cmd_args.debug:
        status = BackupManager(config).run()
    else:
        try:
            status = BackupManager(config).run()
        # pylint: disable=broad-except
        except KeyboardInterrupt:  # pragma: no cover
            _log_info("Exiting on user cancel")
        except Exception as err:
            _log_error("Command failed: %s", err)

    shutdown_logging()
    return status


def run():
    """
    Console script entry point.
    """
    sys.exit(main(sys.argv))


__all__ = [
    "main",
    "run",
    "set_debug",
    "setup_logging",
    "shutdown_logging",
]

# vim: set et ts=4 sw=4 :
