# Copyright Red Hat
#
# lvbackup/manager/__init__.py - LVM snapshot backup manager
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top level interface to the backup manager.
"""

from ._manager import BackupManager, verbosity_level  # noqa: F401, F403
from ._callout import Callout
from ._config import (
    LVBACKUP_CFG_PATH,
    BackupTarget,
    Configuration,
    OperationRequest,
    OperationType,
    ToolOptions,
    read_config_file,
)
from ._lvm2 import Lvm2
from ._mounts import MountTableReader

__all__ = [
    "LVBACKUP_CFG_PATH",
    "BackupManager",
    "BackupTarget",
    "Callout",
    "Configuration",
    "Lvm2",
    "MountTableReader",
    "OperationRequest",
    "OperationType",
    "ToolOptions",
    "read_config_file",
    "verbosity_level",
]
