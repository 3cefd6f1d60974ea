# Copyright Red Hat
#
# lvbackup/__init__.py - LVM snapshot backup package initialisation
#
# This file is part of the lvbackup project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Lvbackup top-level package.
"""
from ._lvbackup import *  # noqa: F401, F403
from ._lvbackup import __all__  # noqa: F401

__version__ = "0.1.0"
