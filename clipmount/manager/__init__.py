# Copyright Red Hat
#
# clipmount/manager/__init__.py - Mount manager
#
# This file is part of the clipmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Top level interface to the mount manager.
"""

from ._boot import BootInfo, parse_cmdline_value, strip_partition, first_partition
from ._mounts import MountPoint, MountSet, MountSetState, mount_all, umount_all

__all__ = [
    "BootInfo",
    "parse_cmdline_value",
    "strip_partition",
    "first_partition",
    "MountPoint",
    "MountSet",
    "MountSetState",
    "mount_all",
    "umount_all",
]
