# Copyright Red Hat
#
# clipmount/manager/_boot.py - Mount manager boot parameter support
#
# This file is part of the clipmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Boot parameter queries for the mount manager.

The kernel command line is re-read by every query: callers that need a
consistent view across several queries should read it once with
``BootInfo.read_cmdline()`` and use the parse helpers in this module.
"""
from typing import Optional
import logging
import re

from clipmount import (
    CLIPMOUNT_SUBSYSTEM_BOOT,
    PROC_CMDLINE,
    ClipmountError,
    ClipmountParseError,
    ClipmountSourceUnavailableError,
    Result,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_boot(msg, *args, **kwargs):
    """A wrapper for boot subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": CLIPMOUNT_SUBSYSTEM_BOOT}, **kwargs)


#: Kernel command line key naming the root device
ROOT_ARG = "root"

#: Kernel command line key naming the boot device
BOOT_ARG = "boot"

#: Marker whose presence on the command line indicates an encrypted root
CRYPT_MARKER = "crypt"

#: Partition index assumed for the boot device when none is given
BOOT_PARTITION_INDEX = "1"

# Only a trailing run of decimal digits is treated as a partition number.
_PARTITION_RE = re.compile(r"[0-9]+$")


def parse_cmdline_value(line: str, key: str) -> Optional[str]:
    """
    Return the value of the last ``key=value`` token in the boot parameter
    line ``line``, or ``None`` if no such token exists.

    Tokens are whitespace-delimited and must start with ``key=``; tokens
    with an empty value are ignored.

    :param line: The kernel command line.
    :param key: The key to look up, for e.g. ``"root"``.
    :returns: The value of the last matching token or ``None``.
    :rtype: ``Optional[str]``
    """
    prefix = f"{key}="
    value = None
    for token in line.split():
        if token.startswith(prefix) and len(token) > len(prefix):
            value = token[len(prefix) :]
    return value


def strip_partition(device: str) -> str:
    """
    Strip a trailing run of decimal digits (a partition number) from
    ``device``: ``/dev/sda5`` becomes ``/dev/sda``.

    Partition schemes with a separator are not recognised:
    ``/dev/mmcblk0p12`` becomes ``/dev/mmcblk0p``.

    :param device: A partition device path.
    :returns: The device path without its partition number.
    """
    return _PARTITION_RE.sub("", device)


def first_partition(device: str) -> str:
    """
    Replace a trailing run of decimal digits in ``device`` with the boot
    partition index: ``/dev/sda5`` becomes ``/dev/sda1``. A device without
    trailing digits is returned unchanged.

    :param device: A partition device path.
    :returns: The path of the assumed boot partition.
    """
    return _PARTITION_RE.sub(BOOT_PARTITION_INDEX, device)


class BootInfo:
    """
    Read-only facts about the boot configuration derived from the live
    kernel command line.
    """

    def __init__(self, cmdline_path: str = PROC_CMDLINE):
        """
        Initialise a new ``BootInfo`` object.

        :param cmdline_path: The path of the boot parameter source.
        """
        self.cmdline_path = cmdline_path

    def _read(self) -> str:
        try:
            with open(self.cmdline_path, "r", encoding="utf8") as fp:
                line = fp.readline()
        except (OSError, UnicodeDecodeError) as err:
            _log_warn("could not open %s: %s", self.cmdline_path, err)
            raise ClipmountSourceUnavailableError(
                f"Could not read boot parameters from {self.cmdline_path}: {err}"
            ) from err
        _log_debug_boot("Read boot parameters: %s", line.strip())
        return line

    def _root_device(self, line: str) -> str:
        root = parse_cmdline_value(line, ROOT_ARG)
        if root is None:
            _log_warn("could not extract root device from %s", line.strip())
            raise ClipmountParseError(
                f"No {ROOT_ARG}= argument in boot parameters: {line.strip()}"
            )
        return root

    def read_cmdline(self) -> Result:
        """
        Return the current boot parameter line.

        :returns: ``Ok(line)`` or ``Err(ClipmountSourceUnavailableError)``.
        :rtype: ``Result``
        """
        try:
            return Result.Ok(self._read())
        except ClipmountError as err:
            return Result.Err(err)

    def root_device(self) -> Result:
        """
        Return the current root device, for e.g. ``/dev/sda5``.

        :returns: ``Ok(device)``, or ``Err`` holding a
                  ``ClipmountSourceUnavailableError`` or a
                  ``ClipmountParseError``.
        :rtype: ``Result``
        """
        try:
            return Result.Ok(self._root_device(self._read()))
        except ClipmountError as err:
            return Result.Err(err)

    def root_disk(self) -> Result:
        """
        Return the disk holding the root device, for e.g. ``/dev/sda``.

        :returns: ``Ok(disk)`` or the failed ``root_device()`` result.
        :rtype: ``Result``
        """
        result = self.root_device()
        if not result.ok:
            return result
        return Result.Ok(strip_partition(result.value))

    def boot_device(self) -> Result:
        """
        Return the boot device, for e.g. ``/dev/sda1``.

        The value of a ``boot=`` argument is used if present; otherwise the
        boot device is assumed to be partition 1 of the root disk.

        :returns: ``Ok(device)``, or ``Err`` holding a
                  ``ClipmountSourceUnavailableError`` or a
                  ``ClipmountParseError``.
        :rtype: ``Result``
        """
        try:
            line = self._read()
        except ClipmountError as err:
            return Result.Err(err)

        boot = parse_cmdline_value(line, BOOT_ARG)
        if boot is not None:
            return Result.Ok(boot)

        root = parse_cmdline_value(line, ROOT_ARG)
        if root is not None:
            boot = first_partition(root)
            _log_debug_boot("Using %s as boot device for root %s", boot, root)
            return Result.Ok(boot)

        _log_warn("could not extract boot device from %s", line.strip())
        return Result.Err(
            ClipmountParseError(
                f"No {BOOT_ARG}= or {ROOT_ARG}= argument in boot parameters: "
                f"{line.strip()}"
            )
        )

    def is_root_encrypted(self) -> Result:
        """
        Return whether the root file system is encrypted: ``True`` if the
        string ``crypt`` appears anywhere in the boot parameters.

        :returns: ``Ok(bool)`` or ``Err(ClipmountSourceUnavailableError)``.
        :rtype: ``Result``
        """
        try:
            line = self._read()
        except ClipmountError as err:
            return Result.Err(err)
        return Result.Ok(CRYPT_MARKER in line)

    def __repr__(self):
        return f"BootInfo(cmdline_path='{self.cmdline_path}')"


__all__ = [
    "BootInfo",
    "parse_cmdline_value",
    "strip_partition",
    "first_partition",
]
