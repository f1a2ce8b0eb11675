# Copyright Red Hat
#
# clipmount/_clipmount.py - Mount manager global definitions
#
# This file is part of the clipmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Global definitions for the top-level clipmount package.
"""
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Sequence
from os.path import exists
import logging
import os

_log = logging.getLogger("clipmount")

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error

# Clipmount debugging subsystem mask (legacy interface)
CLIPMOUNT_DEBUG_BOOT = 1
CLIPMOUNT_DEBUG_MOUNTS = 2
CLIPMOUNT_DEBUG_COMMAND = 4
CLIPMOUNT_DEBUG_ALL = (
    CLIPMOUNT_DEBUG_BOOT | CLIPMOUNT_DEBUG_MOUNTS | CLIPMOUNT_DEBUG_COMMAND
)

# Clipmount debugging subsystem names
CLIPMOUNT_SUBSYSTEM_BOOT = "clipmount.boot"
CLIPMOUNT_SUBSYSTEM_MOUNTS = "clipmount.mounts"
CLIPMOUNT_SUBSYSTEM_COMMAND = "clipmount.command"

_DEBUG_MASK_TO_SUBSYSTEM = {
    CLIPMOUNT_DEBUG_BOOT: CLIPMOUNT_SUBSYSTEM_BOOT,
    CLIPMOUNT_DEBUG_MOUNTS: CLIPMOUNT_SUBSYSTEM_MOUNTS,
    CLIPMOUNT_DEBUG_COMMAND: CLIPMOUNT_SUBSYSTEM_COMMAND,
}

_debug_subsystems = set()

#: Path to the kernel command line
PROC_CMDLINE = "/proc/cmdline"

#: Default location of the clipmount configuration file
CLIPMOUNT_CONFIG_FILE = "/etc/clipmount/clipmount.conf"

#: Default mount and umount programs
MOUNT_CMD = "mount"
UMOUNT_CMD = "umount"

#: Default timeout in seconds for mount helper programs
DEFAULT_MOUNT_TIMEOUT = 60

#: Environment variable overriding the mount helper timeout
_CLIPMOUNT_MOUNT_TIMEOUT_ENV = "CLIPMOUNT_MOUNT_TIMEOUT"

# Configuration file section and keys
_CLIPMOUNT_CFG_GLOBAL = "global"
_CLIPMOUNT_CFG_MOUNT_COMMAND = "mount_command"
_CLIPMOUNT_CFG_UMOUNT_COMMAND = "umount_command"
_CLIPMOUNT_CFG_TIMEOUT = "timeout"
_CLIPMOUNT_CFG_CMDLINE = "cmdline"

#: Placeholder for an omitted field in a mount table
MOUNTTAB_NONE = "-"


class SubsystemFilter(logging.Filter):
    """
    Pass DEBUG records tagged with a ``subsystem`` only when that subsystem
    is enabled. Other records always pass.

    Without an explicit ``subsystems`` collection the filter follows the
    package debug mask set with ``set_debug_mask()``.
    """

    def __init__(self, name="", subsystems=None):
        super().__init__(name)
        self._subsystems = None if subsystems is None else frozenset(subsystems)

    @property
    def enabled_subsystems(self):
        """The subsystem names whose DEBUG records are passed."""
        if self._subsystems is None:
            return frozenset(_debug_subsystems)
        return self._subsystems

    def filter(self, record):
        if record.levelno != logging.DEBUG:
            return True
        subsystem = getattr(record, "subsystem", None)
        return subsystem is None or subsystem in self.enabled_subsystems


def get_debug_mask():
    """
    Return the current debug mask for the ``clipmount`` package.

    :rtype: int
    """
    mask = 0
    for flag, subsystem_name in _DEBUG_MASK_TO_SUBSYSTEM.items():
        if subsystem_name in _debug_subsystems:
            mask |= flag
    return mask


def set_debug_mask(mask):
    """
    Set the debug mask for the ``clipmount`` package.

    :param mask: the logical OR of the ``CLIPMOUNT_DEBUG_*``
                 values to log.
    :raises ValueError: If ``mask`` has bits outside ``CLIPMOUNT_DEBUG_ALL``.
    """
    if mask < 0 or mask & ~CLIPMOUNT_DEBUG_ALL:
        raise ValueError(f"Invalid clipmount debug mask: {mask}")
    _debug_subsystems.clear()
    _debug_subsystems.update(
        name for flag, name in _DEBUG_MASK_TO_SUBSYSTEM.items() if mask & flag
    )


#
# Clipmount exception types
#


class ClipmountError(Exception):
    """
    Base class for mount manager errors.
    """


class ClipmountSystemError(ClipmountError):
    """
    An error when calling the operating system.
    """


class ClipmountNotFoundError(ClipmountError):
    """
    The requested object does not exist.
    """


class ClipmountArgumentError(ClipmountError):
    """
    An invalid argument was supplied.
    """


class ClipmountStateError(ClipmountError):
    """
    An operation was requested on an object in the wrong state.
    """


class ClipmountSourceUnavailableError(ClipmountError):
    """
    The boot parameter source could not be read.
    """


class ClipmountParseError(ClipmountError):
    """
    An expected token is absent from the boot parameters.
    """


class ClipmountTargetPrepError(ClipmountError):
    """
    A mount target path could not be cleared or created.
    """


class ClipmountCalloutError(ClipmountError):
    """
    An error calling out to an external program.
    """


def _status_str(status: Optional[int]) -> str:
    return "no status" if status is None else f"status={status}"


class ClipmountMountError(ClipmountCalloutError):
    """
    An error performing a mount operation.
    """

    def __init__(self, what: str, where: str, status: Optional[int], output: str):
        """
        Initialise a new `ClipmountMountError` exception.

        :param what: The source for the failed mount operation.
        :param where: The intended mount point of the operation.
        :param status: The exit status of the mount(8) program, or ``None``
                       if the program could not be run to completion.
        :param output: The combined output captured from mount(8).
        """
        self.what, self.where, self.status, self.output = what, where, status, output
        msg = f"Failed to mount {what} to {where} ({_status_str(status)}): {output}"
        super().__init__(msg)


class ClipmountUmountError(ClipmountCalloutError):
    """
    An error performing an unmount operation.
    """

    def __init__(self, where: str, status: Optional[int], output: str):
        """
        Initialise a new `ClipmountUmountError` exception.

        :param where: The mount point for the failed umount operation.
        :param status: The exit status of the umount(8) program, or ``None``
                       if the program could not be run to completion.
        :param output: The combined output captured from umount(8).
        """
        self.where, self.status, self.output = where, status, output
        msg = f"Failed to unmount {where} ({_status_str(status)}): {output}"
        super().__init__(msg)


class ClipmountUmountAllError(ClipmountError):
    """
    One or more unmount operations in a bulk unmount failed.
    """

    def __init__(self, failed: Sequence[str]):
        """
        Initialise a new `ClipmountUmountAllError` exception.

        :param failed: The mount points that could not be unmounted, in
                       the order they were attempted.
        """
        self.failed = list(failed)
        super().__init__(f"Failed to unmount: {', '.join(self.failed)}")


#
# Operation results
#


class Result:
    """
    The outcome of a clipmount operation.

    A ``Result`` either holds a value (``Result.Ok(value)``) or an error
    (``Result.Err(error)``), where ``error`` is a ``ClipmountError``
    instance whose class identifies the kind of failure.
    """

    __slots__ = ("_value", "_error")

    def __init__(self, value: Any = None, error: Optional[ClipmountError] = None):
        self._value = value
        self._error = error

    # pylint: disable=invalid-name
    @classmethod
    def Ok(cls, value: Any = None) -> "Result":
        """
        Return a successful ``Result`` holding ``value``.
        """
        return cls(value=value)

    # pylint: disable=invalid-name
    @classmethod
    def Err(cls, error: ClipmountError) -> "Result":
        """
        Return a failed ``Result`` holding ``error``.

        :raises TypeError: If ``error`` is not a ``ClipmountError``.
        """
        if not isinstance(error, ClipmountError):
            raise TypeError(f"Result error must be a ClipmountError: {error!r}")
        return cls(error=error)

    @property
    def ok(self) -> bool:
        """
        ``True`` if this ``Result`` holds a value and ``False`` if it holds
        an error.
        """
        return self._error is None

    @property
    def value(self) -> Any:
        """
        The value held by a successful ``Result`` (``None`` for errors).
        """
        return self._value

    @property
    def error(self) -> Optional[ClipmountError]:
        """
        The error held by a failed ``Result`` (``None`` on success).
        """
        return self._error

    def unwrap(self) -> Any:
        """
        Return the value of a successful ``Result`` or raise its error.
        """
        if self._error is not None:
            raise self._error
        return self._value

    def __eq__(self, other):
        if not isinstance(other, Result):
            return NotImplemented
        return self._value == other._value and self._error is other._error

    def __repr__(self):
        if self.ok:
            return f"Result.Ok({self._value!r})"
        return f"Result.Err({self._error!r})"


#
# Mount specifications
#


@dataclass(frozen=True)
class MountSpec:
    """
    An immutable description of one mount operation.

    ``source`` is either an absolute path (device node, directory or
    regular file) or a symbolic name without a leading separator that is
    resolved by mount(8), for e.g. ``tmpfs`` or ``LABEL=data``.
    """

    source: str
    target: str
    fstype: Optional[str] = None
    options: Optional[str] = None

    def __post_init__(self):
        if not self.target:
            raise ClipmountArgumentError(
                f"Mount target for {self.source} must be a non-empty path"
            )

    @property
    def symbolic(self) -> bool:
        """
        ``True`` if the source is a symbolic name rather than a path.
        """
        return not self.source.startswith(os.sep)

    @classmethod
    def from_tuple(cls, entry: Sequence[Optional[str]]) -> "MountSpec":
        """
        Build a ``MountSpec`` from a ``(source, target[, fstype[, options]])``
        sequence. Omitted or ``None`` members are not given.

        :param entry: A sequence of two to four members.
        :returns: A new ``MountSpec``.
        :raises ClipmountArgumentError: If ``entry`` has the wrong length.
        """
        if not 2 <= len(entry) <= 4:
            raise ClipmountArgumentError(
                f"Mount specification must have 2 to 4 members: {entry!r}"
            )
        return cls(*entry)

    def __str__(self):
        return " ".join(
            [
                self.source,
                self.target,
                self.fstype or MOUNTTAB_NONE,
                self.options or MOUNTTAB_NONE,
            ]
        )


#
# Configuration
#


def _default_timeout() -> int:
    """
    Return the default mount helper timeout, honouring the
    ``CLIPMOUNT_MOUNT_TIMEOUT`` environment variable.
    """
    value = os.getenv(_CLIPMOUNT_MOUNT_TIMEOUT_ENV)
    if value is None:
        return DEFAULT_MOUNT_TIMEOUT
    try:
        return int(value)
    except ValueError:
        _log_warn(
            "Ignoring invalid %s value: %s", _CLIPMOUNT_MOUNT_TIMEOUT_ENV, value
        )
        return DEFAULT_MOUNT_TIMEOUT


@dataclass
class ClipmountConfig:
    """
    Mount manager configuration.
    """

    mount_command: str = MOUNT_CMD
    umount_command: str = UMOUNT_CMD
    timeout: int = field(default_factory=_default_timeout)
    cmdline: str = PROC_CMDLINE

    @classmethod
    def from_file(cls, config_file: str = CLIPMOUNT_CONFIG_FILE) -> "ClipmountConfig":
        """
        Load ``ClipmountConfig`` from an INI-style configuration file located
        at ``config_file``. A missing file yields the default configuration.

        :param config_file: path to clipmount.conf
        :type config_file: ``str``.
        :returns: A ``ClipmountConfig`` instance initialised from
                  ``config_file``.
        :rtype: ``ClipmountConfig``
        :raises ClipmountSystemError: If the file cannot be parsed.
        :raises ClipmountArgumentError: If the timeout is not an integer.
        """
        config = ClipmountConfig()

        if not exists(config_file):
            return config

        _log_debug("Loading configuration from '%s'", config_file)
        cfg = ConfigParser()
        try:
            cfg.read([config_file], encoding="utf8")
        except ConfigParserError as err:
            raise ClipmountSystemError(
                f"Error parsing configuration file {config_file}: {err}"
            ) from err

        if not cfg.has_section(_CLIPMOUNT_CFG_GLOBAL):
            return config

        section = cfg[_CLIPMOUNT_CFG_GLOBAL]
        if _CLIPMOUNT_CFG_MOUNT_COMMAND in section:
            config.mount_command = section[_CLIPMOUNT_CFG_MOUNT_COMMAND].strip()
        if _CLIPMOUNT_CFG_UMOUNT_COMMAND in section:
            config.umount_command = section[_CLIPMOUNT_CFG_UMOUNT_COMMAND].strip()
        if _CLIPMOUNT_CFG_CMDLINE in section:
            config.cmdline = section[_CLIPMOUNT_CFG_CMDLINE].strip()
        if _CLIPMOUNT_CFG_TIMEOUT in section:
            try:
                config.timeout = section.getint(_CLIPMOUNT_CFG_TIMEOUT)
            except ValueError as err:
                raise ClipmountArgumentError(
                    f"Invalid timeout in {config_file}: "
                    f"{section[_CLIPMOUNT_CFG_TIMEOUT]}"
                ) from err
        return config


#
# Mount tables
#


def _unescape_mounts(escaped: str) -> str:
    """
    Unescape octal escapes in values read from mount tables.

    :param escaped: The string to unescape.
    :type escaped: str
    :returns: The unescaped string with octal values replaced by literal
              character values.
    :rtype: str
    """
    return (
        escaped.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def _optional_field(value: str) -> Optional[str]:
    return None if value == MOUNTTAB_NONE else _unescape_mounts(value)


class MountTabReader:
    """
    A class to read an ordered mount table.

    Each non-comment line holds ``source target [fstype [options]]``, with
    ``-`` standing for an omitted field. Entries are kept in file order,
    which is the order in which they are mounted.
    """

    def __init__(self, path: str):
        """
        Initializes the MountTabReader object by reading and parsing the file.

        :param path: The path to the mount table.
        :type path: str
        :raises ClipmountNotFoundError: If the mount table does not exist.
        :raises ClipmountSystemError: If there is an error reading the file.
        """
        self.path = path
        self.entries: List[MountSpec] = []
        self._read_mounttab()

    def _read_mounttab(self):
        try:
            with open(self.path, "r", encoding="utf8") as f:
                for line in f:
                    line = line.split("#", 1)[0].strip()
                    if not line:
                        continue

                    parts = line.split()
                    if not 2 <= len(parts) <= 4:
                        _log_warn("Skipping malformed %s entry: %s", self.path, line)
                        continue

                    source, target = parts[0], parts[1]
                    fstype = _optional_field(parts[2]) if len(parts) > 2 else None
                    options = _optional_field(parts[3]) if len(parts) > 3 else None
                    self.entries.append(
                        MountSpec(
                            _unescape_mounts(source),
                            _unescape_mounts(target),
                            fstype,
                            options,
                        )
                    )

        except FileNotFoundError as exc:
            _log_error("Error: The file '%s' was not found.", self.path)
            raise ClipmountNotFoundError(
                f"Mount table not found: {self.path}"
            ) from exc
        except OSError as e:
            _log_error("Error: Could not read the file '%s': %s", self.path, e)
            raise ClipmountSystemError(f"Error reading mount table: {self.path}") from e

    def __iter__(self) -> Iterator[MountSpec]:
        yield from self.entries

    def __len__(self):
        return len(self.entries)

    def __repr__(self):
        return f"MountTabReader(path='{self.path}')"


__all__ = [
    "CLIPMOUNT_DEBUG_BOOT",
    "CLIPMOUNT_DEBUG_MOUNTS",
    "CLIPMOUNT_DEBUG_COMMAND",
    "CLIPMOUNT_DEBUG_ALL",
    "CLIPMOUNT_SUBSYSTEM_BOOT",
    "CLIPMOUNT_SUBSYSTEM_MOUNTS",
    "CLIPMOUNT_SUBSYSTEM_COMMAND",
    "PROC_CMDLINE",
    "CLIPMOUNT_CONFIG_FILE",
    "MOUNT_CMD",
    "UMOUNT_CMD",
    "DEFAULT_MOUNT_TIMEOUT",
    "MOUNTTAB_NONE",
    # Debug logging - subsystem name interface
    "SubsystemFilter",
    # Debug logging - legacy interface
    "set_debug_mask",
    "get_debug_mask",
    "ClipmountError",
    "ClipmountSystemError",
    "ClipmountNotFoundError",
    "ClipmountArgumentError",
    "ClipmountStateError",
    "ClipmountSourceUnavailableError",
    "ClipmountParseError",
    "ClipmountTargetPrepError",
    "ClipmountCalloutError",
    "ClipmountMountError",
    "ClipmountUmountError",
    "ClipmountUmountAllError",
    "Result",
    "MountSpec",
    "ClipmountConfig",
    "MountTabReader",
]
