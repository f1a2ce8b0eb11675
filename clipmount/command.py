# Copyright Red Hat
#
# clipmount/command.py - Mount manager command interface
#
# This file is part of the clipmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""The ``clipmount.command`` module provides both the clipmount command
line interface infrastructure, and a simple procedural interface to the
``clipmount`` library modules.

The procedural interface is used by the ``clipmount`` command line tool,
and may be used by boot scripts and application programs that do not
need to manage ``BootInfo``, ``MountPoint`` or ``MountSet`` objects
themselves.
"""
from argparse import ArgumentParser
from typing import Iterable, Optional
from os.path import basename
import logging
import sys

from clipmount import (
    CLIPMOUNT_CONFIG_FILE,
    CLIPMOUNT_DEBUG_BOOT,
    CLIPMOUNT_DEBUG_MOUNTS,
    CLIPMOUNT_DEBUG_COMMAND,
    CLIPMOUNT_DEBUG_ALL,
    CLIPMOUNT_SUBSYSTEM_COMMAND,
    ClipmountConfig,
    ClipmountError,
    MountTabReader,
    Result,
    SubsystemFilter,
    set_debug_mask,
    __version__,
)
from clipmount.manager import BootInfo, MountPoint
from clipmount.manager import mount_all as _mount_all
from clipmount.manager import umount_all as _umount_all

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_command(msg, *args, **kwargs):
    """A wrapper for command subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": CLIPMOUNT_SUBSYSTEM_COMMAND}, **kwargs)


_DEFAULT_LOG_LEVEL = logging.WARNING
_CONSOLE_HANDLER = None

# Command types
BOOT_TYPE = "boot"

# Boot commands
ROOTDEV_CMD = "rootdev"
ROOTDISK_CMD = "rootdisk"
BOOTDEV_CMD = "bootdev"
ENCRYPTED_CMD = "encrypted"

# Mount commands
MOUNT_CMD = "mount"
UMOUNT_CMD = "umount"
MOUNT_ALL_CMD = "mount-all"
UMOUNT_ALL_CMD = "umount-all"


#
# Procedural interface
#


def _boot_info(config: Optional[ClipmountConfig]) -> BootInfo:
    config = config or ClipmountConfig()
    return BootInfo(cmdline_path=config.cmdline)


def root_device(config: Optional[ClipmountConfig] = None) -> Result:
    """
    Return the current root device.

    :param config: An optional ``ClipmountConfig``.
    :rtype: ``Result``
    """
    return _boot_info(config).root_device()


def root_disk(config: Optional[ClipmountConfig] = None) -> Result:
    """
    Return the disk holding the current root device.

    :param config: An optional ``ClipmountConfig``.
    :rtype: ``Result``
    """
    return _boot_info(config).root_disk()


def boot_device(config: Optional[ClipmountConfig] = None) -> Result:
    """
    Return the current boot device.

    :param config: An optional ``ClipmountConfig``.
    :rtype: ``Result``
    """
    return _boot_info(config).boot_device()


def is_root_encrypted(config: Optional[ClipmountConfig] = None) -> Result:
    """
    Return whether the root file system is encrypted.

    :param config: An optional ``ClipmountConfig``.
    :rtype: ``Result``
    """
    return _boot_info(config).is_root_encrypted()


def mount(
    source: str,
    target: str,
    fstype: Optional[str] = None,
    options: Optional[str] = None,
    config: Optional[ClipmountConfig] = None,
) -> Result:
    """
    Mount ``source`` on ``target``.

    :param source: The mount source path or symbolic name.
    :param target: The mount point path.
    :param fstype: An optional file system type.
    :param options: Optional comma-separated mount options.
    :param config: An optional ``ClipmountConfig``.
    :rtype: ``Result``
    """
    return MountPoint(config).mount(source, target, fstype, options)


def umount(target: str, config: Optional[ClipmountConfig] = None) -> Result:
    """
    Unmount ``target``.

    :param target: The mount point path.
    :param config: An optional ``ClipmountConfig``.
    :rtype: ``Result``
    """
    return MountPoint(config).umount(target)


def mount_all(specs, config: Optional[ClipmountConfig] = None) -> Result:
    """
    Mount a list of ``MountSpec`` objects or argument tuples in order,
    unmounting everything already mounted if one of them fails.

    :param specs: The mount specifications in mount order.
    :param config: An optional ``ClipmountConfig``.
    :rtype: ``Result``
    """
    return _mount_all(specs, mount_point=MountPoint(config))


def umount_all(
    targets: Iterable[str], config: Optional[ClipmountConfig] = None
) -> Result:
    """
    Unmount a list of mount points in reverse order, carrying on after
    failures.

    :param targets: The mount points in mount order.
    :param config: An optional ``ClipmountConfig``.
    :rtype: ``Result``
    """
    return _umount_all(targets, mount_point=MountPoint(config))


#
# Command handlers
#


def _load_config(cmd_args) -> ClipmountConfig:
    return ClipmountConfig.from_file(cmd_args.config or CLIPMOUNT_CONFIG_FILE)


def _print_result(result: Result, fmt=str) -> int:
    if not result.ok:
        _log_error("%s", result.error)
        return 1
    print(fmt(result.value))
    return 0


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def _rootdev_cmd(cmd_args):
    """
    Root device command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    return _print_result(root_device(_load_config(cmd_args)))


def _rootdisk_cmd(cmd_args):
    """
    Root disk command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    return _print_result(root_disk(_load_config(cmd_args)))


def _bootdev_cmd(cmd_args):
    """
    Boot device command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    return _print_result(boot_device(_load_config(cmd_args)))


def _encrypted_cmd(cmd_args):
    """
    Encrypted root command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    return _print_result(is_root_encrypted(_load_config(cmd_args)), fmt=_yes_no)


def _mount_cmd(cmd_args):
    """
    Mount command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    result = mount(
        cmd_args.source,
        cmd_args.target,
        fstype=cmd_args.fstype,
        options=cmd_args.options,
        config=_load_config(cmd_args),
    )
    return 0 if result.ok else 1


def _umount_cmd(cmd_args):
    """
    Unmount command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    result = umount(cmd_args.target, config=_load_config(cmd_args))
    return 0 if result.ok else 1


def _mount_all_cmd(cmd_args):
    """
    Mount table command handler.

    Mount every entry of the mount table ``cmd_args.mounttab`` in order,
    and print the mounted targets.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    config = _load_config(cmd_args)
    mounttab = MountTabReader(cmd_args.mounttab)
    _log_debug_command("Loaded %d entries from %s", len(mounttab), mounttab.path)
    result = mount_all(list(mounttab), config=config)
    if not result.ok:
        _log_error("Failed to mount %s: %s", cmd_args.mounttab, result.error)
        return 1
    for target in result.value:
        print(target)
    return 0


def _umount_all_cmd(cmd_args):
    """
    Bulk unmount command handler.

    :param cmd_args: Command line arguments for the command
    :returns: integer status code returned from ``main()``
    """
    result = umount_all(cmd_args.targets, config=_load_config(cmd_args))
    return 0 if result.ok else 1


#: ``--debug`` option names and their debug mask values
_DEBUG_OPTIONS = {
    "boot": CLIPMOUNT_DEBUG_BOOT,
    "mounts": CLIPMOUNT_DEBUG_MOUNTS,
    "command": CLIPMOUNT_DEBUG_COMMAND,
    "all": CLIPMOUNT_DEBUG_ALL,
}


def _verbose_level(verbose):
    if not verbose:
        return _DEFAULT_LOG_LEVEL
    return logging.INFO if verbose == 1 else logging.DEBUG


def setup_logging(cmd_args):
    """
    Send ``clipmount`` log records to a single console handler on stderr
    at the level selected by ``-v``.
    """
    # pylint: disable=global-statement
    global _CONSOLE_HANDLER
    level = _verbose_level(cmd_args.verbose)

    _CONSOLE_HANDLER = logging.StreamHandler(sys.stderr)
    _CONSOLE_HANDLER.setLevel(level)
    _CONSOLE_HANDLER.setFormatter(logging.Formatter("%(levelname)s - %(message)s"))
    _CONSOLE_HANDLER.addFilter(SubsystemFilter("clipmount"))

    clipmount_log = logging.getLogger("clipmount")
    clipmount_log.setLevel(level)
    for handler in list(clipmount_log.handlers):
        clipmount_log.removeHandler(handler)
    clipmount_log.addHandler(_CONSOLE_HANDLER)


def shutdown_logging():
    """
    Shut down clipmount logging.
    """
    logging.shutdown()


def set_debug(debug_arg):
    """
    Set the debug mask from a comma-separated ``--debug`` argument.

    :raises ValueError: For an unknown debug option name.
    """
    if not debug_arg:
        return
    mask = 0
    for name in debug_arg.split(","):
        if name not in _DEBUG_OPTIONS:
            raise ValueError(f"Unknown debug option: {name}")
        mask |= _DEBUG_OPTIONS[name]
    set_debug_mask(mask)


def _add_boot_subparser(type_subparser):
    """
    Add subparser for 'boot' commands.

    :param type_subparser: Command type subparser
    """
    boot_parser = type_subparser.add_parser(BOOT_TYPE, help="Boot parameter queries")
    boot_subparser = boot_parser.add_subparsers(dest="command")

    boot_rootdev_parser = boot_subparser.add_parser(
        ROOTDEV_CMD, help="Show the root device"
    )
    boot_rootdev_parser.set_defaults(func=_rootdev_cmd)

    boot_rootdisk_parser = boot_subparser.add_parser(
        ROOTDISK_CMD, help="Show the disk holding the root device"
    )
    boot_rootdisk_parser.set_defaults(func=_rootdisk_cmd)

    boot_bootdev_parser = boot_subparser.add_parser(
        BOOTDEV_CMD, help="Show the boot device"
    )
    boot_bootdev_parser.set_defaults(func=_bootdev_cmd)

    boot_encrypted_parser = boot_subparser.add_parser(
        ENCRYPTED_CMD, help="Show whether the root file system is encrypted"
    )
    boot_encrypted_parser.set_defaults(func=_encrypted_cmd)


def _add_mount_subparsers(type_subparser):
    """
    Add subparsers for the mount and unmount commands.

    :param type_subparser: Command type subparser
    """
    mount_parser = type_subparser.add_parser(MOUNT_CMD, help="Mount a file system")
    mount_parser.add_argument(
        "-t",
        "--type",
        dest="fstype",
        metavar="FSTYPE",
        type=str,
        help="The file system type",
    )
    mount_parser.add_argument(
        "-o",
        "--options",
        metavar="OPTIONS",
        type=str,
        help="A comma-separated list of mount options",
    )
    mount_parser.add_argument(
        "source",
        metavar="SOURCE",
        type=str,
        help="A device, directory or file path, or a symbolic name",
    )
    mount_parser.add_argument(
        "target",
        metavar="TARGET",
        type=str,
        help="The mount point path",
    )
    mount_parser.set_defaults(func=_mount_cmd)

    umount_parser = type_subparser.add_parser(UMOUNT_CMD, help="Unmount a file system")
    umount_parser.add_argument(
        "target",
        metavar="TARGET",
        type=str,
        help="The mount point path",
    )
    umount_parser.set_defaults(func=_umount_cmd)

    mount_all_parser = type_subparser.add_parser(
        MOUNT_ALL_CMD, help="Mount every entry of a mount table in order"
    )
    mount_all_parser.add_argument(
        "mounttab",
        metavar="MOUNTTAB",
        type=str,
        help="Path to a mount table of 'source target [fstype [options]]' lines",
    )
    mount_all_parser.set_defaults(func=_mount_all_cmd)

    umount_all_parser = type_subparser.add_parser(
        UMOUNT_ALL_CMD, help="Unmount mount points in reverse order"
    )
    umount_all_parser.add_argument(
        "targets",
        metavar="TARGET",
        type=str,
        nargs="+",
        help="Mount point paths, in the order they were mounted",
    )
    umount_all_parser.set_defaults(func=_umount_all_cmd)


def _run_command(cmd_args):
    """
    Run the handler selected by ``cmd_args`` and return its status.

    Unexpected exceptions are logged and give status 1 unless ``--debug``
    is in effect, when they propagate with their traceback.
    """
    try:
        return cmd_args.func(cmd_args)
    except ClipmountError as err:
        _log_error("Command failed: %s", err)
    except KeyboardInterrupt:  # pragma: no cover
        _log_info("Exiting on user cancel")
    # pylint: disable=broad-except
    except Exception as err:
        if cmd_args.debug:
            raise
        _log_error("Command failed: %s", err)
    return 1


def main(args):
    """
    Main entry point for clipmount.
    """
    parser = ArgumentParser(description="Mount Manager", prog=basename(args[0]))

    # Global arguments
    parser.add_argument(
        "-c",
        "--config",
        metavar="CONFIG",
        type=str,
        help=f"Path to the configuration file (default {CLIPMOUNT_CONFIG_FILE})",
    )
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
        help="Report the version number of clipmount",
        version=__version__,
    )
    type_subparser = parser.add_subparsers(dest="type", help="Command type")

    _add_boot_subparser(type_subparser)

    _add_mount_subparsers(type_subparser)

    cmd_args = parser.parse_args(args[1:])

    try:
        set_debug(cmd_args.debug)
    except ValueError as err:
        print(err)
        parser.print_help()
        return 1

    setup_logging(cmd_args)

    _log_debug_command("Parsed %s", " ".join(args[1:]))

    if "func" not in cmd_args:
        parser.print_help()
        return 1

    try:
        return _run_command(cmd_args)
    finally:
        shutdown_logging()


def main_entry():
    """
    Console script entry point for clipmount.
    """
    sys.exit(main(sys.argv))


# vim: set et ts=4 sw=4 :
