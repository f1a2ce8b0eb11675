# Copyright Red Hat
#
# clipmount/manager/_mounts.py - Mount manager mount support
#
# This file is part of the clipmount project.
#
# SPDX-License-Identifier: Apache-2.0
"""
Mount and unmount operations, and transactional mounting of ordered
mount lists.
"""
from subprocess import run, PIPE, STDOUT, TimeoutExpired
from typing import Iterable, List, Optional, Sequence, Tuple, Union
from stat import S_ISBLK
from enum import Enum
import logging
import os.path
import os

from clipmount import (
    CLIPMOUNT_SUBSYSTEM_MOUNTS,
    ClipmountConfig,
    ClipmountError,
    ClipmountArgumentError,
    ClipmountStateError,
    ClipmountTargetPrepError,
    ClipmountMountError,
    ClipmountUmountError,
    ClipmountUmountAllError,
    MountSpec,
    Result,
)

_log = logging.getLogger(__name__)

_log_debug = _log.debug
_log_info = _log.info
_log_warn = _log.warning
_log_error = _log.error


def _log_debug_mounts(msg, *args, **kwargs):
    """A wrapper for mounts subsystem debug logs."""
    _log.debug(msg, *args, extra={"subsystem": CLIPMOUNT_SUBSYSTEM_MOUNTS}, **kwargs)


def _output_lines(output: Union[str, bytes, None]) -> List[str]:
    if not output:
        return []
    if isinstance(output, bytes):
        output = output.decode("utf8", errors="replace")
    return output.splitlines()


def _callout(cmd: List[str], timeout: int) -> Tuple[Optional[int], List[str]]:
    """
    Run a mount helper program and capture its combined output.

    :param cmd: The command argument vector.
    :param timeout: The time in seconds to wait for the program to exit.
    :returns: A ``(status, output_lines)`` tuple. ``status`` is ``None`` if
              the program could not be started or did not finish in time.
    """
    _log_debug_mounts("Calling %s", " ".join(cmd))
    try:
        result = run(
            cmd,
            check=False,
            stdout=PIPE,
            stderr=STDOUT,
            encoding="utf8",
            errors="replace",
            timeout=timeout,
        )
    except TimeoutExpired as err:
        _log_warn("%s timed out after %s seconds", cmd[0], timeout)
        return None, _output_lines(err.output)
    except OSError as err:
        _log_warn("could not run %s: %s", cmd[0], err)
        return None, [str(err)]
    return result.returncode, _output_lines(result.stdout)


def _is_block_device(path: str) -> bool:
    try:
        return S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def _make_dir(target: str):
    try:
        os.mkdir(target)
    except OSError as err:
        _log_warn("failed to create %s: %s", target, err)
        raise ClipmountTargetPrepError(f"Failed to create {target}: {err}") from err


def _prepare_target(source: str, target: str):
    """
    Make sure that the mount point ``target`` exists with a type suited
    to ``source``.

    A directory is created for directory, block device and symbolic
    sources; an empty regular file is created for other existing sources
    (file bind mounts). A non-directory entry in the way of a directory
    target is removed first.

    :param source: The source of the mount operation.
    :param target: The mount point path.
    :raises ClipmountTargetPrepError: If the target cannot be prepared.
    """
    if source.startswith(os.sep):
        if (os.path.isdir(source) or _is_block_device(source)) and not os.path.isdir(
            target
        ):
            _log_warn("creating %s", target)
            if os.path.lexists(target):
                try:
                    os.unlink(target)
                except OSError as err:
                    _log_warn("failed to remove %s: %s", target, err)
                    raise ClipmountTargetPrepError(
                        f"Failed to remove {target}: {err}"
                    ) from err
            _make_dir(target)
        elif os.path.exists(source) and not os.path.exists(target):
            _log_warn("creating %s", target)
            try:
                with open(target, "w", encoding="utf8"):
                    pass
            except OSError as err:
                _log_warn("failed to create %s: %s", target, err)
                raise ClipmountTargetPrepError(
                    f"Failed to create {target}: {err}"
                ) from err
    elif not os.path.exists(target):
        _log_debug_mounts("Creating mount point %s for %s", target, source)
        _make_dir(target)


def _mount(
    what: str,
    where: str,
    fstype: Optional[str] = None,
    options: Optional[str] = None,
    mount_cmd: str = "mount",
    timeout: Optional[int] = None,
):
    """
    Call the mount program to mount a file system.

    :param what: The source for the mount operation.
    :param where: The path to the mount point.
    :param fstype: An optional file system type.
    :param options: Optional comma-separated mount options.
    :param mount_cmd: The mount program to run.
    :param timeout: The time in seconds to wait for the mount program.
    :raises ClipmountMountError: If the mount program fails.
    """
    cmd = [mount_cmd]
    if fstype is not None:
        cmd.extend(["-t", fstype])
    if options is not None:
        cmd.extend(["-o", options])
    cmd.extend([what, where])

    status, output = _callout(cmd, timeout)
    if status != 0:
        _log_warn("mount of %s to %s failed", what, where)
        for line in output:
            _log_warn("mount output: %s", line)
        raise ClipmountMountError(what, where, status, "\n".join(output))


def _umount(where: str, umount_cmd: str = "umount", timeout: Optional[int] = None):
    """
    Call the umount program to unmount a file system.

    :param where: The mount point to be unmounted.
    :param umount_cmd: The umount program to run.
    :param timeout: The time in seconds to wait for the umount program.
    :raises ClipmountUmountError: If the umount program fails.
    """
    status, output = _callout([umount_cmd, where], timeout)
    if status != 0:
        _log_warn("umount of %s failed", where)
        for line in output:
            _log_warn("umount output: %s", line)
        raise ClipmountUmountError(where, status, "\n".join(output))


class MountPoint:
    """
    Single mount and unmount operations, including mount point
    preparation. A ``MountPoint`` never undoes its own partial side
    effects: rollback is the responsibility of ``MountSet``.
    """

    def __init__(self, config: Optional[ClipmountConfig] = None):
        """
        Initialise a new ``MountPoint``.

        :param config: The configuration supplying the mount helper
                       programs and timeout.
        """
        self.config = config or ClipmountConfig()

    def mount(
        self,
        source: str,
        target: str,
        fstype: Optional[str] = None,
        options: Optional[str] = None,
    ) -> Result:
        """
        Mount ``source`` on ``target``, creating ``target`` if needed.

        :param source: A device, directory or file path, or a symbolic
                       name (without leading '/') resolved by mount(8).
        :param target: The mount point path.
        :param fstype: An optional file system type.
        :param options: Optional comma-separated mount(8) options.
        :returns: ``Ok(target)``, or ``Err`` holding a
                  ``ClipmountArgumentError``, ``ClipmountTargetPrepError``
                  or ``ClipmountMountError``.
        :rtype: ``Result``
        """
        try:
            if not target:
                _log_warn("empty mount target for %s", source)
                raise ClipmountArgumentError(
                    f"Mount target for {source} must be a non-empty path"
                )
            _prepare_target(source, target)
            _mount(
                source,
                target,
                fstype=fstype,
                options=options,
                mount_cmd=self.config.mount_command,
                timeout=self.config.timeout,
            )
        except ClipmountError as err:
            return Result.Err(err)
        _log_info("Mounted %s on %s", source, target)
        return Result.Ok(target)

    def mount_spec(self, spec: MountSpec) -> Result:
        """
        Mount the file system described by ``spec``.

        :param spec: The ``MountSpec`` to mount.
        :returns: The result of ``mount()``.
        :rtype: ``Result``
        """
        return self.mount(spec.source, spec.target, spec.fstype, spec.options)

    def umount(self, target: str) -> Result:
        """
        Unmount the file system mounted on ``target``.

        :param target: The mount point path.
        :returns: ``Ok(target)`` or ``Err(ClipmountUmountError)``.
        :rtype: ``Result``
        """
        try:
            _umount(
                target,
                umount_cmd=self.config.umount_command,
                timeout=self.config.timeout,
            )
        except ClipmountError as err:
            return Result.Err(err)
        _log_info("Unmounted %s", target)
        return Result.Ok(target)

    def __repr__(self):
        return f"MountPoint(config={self.config!r})"


def umount_all(
    targets: Iterable[str], mount_point: Optional[MountPoint] = None
) -> Result:
    """
    Unmount every mount point in ``targets``, in reverse order.

    Every target is attempted regardless of earlier failures.

    :param targets: Mount points in the order they were mounted.
    :param mount_point: The ``MountPoint`` used to unmount each target.
    :returns: ``Ok(None)`` if every unmount succeeded, otherwise
              ``Err(ClipmountUmountAllError)`` naming the failed targets.
    :rtype: ``Result``
    """
    mount_point = mount_point or MountPoint()
    failed = []
    for target in reversed(list(targets)):
        _log_debug_mounts("Attempting to unmount %s", target)
        if not mount_point.umount(target).ok:
            failed.append(target)
    if failed:
        err = ClipmountUmountAllError(failed)
        _log_warn("%s", err)
        return Result.Err(err)
    return Result.Ok(None)


class MountSetState(Enum):
    """
    Transaction states of a ``MountSet``.
    """

    PENDING = "Pending"
    ROLLING_BACK = "RollingBack"
    FAILED = "Failed"
    COMMITTED = "Committed"
    UNMOUNTED = "Unmounted"

    def __str__(self):
        return self.value


SpecLike = Union[MountSpec, Sequence[Optional[str]]]


class MountSet:
    """
    An ordered list of mounts applied as one transaction.

    ``mount_all()`` mounts the specifications in order; the first failure
    unmounts everything mounted so far, in reverse order, and leaves the
    set ``FAILED``. A ``COMMITTED`` set belongs to the caller, who tears it
    down with ``umount_all()``.
    """

    def __init__(
        self, specs: Iterable[SpecLike], mount_point: Optional[MountPoint] = None
    ):
        """
        Initialise a new ``MountSet``.

        :param specs: ``MountSpec`` objects or ``(source, target[, fstype[,
                      options]])`` tuples, in mount order.
        :param mount_point: The ``MountPoint`` used for each operation.
        :raises ClipmountArgumentError: If a specification is invalid.
        """
        self.specs: Tuple[MountSpec, ...] = tuple(
            spec if isinstance(spec, MountSpec) else MountSpec.from_tuple(spec)
            for spec in specs
        )
        #: Targets confirmed mounted by this transaction, in mount order.
        self.mounted: List[str] = []
        self.state = MountSetState.PENDING
        #: Index of the next specification to mount.
        self.index = 0
        self._mount_point = mount_point or MountPoint()

    def _state_error(self, operation: str) -> Result:
        err = ClipmountStateError(
            f"Cannot {operation} mount set in state {self.state}"
        )
        _log_warn("%s", err)
        return Result.Err(err)

    def _rollback(self):
        self.state = MountSetState.ROLLING_BACK
        _log_warn(
            "Rolling back %d mounts after failure at %s",
            len(self.mounted),
            self.specs[self.index].target,
        )
        result = umount_all(self.mounted, mount_point=self._mount_point)
        if not result.ok:
            _log_warn("Rollback incomplete: %s", result.error)
        self.state = MountSetState.FAILED

    def mount_all(self) -> Result:
        """
        Mount every specification in order, rolling back on failure.

        :returns: ``Ok(targets)`` with the list of mounted targets, or the
                  failed ``Result`` of the first mount that failed. Rollback
                  failures are logged and do not alter the result.
        :rtype: ``Result``
        """
        if self.state != MountSetState.PENDING or self.index:
            return self._state_error("mount")

        while self.index < len(self.specs):
            spec = self.specs[self.index]
            _log_debug_mounts(
                "Mounting %s (%d/%d)", spec, self.index + 1, len(self.specs)
            )
            result = self._mount_point.mount_spec(spec)
            if not result.ok:
                self._rollback()
                return result
            self.mounted.append(spec.target)
            self.index += 1

        self.state = MountSetState.COMMITTED
        return Result.Ok(list(self.mounted))

    def umount_all(self) -> Result:
        """
        Tear down a committed mount set, in reverse mount order.

        On failure the set stays ``COMMITTED`` and ``mounted`` keeps only
        the targets that are still mounted, so that teardown may be retried.

        :returns: The result of the bulk unmount.
        :rtype: ``Result``
        """
        if self.state != MountSetState.COMMITTED:
            return self._state_error("unmount")
        result = umount_all(self.mounted, mount_point=self._mount_point)
        if result.ok:
            self.mounted.clear()
            self.state = MountSetState.UNMOUNTED
        else:
            still_mounted = set(result.error.failed)
            self.mounted = [t for t in self.mounted if t in still_mounted]
        return result

    def __repr__(self):
        return (
            f"MountSet(specs={list(self.specs)!r}, state={self.state}, "
            f"mounted={self.mounted!r})"
        )


def mount_all(
    specs: Iterable[SpecLike], mount_point: Optional[MountPoint] = None
) -> Result:
    """
    Mount ``specs`` in order as one transaction.

    :param specs: ``MountSpec`` objects or argument tuples, in mount order.
    :param mount_point: The ``MountPoint`` used for each operation.
    :returns: The result of ``MountSet.mount_all()``, or
              ``Err(ClipmountArgumentError)`` for an invalid specification.
    :rtype: ``Result``
    """
    try:
        mount_set = MountSet(specs, mount_point=mount_point)
    except ClipmountError as err:
        _log_warn("%s", err)
        return Result.Err(err)
    return mount_set.mount_all()


__all__ = [
    "MountPoint",
    "MountSet",
    "MountSetState",
    "mount_all",
    "umount_all",
]
