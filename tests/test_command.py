# Copyright Red Hat
#
# tests/test_command.py - CLI layer tests
#
# This file is part of the clipmount project.
#
# SPDX-License-Identifier: Apache-2.0
import unittest
from unittest.mock import Mock, patch
from io import StringIO
import logging
import tempfile
import os

log = logging.getLogger()

import clipmount
import clipmount.command as command

from tests import MockArgs


def _completed(returncode=0, stdout=""):
    return Mock(returncode=returncode, stdout=stdout)


class CommandTestsBase(unittest.TestCase):
    def setUp(self):
        log.debug("Preparing %s", self._testMethodName)
        self._tempdir = tempfile.TemporaryDirectory(suffix="_test_command")
        self.tempdir = self._tempdir.name
        self.addCleanup(self._tempdir.cleanup)
        self.cmdline = os.path.join(self.tempdir, "cmdline")
        self.config = os.path.join(self.tempdir, "clipmount.conf")
        with open(self.config, "w", encoding="utf8") as fp:
            fp.write(f"[global]\ncmdline = {self.cmdline}\ntimeout = 5\n")

    def tearDown(self):
        log.debug("Tearing down %s", self._testMethodName)
        clipmount.set_debug_mask(0)

    def write_cmdline(self, line):
        with open(self.cmdline, "w", encoding="utf8") as fp:
            fp.write(line)

    def get_main_args(self):
        """
        Return an argument array (in the form of sys.argv) reflecting the
        ``clipmount`` command using the test configuration file.

        :returns: A list of command arguments.
        """
        return ["clipmount", "--config", self.config]

    def run_main(self, *args):
        """
        Run ``command.main()`` and return its status and standard output.
        """
        with patch("sys.stdout", new_callable=StringIO) as stdout:
            status = command.main(self.get_main_args() + list(args))
        return status, stdout.getvalue()


class CommandTestsSimple(CommandTestsBase):
    """
    Test command interfaces
    """

    def test_boot_rootdev(self):
        self.write_cmdline("ro root=/dev/sda5 quiet\n")
        status, output = self.run_main("boot", "rootdev")
        self.assertEqual(status, 0)
        self.assertEqual(output, "/dev/sda5\n")

    def test_boot_rootdisk(self):
        self.write_cmdline("ro root=/dev/sda5 quiet\n")
        status, output = self.run_main("boot", "rootdisk")
        self.assertEqual(status, 0)
        self.assertEqual(output, "/dev/sda\n")

    def test_boot_bootdev(self):
        self.write_cmdline("ro root=/dev/sda5 quiet\n")
        status, output = self.run_main("boot", "bootdev")
        self.assertEqual(status, 0)
        self.assertEqual(output, "/dev/sda1\n")

    def test_boot_encrypted(self):
        self.write_cmdline("root=/dev/mapper/root crypt_root=/dev/sda2\n")
        self.assertEqual(self.run_main("boot", "encrypted"), (0, "yes\n"))
        self.write_cmdline("root=/dev/sda2\n")
        self.assertEqual(self.run_main("boot", "encrypted"), (0, "no\n"))

    def test_boot_rootdev_parse_error(self):
        self.write_cmdline("quiet\n")
        status, output = self.run_main("boot", "rootdev")
        self.assertEqual(status, 1)
        self.assertEqual(output, "")

    def test_boot_rootdev_source_unavailable(self):
        status, output = self.run_main("boot", "rootdev")
        self.assertEqual(status, 1)
        self.assertEqual(output, "")

    def test_boot_no_command(self):
        status, _ = self.run_main("boot")
        self.assertEqual(status, 1)

    def test_no_command(self):
        status, _ = self.run_main()
        self.assertEqual(status, 1)

    def test_bad_debug_option(self):
        status, output = self.run_main("--debug", "nosuch", "boot", "rootdev")
        self.assertEqual(status, 1)
        self.assertIn("Unknown debug option: nosuch", output)

    def test_debug_verbose(self):
        self.write_cmdline("root=/dev/vda3\n")
        status, output = self.run_main("-vv", "--debug", "all", "boot", "rootdev")
        self.assertEqual(status, 0)
        self.assertEqual(output, "/dev/vda3\n")
        self.assertEqual(clipmount.get_debug_mask(), clipmount.CLIPMOUNT_DEBUG_ALL)

    @patch("clipmount.manager._mounts.run")
    def test_mount(self, mock_run):
        mock_run.return_value = _completed()
        target = os.path.join(self.tempdir, "mnt")
        status, _ = self.run_main(
            "mount", "-t", "tmpfs", "-o", "size=1m", "tmpfs", target
        )
        self.assertEqual(status, 0)
        args, kwargs = mock_run.call_args
        self.assertEqual(
            args[0], ["mount", "-t", "tmpfs", "-o", "size=1m", "tmpfs", target]
        )
        self.assertEqual(kwargs["timeout"], 5)
        self.assertTrue(os.path.isdir(target))

    @patch("clipmount.manager._mounts.run")
    def test_mount_failure(self, mock_run):
        mock_run.return_value = _completed(32, "mount: failed")
        target = os.path.join(self.tempdir, "mnt")
        status, _ = self.run_main("mount", "tmpfs", target)
        self.assertEqual(status, 1)

    @patch("clipmount.manager._mounts.run")
    def test_umount(self, mock_run):
        mock_run.return_value = _completed()
        status, _ = self.run_main("umount", "/mnt/data")
        self.assertEqual(status, 0)
        self.assertEqual(mock_run.call_args[0][0], ["umount", "/mnt/data"])

    @patch("clipmount.manager._mounts.run")
    def test_umount_all(self, mock_run):
        mock_run.return_value = _completed()
        status, _ = self.run_main("umount-all", "/a", "/a/b")
        self.assertEqual(status, 0)
        self.assertEqual(
            [c[0][0] for c in mock_run.call_args_list],
            [["umount", "/a/b"], ["umount", "/a"]],
        )

    @patch("clipmount.manager._mounts.run")
    def test_umount_all_failure(self, mock_run):
        mock_run.side_effect = [_completed(32, "busy"), _completed()]
        status, _ = self.run_main("umount-all", "/a", "/a/b")
        self.assertEqual(status, 1)
        self.assertEqual(mock_run.call_count, 2)

    @patch("clipmount.manager._mounts.run")
    def test_mount_all(self, mock_run):
        mock_run.return_value = _completed()
        first = os.path.join(self.tempdir, "first")
        second = os.path.join(self.tempdir, "second")
        mounttab = os.path.join(self.tempdir, "mounttab")
        with open(mounttab, "w", encoding="utf8") as fp:
            fp.write(f"tmpfs {first} tmpfs size=1m\nproc {second} proc\n")
        status, output = self.run_main("mount-all", mounttab)
        self.assertEqual(status, 0)
        self.assertEqual(output, f"{first}\n{second}\n")

    @patch("clipmount.manager._mounts.run")
    def test_mount_all_rollback(self, mock_run):
        mock_run.side_effect = [_completed(), _completed(32, "bad"), _completed()]
        first = os.path.join(self.tempdir, "first")
        second = os.path.join(self.tempdir, "second")
        mounttab = os.path.join(self.tempdir, "mounttab")
        with open(mounttab, "w", encoding="utf8") as fp:
            fp.write(f"tmpfs {first} tmpfs\ntmpfs {second} tmpfs\n")
        status, output = self.run_main("mount-all", mounttab)
        self.assertEqual(status, 1)
        self.assertEqual(output, "")
        self.assertEqual(mock_run.call_args_list[-1][0][0], ["umount", first])

    def test_mount_all_missing_table(self):
        status, _ = self.run_main(
            "mount-all", os.path.join(self.tempdir, "missing")
        )
        self.assertEqual(status, 1)

    def test_mount_all_missing_table_debug(self):
        status, _ = self.run_main(
            "--debug", "all", "mount-all", os.path.join(self.tempdir, "missing")
        )
        self.assertEqual(status, 1)

    @patch("clipmount.command.MountTabReader")
    def test_unexpected_error(self, mock_reader):
        mock_reader.side_effect = RuntimeError("unexpected")
        status, _ = self.run_main("mount-all", "mounttab")
        self.assertEqual(status, 1)

    @patch("clipmount.command.MountTabReader")
    def test_unexpected_error_debug_raises(self, mock_reader):
        mock_reader.side_effect = RuntimeError("unexpected")
        with self.assertRaises(RuntimeError):
            self.run_main("--debug", "command", "mount-all", "mounttab")


class ProceduralInterfaceTests(CommandTestsBase):
    """
    Test the procedural interface
    """

    def test_boot_queries(self):
        self.write_cmdline("root=/dev/sdb7 boot=/dev/sdb2 cryptdevice=x\n")
        config = clipmount.ClipmountConfig(cmdline=self.cmdline)
        self.assertEqual(command.root_device(config).value, "/dev/sdb7")
        self.assertEqual(command.root_disk(config).value, "/dev/sdb")
        self.assertEqual(command.boot_device(config).value, "/dev/sdb2")
        self.assertTrue(command.is_root_encrypted(config).value)

    @patch("clipmount.manager._mounts.run")
    def test_mount_all_umount_all(self, mock_run):
        mock_run.return_value = _completed()
        targets = [os.path.join(self.tempdir, name) for name in ("a", "b")]
        result = command.mount_all([("tmpfs", t, "tmpfs") for t in targets])
        self.assertEqual(result.value, targets)
        self.assertTrue(command.umount_all(targets).ok)
        self.assertEqual(
            [c[0][0] for c in mock_run.call_args_list[2:]],
            [["umount", targets[1]], ["umount", targets[0]]],
        )

    def test_mount_all_invalid(self):
        result = command.mount_all([("tmpfs", "")])
        self.assertIsInstance(result.error, clipmount.ClipmountArgumentError)

    def test_set_debug(self):
        command.set_debug("boot,mounts")
        self.assertEqual(
            clipmount.get_debug_mask(),
            clipmount.CLIPMOUNT_DEBUG_BOOT | clipmount.CLIPMOUNT_DEBUG_MOUNTS,
        )

    def test_set_debug_bad(self):
        with self.assertRaises(ValueError):
            command.set_debug("boot,bogus")

    def test_setup_logging(self):
        args = MockArgs()
        args.verbose = 1
        command.setup_logging(args)
        self.assertEqual(logging.getLogger("clipmount").level, logging.INFO)
        args.verbose = 2
        command.setup_logging(args)
        clipmount_log = logging.getLogger("clipmount")
        self.assertEqual(clipmount_log.level, logging.DEBUG)
        self.assertEqual(len(clipmount_log.handlers), 1)
