import io
import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import dlc_repack
import hashfs
from archive_builder import build_archive, manifest_text, read_payload


def _build_dlc(folder: Path, name: str, version: str) -> Path:
    archive_path = folder / f"dlc_{name}.scs"
    build_archive(
        archive_path,
        [
            (f"dlc_{name}.manifest.sii", manifest_text(display_name=name.title(), version=version)),
            (f"def/{name}.sii", f"payload for {name}".encode()),
        ],
    )
    return archive_path


class ReferenceVersionTests(unittest.TestCase):
    def test_first_known_archive_wins(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            folder = Path(tmpdir)
            _build_dlc(folder, "toys", "1.48")
            _build_dlc(folder, "rims", "1.49")

            version = dlc_repack.find_reference_version(folder)

        # "rims" comes before "toys" in the known list
        self.assertEqual(version, b"1.49")

    def test_custom_name_list(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            folder = Path(tmpdir)
            _build_dlc(folder, "toys", "1.48")
            _build_dlc(folder, "rims", "1.49")

            version = dlc_repack.find_reference_version(folder, ["missing", "toys", "rims"])

        self.assertEqual(version, b"1.48")

    def test_no_known_archive(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            folder = Path(tmpdir)
            _build_dlc(folder, "krone", "1.49")

            with self.assertLogs("dlc_repack", level="WARNING"):
                version = dlc_repack.find_reference_version(folder)

        self.assertIsNone(version)

    def test_directory_with_archive_name_is_ignored(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            folder = Path(tmpdir)
            (folder / "dlc_pcg.scs").mkdir()
            _build_dlc(folder, "oversize", "1.47")

            self.assertEqual(dlc_repack.find_reference_version(folder), b"1.47")

    def test_broken_reference_archive_is_fatal(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            folder = Path(tmpdir)
            build_archive(folder / "dlc_pcg.scs", [("def/pcg.sii", b"no manifest here")])

            with self.assertRaises(dlc_repack.ManifestFormatError):
                dlc_repack.find_reference_version(folder)


class RepackFolderTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.folder = Path(self._tmpdir.name)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_list_dlc_archives_filters_names(self) -> None:
        _build_dlc(self.folder, "toys", "1.48")
        (self.folder / "base.scs").write_bytes(b"")
        (self.folder / "dlc_notes.txt").write_bytes(b"")
        (self.folder / "dlc_dir.scs").mkdir()
        nested = self.folder / "nested"
        nested.mkdir()
        _build_dlc(nested, "rims", "1.48")

        archives = dlc_repack.list_dlc_archives(self.folder)

        self.assertEqual([path.name for path in archives], ["dlc_toys.scs"])

    def test_all_archives_are_aligned(self) -> None:
        _build_dlc(self.folder, "rims", "1.50")
        toys = _build_dlc(self.folder, "toys", "1.48")
        krone = _build_dlc(self.folder, "krone", "1.49")

        summary = dlc_repack.repack_folder(self.folder)

        self.assertEqual(summary["version"], b"1.50")
        self.assertEqual(sorted(path.name for path in summary["patched"]), ["dlc_krone.scs", "dlc_toys.scs"])
        self.assertEqual([path.name for path in summary["unchanged"]], ["dlc_rims.scs"])
        self.assertEqual(summary["failed"], [])
        for archive_path, name in ((toys, "toys"), (krone, "krone")):
            manifest = read_payload(archive_path, f"dlc_{name}.manifest.sii")
            self.assertEqual(dlc_repack.find_version_in_manifest(manifest), b"1.50")

    def test_nothing_to_do_leaves_files_untouched(self) -> None:
        krone = _build_dlc(self.folder, "krone", "1.49")
        before = krone.read_bytes()

        summary = dlc_repack.repack_folder(self.folder)

        self.assertIsNone(summary["version"])
        self.assertEqual(summary["patched"], [])
        self.assertEqual(krone.read_bytes(), before)

    def test_missing_folder_is_fatal(self) -> None:
        with self.assertRaises(dlc_repack.RepackError):
            dlc_repack.repack_folder(self.folder / "missing")

    def test_unknown_policy(self) -> None:
        with self.assertRaises(ValueError):
            dlc_repack.repack_folder(self.folder, on_error="retry")

    def test_abort_policy_stops_at_broken_archive(self) -> None:
        _build_dlc(self.folder, "rims", "1.50")
        (self.folder / "dlc_broken.scs").write_bytes(b"garbage" * 10)

        with self.assertRaises(dlc_repack.RepackError):
            dlc_repack.repack_folder(self.folder)

    def test_skip_policy_continues(self) -> None:
        _build_dlc(self.folder, "rims", "1.50")
        toys = _build_dlc(self.folder, "toys", "1.48")
        broken = self.folder / "dlc_broken.scs"
        broken.write_bytes(b"garbage" * 10)

        with self.assertLogs("dlc_repack", level="WARNING"):
            summary = dlc_repack.repack_folder(self.folder, on_error="skip")

        self.assertEqual(summary["failed"], [broken])
        self.assertEqual([path.name for path in summary["patched"]], ["dlc_toys.scs"])
        manifest = read_payload(toys, "dlc_toys.manifest.sii")
        self.assertEqual(dlc_repack.find_version_in_manifest(manifest), b"1.50")
        self.assertEqual(broken.read_bytes(), b"garbage" * 10)


class CommandLineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.folder = Path(self._tmpdir.name)
        self._root_level = logging.getLogger().level
        self._root_handlers = list(logging.getLogger().handlers)

    def tearDown(self) -> None:
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in self._root_handlers:
            root.addHandler(handler)
        root.setLevel(self._root_level)
        self._tmpdir.cleanup()

    def test_main_patches_folder(self) -> None:
        _build_dlc(self.folder, "pcg", "1.50")
        toys = _build_dlc(self.folder, "toys", "1.49")

        status = dlc_repack.main([str(self.folder), "--no-wait", "--log-level", "error"])

        self.assertEqual(status, 0)
        manifest = read_payload(toys, "dlc_toys.manifest.sii")
        self.assertEqual(dlc_repack.find_version_in_manifest(manifest), b"1.50")

    def test_main_defaults_to_working_directory(self) -> None:
        _build_dlc(self.folder, "pcg", "1.50")
        toys = _build_dlc(self.folder, "toys", "1.49")

        previous = os.getcwd()
        os.chdir(self.folder)
        try:
            status = dlc_repack.main(["--no-wait", "--log-level", "error"])
        finally:
            os.chdir(previous)

        self.assertEqual(status, 0)
        manifest = read_payload(toys, "dlc_toys.manifest.sii")
        self.assertEqual(dlc_repack.find_version_in_manifest(manifest), b"1.50")

    def test_main_nothing_to_do_exits_cleanly(self) -> None:
        status = dlc_repack.main([str(self.folder), "--no-wait", "--log-level", "fatal"])
        self.assertEqual(status, 0)

    def test_main_reports_fatal_errors(self) -> None:
        status = dlc_repack.main([str(self.folder / "missing"), "--no-wait", "--log-level", "fatal"])
        self.assertEqual(status, 1)

    def test_main_reports_archive_format_errors(self) -> None:
        error = hashfs.HashFSError("file is not a HashFS archive")
        with mock.patch.object(dlc_repack, "repack_folder", side_effect=error):
            status = dlc_repack.main([str(self.folder), "--no-wait", "--log-level", "fatal"])
        self.assertEqual(status, 1)

    def test_main_reports_missing_working_directory(self) -> None:
        with mock.patch.object(Path, "cwd", side_effect=FileNotFoundError("cwd is gone")):
            status = dlc_repack.main(["--no-wait", "--log-level", "fatal"])
        self.assertEqual(status, 1)

    def test_main_waits_for_keyboard_on_terminal(self) -> None:
        with mock.patch.object(dlc_repack, "is_input_piped", return_value=False), mock.patch(
            "builtins.input", return_value=""
        ) as fake_input:
            status = dlc_repack.main([str(self.folder), "--log-level", "fatal"])

        self.assertEqual(status, 0)
        fake_input.assert_called_once()

    def test_piped_input_does_not_wait(self) -> None:
        with mock.patch.object(sys, "stdin", io.StringIO("")), mock.patch("builtins.input") as fake_input:
            self.assertTrue(dlc_repack.is_input_piped())
            dlc_repack.wait_for_keyboard()

        fake_input.assert_not_called()

    def test_version_flag(self) -> None:
        with mock.patch("sys.stdout", new_callable=io.StringIO) as stdout:
            with self.assertRaises(SystemExit) as ctx:
                dlc_repack.main(["--version"])

        self.assertEqual(ctx.exception.code, 0)
        self.assertIn(f"v{dlc_repack.__version__}", stdout.getvalue())


if __name__ == "__main__":
    unittest.main()
