"""
Tests for the shim-timeline command line.
"""

import io
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).parent.parent))

import shim_timeline
from tests.hive_fixtures import (
    FakeHive,
    FakeKey,
    build_windows_10_blob,
    make_system_hive,
    string_value,
)
from utils.error_handler import HiveLoadError

UTC = timezone.utc
FILETIME_2020 = 132223200000000000
DROPPER_PATH = "C:\\Users\\analyst\\AppData\\Local\\Temp\\dropper.exe"


def system_hive():
    blob = build_windows_10_blob([
        ("C:\\Users\\analyst\\Downloads\\first.exe", FILETIME_2020 + 10_000_000_000, b""),
        ("C:\\Tools\\patch.exe", FILETIME_2020, b"\x01"),
        (DROPPER_PATH, 0, b""),
    ])
    return make_system_hive(blob)


def amcache_hive():
    file_key = FakeKey("file1", [
        string_value("ProgramId", "prog1"),
        string_value("FileId", "0000" + "a" * 40),
        string_value("LowerCaseLongPath", DROPPER_PATH.lower()),
    ], timestamp=datetime(2019, 12, 31, 23, 0, tzinfo=UTC))
    return FakeHive({
        "Root\\InventoryApplication": FakeKey("InventoryApplication"),
        "Root\\InventoryApplicationFile": FakeKey("InventoryApplicationFile", subkeys=[file_key]),
    })


class TestShimTimelineCli(unittest.TestCase):

    def setUp(self):
        self.hives = {
            "SYSTEM": system_hive(),
            "Amcache.hve": amcache_hive(),
            "SYSTEM.old": make_system_hive(build_windows_10_blob([
                ("C:\\Windows\\old.exe", FILETIME_2020 - 10_000_000_000, b""),
                ("C:\\Tools\\patch.exe", FILETIME_2020 - 20_000_000_000, b""),
            ])),
            "Win8.SYSTEM": make_system_hive(b"\x80\x00\x00\x00".ljust(128, b"\x00") + b"00ts" + b"\x00" * 32),
        }
        patcher = mock.patch('shim_timeline.load_hive', side_effect=self.fake_load_hive)
        patcher.start()
        self.addCleanup(patcher.stop)

    def fake_load_hive(self, path):
        if path not in self.hives:
            raise HiveLoadError("Registry hive not found", path)
        return self.hives[path]

    def run_cli(self, *argv):
        stdout, stderr = io.StringIO(), io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = shim_timeline.main(list(argv))
        return code, stdout.getvalue(), stderr.getvalue()

    def test_timeline_written_to_stdout(self):
        code, out, _ = self.run_cli("SYSTEM", "-e", r"patch\.exe", "-q")

        self.assertEqual(code, 0)
        lines = out.splitlines()
        self.assertTrue(lines[0].startswith("timestamp;timestamp_type;source"))
        self.assertEqual(len(lines), 5)
        self.assertIn("2020-01-01T02:40:00Z;Pattern match;shimcache;1", out)

    def test_amcache_confirmation(self):
        code, out, _ = self.run_cli("SYSTEM", "--amcache", "Amcache.hve", "-e", r"patch\.exe", "-q")

        self.assertEqual(code, 0)
        self.assertIn("2019-12-31T23:00:00Z;Amcache range match;shimcache;2", out)
        self.assertIn(";amcache;2;", out)

    def test_no_patterns(self):
        code, out, err = self.run_cli("SYSTEM", "-q")
        self.assertEqual(code, 2)
        self.assertEqual(out, "")
        self.assertIn("No regex patterns", err)

    def test_invalid_pattern(self):
        code, out, _ = self.run_cli("SYSTEM", "-e", "(", "-q")
        self.assertEqual(code, 2)
        self.assertEqual(out, "")

    def test_failed_hive_does_not_stop_batch(self):
        code, out, err = self.run_cli("missing", "Win8.SYSTEM", "SYSTEM", "-e", r"patch\.exe", "-q")

        self.assertEqual(code, 1)
        self.assertIn("Pattern match", out)
        self.assertIn("missing skipped", err)
        self.assertIn("Win8.SYSTEM skipped", err)

    def test_no_match_is_not_a_failure(self):
        code, out, _ = self.run_cli("SYSTEM", "-e", r"nothing\.exe", "-q")
        self.assertEqual(code, 0)
        self.assertEqual(out.splitlines(), [])

    def test_amcache_failure(self):
        code, _, _ = self.run_cli("SYSTEM", "--amcache", "absent.hve", "-e", r"patch\.exe", "-q")
        self.assertEqual(code, 1)

    def test_status_lines(self):
        _, _, err = self.run_cli("SYSTEM", "-e", r"patch\.exe")
        self.assertIn("Analysing SYSTEM", err)

        _, _, quiet_err = self.run_cli("SYSTEM", "-e", r"patch\.exe", "-q")
        self.assertNotIn("Analysing SYSTEM", quiet_err)

    def test_pattern_file_and_output_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            pattern_file = os.path.join(temp_dir, "patterns.txt")
            output_file = os.path.join(temp_dir, "timeline.csv")
            with open(pattern_file, 'w') as f:
                f.write("# anchors\npatch\\.exe\n")

            code, out, _ = self.run_cli("SYSTEM", "-r", pattern_file, "-o", output_file, "-q")

            self.assertEqual(code, 0)
            self.assertEqual(out, "")
            with open(output_file, encoding='utf-8') as f:
                self.assertIn("Pattern match", f.read())

    def test_missing_pattern_file(self):
        code, _, _ = self.run_cli("SYSTEM", "-r", "/nonexistent/patterns.txt", "-q")
        self.assertEqual(code, 2)

    def test_config_file_supplies_patterns(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_file = os.path.join(temp_dir, "config.json")
            with open(config_file, 'w') as f:
                f.write('{"analysis": {"patterns": ["patch\\\\.exe"], "delimiter": ","}}')

            code, out, _ = self.run_cli("SYSTEM", "--config", config_file, "-q")

        self.assertEqual(code, 0)
        self.assertIn("Pattern match,shimcache", out)

    def test_rows_from_several_hives_name_their_hive(self):
        code, out, _ = self.run_cli("SYSTEM", "SYSTEM.old", "-e", r"patch\.exe", "-q")

        self.assertEqual(code, 0)
        lines = out.splitlines()
        self.assertEqual(lines[0].split(";")[-1], "hive")
        rows = [line.split(";") for line in lines[1:]]
        self.assertEqual([row[-1] for row in rows], ["SYSTEM"] * 4 + ["SYSTEM.old"] * 3)
        self.assertIn("Windows\\old.exe", rows[5][6])

    def test_help_explains_pattern_case_sensitivity(self):
        help_text = shim_timeline.build_parser().format_help()
        self.assertEqual(help_text.count("(?i)"), 2)

    def test_usage_error(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                shim_timeline.main([])
        self.assertEqual(ctx.exception.code, 2)


if __name__ == '__main__':
    unittest.main()
