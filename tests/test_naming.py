"""Tests for snapshot name validation and generation."""

from __future__ import annotations

import unittest
from datetime import UTC, datetime

from homeregistry.backup.errors import ValidationError
from homeregistry.backup.naming import (
    KIND_MANUAL,
    KIND_SAFETY,
    KIND_UPLOADED,
    MAX_NAME_LENGTH,
    SAFETY_PREFIX,
    generate_snapshot_name,
    is_generated_name,
    numbered_name,
    snapshot_kind,
    validate_snapshot_name,
)


class TestValidateSnapshotName(unittest.TestCase):
    """Tests for validate_snapshot_name."""

    def test_accepts_generated_names(self) -> None:
        """Generated manual and safety names are valid."""
        validate_snapshot_name("home_registry_2026.10.19.14.03.52.json")
        validate_snapshot_name("home_registry_auto_pre_restore_2026.10.19.14.03.52.json")
        validate_snapshot_name("home_registry_2026.10.19.14.03.52_3.json")

    def test_accepts_uploaded_names(self) -> None:
        """Arbitrary safe names are accepted as uploads."""
        validate_snapshot_name("my-backup.json")
        validate_snapshot_name("Before Move (final).JSON")

    def test_rejects_wrong_extension(self) -> None:
        """Only .json files are allowed."""
        for name in ("backup.txt", "backup.json.gz", "backup", "backupjson"):
            with self.subTest(name=name):
                with self.assertRaises(ValidationError):
                    validate_snapshot_name(name)

    def test_rejects_path_traversal(self) -> None:
        """Separators, parent tokens and NUL are rejected."""
        names = [
            "../etc/passwd.json",
            "..\\windows\\system.json",
            "sub/dir.json",
            "/absolute.json",
            "a..b.json",
            "..json",
            "evil\x00.json",
            "C:\\backup.json",
        ]
        for name in names:
            with self.subTest(name=name):
                with self.assertRaises(ValidationError):
                    validate_snapshot_name(name)

    def test_rejects_header_unsafe_characters(self) -> None:
        """Control characters and quotes cannot reach response headers."""
        names = [
            "evil\r\nX-Injected: yes\r\nx.json",
            "line\nbreak.json",
            "tab\there.json",
            "bell\x07.json",
            "delete\x7f.json",
            'quote".json',
        ]
        for name in names:
            with self.subTest(name=name):
                with self.assertRaises(ValidationError):
                    validate_snapshot_name(name)

    def test_rejects_hidden_names(self) -> None:
        """Names starting with a dot are reserved for temp files."""
        with self.assertRaises(ValidationError):
            validate_snapshot_name(".tmp-abc.json")

    def test_rejects_empty_stem(self) -> None:
        """A bare extension is not a name."""
        with self.assertRaises(ValidationError):
            validate_snapshot_name(".json")

    def test_rejects_empty_and_non_string(self) -> None:
        """Empty and non-string names are rejected."""
        with self.assertRaises(ValidationError):
            validate_snapshot_name("")
        with self.assertRaises(ValidationError):
            validate_snapshot_name(None)  # type: ignore[arg-type]

    def test_length_limit(self) -> None:
        """Names longer than the limit are rejected."""
        stem = "a" * (MAX_NAME_LENGTH - len(".json"))
        validate_snapshot_name(stem + ".json")

        with self.assertRaises(ValidationError):
            validate_snapshot_name("a" + stem + ".json")


class TestGeneratedNames(unittest.TestCase):
    """Tests for generated names and classification."""

    def test_generate_manual_name(self) -> None:
        """Manual names embed the UTC timestamp."""
        now = datetime(2026, 10, 19, 14, 3, 52, tzinfo=UTC)

        name = generate_snapshot_name(now=now)

        self.assertEqual(name, "home_registry_2026.10.19.14.03.52.json")
        self.assertTrue(is_generated_name(name))
        self.assertEqual(snapshot_kind(name), KIND_MANUAL)

    def test_generate_safety_name(self) -> None:
        """Safety names use the reserved prefix."""
        now = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)

        name = generate_snapshot_name(SAFETY_PREFIX, now=now)

        self.assertEqual(name, "home_registry_auto_pre_restore_2026.01.02.03.04.05.json")
        self.assertEqual(snapshot_kind(name), KIND_SAFETY)
        validate_snapshot_name(name)

    def test_generated_name_is_valid(self) -> None:
        """A name generated now passes validation."""
        validate_snapshot_name(generate_snapshot_name())

    def test_uploaded_kind(self) -> None:
        """Names outside the convention are uploads."""
        self.assertEqual(snapshot_kind("family.json"), KIND_UPLOADED)
        self.assertEqual(snapshot_kind("home_registry_latest.json"), KIND_UPLOADED)
        self.assertFalse(is_generated_name("family.json"))

    def test_numbered_name(self) -> None:
        """Suffixes are inserted before the extension."""
        self.assertEqual(numbered_name("family.json", 2), "family_2.json")

        numbered = numbered_name("home_registry_2026.10.19.14.03.52.json", 1)
        self.assertEqual(numbered, "home_registry_2026.10.19.14.03.52_1.json")
        self.assertEqual(snapshot_kind(numbered), KIND_MANUAL)


if __name__ == "__main__":
    unittest.main()
