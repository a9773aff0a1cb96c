"""Unit tests for the YAML tag defaults loader."""

from __future__ import annotations

import hashlib
import textwrap
from pathlib import Path

import pytest
import yaml

from newsletter_etl.tag_config import (
    DEFAULT_TAG_DEFAULTS,
    TagConfigValidationError,
    load_tag_defaults,
    validate_tag_config,
)

PROJECT_ROOT = Path(__file__).parent.parent.parent


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "tags.yml"
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Built-in defaults
# ---------------------------------------------------------------------------

class TestDefaults:
    def test_system_tag_values(self):
        assert DEFAULT_TAG_DEFAULTS.subscribed.name == "Subscribed"
        assert DEFAULT_TAG_DEFAULTS.subscribed.color == "bg-green-100 text-green-800"
        assert DEFAULT_TAG_DEFAULTS.unsubscribed.name == "Unsubscribed"
        assert DEFAULT_TAG_DEFAULTS.unsubscribed.description == (
            "Unsubscribed contacts (do not email)"
        )

    def test_group_and_orphan_values(self):
        assert DEFAULT_TAG_DEFAULTS.group_tag_color == "bg-blue-100 text-blue-800"
        assert DEFAULT_TAG_DEFAULTS.orphan_tag.description == "Migrated from legacy group"
        assert DEFAULT_TAG_DEFAULTS.orphan_tag.color == "bg-gray-100 text-gray-800"
        assert DEFAULT_TAG_DEFAULTS.yaml_hash is None


# ---------------------------------------------------------------------------
# load_tag_defaults
# ---------------------------------------------------------------------------

class TestLoad:
    def test_shipped_config_matches_defaults(self):
        loaded = load_tag_defaults(PROJECT_ROOT / "config" / "tag_defaults.yml")
        assert loaded.group_tag_color == DEFAULT_TAG_DEFAULTS.group_tag_color
        assert loaded.orphan_tag == DEFAULT_TAG_DEFAULTS.orphan_tag
        assert loaded.subscribed == DEFAULT_TAG_DEFAULTS.subscribed
        assert loaded.unsubscribed == DEFAULT_TAG_DEFAULTS.unsubscribed

    def test_partial_override(self, tmp_path):
        path = _write(tmp_path, """
            system_tags:
              subscribed:
                color: "bg-teal-100"
        """)
        loaded = load_tag_defaults(path)
        assert loaded.subscribed.color == "bg-teal-100"
        assert loaded.subscribed.name == "Subscribed"
        assert loaded.unsubscribed == DEFAULT_TAG_DEFAULTS.unsubscribed

    def test_empty_file_keeps_defaults(self, tmp_path):
        loaded = load_tag_defaults(_write(tmp_path, ""))
        assert loaded.subscribed == DEFAULT_TAG_DEFAULTS.subscribed

    def test_hash_recorded(self, tmp_path):
        path = _write(tmp_path, 'group_tag_color: "bg-red-100"\n')
        expected = hashlib.sha256(path.read_text(encoding="utf-8").encode("utf-8")).hexdigest()
        assert load_tag_defaults(path).yaml_hash == expected

    def test_yaml_syntax_error(self, tmp_path):
        path = _write(tmp_path, "group_tag_color: [unclosed\n")
        with pytest.raises(TagConfigValidationError, match="not valid YAML") as excinfo:
            load_tag_defaults(path)
        assert isinstance(excinfo.value.__cause__, yaml.YAMLError)

    def test_non_utf8_bytes(self, tmp_path):
        path = tmp_path / "latin1.yml"
        path.write_bytes(b'group_tag_color: "caf\xe9"\n')
        with pytest.raises(TagConfigValidationError, match="not valid UTF-8"):
            load_tag_defaults(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_tag_defaults(tmp_path / "nope.yml")


# ---------------------------------------------------------------------------
# validate_tag_config
# ---------------------------------------------------------------------------

class TestValidate:
    def test_root_must_be_mapping(self):
        with pytest.raises(TagConfigValidationError, match="mapping"):
            validate_tag_config(["a", "b"])

    def test_unknown_top_level_key(self):
        with pytest.raises(TagConfigValidationError, match="Unknown top-level"):
            validate_tag_config({"colour": "x"})

    def test_blank_group_color(self):
        with pytest.raises(TagConfigValidationError, match="group_tag_color"):
            validate_tag_config({"group_tag_color": " "})

    def test_orphan_name_not_allowed(self):
        with pytest.raises(TagConfigValidationError, match="orphan_tag"):
            validate_tag_config({"orphan_tag": {"name": "Orphans"}})

    def test_unknown_system_tag(self):
        with pytest.raises(TagConfigValidationError, match="Unknown system tags"):
            validate_tag_config({"system_tags": {"bounced": {"name": "Bounced"}}})

    def test_non_string_value(self):
        with pytest.raises(TagConfigValidationError, match="non-empty string"):
            validate_tag_config({"system_tags": {"subscribed": {"color": 3}}})

    def test_system_names_must_differ(self):
        data = yaml.safe_load("""
            system_tags:
              unsubscribed:
                name: Subscribed
        """)
        with pytest.raises(TagConfigValidationError, match="must differ"):
            validate_tag_config(data)

    def test_valid_full_config(self):
        validate_tag_config({
            "group_tag_color": "bg-blue-100",
            "orphan_tag": {"description": "Legacy", "color": "bg-gray-100"},
            "system_tags": {
                "subscribed": {"name": "Active"},
                "unsubscribed": {"name": "Inactive"},
            },
        })
