"""newsletter_etl.tag_config

Tag defaults used when the migration creates tags.

Responsibilities:
  - Provide the built-in defaults (group tag color, orphan tag, system tags)
  - Load and validate an optional YAML override file
  - Hash YAML content for traceability in the run report

Usage:
    from pathlib import Path
    from newsletter_etl.tag_config import load_tag_defaults

    defaults = load_tag_defaults(Path("config/tag_defaults.yml"))

YAML layout (every key optional; missing keys keep the built-in value):

    group_tag_color: "bg-blue-100 text-blue-800"
    orphan_tag:
      description: "Migrated from legacy group"
      color: "bg-gray-100 text-gray-800"
    system_tags:
      subscribed:
        name: "Subscribed"
        description: "Active newsletter subscribers"
        color: "bg-green-100 text-green-800"
      unsubscribed:
        name: "Unsubscribed"
        description: "Unsubscribed contacts (do not email)"
        color: "bg-gray-100 text-gray-800"
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_TOP_LEVEL_KEYS = frozenset({"group_tag_color", "orphan_tag", "system_tags"})
VALID_SYSTEM_TAG_KEYS = frozenset({"subscribed", "unsubscribed"})
VALID_TAG_SPEC_KEYS = frozenset({"name", "description", "color"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class TagConfigValidationError(ValueError):
    """Raised when a YAML tag config fails schema validation."""


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TagSpec:
    name: str | None
    description: str | None
    color: str


@dataclass(frozen=True)
class TagDefaults:
    """Colors and descriptions applied to tags the migration creates."""

    group_tag_color: str
    orphan_tag: TagSpec
    subscribed: TagSpec
    unsubscribed: TagSpec
    yaml_hash: str | None = None

    @property
    def system_tags(self) -> tuple[TagSpec, TagSpec]:
        return (self.subscribed, self.unsubscribed)


DEFAULT_TAG_DEFAULTS = TagDefaults(
    group_tag_color="bg-blue-100 text-blue-800",
    orphan_tag=TagSpec(
        name=None,
        description="Migrated from legacy group",
        color="bg-gray-100 text-gray-800",
    ),
    subscribed=TagSpec(
        name="Subscribed",
        description="Active newsletter subscribers",
        color="bg-green-100 text-green-800",
    ),
    unsubscribed=TagSpec(
        name="Unsubscribed",
        description="Unsubscribed contacts (do not email)",
        color="bg-gray-100 text-gray-800",
    ),
)


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_tag_defaults(yaml_path: Path) -> TagDefaults:
    """Load, validate, and return TagDefaults from a YAML file.

    Args:
        yaml_path: Absolute or relative path to the YAML file.

    Returns:
        DEFAULT_TAG_DEFAULTS with the file's values applied on top.

    Raises:
        TagConfigValidationError: If the file is not UTF-8 YAML, or has
            unknown keys or bad values.
        FileNotFoundError: If the YAML file does not exist.
    """
    try:
        raw = yaml_path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise TagConfigValidationError(f"{yaml_path} is not valid UTF-8: {exc}") from exc
    try:
        data: Any = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise TagConfigValidationError(f"{yaml_path} is not valid YAML: {exc}") from exc
    if data is None:
        data = {}
    validate_tag_config(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()

    base = DEFAULT_TAG_DEFAULTS
    orphan = data.get("orphan_tag") or {}
    system = data.get("system_tags") or {}
    return TagDefaults(
        group_tag_color=data.get("group_tag_color", base.group_tag_color),
        orphan_tag=replace(base.orphan_tag, **orphan),
        subscribed=replace(base.subscribed, **(system.get("subscribed") or {})),
        unsubscribed=replace(base.unsubscribed, **(system.get("unsubscribed") or {})),
        yaml_hash=yaml_hash,
    )


def _validate_tag_spec(label: str, spec: Any, allow_name: bool) -> None:
    if not isinstance(spec, dict):
        raise TagConfigValidationError(f"'{label}' must be a mapping.")
    allowed = VALID_TAG_SPEC_KEYS if allow_name else VALID_TAG_SPEC_KEYS - {"name"}
    unknown = set(spec.keys()) - allowed
    if unknown:
        raise TagConfigValidationError(f"Unknown keys in '{label}': {sorted(unknown)}")
    for key, val in spec.items():
        if not isinstance(val, str) or not val.strip():
            raise TagConfigValidationError(
                f"'{label}.{key}' must be a non-empty string, got {val!r}."
            )


def validate_tag_config(data: Any) -> None:
    """Raise TagConfigValidationError if data does not match the schema.

    Validates:
      - root is a mapping with only known keys
      - every value is a non-empty string
      - the two system tag names differ
    """
    if not isinstance(data, dict):
        raise TagConfigValidationError("YAML root must be a mapping.")

    unknown = set(data.keys()) - VALID_TOP_LEVEL_KEYS
    if unknown:
        raise TagConfigValidationError(f"Unknown top-level keys: {sorted(unknown)}")

    if "group_tag_color" in data:
        color = data["group_tag_color"]
        if not isinstance(color, str) or not color.strip():
            raise TagConfigValidationError(
                f"'group_tag_color' must be a non-empty string, got {color!r}."
            )

    if "orphan_tag" in data:
        _validate_tag_spec("orphan_tag", data["orphan_tag"], allow_name=False)

    system = data.get("system_tags")
    if system is None:
        return
    if not isinstance(system, dict):
        raise TagConfigValidationError("'system_tags' must be a mapping.")
    unknown = set(system.keys()) - VALID_SYSTEM_TAG_KEYS
    if unknown:
        raise TagConfigValidationError(f"Unknown system tags: {sorted(unknown)}")
    for key, spec in system.items():
        _validate_tag_spec(f"system_tags.{key}", spec, allow_name=True)

    sub_name = (system.get("subscribed") or {}).get("name", DEFAULT_TAG_DEFAULTS.subscribed.name)
    unsub_name = (system.get("unsubscribed") or {}).get(
        "name", DEFAULT_TAG_DEFAULTS.unsubscribed.name
    )
    if sub_name == unsub_name:
        raise TagConfigValidationError(
            f"System tag names must differ; both are {sub_name!r}."
        )
