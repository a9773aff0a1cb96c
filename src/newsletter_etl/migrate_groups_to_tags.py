"""newsletter_etl.migrate_groups_to_tags

Legacy newsletter groups/subscribers → tags/contacts migration.

Consumes (read-only):
  - newsletter_groups       — one row per legacy group
  - newsletter_subscribers  — one row per (subscriber, group) membership

Produces:
  - tags          — one non-system tag per group, plus Subscribed/Unsubscribed
                    system tags for every site
  - contacts      — one contact per (email, site_id)
  - contact_tags  — group tags and exactly one system tag per contact

Stages, run in order by TagMigration.reconcile:
  1. project_groups_to_tags   — group → tag, skip if the tag exists
  2. ensure_system_tags       — system tags for every site in scope
  3. partition_subscribers    — partition subscriber rows by (email, site_id);
     resolve_or_insert_contact  the first row of a partition is canonical
  4. assign_contact_tags      — group tags (orphans synthesized) + system tag

Every write is preceded by an existence check or is conflict-safe, so a
failed run is recovered by running it again.  Check-then-insert is not
isolated: two concurrent runs against the same site can both insert.  Runs
must be serialized per site by the operator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from newsletter_etl.normalize import (
    contact_name,
    is_subscribed_status,
    normalize_status,
    parse_site_id,
    trim,
)
from newsletter_etl.shared import CollaboratorError, MigrationResult, RunCounters
from newsletter_etl.storage import (
    CONTACT_TAGS,
    CONTACTS,
    GROUPS,
    SUBSCRIBERS,
    TAGS,
    UNIQUE_KEYS,
    Row,
    Storage,
)
from newsletter_etl.tag_config import DEFAULT_TAG_DEFAULTS, TagDefaults, TagSpec

log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Contact partition
# ---------------------------------------------------------------------------

@dataclass
class ContactPartition:
    """Subscriber rows sharing one (email, site_id) key, in enumeration order."""

    email: str
    site_id: int
    rows: list[Row] = field(default_factory=list)

    @property
    def canonical(self) -> Row:
        return self.rows[0]

    @property
    def status(self) -> str:
        return normalize_status(self.canonical.get("status"))

    @property
    def group_names(self) -> list[str]:
        """Group names across all rows, first-seen order, nulls dropped."""
        seen: dict[str, None] = {}
        for row in self.rows:
            name = row.get("group_name")
            if name and trim(name):
                seen.setdefault(name, None)
        return list(seen)


# ---------------------------------------------------------------------------
# Tag helpers
# ---------------------------------------------------------------------------

def find_tag(storage: Storage, site_id: int, name: str) -> Row | None:
    return storage.find_one(TAGS, {"site_id": site_id, "name": name})


def _insert_tag(
    storage: Storage,
    site_id: int,
    name: str,
    description: str | None,
    color: str,
    is_system: bool,
) -> Row:
    return storage.insert(
        TAGS,
        {
            "site_id": site_id,
            "name": name,
            "description": description,
            "color": color,
            "is_system": is_system,
        },
    )


def ensure_tag(
    storage: Storage,
    site_id: int,
    name: str,
    description: str | None,
    color: str,
    is_system: bool,
) -> tuple[Row, bool]:
    """Return (tag, created). An existing tag is returned untouched."""
    tag = find_tag(storage, site_id, name)
    if tag is not None:
        return tag, False
    return _insert_tag(storage, site_id, name, description, color, is_system), True


def link_contact_tag(storage: Storage, contact_id: Any, tag_id: Any) -> bool:
    """Associate a contact with a tag. Returns True if a row was inserted."""
    values = {"contact_id": contact_id, "tag_id": tag_id}
    insert_ignore = getattr(storage, "insert_ignore_conflict", None)
    if insert_ignore is not None:
        return insert_ignore(CONTACT_TAGS, values, UNIQUE_KEYS[CONTACT_TAGS]) is not None
    if storage.find_one(CONTACT_TAGS, values) is not None:
        return False
    storage.insert(CONTACT_TAGS, values)
    return True


def _system_tag_names(defaults: TagDefaults) -> frozenset[str]:
    return frozenset(spec.name for spec in defaults.system_tags if spec.name)


# ---------------------------------------------------------------------------
# Stage 1: groups → tags
# ---------------------------------------------------------------------------

def project_groups_to_tags(
    storage: Storage,
    groups: Iterable[Row],
    defaults: TagDefaults,
    counters: RunCounters,
) -> None:
    """Create one non-system tag per legacy group unless it already exists.

    Groups without a site or a name cannot be keyed and are skipped.  A
    group whose name collides with a system tag name is skipped so the
    system tag is created by stage 2 with is_system set.
    """
    reserved = _system_tag_names(defaults)
    for group in groups:
        counters.groups_read += 1
        site_id = group.get("site_id")
        name = group.get("name")
        if site_id is None or not trim(name):
            msg = f"group id={group.get('id')} has no site or name; skipped"
            log.warning(msg)
            counters.warn(msg)
            continue
        if name in reserved:
            msg = f"group {name!r} (site {site_id}) uses a system tag name; skipped"
            log.warning(msg)
            counters.warn(msg)
            continue

        _, created = ensure_tag(
            storage,
            site_id,
            name,
            description=trim(group.get("description")),
            color=trim(group.get("color")) or defaults.group_tag_color,
            is_system=False,
        )
        if created:
            counters.group_tags_inserted += 1
            log.info('Migrated group "%s" to tag (site %s)', name, site_id)
        else:
            counters.group_tags_existing += 1
            log.info('Tag "%s" already exists for site %s, skipping', name, site_id)


# ---------------------------------------------------------------------------
# Stage 2: system tags
# ---------------------------------------------------------------------------

def collect_sites(
    groups: Iterable[Row],
    subscribers: Iterable[Row],
    site_id: int | None = None,
) -> list[int]:
    """Distinct non-null site ids across groups and subscribers.

    With a site filter the filtered site is always returned, even when it
    has no legacy rows.
    """
    if site_id is not None:
        return [site_id]
    sites: dict[int, None] = {}
    for row in [*groups, *subscribers]:
        if row.get("site_id") is not None:
            sites.setdefault(row["site_id"], None)
    return list(sites)


def ensure_system_tags(
    storage: Storage,
    sites: Iterable[int],
    defaults: TagDefaults,
    counters: RunCounters,
) -> None:
    for site_id in sites:
        counters.sites_processed += 1
        for spec in defaults.system_tags:
            _, created = ensure_tag(
                storage, site_id, spec.name, spec.description, spec.color, is_system=True,
            )
            if created:
                counters.system_tags_inserted += 1
                log.info('Created "%s" system tag for site %s', spec.name, site_id)


# ---------------------------------------------------------------------------
# Stage 3: subscribers → contacts
# ---------------------------------------------------------------------------

def partition_subscribers(
    subscribers: Iterable[Row], counters: RunCounters,
) -> list[ContactPartition]:
    """Partition subscriber rows by (email, site_id), preserving order.

    Rows with no site or no email are skipped and counted.
    """
    partitions: dict[tuple[str, int], ContactPartition] = {}
    no_site = no_email = 0
    for row in subscribers:
        if row.get("site_id") is None:
            no_site += 1
            continue
        email = row.get("email")
        if not trim(email):
            no_email += 1
            continue
        key = (email, row["site_id"])
        partition = partitions.get(key)
        if partition is None:
            partition = partitions[key] = ContactPartition(email=email, site_id=row["site_id"])
        partition.rows.append(row)

    counters.subscribers_skipped_null_site += no_site
    counters.subscribers_skipped_no_email += no_email
    for count, reason in ((no_site, "no site id"), (no_email, "no email")):
        if count:
            msg = f"skipped {count} subscribers with {reason}"
            log.warning(msg)
            counters.warn(msg)
    return list(partitions.values())


def resolve_or_insert_contact(
    storage: Storage,
    partition: ContactPartition,
    now: Callable[[], datetime],
    counters: RunCounters,
) -> tuple[Any, bool]:
    """Return (contact_id, existed).

    A new contact takes its fields from the canonical row only; the other
    rows of the partition contribute group memberships.
    """
    existing = storage.find_one(CONTACTS, {"site_id": partition.site_id, "email": partition.email})
    if existing is not None:
        counters.contacts_matched_existing += 1
        log.info("Contact %s already exists (site %s)", partition.email, partition.site_id)
        return existing["id"], True

    primary = partition.canonical
    status = partition.status
    values = {
        "site_id": partition.site_id,
        "name": contact_name(primary.get("name"), partition.email),
        "email": partition.email,
        "status": status,
        "confirmation_token": primary.get("confirmation_token"),
        "confirmed_at": primary.get("confirmed_at"),
        "subscribed_at": primary.get("subscribed_at"),
        "unsubscribed_at": now() if status == "unsubscribed" else None,
    }
    # Omitted columns fall back to the table defaults.
    contact = storage.insert(CONTACTS, {k: v for k, v in values.items() if v is not None})
    counters.contacts_inserted += 1
    log.info("Created contact %s (site %s)", partition.email, partition.site_id)
    return contact["id"], False


# ---------------------------------------------------------------------------
# Stage 4: contact ↔ tag assignment
# ---------------------------------------------------------------------------

def _system_tag_for(status: str, defaults: TagDefaults) -> tuple[TagSpec, TagSpec]:
    """Return (assigned, opposite) system tag specs for a canonical status."""
    if is_subscribed_status(status):
        return defaults.subscribed, defaults.unsubscribed
    return defaults.unsubscribed, defaults.subscribed


def assign_contact_tags(
    storage: Storage,
    partition: ContactPartition,
    contact_id: Any,
    defaults: TagDefaults,
    counters: RunCounters,
    existed: bool = False,
) -> None:
    site_id = partition.site_id
    reserved = _system_tag_names(defaults)

    for name in partition.group_names:
        if name in reserved:
            msg = f"{partition.email}: group {name!r} uses a system tag name; not assigned"
            log.warning(msg)
            counters.warn(msg)
            continue
        tag = find_tag(storage, site_id, name)
        if tag is None:
            msg = f"orphaned group reference {name!r} (site {site_id}); creating tag"
            log.warning(msg)
            counters.warn(msg)
            tag = _insert_tag(
                storage,
                site_id,
                name,
                defaults.orphan_tag.description,
                defaults.orphan_tag.color,
                is_system=False,
            )
            counters.orphan_tags_synthesized += 1
        if link_contact_tag(storage, contact_id, tag["id"]):
            counters.contact_tags_inserted += 1
            log.info('Assigned tag "%s" to %s', name, partition.email)

    assigned, opposite = _system_tag_for(partition.status, defaults)
    system_tag, created = ensure_tag(
        storage, site_id, assigned.name, assigned.description, assigned.color, is_system=True,
    )
    if created:
        counters.system_tags_inserted += 1

    if existed:
        other = find_tag(storage, site_id, opposite.name)
        if other is not None and storage.find_one(
            CONTACT_TAGS, {"contact_id": contact_id, "tag_id": other["id"]}
        ) is not None:
            # Associations are never removed, so keep the one already held.
            msg = (
                f"{partition.email} (site {site_id}) already holds {opposite.name!r}; "
                f"status now maps to {assigned.name!r}, not assigned"
            )
            log.warning(msg)
            counters.warn(msg)
            counters.system_tag_conflicts += 1
            return

    if link_contact_tag(storage, contact_id, system_tag["id"]):
        counters.contact_tags_inserted += 1
        log.info('Assigned system tag "%s" to %s', assigned.name, partition.email)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

@dataclass
class TagMigration:
    """Groups→tags / subscribers→contacts migration bound to one storage."""

    storage: Storage
    tag_defaults: TagDefaults = DEFAULT_TAG_DEFAULTS
    now: Callable[[], datetime] = _utcnow

    def reconcile(
        self,
        site_id: Any = None,
        counters: RunCounters | None = None,
    ) -> MigrationResult:
        """Run all four stages for one site, or every site when site_id is None.

        Raises:
            InvocationError: site_id is malformed. Nothing has run yet.
            CollaboratorError: a storage operation failed. Writes already
                made are kept; re-run to resume.
        """
        site_id = parse_site_id(site_id)
        counters = counters if counters is not None else RunCounters()
        scope = {"site_id": site_id} if site_id is not None else None
        defaults = self.tag_defaults

        log.info(
            "Starting migration from groups to tags for %s",
            f"site {site_id}" if site_id is not None else "all sites",
        )
        try:
            log.info("Step 1: migrating groups to tags")
            groups = self.storage.find_all(GROUPS, scope)
            project_groups_to_tags(self.storage, groups, defaults, counters)

            log.info("Step 2: creating system tags")
            subscribers = self.storage.find_all(SUBSCRIBERS, scope)
            counters.subscribers_read = len(subscribers)
            sites = collect_sites(groups, subscribers, site_id)
            ensure_system_tags(self.storage, sites, defaults, counters)

            log.info("Step 3: migrating subscribers to contacts")
            partitions = partition_subscribers(subscribers, counters)
            for partition in partitions:
                contact_id, existed = resolve_or_insert_contact(
                    self.storage, partition, self.now, counters,
                )
                assign_contact_tags(
                    self.storage, partition, contact_id, defaults, counters, existed=existed,
                )
                counters.contacts_processed += 1
        except CollaboratorError as exc:
            log.error("Migration failed: %s", exc)
            raise

        result = MigrationResult(
            groups_migrated=len(groups),
            contacts_created=len(partitions),
            total_subscriber_records=len(subscribers),
        )
        log.info(
            "Migration completed: %d groups, %d unique contacts, %d subscriber records",
            result.groups_migrated,
            result.contacts_created,
            result.total_subscriber_records,
        )
        return result


def reconcile(
    storage: Storage,
    site_id: Any = None,
    tag_defaults: TagDefaults = DEFAULT_TAG_DEFAULTS,
    counters: RunCounters | None = None,
) -> MigrationResult:
    """Convenience wrapper: TagMigration(storage, tag_defaults).reconcile(site_id)."""
    return TagMigration(storage, tag_defaults=tag_defaults).reconcile(site_id, counters)
