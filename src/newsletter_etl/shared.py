"""newsletter_etl.shared

Shared pieces used by the migration engine, the storage layer and the CLI.
Includes the exception taxonomy, RunCounters, MigrationResult, and
report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class CollaboratorError(Exception):
    """Raised when a storage read or write fails. Aborts the run."""


class InvocationError(ValueError):
    """Raised for a malformed site filter, before any stage executes."""


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Legacy rows read
    groups_read: int = 0
    subscribers_read: int = 0
    subscribers_skipped_null_site: int = 0
    subscribers_skipped_no_email: int = 0
    # Tags
    sites_processed: int = 0
    group_tags_inserted: int = 0
    group_tags_existing: int = 0
    system_tags_inserted: int = 0
    orphan_tags_synthesized: int = 0
    # Contacts
    contacts_processed: int = 0
    contacts_inserted: int = 0
    contacts_matched_existing: int = 0
    contact_tags_inserted: int = 0
    system_tag_conflicts: int = 0
    warnings: list[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# MigrationResult
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MigrationResult:
    """Aggregate outcome of one successful reconcile run."""

    groups_migrated: int
    contacts_created: int
    total_subscriber_records: int

    def to_dict(self) -> dict[str, int]:
        return {
            "groups_migrated": self.groups_migrated,
            "contacts_created": self.contacts_created,
            "total_subscriber_records": self.total_subscriber_records,
        }


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    dry_run: bool,
    site_id: int | None,
    tag_config_hash: str | None,
    result: MigrationResult,
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        "site_id": site_id,
        "tag_config_hash": tag_config_hash,
        "result": result.to_dict(),
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
