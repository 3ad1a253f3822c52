"""
Recent activity timeline for a person (and their account).

Each activity module is described by a TimelineSource; entries from all
sources are merged, de-duplicated and sorted newest first.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from sidecar.infrastructure.observability.logging import get_logger
from sidecar.models.domain.crm_domain import TimelineEntry
from sidecar.models.domain.profile_domain import Profile
from sidecar.services.crm.mapping import attributes, first_text, records, text
from sidecar.services.crm.query_shapes import filter_variants, first_accepted
from sidecar.services.crm.v8_client import V8Client
from sidecar.services.errors import UpstreamHttpError

logger = get_logger(__name__)

TIMELINE_LIMIT = 20
SUMMARY_MAX_LENGTH = 280

_DATE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d")


@dataclass(frozen=True)
class TimelineSource:
    module: str
    type: str
    occurred_fields: tuple[str, ...]
    summary_fields: tuple[str, ...]
    title_field: str = "name"

    @property
    def fields(self) -> str:
        names = [self.title_field, *self.occurred_fields, *self.summary_fields]
        return ",".join(dict.fromkeys(names))


TIMELINE_SOURCES: tuple[TimelineSource, ...] = (
    TimelineSource("Notes", "Note", ("date_entered",), ("description",)),
    TimelineSource("Calls", "Call", ("date_start", "date_entered"), ("description", "status")),
    TimelineSource("Meetings", "Meeting", ("date_start", "date_entered"), ("description", "location", "status")),
    TimelineSource("Tasks", "Task", ("date_due", "date_start", "date_entered"), ("description", "status")),
)


def normalize_occurred_at(value) -> str | None:
    """
    Convert a CRM timestamp to a zoneless UTC ``YYYY-MM-DDTHH:MM:SS`` string.

    CRM datetimes without an offset are already UTC. Unparseable values give None.
    """
    raw = text(value)
    if not raw:
        return None

    parsed = None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(raw, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed.strftime("%Y-%m-%dT%H:%M:%S")


def _summary(attrs: dict, source: TimelineSource) -> str | None:
    value = first_text(attrs, *source.summary_fields)
    if not value:
        return None
    value = " ".join(value.split())
    if len(value) > SUMMARY_MAX_LENGTH:
        value = value[: SUMMARY_MAX_LENGTH - 3].rstrip() + "..."
    return value


def build_entry(profile: Profile, source: TimelineSource, record: dict) -> TimelineEntry:
    attrs = attributes(record)
    record_id = str(record["id"])
    occurred = None
    for field in source.occurred_fields:
        occurred = normalize_occurred_at(attrs.get(field))
        if occurred:
            break
    return TimelineEntry(
        type=source.type,
        module=source.module,
        id=record_id,
        occurred_at=occurred,
        title=text(attrs.get(source.title_field)) or f"{source.type} {record_id}",
        summary=_summary(attrs, source),
        link=profile.deep_link(source.module, record_id),
    )


def merge_entries(entries: list[TimelineEntry], limit: int = TIMELINE_LIMIT) -> list[TimelineEntry]:
    """De-duplicate by record, sort newest first (title breaks ties), truncate."""
    unique: dict[tuple[str, str], TimelineEntry] = {}
    for entry in entries:
        unique.setdefault((entry.module, entry.id), entry)

    ordered = sorted(unique.values(), key=lambda e: e.title)
    # Stable second pass; undated entries sort last.
    ordered.sort(key=lambda e: e.occurred_at or "", reverse=True)
    return ordered[:limit]


async def collect_timeline(
    client: V8Client,
    profile: Profile,
    parents: list[tuple[str, str]],
    sources: tuple[TimelineSource, ...] = TIMELINE_SOURCES,
    limit: int = TIMELINE_LIMIT,
) -> list[TimelineEntry]:
    """
    Query every source for records parented to any of ``parents`` (module, id).

    A source the CRM cannot filter (every shape rejected, or module missing)
    contributes nothing.
    """
    entries: list[TimelineEntry] = []
    for source in sources:
        for parent_module, parent_id in parents:
            conditions = [("parent_type", parent_module), ("parent_id", parent_id)]
            extra = [
                (f"fields[{source.module}]", source.fields),
                ("page[size]", str(limit)),
            ]
            try:
                payload = await first_accepted(
                    client, f"module/{source.module}", filter_variants([conditions]), extra
                )
            except UpstreamHttpError as e:
                if e.status != 404:
                    raise
                payload = None

            if payload is None:
                logger.debug("Timeline source skipped", module=source.module, parent_module=parent_module)
                continue

            entries.extend(build_entry(profile, source, record) for record in records(payload))

    return merge_entries(entries, limit)
