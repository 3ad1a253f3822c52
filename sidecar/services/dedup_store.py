"""
Per-profile record of tasks created from email messages.

An entry is written under every available message identifier (graph id and
internet message id) so a later request carrying either one finds it.
"""

import hashlib
import re

from pydantic import ValidationError

from sidecar.infrastructure.observability.logging import get_logger
from sidecar.models.domain.crm_domain import AuditInfo, MessageDedupEntry, RecordRef
from sidecar.services.infrastructure.kv_store import KeyValueStore

logger = get_logger(__name__)

MAX_KEY_LENGTH = 255
KEY_TYPE_GRAPH = "graph"
KEY_TYPE_INTERNET = "internet"


def normalize_internet_message_id(value: str | None) -> str | None:
    """Lower-case, drop whitespace and angle brackets, cap at 255 characters."""
    if not value:
        return None
    normalized = re.sub(r"\s+", "", value).lower().strip("<>")
    normalized = normalized[:MAX_KEY_LENGTH]
    return normalized or None


def normalize_graph_message_id(value: str | None) -> str | None:
    # Graph ids are case-sensitive opaque strings.
    if not value:
        return None
    normalized = value.strip()[:MAX_KEY_LENGTH]
    return normalized or None


def message_keys(graph_message_id: str | None, internet_message_id: str | None) -> list[tuple[str, str]]:
    keys = []
    graph = normalize_graph_message_id(graph_message_id)
    if graph:
        keys.append((KEY_TYPE_GRAPH, graph))
    internet = normalize_internet_message_id(internet_message_id)
    if internet:
        keys.append((KEY_TYPE_INTERNET, internet))
    return keys


def normalize_profile_segment(profile_id: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]+", "-", profile_id).strip("-") or "default"


def dedup_key(profile_id: str, key_type: str, key_value: str) -> str:
    digest = hashlib.sha256(f"{key_type}:{key_value}".encode()).hexdigest()
    return f"{normalize_profile_segment(profile_id)}/task-{key_type}-{digest}"


class DedupStore:
    def __init__(self, store: KeyValueStore):
        self.store = store

    async def find(
        self, profile_id: str, graph_message_id: str | None, internet_message_id: str | None
    ) -> MessageDedupEntry | None:
        for key_type, key_value in message_keys(graph_message_id, internet_message_id):
            raw = await self.store.get(dedup_key(profile_id, key_type, key_value))
            entry = self._parse(raw, profile_id)
            if entry:
                logger.debug("Dedup entry found", profile_id=profile_id, key_type=key_type)
                return entry
        return None

    async def save(
        self,
        profile_id: str,
        graph_message_id: str | None,
        internet_message_id: str | None,
        task: RecordRef,
        audit: AuditInfo,
        from_email: str | None = None,
    ) -> int:
        """Write the entry under every available key. Returns the number of keys written."""
        keys = message_keys(graph_message_id, internet_message_id)
        record = {
            "profileId": profile_id,
            "message": {
                "graphMessageId": normalize_graph_message_id(graph_message_id),
                "internetMessageId": normalize_internet_message_id(internet_message_id),
            },
            "task": {
                "module": task.module,
                "id": task.id,
                "link": task.link,
                "displayName": task.display_name,
            },
            "audit": {
                "createdAt": audit.created_at,
                "createdBy": audit.created_by,
                "createdBySubjectId": audit.created_by_subject_id,
                "fromEmail": from_email,
            },
        }
        for key_type, key_value in keys:
            await self.store.put(dedup_key(profile_id, key_type, key_value), record)
        return len(keys)

    def _parse(self, raw: dict | None, profile_id: str) -> MessageDedupEntry | None:
        if not raw:
            return None
        task = raw.get("task") or {}
        if not isinstance(task, dict) or not task.get("id"):
            return None

        message = raw.get("message") or {}
        audit = raw.get("audit") or {}
        try:
            return MessageDedupEntry(
                profile_id=raw.get("profileId") or profile_id,
                graph_message_id=message.get("graphMessageId"),
                internet_message_id=message.get("internetMessageId"),
                task=RecordRef(
                    module=task.get("module") or "Tasks",
                    id=str(task["id"]),
                    display_name=task.get("displayName"),
                    link=task.get("link"),
                ),
                created_at=audit.get("createdAt"),
                created_by=audit.get("createdBy"),
                created_by_subject_id=audit.get("createdBySubjectId"),
                from_email=audit.get("fromEmail"),
            )
        except (ValidationError, AttributeError):
            logger.warning("Dedup entry malformed, ignoring", profile_id=profile_id)
            return None
