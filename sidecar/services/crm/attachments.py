"""
Persist email attachments next to a logged email activity.

Preferred storage is a Documents record parented to the activity. CRMs
without that schema (HTTP 400/404) get a Notes record carrying the
attachment metadata instead.
"""

import base64
import binascii

from sidecar.infrastructure.observability.logging import get_logger
from sidecar.models.domain.crm_domain import AttachmentInput, AttachmentResult, LinkTarget, RecordRef
from sidecar.services.crm.mapping import MAX_NAME_LENGTH, text
from sidecar.services.crm.v8_client import V8Client
from sidecar.services.errors import UpstreamError, UpstreamHttpError, is_auth_failure

logger = get_logger(__name__)

DOCUMENT_MODULE = "Documents"
NOTE_MODULE = "Notes"
SCHEMA_MISSING_STATUSES = (400, 404)


class NormalizedAttachment:
    def __init__(self, name: str, content_type: str, size: int, content_base64: str | None):
        self.name = name
        self.content_type = content_type
        self.size = size
        self.content_base64 = content_base64


def decoded_size(content_base64: str) -> int:
    """Byte length of base64 content without decoding it."""
    stripped = "".join(content_base64.split())
    padding = len(stripped) - len(stripped.rstrip("="))
    return max(0, len(stripped) * 3 // 4 - padding)


def normalize_attachment(
    raw: AttachmentInput, max_bytes: int
) -> tuple[NormalizedAttachment | None, AttachmentResult | None]:
    """
    Validate one attachment. Returns (attachment, None) or (None, skipped result).
    """
    name = text(raw.name)
    if not name:
        return None, AttachmentResult(name="(unnamed)", status="skipped", reason="missing_name")

    content = "".join(raw.content_base64.split()) if raw.content_base64 else None
    if content:
        try:
            base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError):
            return None, AttachmentResult(name=name, status="skipped", reason="invalid_content")

    size = raw.size if raw.size is not None and raw.size >= 0 else None
    if size is None:
        size = decoded_size(content) if content else 0

    if size > max_bytes:
        return None, AttachmentResult(name=name, size=size, status="skipped", reason="too_large")

    return (
        NormalizedAttachment(
            name=name[:MAX_NAME_LENGTH],
            content_type=text(raw.content_type) or "application/octet-stream",
            size=size,
            content_base64=content,
        ),
        None,
    )


class AttachmentPersister:
    def __init__(self, client: V8Client):
        self.client = client

    async def persist_all(
        self,
        attachments: list[AttachmentInput],
        activity: RecordRef,
        link_target: LinkTarget,
        max_bytes: int,
        store_content: bool = True,
    ) -> list[AttachmentResult]:
        results = []
        for raw in attachments:
            attachment, skipped = normalize_attachment(raw, max_bytes)
            if skipped:
                logger.info("Attachment skipped", name=skipped.name, reason=skipped.reason)
                results.append(skipped)
                continue
            results.append(await self.persist(attachment, activity, link_target, store_content))
        return results

    async def persist(
        self,
        attachment: NormalizedAttachment,
        activity: RecordRef,
        link_target: LinkTarget,
        store_content: bool,
    ) -> AttachmentResult:
        try:
            return await self._store_document(attachment, activity, store_content)
        except UpstreamError as e:
            if is_auth_failure(e):
                raise
            if not isinstance(e, UpstreamHttpError) or e.status not in SCHEMA_MISSING_STATUSES:
                return self._failed(attachment, e)
            logger.info("Document storage unavailable, embedding attachment in a note", name=attachment.name)

        parents = [(activity.module, activity.id), (link_target.module, link_target.id)]
        last_error: UpstreamError | None = None
        for parent_module, parent_id in parents:
            try:
                return await self._embed_in_note(attachment, parent_module, parent_id, activity, store_content)
            except UpstreamError as e:
                if is_auth_failure(e):
                    raise
                last_error = e
                logger.info(
                    "Attachment note rejected for parent",
                    name=attachment.name,
                    parent_module=parent_module,
                    error=str(e),
                )
        return self._failed(attachment, last_error)

    async def _store_document(
        self, attachment: NormalizedAttachment, activity: RecordRef, store_content: bool
    ) -> AttachmentResult:
        attrs = {
            "document_name": attachment.name,
            "filename": attachment.name,
            "file_mime_type": attachment.content_type,
            "parent_type": activity.module,
            "parent_id": activity.id,
            "status_id": "Active",
        }
        if store_content and attachment.content_base64:
            attrs["filecontents"] = attachment.content_base64

        record = await self.client.create_record(DOCUMENT_MODULE, attrs)
        return AttachmentResult(
            name=attachment.name,
            size=attachment.size,
            status="stored",
            module=DOCUMENT_MODULE,
            id=str(record["id"]),
        )

    async def _embed_in_note(
        self,
        attachment: NormalizedAttachment,
        parent_module: str,
        parent_id: str,
        activity: RecordRef,
        store_content: bool,
    ) -> AttachmentResult:
        lines = [
            f"Attachment: {attachment.name}",
            f"Content type: {attachment.content_type}",
            f"Size: {attachment.size} bytes",
            f"Email record: {activity.module} {activity.id}",
        ]
        attrs = {
            "name": f"Attachment: {attachment.name}"[:MAX_NAME_LENGTH],
            "parent_type": parent_module,
            "parent_id": parent_id,
            "description": "\n".join(lines),
        }
        if store_content and attachment.content_base64:
            attrs["filename"] = attachment.name
            attrs["file_mime_type"] = attachment.content_type
            attrs["filecontents"] = attachment.content_base64

        record = await self.client.create_record(NOTE_MODULE, attrs)
        return AttachmentResult(
            name=attachment.name,
            size=attachment.size,
            status="embedded",
            module=NOTE_MODULE,
            id=str(record["id"]),
        )

    def _failed(self, attachment: NormalizedAttachment, error: Exception | None) -> AttachmentResult:
        logger.warning(
            "Attachment could not be stored",
            name=attachment.name,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
        )
        return AttachmentResult(
            name=attachment.name,
            size=attachment.size,
            status="failed",
            reason=getattr(error, "error_code", None) or "upstream_error",
        )
