"""Request and attachment size limits derived from configuration."""

from pydantic import BaseModel

ATTACHMENT_SAFETY_RATIO = 0.70


class RuntimeLimits(BaseModel):
    max_request_bytes: int
    recommended_attachment_bytes: int
    max_attachment_bytes: int

    def attachment_ceiling(self, requested: int | None) -> int:
        """Caller-requested ceiling, bounded by the runtime maximum."""
        if requested is None or requested <= 0:
            return self.max_attachment_bytes
        return min(requested, self.max_attachment_bytes)


def resolve_runtime_limits(max_request_bytes: int, max_attachment_bytes: int | None = None) -> RuntimeLimits:
    # Base64 inflates payloads by a third, so attachments get a share of the request budget.
    max_request_bytes = max(1, int(max_request_bytes))
    recommended = int(max_request_bytes * ATTACHMENT_SAFETY_RATIO)
    effective = recommended
    if max_attachment_bytes is not None and max_attachment_bytes > 0:
        effective = min(recommended, int(max_attachment_bytes))
    return RuntimeLimits(
        max_request_bytes=max_request_bytes,
        recommended_attachment_bytes=recommended,
        max_attachment_bytes=effective,
    )
