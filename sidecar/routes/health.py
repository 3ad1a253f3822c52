# sidecar/routes/health.py
"""
Health, version and profile listing endpoints (no authentication).
"""

from fastapi import APIRouter, Depends

from sidecar.auth.verify import get_container
from sidecar.services.container import ServiceContainer

SERVICE_NAME = "crm-sidecar"
SERVICE_VERSION = "0.1.0"

router = APIRouter()


@router.get("/health")
async def health(container: ServiceContainer = Depends(get_container)):
    """Liveness plus the limits plugins need to size requests."""
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "profiles": container.registry.count(),
        "limits": {
            "maxRequestBytes": container.limits.max_request_bytes,
            "recommendedAttachmentBytes": container.limits.recommended_attachment_bytes,
            "maxAttachmentBytes": container.limits.max_attachment_bytes,
        },
    }


@router.get("/version")
async def version():
    return {"service": SERVICE_NAME, "version": SERVICE_VERSION}


@router.get("/profiles")
async def list_profiles(container: ServiceContainer = Depends(get_container)):
    return {"profiles": [profile.to_public_dict() for profile in container.registry.all()]}
