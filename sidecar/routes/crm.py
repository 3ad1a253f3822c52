"""
CRM operation routes. Thin: resolve profile and session, call the adapter,
return the domain result. Failures are translated by the error handlers.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, Response, status

from sidecar.auth.verify import AuthContext, auth_dependency, get_container
from sidecar.models.api.crm_request import EmailLogRequest, TaskFromEmailRequest
from sidecar.models.domain.crm_domain import (
    AuditInfo,
    EmailLogResult,
    LookupResult,
    OpportunityList,
    PersonInput,
    RecordRef,
    TaskResult,
)
from sidecar.services.container import ServiceContainer

router = APIRouter(tags=["crm"])


def _adapter(auth: AuthContext, container: ServiceContainer):
    return container.adapter_for(auth.profile, auth.session)


@router.get("/lookup/by-email", response_model=LookupResult)
async def lookup_by_email(
    email: str = Query(..., description="Email address to look up"),
    include: str | None = Query(None, description="Comma separated: account, timeline"),
    auth: AuthContext = Depends(auth_dependency),
    container: ServiceContainer = Depends(get_container),
):
    includes = {item for item in (include or "").split(",") if item.strip()}
    return await _adapter(auth, container).lookup_by_email(email, includes)


@router.post("/entities/contacts", response_model=RecordRef, status_code=status.HTTP_201_CREATED)
async def create_contact(
    body: PersonInput,
    auth: AuthContext = Depends(auth_dependency),
    container: ServiceContainer = Depends(get_container),
):
    return await _adapter(auth, container).create_contact(body)


@router.post("/entities/leads", response_model=RecordRef, status_code=status.HTTP_201_CREATED)
async def create_lead(
    body: PersonInput,
    auth: AuthContext = Depends(auth_dependency),
    container: ServiceContainer = Depends(get_container),
):
    return await _adapter(auth, container).create_lead(body)


@router.post("/email/log", response_model=EmailLogResult, status_code=status.HTTP_201_CREATED)
async def log_email(
    body: EmailLogRequest,
    auth: AuthContext = Depends(auth_dependency),
    container: ServiceContainer = Depends(get_container),
):
    return await _adapter(auth, container).log_email(body.message, body.link_to, body.options)


@router.post("/tasks/from-email", response_model=TaskResult)
async def create_task_from_email(
    body: TaskFromEmailRequest,
    response: Response,
    auth: AuthContext = Depends(auth_dependency),
    container: ServiceContainer = Depends(get_container),
):
    """201 for a new task, 200 when the message already has one."""
    session = auth.session
    audit = AuditInfo(
        created_at=datetime.now(UTC).isoformat(),
        created_by=session.username if session else "service",
        created_by_subject_id=session.subject_id if session else None,
    )
    result = await _adapter(auth, container).create_task_from_email(body.message, body.context, audit)
    response.status_code = status.HTTP_200_OK if result.deduplicated else status.HTTP_201_CREATED
    return result


@router.get("/opportunities/by-context", response_model=OpportunityList)
async def list_opportunities(
    person_module: str | None = Query(None, alias="personModule"),
    person_id: str | None = Query(None, alias="personId"),
    account_id: str | None = Query(None, alias="accountId"),
    limit: int | None = Query(None, ge=1, le=100),
    auth: AuthContext = Depends(auth_dependency),
    container: ServiceContainer = Depends(get_container),
):
    return await _adapter(auth, container).list_opportunities(person_module, person_id, account_id, limit)
