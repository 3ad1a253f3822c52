# models/api/crm_request.py
from pydantic import Field

from sidecar.models.domain.crm_domain import (
    CrmModel,
    EmailLogOptions,
    EmailMessage,
    LinkTarget,
    TaskContext,
    TaskMessage,
)


class EmailLogRequest(CrmModel):
    """Request to record an email as a CRM activity."""

    message: EmailMessage = Field(..., description="Email metadata, body and attachments")
    link_to: LinkTarget = Field(..., description="CRM record the activity belongs to")
    options: EmailLogOptions = Field(default_factory=EmailLogOptions)


class TaskFromEmailRequest(CrmModel):
    """Request to create a follow-up task for an email."""

    message: TaskMessage = Field(..., description="Identifiers and summary of the email")
    context: TaskContext = Field(default_factory=TaskContext)
