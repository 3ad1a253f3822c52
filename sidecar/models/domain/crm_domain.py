# models/domain/crm_domain.py
"""
CRM-facing domain models shared by the V8 and mock adapters.

Field names are snake_case in Python; JSON output uses camelCase aliases.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PERSON_MODULES = ("Contacts", "Leads")
TASK_CONTEXT_MODULES = ("Contacts", "Leads", "Accounts")
EMAIL_LINK_MODULES = ("Contacts", "Leads", "Accounts", "Opportunities", "Cases")


class CrmModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecordRef(CrmModel):
    module: str
    id: str
    display_name: str | None = None
    link: str | None = None


class AccountSummary(CrmModel):
    id: str
    name: str
    phone: str | None = None
    website: str | None = None
    link: str


class TimelineEntry(CrmModel):
    type: str
    module: str
    id: str
    occurred_at: str | None = None
    title: str
    summary: str | None = None
    link: str


class PersonSummary(CrmModel):
    module: str
    id: str
    display_name: str
    first_name: str | None = None
    last_name: str | None = None
    title: str | None = None
    email: str
    phone: str | None = None
    link: str
    account: AccountSummary | None = None
    timeline: list[TimelineEntry] | None = None
    actions: dict[str, str] = Field(default_factory=dict)


class LookupResult(CrmModel):
    not_found: bool
    match: PersonSummary | None = None
    suggestions: list[PersonSummary] = Field(default_factory=list)


class PersonInput(CrmModel):
    first_name: str
    last_name: str
    email: str
    title: str | None = None
    phone: str | None = None
    account_name: str | None = None
    company: str | None = None
    lead_source: str | None = None
    custom_fields: dict = Field(default_factory=dict)


class EmailAddress(CrmModel):
    name: str | None = None
    email: str | None = None


class AttachmentInput(CrmModel):
    name: str | None = None
    content_type: str | None = None
    size: int | None = None
    content_base64: str | None = None
    id: str | None = None


class AttachmentResult(CrmModel):
    name: str
    size: int | None = None
    status: Literal["stored", "embedded", "skipped", "failed"]
    module: str | None = None
    id: str | None = None
    reason: str | None = None


class EmailMessage(CrmModel):
    internet_message_id: str
    graph_message_id: str | None = None
    subject: str | None = None
    from_: EmailAddress | None = Field(default=None, alias="from")
    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] = Field(default_factory=list)
    sent_at: str | None = None
    received_at: str | None = None
    body_text: str | None = None
    body_html: str | None = None
    attachments: list[AttachmentInput] = Field(default_factory=list)


class LinkTarget(CrmModel):
    module: str
    id: str


class EmailLogOptions(CrmModel):
    store_body: bool = True
    store_attachments: bool = False
    store_attachment_content: bool = True
    max_attachment_bytes: int | None = None


class EmailLogResult(CrmModel):
    logged_record: RecordRef
    deduplicated: bool = False
    attachments: list[AttachmentResult] = Field(default_factory=list)


class TaskMessage(CrmModel):
    graph_message_id: str | None = None
    internet_message_id: str | None = None
    subject: str | None = None
    from_: EmailAddress | None = Field(default=None, alias="from")
    received_date_time: str | None = None
    conversation_id: str | None = None
    body_preview: str | None = None
    web_link: str | None = None


class TaskContext(CrmModel):
    person_module: str | None = None
    person_id: str | None = None
    account_id: str | None = None


class AuditInfo(CrmModel):
    created_at: str
    created_by: str | None = None
    created_by_subject_id: str | None = None


class TaskResult(CrmModel):
    task: RecordRef
    deduplicated: bool = False
    linked_to: RecordRef | None = None


class MessageDedupEntry(CrmModel):
    profile_id: str
    graph_message_id: str | None = None
    internet_message_id: str | None = None
    task: RecordRef
    created_at: str | None = None
    created_by: str | None = None
    created_by_subject_id: str | None = None
    from_email: str | None = None


class OpportunityItem(CrmModel):
    id: str
    name: str
    sales_stage: str | None = None
    amount: float | None = None
    currency: str | None = None
    date_closed: str | None = None
    assigned_user_name: str | None = None
    modified_date: str | None = None
    link: str


class OpportunityScope(CrmModel):
    mode: Literal["account", "contact", "lead"]
    module: str
    id: str


class OpportunityList(CrmModel):
    items: list[OpportunityItem] = Field(default_factory=list)
    view_all_link: str | None = None
    scope: OpportunityScope
