"""
Deterministic in-process adapter for profiles that do not point at a real
V8 API (demos, plugin development).

Addresses ending in ``@example.com`` or containing ``+found`` match a
contact; message ids containing ``duplicate`` or ``+dup`` count as already
logged.
"""

import hashlib

from sidecar.models.domain.crm_domain import (
    AccountSummary,
    AuditInfo,
    EmailLogOptions,
    EmailLogResult,
    EmailMessage,
    LinkTarget,
    LookupResult,
    OpportunityItem,
    OpportunityList,
    OpportunityScope,
    PersonInput,
    PersonSummary,
    RecordRef,
    TaskContext,
    TaskMessage,
    TaskResult,
    TimelineEntry,
)
from sidecar.models.domain.profile_domain import Profile
from sidecar.services.crm.v8_adapter import clamp_opportunity_limit
from sidecar.services.dedup_store import normalize_internet_message_id
from sidecar.services.errors import DuplicateSubmission, InvalidRequestError


def _mock_id(*parts: str) -> str:
    return hashlib.sha1("|".join(parts).encode()).hexdigest()[:12]


class MockAdapter:
    def __init__(self, profile: Profile):
        self.profile = profile

    def _ref(self, module: str, record_id: str, display_name: str | None = None) -> RecordRef:
        return RecordRef(
            module=module,
            id=record_id,
            display_name=display_name,
            link=self.profile.deep_link(module, record_id),
        )

    async def lookup_by_email(self, email: str, include: set[str] | None = None) -> LookupResult:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise InvalidRequestError("A valid email address is required")
        if not (email.endswith("@example.com") or "+found" in email):
            return LookupResult(not_found=True, match=None, suggestions=[])

        include = include or set()
        contact_id = _mock_id("contact", email)
        local = email.split("@", 1)[0].split("+", 1)[0]
        person = PersonSummary(
            module="Contacts",
            id=contact_id,
            display_name=local.replace(".", " ").title(),
            email=email,
            link=self.profile.deep_link("Contacts", contact_id),
        )
        if "account" in include:
            account_id = _mock_id("account", email)
            person.account = AccountSummary(
                id=account_id,
                name="Example Corp",
                link=self.profile.deep_link("Accounts", account_id),
            )
        if "timeline" in include:
            note_id = _mock_id("note", email)
            person.timeline = [
                TimelineEntry(
                    type="Note",
                    module="Notes",
                    id=note_id,
                    occurred_at="2024-01-01T09:00:00",
                    title="Intro call notes",
                    link=self.profile.deep_link("Notes", note_id),
                )
            ]
        return LookupResult(not_found=False, match=person, suggestions=[])

    async def create_contact(self, person: PersonInput) -> RecordRef:
        record_id = _mock_id("contact", person.email.lower())
        return self._ref("Contacts", record_id, f"{person.first_name} {person.last_name}".strip())

    async def create_lead(self, person: PersonInput) -> RecordRef:
        record_id = _mock_id("lead", person.email.lower())
        return self._ref("Leads", record_id, f"{person.first_name} {person.last_name}".strip())

    async def log_email(
        self, message: EmailMessage, link_to: LinkTarget, options: EmailLogOptions | None = None
    ) -> EmailLogResult:
        key = normalize_internet_message_id(message.internet_message_id)
        if not key:
            raise InvalidRequestError("internetMessageId is required")
        record = self._ref("Notes", _mock_id("note", key), message.subject or "Email from Outlook")
        if "duplicate" in key or "+dup" in key:
            raise DuplicateSubmission(record)
        return EmailLogResult(logged_record=record, deduplicated=False)

    async def create_task_from_email(
        self, message: TaskMessage, context: TaskContext, audit: AuditInfo
    ) -> TaskResult:
        key = message.graph_message_id or normalize_internet_message_id(message.internet_message_id)
        if not key:
            raise InvalidRequestError("graphMessageId or internetMessageId is required")
        task = self._ref("Tasks", _mock_id("task", key), message.subject or "Follow up on email")
        duplicate = "duplicate" in key.lower() or "+dup" in key.lower()
        return TaskResult(task=task, deduplicated=duplicate)

    async def list_opportunities(
        self,
        person_module: str | None = None,
        person_id: str | None = None,
        account_id: str | None = None,
        limit: int | None = None,
    ) -> OpportunityList:
        limit = clamp_opportunity_limit(limit)
        if account_id:
            scope = OpportunityScope(mode="account", module="Accounts", id=account_id)
        elif person_module in ("Contacts", "Leads") and person_id:
            mode = "contact" if person_module == "Contacts" else "lead"
            scope = OpportunityScope(mode=mode, module=person_module, id=person_id)
        else:
            raise InvalidRequestError("personModule and personId, or accountId, are required")

        items = []
        for index in range(min(limit, 2)):
            opportunity_id = _mock_id("opportunity", scope.id, str(index))
            items.append(
                OpportunityItem(
                    id=opportunity_id,
                    name=f"Mock opportunity {index + 1}",
                    sales_stage="Prospecting",
                    amount=1000.0 * (index + 1),
                    currency="USD",
                    link=self.profile.deep_link("Opportunities", opportunity_id),
                )
            )
        return OpportunityList(
            items=items,
            view_all_link=self.profile.deep_link(scope.module, scope.id),
            scope=scope,
        )
