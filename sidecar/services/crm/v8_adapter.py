"""
CRM adapter for SuiteCRM's V8 JSON:API.

Maps sidecar operations (lookup, create, email logging, follow-up tasks,
opportunities) onto list/read/create/relationship endpoints.
"""

import re

from sidecar.infrastructure.observability.logging import get_logger
from sidecar.models.domain.crm_domain import (
    EMAIL_LINK_MODULES,
    PERSON_MODULES,
    TASK_CONTEXT_MODULES,
    AuditInfo,
    EmailLogOptions,
    EmailLogResult,
    EmailMessage,
    LinkTarget,
    LookupResult,
    OpportunityList,
    OpportunityScope,
    PersonInput,
    PersonSummary,
    RecordRef,
    TaskContext,
    TaskMessage,
    TaskResult,
)
from sidecar.models.domain.profile_domain import Profile
from sidecar.services.crm.attachments import AttachmentPersister
from sidecar.services.crm.mapping import (
    ACCOUNT_FIELDS,
    MAX_NAME_LENGTH,
    OPPORTUNITY_FIELDS,
    PERSON_FIELDS,
    attributes,
    html_to_text,
    map_account,
    map_created_record,
    map_opportunity,
    map_person,
    person_attributes,
    records,
    related_id,
    text,
)
from sidecar.services.crm.query_shapes import filter_variants, first_accepted
from sidecar.services.crm.timeline import collect_timeline
from sidecar.services.crm.v8_client import V8Client, record_path
from sidecar.services.dedup_store import DedupStore, normalize_internet_message_id
from sidecar.services.errors import (
    DuplicateSubmission,
    InvalidRequestError,
    UpstreamError,
    UpstreamHttpError,
    is_auth_failure,
)
from sidecar.services.runtime_limits import RuntimeLimits

logger = get_logger(__name__)

EMAIL_LOG_MODULE = "Notes"
TASK_MODULE = "Tasks"
MESSAGE_KEY_FIELD = "external_message_id_c"
PROFILE_FIELD = "sidecar_profile_id_c"
SOURCE_FIELD = "sidecar_source_c"
SOURCE_VALUE = "email-plugin"
DEFAULT_EMAIL_SUBJECT = "Email from Outlook"
DEFAULT_TASK_SUBJECT = "Follow up on email"
BODY_PREVIEW_LENGTH = 500

OPPORTUNITY_DEFAULT_LIMIT = 5
OPPORTUNITY_MAX_LIMIT = 20

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def clamp_opportunity_limit(limit: int | None) -> int:
    if limit is None:
        return OPPORTUNITY_DEFAULT_LIMIT
    return max(1, min(OPPORTUNITY_MAX_LIMIT, int(limit)))


def _format_address(address) -> str | None:
    if address is None:
        return None
    name = text(address.name)
    email = text(address.email)
    if name and email:
        return f"{name} <{email}>"
    return email or name


def _is_deleted(record: dict) -> bool:
    return str(attributes(record).get("deleted", "0")).strip().lower() in ("1", "true")


class V8Adapter:
    """One adapter per request: bound to a profile and an access-token source via the client."""

    def __init__(
        self,
        profile: Profile,
        client: V8Client,
        dedup_store: DedupStore,
        limits: RuntimeLimits,
    ):
        self.profile = profile
        self.client = client
        self.dedup_store = dedup_store
        self.limits = limits
        self.attachments = AttachmentPersister(client)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def lookup_by_email(self, email: str, include: set[str] | None = None) -> LookupResult:
        """
        Find a Contact (preferred) or Lead by primary email.

        ``include`` may contain "account" and "timeline". Both are
        enrichments: their failures are logged and the field is omitted.
        """
        email = (email or "").strip()
        if not _EMAIL_RE.match(email):
            raise InvalidRequestError("A valid email address is required")
        include = {item.strip().lower() for item in (include or set())}

        found = await self._find_person(email)
        if found is None:
            logger.info("Lookup found no match", profile_id=self.profile.id)
            return LookupResult(not_found=True, match=None, suggestions=[])

        module, record = found
        person = map_person(self.profile, module, record, email)
        person.actions = self._person_actions(person)

        account_id = None
        if module == "Contacts" and include & {"account", "timeline"}:
            account_id = await self._soft(
                self._contact_account_id(person.id, record), "account_id", default=None
            )

        if "account" in include and account_id:
            person.account = await self._soft(self._fetch_account(account_id), "account", default=None)

        if "timeline" in include:
            parents = [(module, person.id)]
            if account_id:
                parents.append(("Accounts", account_id))
            person.timeline = await self._soft(
                collect_timeline(self.client, self.profile, parents), "timeline", default=[]
            )

        return LookupResult(not_found=False, match=person, suggestions=[])

    async def _find_person(self, email: str) -> tuple[str, dict] | None:
        for module in PERSON_MODULES:
            payload = await first_accepted(
                self.client,
                f"module/{module}",
                filter_variants([[("email1", email)]]),
                [(f"fields[{module}]", PERSON_FIELDS), ("page[size]", "1")],
            )
            rows = records(payload)
            if rows:
                return module, rows[0]
        return None

    async def _contact_account_id(self, contact_id: str, record: dict | None = None) -> str | None:
        if record:
            embedded = related_id(record, "accounts") or text(attributes(record).get("account_id"))
            if embedded:
                return embedded
        try:
            payload = await self.client.get(record_path("Contacts", contact_id, "relationships", "accounts"))
        except UpstreamHttpError as e:
            if e.status in (400, 404):
                return None
            raise
        rows = records(payload)
        return str(rows[0]["id"]) if rows else None

    async def _fetch_account(self, account_id: str):
        payload = await self.client.get(
            record_path("Accounts", account_id), [("fields[Accounts]", ACCOUNT_FIELDS)]
        )
        rows = records(payload)
        return map_account(self.profile, rows[0]) if rows else None

    async def _soft(self, awaitable, what: str, default):
        try:
            return await awaitable
        except UpstreamError as e:
            if is_auth_failure(e):
                raise
            logger.warning(
                "Lookup enrichment failed",
                profile_id=self.profile.id,
                enrichment=what,
                error=str(e),
                error_type=type(e).__name__,
            )
            return default

    def _person_actions(self, person: PersonSummary) -> dict[str, str]:
        params = {
            "return_module": person.module,
            "return_id": person.id,
            "parent_type": person.module,
            "parent_id": person.id,
            "parent_name": person.display_name,
        }
        return {
            "createCall": self.profile.legacy_action_link("Calls", "EditView", params),
            "createMeeting": self.profile.legacy_action_link("Meetings", "EditView", params),
        }

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_contact(self, person: PersonInput) -> RecordRef:
        return await self._create_person("Contacts", person)

    async def create_lead(self, person: PersonInput) -> RecordRef:
        return await self._create_person("Leads", person)

    async def _create_person(self, module: str, person: PersonInput) -> RecordRef:
        for field in ("first_name", "last_name", "email"):
            if not (getattr(person, field) or "").strip():
                raise InvalidRequestError(f"{field} is required")

        record = await self.client.create_record(module, person_attributes(person))
        created = map_created_record(self.profile, module, record, email_field="email1")
        logger.info("CRM record created", profile_id=self.profile.id, module=module, record_id=created.id)
        return created

    # ------------------------------------------------------------------
    # Email logging
    # ------------------------------------------------------------------

    async def log_email(
        self, message: EmailMessage, link_to: LinkTarget, options: EmailLogOptions | None = None
    ) -> EmailLogResult:
        """
        Record an email as a Notes activity linked to a CRM record.

        Raises:
            InvalidRequestError: Missing message id or unsupported link module
            DuplicateSubmission: An activity with the same message key exists
        """
        options = options or EmailLogOptions()
        key = normalize_internet_message_id(message.internet_message_id)
        if not key:
            raise InvalidRequestError("internetMessageId is required")
        if link_to.module not in EMAIL_LINK_MODULES or not link_to.id.strip():
            raise InvalidRequestError(f"Cannot link email to module {link_to.module}")

        existing = await self._find_logged_email(key)
        if existing is not None:
            logger.info("Email already logged", profile_id=self.profile.id, record_id=existing.id)
            raise DuplicateSubmission(existing)

        name = (text(message.subject) or DEFAULT_EMAIL_SUBJECT)[:MAX_NAME_LENGTH]
        attrs = {
            "name": name,
            MESSAGE_KEY_FIELD: key,
            PROFILE_FIELD: self.profile.id,
            SOURCE_FIELD: SOURCE_VALUE,
            "parent_type": link_to.module,
            "parent_id": link_to.id,
            "description": self._email_description(message, options.store_body),
        }
        if link_to.module == "Contacts":
            attrs["contact_id"] = link_to.id

        record = await self.client.create_record(EMAIL_LOG_MODULE, attrs)
        logged = RecordRef(
            module=EMAIL_LOG_MODULE,
            id=str(record["id"]),
            display_name=name,
            link=self.profile.deep_link(EMAIL_LOG_MODULE, str(record["id"])),
        )
        logger.info("Email logged", profile_id=self.profile.id, record_id=logged.id, link_module=link_to.module)

        attachment_results = []
        if options.store_attachments and message.attachments:
            attachment_results = await self.attachments.persist_all(
                message.attachments,
                logged,
                link_to,
                max_bytes=self.limits.attachment_ceiling(options.max_attachment_bytes),
                store_content=options.store_attachment_content,
            )

        return EmailLogResult(logged_record=logged, deduplicated=False, attachments=attachment_results)

    async def _find_logged_email(self, key: str) -> RecordRef | None:
        # Profile-scoped shapes first; CRMs without the profile field reject them with 400.
        condition_sets = [
            [(MESSAGE_KEY_FIELD, key), (PROFILE_FIELD, self.profile.id)],
            [(MESSAGE_KEY_FIELD, key)],
        ]
        payload = await first_accepted(
            self.client,
            f"module/{EMAIL_LOG_MODULE}",
            filter_variants(condition_sets),
            [(f"fields[{EMAIL_LOG_MODULE}]", f"name,{MESSAGE_KEY_FIELD}"), ("page[size]", "1")],
        )
        rows = records(payload)
        if not rows:
            return None
        record_id = str(rows[0]["id"])
        return RecordRef(
            module=EMAIL_LOG_MODULE,
            id=record_id,
            display_name=text(attributes(rows[0]).get("name")),
            link=self.profile.deep_link(EMAIL_LOG_MODULE, record_id),
        )

    def _email_description(self, message: EmailMessage, store_body: bool) -> str:
        lines = []
        sender = _format_address(message.from_)
        if sender:
            lines.append(f"From: {sender}")
        recipients = [a for a in (_format_address(r) for r in message.to) if a]
        if recipients:
            lines.append(f"To: {', '.join(recipients)}")
        copied = [a for a in (_format_address(r) for r in message.cc) if a]
        if copied:
            lines.append(f"Cc: {', '.join(copied)}")
        if message.sent_at:
            lines.append(f"Sent: {message.sent_at}")
        if message.received_at:
            lines.append(f"Received: {message.received_at}")
        lines.append(f"Message-ID: {message.internet_message_id.strip()}")

        description = "\n".join(lines)
        if store_body:
            body = text(message.body_text) or html_to_text(message.body_html)
            if body:
                description = f"{description}\n\n{body}"
        return description

    # ------------------------------------------------------------------
    # Follow-up tasks
    # ------------------------------------------------------------------

    async def create_task_from_email(
        self, message: TaskMessage, context: TaskContext, audit: AuditInfo
    ) -> TaskResult:
        """
        Create a follow-up Task for an email, at most once per message.

        A remembered task that no longer exists upstream is recreated and the
        dedup entry overwritten.
        """
        if not (text(message.graph_message_id) or normalize_internet_message_id(message.internet_message_id)):
            raise InvalidRequestError("graphMessageId or internetMessageId is required")
        if context.person_module and context.person_module not in TASK_CONTEXT_MODULES:
            raise InvalidRequestError(f"Unsupported personModule {context.person_module}")

        entry = await self.dedup_store.find(
            self.profile.id, message.graph_message_id, message.internet_message_id
        )
        if entry is not None:
            if await self._record_exists(entry.task.module, entry.task.id):
                task = entry.task.model_copy(
                    update={"link": entry.task.link or self.profile.deep_link(entry.task.module, entry.task.id)}
                )
                logger.info("Task already created for message", profile_id=self.profile.id, task_id=task.id)
                return TaskResult(task=task, deduplicated=True)
            logger.info(
                "Remembered task missing upstream, recreating",
                profile_id=self.profile.id,
                task_id=entry.task.id,
            )

        sender_email = text(message.from_.email) if message.from_ else None
        linked_to, contact_id = await self._resolve_task_link(context, sender_email)

        name = (text(message.subject) or DEFAULT_TASK_SUBJECT)[:MAX_NAME_LENGTH]
        attrs = {
            "name": name,
            "status": "Not Started",
            "priority": "Medium",
            "description": self._task_description(message, audit),
        }
        if linked_to:
            attrs["parent_type"] = linked_to.module
            attrs["parent_id"] = linked_to.id
        if contact_id:
            attrs["contact_id"] = contact_id

        record = await self.client.create_record(TASK_MODULE, attrs)
        task = RecordRef(
            module=TASK_MODULE,
            id=str(record["id"]),
            display_name=name,
            link=self.profile.deep_link(TASK_MODULE, str(record["id"])),
        )

        written = await self.dedup_store.save(
            self.profile.id,
            message.graph_message_id,
            message.internet_message_id,
            task,
            audit,
            from_email=sender_email,
        )
        logger.info(
            "Task created from email",
            profile_id=self.profile.id,
            task_id=task.id,
            linked_module=linked_to.module if linked_to else None,
            dedup_keys=written,
        )
        return TaskResult(task=task, deduplicated=False, linked_to=linked_to)

    async def _record_exists(self, module: str, record_id: str) -> bool:
        try:
            payload = await self.client.get(
                record_path(module, record_id), [(f"fields[{module}]", "name,deleted")]
            )
        except UpstreamHttpError as e:
            if e.status == 404:
                return False
            raise
        rows = records(payload)
        return bool(rows) and not _is_deleted(rows[0])

    async def _resolve_task_link(
        self, context: TaskContext, sender_email: str | None
    ) -> tuple[RecordRef | None, str | None]:
        """Return (parent record, contact id) for a new task."""
        module = context.person_module
        person_id = text(context.person_id)
        account_id = text(context.account_id)

        if account_id:
            return self._ref("Accounts", account_id), person_id if module == "Contacts" else None
        if module == "Accounts" and person_id:
            return self._ref("Accounts", person_id), None
        if module == "Contacts" and person_id:
            return await self._contact_or_account(person_id), person_id
        if module == "Leads" and person_id:
            return self._ref("Leads", person_id), None

        if sender_email and _EMAIL_RE.match(sender_email):
            found = await self._find_person(sender_email)
            if found:
                found_module, record = found
                found_id = str(record["id"])
                if found_module == "Contacts":
                    return await self._contact_or_account(found_id, record), found_id
                return self._ref(found_module, found_id), None

        return None, None

    async def _contact_or_account(self, contact_id: str, record: dict | None = None) -> RecordRef:
        account_id = await self._contact_account_id(contact_id, record)
        if account_id:
            return self._ref("Accounts", account_id)
        return self._ref("Contacts", contact_id)

    def _ref(self, module: str, record_id: str) -> RecordRef:
        return RecordRef(module=module, id=record_id, link=self.profile.deep_link(module, record_id))

    def _task_description(self, message: TaskMessage, audit: AuditInfo) -> str:
        lines = ["Follow-up created from email."]
        sender = _format_address(message.from_)
        if sender:
            lines.append(f"From: {sender}")
        if message.received_date_time:
            lines.append(f"Received: {message.received_date_time}")
        if message.web_link:
            lines.append(f"Open in mail: {message.web_link}")
        if message.graph_message_id:
            lines.append(f"Graph message id: {message.graph_message_id.strip()}")
        if message.internet_message_id:
            lines.append(f"Internet message id: {message.internet_message_id.strip()}")
        if message.conversation_id:
            lines.append(f"Conversation id: {message.conversation_id}")

        preview = text(message.body_preview)
        if preview:
            lines.extend(["", "Preview:", preview[:BODY_PREVIEW_LENGTH]])

        created_by = audit.created_by or "unknown user"
        if audit.created_by_subject_id:
            created_by = f"{created_by} ({audit.created_by_subject_id})"
        lines.extend(["", f"Created by {created_by} at {audit.created_at}"])
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Opportunities
    # ------------------------------------------------------------------

    async def list_opportunities(
        self,
        person_module: str | None = None,
        person_id: str | None = None,
        account_id: str | None = None,
        limit: int | None = None,
    ) -> OpportunityList:
        limit = clamp_opportunity_limit(limit)
        scope = await self._opportunity_scope(person_module, text(person_id), text(account_id))

        path = record_path(scope.module, scope.id, "relationships", "opportunities")
        base = [("fields[Opportunities]", OPPORTUNITY_FIELDS), ("page[size]", str(limit))]
        try:
            payload = await self.client.get(path, [*base, ("sort", "-date_modified")])
        except UpstreamHttpError as e:
            if e.status != 400:
                raise
            logger.debug("CRM rejected relationship sort, sorting locally", path=path)
            payload = await self.client.get(path, base)

        items = [map_opportunity(self.profile, record) for record in records(payload)]
        items.sort(key=lambda item: item.modified_date or "", reverse=True)

        return OpportunityList(
            items=items[:limit],
            view_all_link=self.profile.deep_link(scope.module, scope.id),
            scope=scope,
        )

    async def _opportunity_scope(
        self, person_module: str | None, person_id: str | None, account_id: str | None
    ) -> OpportunityScope:
        if person_module and person_module not in PERSON_MODULES:
            raise InvalidRequestError(f"Unsupported personModule {person_module}")

        if account_id:
            return OpportunityScope(mode="account", module="Accounts", id=account_id)
        if person_module == "Contacts" and person_id:
            resolved = await self._contact_account_id(person_id)
            if resolved:
                return OpportunityScope(mode="account", module="Accounts", id=resolved)
            return OpportunityScope(mode="contact", module="Contacts", id=person_id)
        if person_module == "Leads" and person_id:
            return OpportunityScope(mode="lead", module="Leads", id=person_id)

        raise InvalidRequestError("personModule and personId, or accountId, are required")
