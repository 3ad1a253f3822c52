"""
Mapping between JSON:API resource objects and sidecar domain models.
"""

import html
import re

from sidecar.models.domain.crm_domain import (
    AccountSummary,
    OpportunityItem,
    PersonInput,
    PersonSummary,
    RecordRef,
)
from sidecar.models.domain.profile_domain import Profile
from sidecar.services.errors import InvalidRequestError

MAX_NAME_LENGTH = 255

PERSON_FIELDS = "first_name,last_name,name,title,email1,phone_work,phone_mobile,phone_home"
ACCOUNT_FIELDS = "name,phone_office,website"
OPPORTUNITY_FIELDS = (
    "name,sales_stage,amount,currency_id,currency_name,date_closed,assigned_user_name,date_modified"
)


def records(payload: dict | None) -> list[dict]:
    data = (payload or {}).get("data")
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict) and item.get("id")]
    if isinstance(data, dict) and data.get("id"):
        return [data]
    return []


def attributes(record: dict) -> dict:
    attrs = record.get("attributes")
    return attrs if isinstance(attrs, dict) else {}


def text(value) -> str | None:
    """Trimmed string, or None for blanks and non-scalars."""
    if value is None or isinstance(value, dict | list):
        return None
    value = str(value).strip()
    return value or None


def first_text(attrs: dict, *fields: str) -> str | None:
    for field in fields:
        value = text(attrs.get(field))
        if value:
            return value
    return None


def display_name(attrs: dict, fallback: str | None = None) -> str:
    full = " ".join(part for part in (text(attrs.get("first_name")), text(attrs.get("last_name"))) if part)
    return full or text(attrs.get("name")) or (fallback or "")


def map_person(profile: Profile, module: str, record: dict, fallback_email: str) -> PersonSummary:
    attrs = attributes(record)
    record_id = str(record["id"])
    return PersonSummary(
        module=module,
        id=record_id,
        display_name=display_name(attrs, fallback_email),
        first_name=text(attrs.get("first_name")),
        last_name=text(attrs.get("last_name")),
        title=text(attrs.get("title")),
        email=text(attrs.get("email1")) or fallback_email,
        phone=first_text(attrs, "phone_work", "phone_mobile", "phone_home"),
        link=profile.deep_link(module, record_id),
    )


def map_account(profile: Profile, record: dict) -> AccountSummary:
    attrs = attributes(record)
    record_id = str(record["id"])
    return AccountSummary(
        id=record_id,
        name=text(attrs.get("name")) or record_id,
        phone=text(attrs.get("phone_office")),
        website=text(attrs.get("website")),
        link=profile.deep_link("Accounts", record_id),
    )


def related_id(record: dict, link: str) -> str | None:
    """Id of the first related record under ``relationships.<link>`` if the CRM embedded one."""
    relationships = record.get("relationships")
    if not isinstance(relationships, dict):
        return None
    related = relationships.get(link)
    if not isinstance(related, dict):
        return None
    data = related.get("data")
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict):
        return text(data.get("id"))
    return None


def parse_amount(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    cleaned = re.sub(r"[^0-9.\-]", "", str(value))
    try:
        return float(cleaned) if cleaned else None
    except ValueError:
        return None


def map_opportunity(profile: Profile, record: dict) -> OpportunityItem:
    attrs = attributes(record)
    record_id = str(record["id"])
    return OpportunityItem(
        id=record_id,
        name=text(attrs.get("name")) or f"Opportunity {record_id}",
        sales_stage=text(attrs.get("sales_stage")),
        amount=parse_amount(attrs.get("amount")),
        currency=first_text(attrs, "currency_name", "currency_id"),
        date_closed=text(attrs.get("date_closed")),
        assigned_user_name=text(attrs.get("assigned_user_name")),
        modified_date=text(attrs.get("date_modified")),
        link=profile.deep_link("Opportunities", record_id),
    )


def map_created_record(profile: Profile, module: str, record: dict, email_field: str | None = None) -> RecordRef:
    attrs = attributes(record)
    record_id = str(record["id"])
    name = display_name(attrs)
    if not name and email_field:
        name = text(attrs.get(email_field)) or ""
    return RecordRef(
        module=module,
        id=record_id,
        display_name=(name or f"{module} {record_id}")[:MAX_NAME_LENGTH],
        link=profile.deep_link(module, record_id),
    )


def merge_custom_fields(attrs: dict, custom_fields: dict | None) -> dict:
    """
    Add caller-supplied custom fields to a create payload.

    Raises:
        InvalidRequestError: If a value is neither a scalar nor null
    """
    for key, value in (custom_fields or {}).items():
        key = str(key).strip()
        if not key:
            continue
        if value is not None and not isinstance(value, str | int | float | bool):
            raise InvalidRequestError(f"Custom field {key} must be a scalar value")
        attrs[key] = value
    return attrs


def person_attributes(person: PersonInput) -> dict:
    attrs = {
        "first_name": person.first_name.strip(),
        "last_name": person.last_name.strip(),
        "email1": person.email.strip(),
    }
    optional = {
        "title": person.title,
        "phone_work": person.phone,
        "account_name": person.account_name or person.company,
        "lead_source": person.lead_source,
    }
    for key, value in optional.items():
        value = text(value)
        if value:
            attrs[key] = value
    return merge_custom_fields(attrs, person.custom_fields)


def html_to_text(body_html: str | None) -> str | None:
    if not body_html:
        return None
    stripped = re.sub(r"(?is)<(script|style)[^>]*>.*?</\1>", " ", body_html)
    stripped = re.sub(r"(?i)<br\s*/?>|</p>|</div>", "\n", stripped)
    stripped = re.sub(r"<[^>]+>", " ", stripped)
    stripped = html.unescape(stripped)
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in stripped.splitlines()]
    result = "\n".join(line for line in lines if line)
    return result or None
