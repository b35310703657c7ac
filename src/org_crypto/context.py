"""
Closed set of field contexts bound into the AEAD associated data.

Every encrypted column uses exactly one member of ``FieldContext`` at both its
write and read sites. Free-form strings are accepted only if they equal a
member's value; anything else raises ``UnknownContextError`` before any
cryptography runs.
"""

from __future__ import annotations

from enum import Enum
from typing import Union

from .errors import UnknownContextError


class FieldContext(str, Enum):
    """Semantic field identifiers (``<domain>:<field>``)."""

    # Email
    EMAIL_SUBJECT = "email:subject"
    EMAIL_BODY = "email:body"
    EMAIL_SNIPPET = "email:snippet"
    EMAIL_SUMMARY = "email:summary"
    EMAIL_FROM = "email:from"
    EMAIL_TO = "email:to"
    EMAIL_CC = "email:cc"
    EMAIL_BCC = "email:bcc"
    EMAIL_PARTICIPANTS = "email:participants"

    # Calendar
    CALENDAR_TITLE = "calendar:title"
    CALENDAR_LOCATION = "calendar:location"
    CALENDAR_NOTES = "calendar:notes"
    CALENDAR_ATTENDEES = "calendar:attendees"

    # Contacts
    CONTACT_NAME = "contact:name"
    CONTACT_EMAIL = "contact:email"
    CONTACT_PHONE = "contact:phone"
    CONTACT_COMPANY = "contact:company"
    CONTACT_TITLE = "contact:title"
    CONTACT_ADDRESS = "contact:address"

    # Pipeline
    LEAD_NOTES = "lead:notes"
    LEAD_DEAL_VALUE = "lead:deal_value"
    TASK_DESCRIPTION = "task:description"

    # Documents
    DOCUMENT_CONTENT = "document:content"

    # OAuth tokens
    OAUTH_ACCESS = "oauth:access"
    OAUTH_REFRESH = "oauth:refresh"

    def __str__(self) -> str:
        return self.value

    @property
    def aad(self) -> bytes:
        """UTF-8 encoding used in the associated data."""
        return self.value.encode("utf-8")


ContextLike = Union[FieldContext, str]


def coerce_context(context: ContextLike) -> FieldContext:
    """Resolve a context to its ``FieldContext`` member.

    Raises:
        UnknownContextError: If the value is not a known context
    """
    if isinstance(context, FieldContext):
        return context
    try:
        return FieldContext(context)
    except ValueError:
        raise UnknownContextError(f"Unknown field context: {context!r}") from None
