"""Placeholder substitution for automation email subjects and bodies."""

from __future__ import annotations

from typing import Dict

from .persistence.models import Contact


def contact_variables(contact: Contact) -> Dict[str, str]:
    first = (contact.first_name or "").strip()
    last = (contact.last_name or "").strip()
    return {
        "firstName": first,
        "lastName": last,
        "fullName": " ".join(part for part in (first, last) if part),
        "email": (contact.email or "").strip(),
    }


def render(template: str, variables: Dict[str, str]) -> str:
    """Replace every ``{{name}}`` with its value. Unknown placeholders are
    left untouched."""
    out = template or ""
    for key, value in variables.items():
        out = out.replace(f"{{{{{key}}}}}", value)
    return out
