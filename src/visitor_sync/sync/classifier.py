"""Attendee classification -- derives the external participants of a meeting.

Pure functions with no I/O. An attendee is external when its address is not
in one of the configured internal domains and, when resource exclusion is
on, it is neither a resource-kind attendee nor an address that looks like a
meeting room.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from src.visitor_sync.schemas import Attendee, AttendeeKind, ExternalParticipant

# Common naming conventions for room/resource mailboxes.
RESOURCE_ADDRESS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^room\d+", re.IGNORECASE),
    re.compile(r"^conference", re.IGNORECASE),
    re.compile(r"^meeting", re.IGNORECASE),
    re.compile(r"^boardroom", re.IGNORECASE),
    re.compile(r"^conf-", re.IGNORECASE),
    re.compile(r"-room$", re.IGNORECASE),
    re.compile(r"^resource-", re.IGNORECASE),
)


def local_part(email: str) -> str:
    """Return the part of an address before ``@``."""
    return email.split("@", 1)[0]


def is_resource_address(email: str) -> bool:
    """Return True if the address matches a room/resource naming heuristic.

    Patterns are matched against the local part so that ``-room`` suffixes
    are recognised before the domain.
    """
    name = local_part(email.strip())
    return any(pattern.search(name) for pattern in RESOURCE_ADDRESS_PATTERNS)


def is_internal_address(email: str, internal_domains: Iterable[str]) -> bool:
    """Return True if the address belongs to one of the internal domains.

    Comparison is case-insensitive and requires an exact ``@domain`` suffix,
    so ``partner-contoso.com`` does not match ``contoso.com``.
    """
    address = email.strip().lower()
    for domain in internal_domains:
        normalized = domain.strip().lstrip("@").lower()
        if normalized and address.endswith(f"@{normalized}"):
            return True
    return False


def classify(
    attendees: Iterable[Attendee],
    internal_domains: Iterable[str],
    exclude_resources: bool,
) -> list[ExternalParticipant]:
    """Return the canonical external-participant set for a meeting.

    Deduplicates by lowercase email, keeping the first occurrence's display
    name (or the address local part when the name is blank). Output order
    follows first occurrence in ``attendees``. Never raises.

    Args:
        attendees: Raw attendees in host order.
        internal_domains: Domains whose members are not visitors.
        exclude_resources: Drop resource-kind attendees and room-like addresses.

    Returns:
        External participants in stable order.
    """
    domains = tuple(internal_domains)
    seen: set[str] = set()
    participants: list[ExternalParticipant] = []

    for attendee in attendees:
        email = (attendee.email or "").strip()
        if not email:
            continue

        key = email.lower()
        if key in seen:
            continue

        if exclude_resources and (
            attendee.kind == AttendeeKind.RESOURCE or is_resource_address(email)
        ):
            continue

        if is_internal_address(email, domains):
            continue

        seen.add(key)
        name = (attendee.display_name or "").strip() or local_part(email)
        participants.append(ExternalParticipant(email=email, display_name=name))

    return participants
