"""
ConflictGuard -- structural prevention of self-dealing.

Responsibility:
    Decides whether a participant may act as counterparty (claimer,
    contributor, targeted donor, allocator) on a request, and whether an
    existing request has been self-dealt.  A counterparty is rejected if
    it IS the recipient or shares the recipient's real-world identity.

Architecture position:
    Kernel > Domain -- pure, stateless, zero I/O.  Services load the
    participants and hand ``PartyIdentity`` values in; the regional read
    model uses the same functions to exclude self-dealt requests.

Invariants enforced:
    - Two identities match when their digit-normalized phone numbers are
      equal, or their trimmed national-ID numbers are equal.  Blank values
      never match anything.
    - The check runs before any mutation; a rejected attempt leaves no
      trace except the raised SelfDealingError.

Failure modes:
    - SelfDealingError from ``ensure_not_self_dealing``.
"""

import re
from dataclasses import dataclass
from typing import Iterable
from uuid import UUID

from aid_kernel.exceptions import SelfDealingError

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class PartyIdentity:
    """The identity attributes the guard compares."""

    participant_id: UUID
    phone: str | None = None
    national_id: str | None = None


def normalize_phone(phone: str | None) -> str:
    """Digits only: '+233 24-000 1111' -> '233240001111'."""
    if not phone:
        return ""
    return _NON_DIGITS.sub("", phone)


def normalize_national_id(national_id: str | None) -> str:
    if not national_id:
        return ""
    return national_id.strip()


def identity_matches(a: PartyIdentity, b: PartyIdentity) -> bool:
    """True if ``a`` and ``b`` are the same person under any account."""
    phone_a = normalize_phone(a.phone)
    phone_b = normalize_phone(b.phone)
    if phone_a and phone_b and phone_a == phone_b:
        return True

    card_a = normalize_national_id(a.national_id)
    card_b = normalize_national_id(b.national_id)
    return bool(card_a and card_b and card_a == card_b)


def is_self_dealing(
    recipient: PartyIdentity,
    candidate: PartyIdentity,
    counterparties: Iterable[PartyIdentity] = (),
) -> bool:
    """
    True if ``candidate`` may not act as counterparty for ``recipient``.

    ``counterparties`` are the parties already on the request (committed
    contributors, assigned supplier).  A candidate whose identity matches
    one of them under a different account is rejected as well: the same
    person may not stack commitments through an alias.
    """
    if candidate.participant_id == recipient.participant_id:
        return True
    if identity_matches(recipient, candidate):
        return True
    return any(
        party.participant_id != candidate.participant_id
        and identity_matches(party, candidate)
        for party in counterparties
    )


def request_is_self_dealt(
    recipient: PartyIdentity,
    counterparties: Iterable[PartyIdentity],
) -> bool:
    """True if any existing counterparty on a request is the recipient."""
    return any(is_self_dealing(recipient, c) for c in counterparties)


class ConflictGuard:
    """
    Injectable wrapper around the self-dealing rule.

    Contract:
        One instance is shared by every operation that introduces a
        counterparty.  Tests may substitute a stricter guard.

    Guarantees:
        - ``ensure_not_self_dealing`` raises before any mutation.

    Non-goals:
        - Does NOT load participants; callers pass identities in.
    """

    def is_self_dealing(
        self,
        recipient: PartyIdentity,
        candidate: PartyIdentity,
        counterparties: Iterable[PartyIdentity] = (),
    ) -> bool:
        return is_self_dealing(recipient, candidate, counterparties)

    def request_is_self_dealt(
        self,
        recipient: PartyIdentity,
        counterparties: Iterable[PartyIdentity],
    ) -> bool:
        return request_is_self_dealt(recipient, counterparties)

    def ensure_not_self_dealing(
        self,
        request_id: UUID,
        recipient: PartyIdentity,
        candidate: PartyIdentity,
        counterparties: Iterable[PartyIdentity] = (),
    ) -> None:
        """
        Raises:
            SelfDealingError: If ``candidate`` is, or matches, the recipient
                or an existing counterparty under another account.
        """
        if self.is_self_dealing(recipient, candidate, counterparties):
            raise SelfDealingError(str(request_id), str(candidate.participant_id))
