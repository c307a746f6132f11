"""Direction resolution: who really sent a message, and which way it flows.

Pure function over the sender fields, subject and rule tables. No DB or
Claude dependency; bulk audits re-run it over stored messages, so the same
input must always give the same output.
"""

from email.utils import parseaddr

from app.resolution_config.loader import CarrierProfile, CarrierTable, DirectionTable
from app.schemas.resolution import Direction, DirectionMethod, ResolvedDirection

UNKNOWN_EXTERNAL = "unknown external"


def split_sender(sender_address: str | None, sender_name: str | None = None) -> tuple[str, str]:
    """Return (display_name, address) from either a bare address or a full header value."""
    display, address = parseaddr(sender_address or "")
    if sender_name:
        display = sender_name
    return display.strip(), address.strip().lower()


def domain_of(value: str | None) -> str:
    """Domain part of an address, or the value itself when it already looks like a domain."""
    if not value:
        return ""
    _, address = parseaddr(value)
    candidate = address or value
    candidate = candidate.strip().strip("<>\"'").lower()
    if "@" in candidate:
        return candidate.rsplit("@", 1)[1].strip(".")
    if "." in candidate and " " not in candidate:
        return candidate.strip(".")
    return ""


def forward_party(display_name: str, rules: DirectionTable) -> str | None:
    """Text preceding a forwarding marker such as "Maersk via Operations", if any."""
    if not display_name:
        return None
    for pattern in rules.forward_res:
        match = pattern.search(display_name)
        if match:
            party = match.group("party").strip().strip("\"'")
            if party:
                return party
    return None


def carrier_for_party(party: str, carriers: CarrierTable) -> CarrierProfile | None:
    domain = domain_of(party)
    if domain:
        carrier = carriers.for_domain(domain)
        if carrier is not None:
            return carrier
    return carriers.for_name(party)


def _carrier_domain(party: str, carrier: CarrierProfile) -> str:
    domain = domain_of(party)
    if domain and carrier.owns_domain(domain):
        return domain
    return carrier.primary_domain


def is_carrier_subject(subject: str | None, rules: DirectionTable) -> bool:
    """Carrier-branded subject template. Replies and forwards never count."""
    if not subject:
        return False
    text = subject.strip()
    if rules.reply_re.match(text):
        return False
    return any(p.search(text) for p in rules.subject_res)


def resolve_direction(
    *,
    sender_address: str | None,
    sender_name: str | None = None,
    apparent_sender: str | None = None,
    subject: str | None = None,
    carriers: CarrierTable,
    rules: DirectionTable,
) -> ResolvedDirection:
    """Resolve direction and true party for one message.

    Steps, first match wins:
    1. sender (apparent sender when present) on a carrier domain -> inbound, direct_domain
    2. forwarding marker in the display name naming a carrier -> inbound, forward_marker;
       a marker naming anyone else makes that party the sender for the later steps
    3. carrier-branded subject template -> inbound, subject_pattern
    4. sender on an own-organisation domain -> outbound
    5. anything else -> inbound, fallback
    """
    display_name, address = split_sender(sender_address, sender_name)
    true_address = address
    if apparent_sender:
        _, apparent_address = split_sender(apparent_sender)
        true_address = apparent_address or address
    sender_domain = domain_of(true_address)

    party = forward_party(display_name, rules)

    # A message relayed through a team alias is never direct, whatever the header says
    if party is None:
        carrier = carriers.for_domain(sender_domain)
        if carrier is not None:
            return ResolvedDirection(
                direction=Direction.INBOUND,
                true_party=true_address,
                true_domain=sender_domain,
                method=DirectionMethod.DIRECT_DOMAIN,
                carrier_id=carrier.id,
            )

    if party is not None:
        carrier = carrier_for_party(party, carriers)
        if carrier is not None:
            return ResolvedDirection(
                direction=Direction.INBOUND,
                true_party=party,
                true_domain=_carrier_domain(party, carrier),
                method=DirectionMethod.FORWARD_MARKER,
                carrier_id=carrier.id,
            )
        party_domain = domain_of(party)
        if party_domain and rules.is_own_org_domain(party_domain):
            true_address, sender_domain = party, party_domain
        else:
            true_address, sender_domain = UNKNOWN_EXTERNAL, party_domain

    if is_carrier_subject(subject, rules):
        carrier = carriers.for_name(subject or "")
        return ResolvedDirection(
            direction=Direction.INBOUND,
            true_party=carrier.name if carrier else true_address or UNKNOWN_EXTERNAL,
            true_domain=carrier.primary_domain if carrier else sender_domain,
            method=DirectionMethod.SUBJECT_PATTERN,
            carrier_id=carrier.id if carrier else None,
        )

    if rules.is_own_org_domain(sender_domain):
        return ResolvedDirection(
            direction=Direction.OUTBOUND,
            true_party=true_address,
            true_domain=sender_domain,
            method=DirectionMethod.OWN_ORG,
        )

    return ResolvedDirection(
        direction=Direction.INBOUND,
        true_party=true_address or UNKNOWN_EXTERNAL,
        true_domain=sender_domain,
        method=DirectionMethod.FALLBACK,
    )
