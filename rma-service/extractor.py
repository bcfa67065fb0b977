"""
Device Identifier Extraction
============================

Overview
--------
Pulls device identifiers out of free ticket text. Two shape families are
recognized:

- Numeric ids: exactly ten ASCII digits, either bare, behind a label such as
  "VID", "Serial #" or "Device ID", or written in 4-3-3 / 3-3-4 groups.
- Reserved-prefix ids: "5A" followed by eight letters or digits, possibly
  written with spaces, dashes or dots between the characters.

Extraction is heuristic. Overlapping rules may fire on the same span, which
is harmless because every accepted id is folded into one set.

Runtime Contract
----------------
    extract_device_ids(text: TicketText) -> List[str]

Pure function over the provided text. Returns a sorted, duplicate-free list
and never raises; no match yields an empty list.

Limitations
-----------
The separator-tolerant reserved-prefix rule is greedy. When a matched span
runs into neighbouring words the compacted value is cut to its first ten
characters, which can produce a wrong identifier.
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Standard libraries
import re                                                # Pattern families for identifier shapes
from dataclasses import dataclass, field                 # Input container for the text sources
from typing import Callable, Iterable, List, NamedTuple, Optional, Set

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

RESERVED_PREFIX = "5A"
ID_LENGTH = 10

_LABEL_RX = re.compile(r"^(VID|ID|Serial|Device)\s*", re.IGNORECASE | re.ASCII)
_NON_DIGIT_RX = re.compile(r"\D", re.ASCII)
_SEPARATOR_RX = re.compile(r"[\s\-.]")
_RESERVED_ID_RX = re.compile(rf"^{RESERVED_PREFIX}[A-Z0-9]{{8}}$", re.IGNORECASE | re.ASCII)
_BARE_NUMERIC_RX = re.compile(r"\b\d{10}\b", re.ASCII)

# -----------------------------------------------------------------------------
# Data models
# -----------------------------------------------------------------------------

@dataclass
class TicketText:
    """
    Text sources scanned for identifiers.

    Attributes
    ----------
    subject : str
        Ticket subject line.
    description : str
        Initial description, plain-text variant when the helpdesk provides one.
    conversation_bodies : List[str]
        One entry per conversation, plain-text variant preferred.
    custom_field : str
        Value of the structured custom field listing associated devices.
    """
    subject: Optional[str] = None
    description: Optional[str] = None
    conversation_bodies: List[Optional[str]] = field(default_factory=list)
    custom_field: Optional[str] = None

    def sources(self) -> List[str]:
        """Non-empty free-text sources in scan order."""
        candidates = [self.subject, self.description, *self.conversation_bodies]
        return [text for text in candidates if text]


class Rule(NamedTuple):
    """A matcher paired with the normalizer that validates each match."""
    name: str
    pattern: re.Pattern
    normalize: Callable[[re.Match], Optional[str]]

# -----------------------------------------------------------------------------
# Normalizers
# -----------------------------------------------------------------------------

def _normalize_numeric(match: re.Match) -> Optional[str]:
    groups = match.groups()
    if groups and groups[0]:
        candidate = "".join(g for g in groups if g)
    else:
        candidate = _LABEL_RX.sub("", match.group(0))
    digits = _NON_DIGIT_RX.sub("", candidate)
    return digits if len(digits) == ID_LENGTH else None


def _normalize_reserved(match: re.Match) -> Optional[str]:
    compact = _SEPARATOR_RX.sub("", match.group(0)).upper()
    if len(compact) > ID_LENGTH:
        compact = compact[:ID_LENGTH]
    return compact if _RESERVED_ID_RX.match(compact) else None

# -----------------------------------------------------------------------------
# Rule table
# -----------------------------------------------------------------------------

RULES: List[Rule] = [
    Rule("bare", re.compile(r"\b\d{10}\b", re.ASCII), _normalize_numeric),
    Rule("vid_label", re.compile(r"VID\s*(\d{10})", re.IGNORECASE | re.ASCII), _normalize_numeric),
    Rule("id_label", re.compile(r"ID\s*(\d{10})", re.IGNORECASE | re.ASCII), _normalize_numeric),
    Rule("serial_label", re.compile(r"Serial\s*(?:Number|#|:)?\s*(\d{10})", re.IGNORECASE | re.ASCII), _normalize_numeric),
    Rule("device_label", re.compile(r"Device\s*(?:ID|#|:)?\s*(\d{10})", re.IGNORECASE | re.ASCII), _normalize_numeric),
    Rule("grouped_4_3_3", re.compile(r"(\d{4})[- ]?(\d{3})[- ]?(\d{3})", re.ASCII), _normalize_numeric),
    Rule("grouped_3_3_4", re.compile(r"(\d{3})[- ]?(\d{3})[- ]?(\d{4})", re.ASCII), _normalize_numeric),
    Rule("reserved_exact", re.compile(rf"\b{RESERVED_PREFIX}[A-Z0-9]{{8}}\b", re.IGNORECASE | re.ASCII), _normalize_reserved),
    Rule("reserved_formatted", re.compile(rf"{RESERVED_PREFIX}[A-Z0-9\-.\s]{{8,}}", re.IGNORECASE | re.ASCII), _normalize_reserved),
    Rule("reserved_general", re.compile(rf"{RESERVED_PREFIX}[A-Z0-9]{{8}}", re.IGNORECASE | re.ASCII), _normalize_reserved),
]

# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def _apply_rules(text: str, rules: Iterable[Rule]) -> Set[str]:
    found: Set[str] = set()
    for rule in rules:
        for match in rule.pattern.finditer(text):
            value = rule.normalize(match)
            if value:
                found.add(value)
    return found


def extract_device_ids(text: TicketText) -> List[str]:
    """
    Extract device identifiers from every text source of a ticket.

    Parameters
    ----------
    text : TicketText
        Subject, description, conversation bodies and the custom field.

    Returns
    -------
    List[str]
        Sorted, duplicate-free identifiers. Reserved-prefix ids are upper-cased.
    """
    device_ids: Set[str] = set()
    for source in text.sources():
        device_ids |= _apply_rules(source, RULES)

    if text.custom_field:
        device_ids.update(_BARE_NUMERIC_RX.findall(str(text.custom_field)))

    return sorted(device_ids)


def is_reserved_prefix_id(value: str) -> bool:
    """True when value is a compact reserved-prefix identifier."""
    return bool(value) and bool(_RESERVED_ID_RX.match(value))


def search_variants(device_id: str) -> List[str]:
    """
    Textual renderings of an identifier as people type it in chat.

    Returns the lower-cased compact form followed by 2-4-4 and 4-3-3 groupings
    joined with a space, a dash and a dot. Identifiers that are not ten
    characters long only yield their compact form.
    """
    compact = _SEPARATOR_RX.sub("", device_id or "").lower()
    variants = [compact] if compact else []
    if len(compact) != ID_LENGTH:
        return variants

    for sizes in ((2, 4, 4), (4, 3, 3)):
        parts, start = [], 0
        for size in sizes:
            parts.append(compact[start:start + size])
            start += size
        for sep in (" ", "-", "."):
            rendered = sep.join(parts)
            if rendered not in variants:
                variants.append(rendered)
    return variants
