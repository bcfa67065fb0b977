"""
Freshdesk Ticket Source
=======================

Overview
--------
Fetches RMA tickets and their conversation threads from the Freshdesk REST
API (v2) and turns them into the inputs the rest of the pipeline needs:

- `get_ticket` returns a typed ticket document or None when Freshdesk
  answers 404.
- `map_status_code` renders the numeric ticket status as a label.
- `build_transcript` produces a bounded plain-text rendering for the
  reason classifier.
- `ticket_text` gathers the text sources scanned for device identifiers.

Error Contract
--------------
- 404                      -> None (not an error)
- 401 / 403                -> AuthenticationError
- any other non-2xx        -> ExternalServiceError
- timeout / network error  -> ExternalServiceError
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Standard libraries
import logging                                           # Module logger
import re                                                # Whitespace collapsing for transcript lines
from datetime import datetime                            # Parsing source timestamps
from typing import Any, Dict, List, Optional             # Type hints for clarity and safety

# Third-party libraries
import requests                                          # Synchronous HTTP client for the Freshdesk API
from pydantic import BaseModel, ConfigDict, Field        # Typed views over the ticket document

# Local modules
from errors import AuthenticationError, ExternalServiceError
from extractor import TicketText

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------

DEFAULT_TIMEOUT = 15
DEFAULT_VIDS_FIELD_KEY = "cf_vids_associated"

TRANSCRIPT_MAX_CHARS = 60000
TRANSCRIPT_ENTRY_MAX_CHARS = 500
TRANSCRIPT_MAX_CONVERSATIONS = 10

DEFAULT_STATUS_CODES: Dict[int, str] = {
    2: "Open",
    3: "Pending",
    4: "Resolved",
    5: "Closed",
    6: "Waiting on Customer",
    7: "Waiting on Third Party",
}

_WHITESPACE_RX = re.compile(r"\s+")

# -----------------------------------------------------------------------------
# Data models
# -----------------------------------------------------------------------------

class Requester(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    name: Optional[str] = None
    email: Optional[str] = None


class Conversation(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    body: Optional[str] = None
    body_text: Optional[str] = None
    created_at: Optional[str] = None
    from_email: Optional[str] = None
    private: bool = False

    @property
    def text(self) -> Optional[str]:
        return self.body_text or self.body


class FreshdeskTicket(BaseModel):
    """
    Freshdesk ticket document as returned with `include=conversations,requester`.

    Unknown fields are kept so `model_dump()` reproduces the full payload for
    auditing.
    """
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    subject: Optional[str] = None
    description: Optional[str] = None
    description_text: Optional[str] = None
    status: Optional[int] = None
    created_at: Optional[str] = None
    custom_fields: Optional[Dict[str, Any]] = None
    requester: Optional[Requester] = None
    conversations: List[Conversation] = Field(default_factory=list)

    @property
    def description_plain(self) -> Optional[str]:
        return self.description_text or self.description

    def created_datetime(self) -> Optional[datetime]:
        """Ticket creation time, or None when absent or unparseable."""
        if not self.created_at:
            return None
        try:
            return datetime.fromisoformat(self.created_at.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable Freshdesk created_at %r on ticket %s", self.created_at, self.id)
            return None

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def format_customer_information(requester: Optional[Requester]) -> Optional[str]:
    """
    Render the requester as "Name <email>", "Name", "<email>" or None.
    """
    if requester is None:
        return None
    name, email = requester.name, requester.email
    if name and email:
        return f"{name} <{email}>"
    if name:
        return name
    if email:
        return f"<{email}>"
    return None


def _single_line(text: str) -> str:
    return _WHITESPACE_RX.sub(" ", text.replace("\r", " ").replace("\n", " ")).strip()

# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------

class FreshdeskClient:
    """
    Thin client over the Freshdesk tickets endpoint.

    Parameters
    ----------
    subdomain : str
        Account subdomain, the `acme` in `acme.freshdesk.com`.
    api_key : str
        API key used as the basic-auth user name (password "X").
    timeout : float
        Seconds before the HTTP call is abandoned.
    status_codes : dict, optional
        Numeric status to label table. Defaults to Freshdesk's built-ins.
    vids_field_key : str
        Custom field listing the devices associated with the ticket.
    session : requests.Session, optional
        Injected for connection reuse and for tests.
    """

    def __init__(
        self,
        subdomain: str,
        api_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        status_codes: Optional[Dict[int, str]] = None,
        vids_field_key: str = DEFAULT_VIDS_FIELD_KEY,
        transcript_max_chars: int = TRANSCRIPT_MAX_CHARS,
        transcript_entry_max_chars: int = TRANSCRIPT_ENTRY_MAX_CHARS,
        transcript_max_conversations: int = TRANSCRIPT_MAX_CONVERSATIONS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = f"https://{subdomain}.freshdesk.com/api/v2"
        self.api_key = api_key
        self.timeout = timeout
        self.status_codes = dict(status_codes or DEFAULT_STATUS_CODES)
        self.vids_field_key = vids_field_key
        self.transcript_max_chars = transcript_max_chars
        self.transcript_entry_max_chars = transcript_entry_max_chars
        self.transcript_max_conversations = transcript_max_conversations
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, settings, cfg: dict, session: Optional[requests.Session] = None) -> "FreshdeskClient":
        """Build a client from environment settings and the parsed settings.toml."""
        limits = cfg["limits"]
        fd = cfg["freshdesk"]
        return cls(
            subdomain=settings.freshdesk_subdomain,
            api_key=settings.freshdesk_api_key,
            timeout=cfg["timeouts"]["freshdesk"],
            status_codes={int(k): v for k, v in fd["status_codes"].items()},
            vids_field_key=settings.vids_field_key or fd.get("vids_field_key", DEFAULT_VIDS_FIELD_KEY),
            transcript_max_chars=limits["transcript_max_chars"],
            transcript_entry_max_chars=limits["transcript_entry_max_chars"],
            transcript_max_conversations=limits["transcript_max_conversations"],
            session=session,
        )

    def get_ticket(self, ticket_id: str) -> Optional[FreshdeskTicket]:
        """
        Fetch one ticket with its conversations and requester.

        Returns
        -------
        FreshdeskTicket or None
            None when Freshdesk reports the ticket does not exist.

        Raises
        ------
        AuthenticationError
            Freshdesk rejected the API key (401/403).
        ExternalServiceError
            Any other failure reaching or reading from Freshdesk.
        """
        url = f"{self.base_url}/tickets/{ticket_id}"
        try:
            resp = self.session.get(
                url,
                params={"include": "conversations,requester"},
                auth=(self.api_key, "X"),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout as err:
            raise ExternalServiceError("Freshdesk", f"request timed out after {self.timeout}s") from err
        except requests.RequestException as err:
            raise ExternalServiceError("Freshdesk", str(err)) from err

        if resp.status_code == 404:
            logger.info("Freshdesk ticket %s not found", ticket_id)
            return None

        if resp.status_code in (401, 403):
            raise AuthenticationError("Freshdesk", "authentication failed. Check API key and subdomain.")

        if not resp.ok:
            raise ExternalServiceError("Freshdesk", f"API error: {resp.status_code} - {resp.reason}")

        try:
            return FreshdeskTicket.model_validate(resp.json())
        except ValueError as err:
            raise ExternalServiceError("Freshdesk", f"invalid ticket payload: {err}") from err

    def map_status_code(self, code: Optional[int]) -> Optional[str]:
        """Label for a numeric status, the code itself when unknown."""
        if code is None:
            return None
        return self.status_codes.get(code, str(code))

    def ticket_text(self, ticket: FreshdeskTicket) -> TicketText:
        """Collect the text sources scanned for device identifiers."""
        custom = (ticket.custom_fields or {}).get(self.vids_field_key)
        return TicketText(
            subject=ticket.subject,
            description=ticket.description_plain,
            conversation_bodies=[c.text for c in ticket.conversations],
            custom_field=str(custom) if custom else None,
        )

    def build_transcript(self, ticket: FreshdeskTicket) -> str:
        """
        Render the ticket as bounded plain text for the reason classifier.

        Layout
        ------
        TICKET SUBJECT, INITIAL DESCRIPTION, a TICKET INFO metadata line and
        the most recent conversations, one line each, tagged with the sender
        and [INTERNAL] for private notes. Sections are separated by blank
        lines and the result never exceeds `transcript_max_chars`.
        """
        parts: List[str] = []

        if ticket.subject and ticket.subject.strip():
            parts.append(f"TICKET SUBJECT: {ticket.subject}")

        description = ticket.description_plain
        if description and description.strip():
            parts.append(f"INITIAL DESCRIPTION: {description}")

        metadata = []
        if ticket.status is not None:
            metadata.append(f"Status: {self.map_status_code(ticket.status)}")
        if ticket.created_at:
            metadata.append(f"Created: {ticket.created_at}")
        if metadata:
            parts.append(f"TICKET INFO: {', '.join(metadata)}")

        recent = ticket.conversations[-self.transcript_max_conversations:]
        if recent:
            parts.append("CONVERSATION HISTORY:")
            for i, conv in enumerate(recent, start=1):
                body = conv.text
                if not body or not body.strip():
                    continue

                clean = _single_line(body)
                if len(clean) > self.transcript_entry_max_chars:
                    clean = clean[:self.transcript_entry_max_chars] + "..."

                header = f"Message {i}"
                if conv.from_email:
                    header += f" (from: {conv.from_email})"
                if conv.private:
                    header += " [INTERNAL]"
                parts.append(f"{header}: {clean}")

        text = "\n\n".join(parts)
        return text[:self.transcript_max_chars]
