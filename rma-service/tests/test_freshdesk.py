"""
Freshdesk Module Tests
======================

Purpose
-------
Validate the Freshdesk adapter against a fake HTTP session: request shape,
the status-code error contract, status label mapping and transcript bounds.
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Third-party libraries
import pytest             # Pytest framework for isolated and reproducible testing
import requests           # Exception types raised by the fake session

# Local modules
from conftest import FakeResponse, FakeSession
from errors import AuthenticationError, ExternalServiceError
from freshdesk import Conversation, FreshdeskClient, FreshdeskTicket, Requester, format_customer_information


TICKET_PAYLOAD = {
    "id": 12345,
    "subject": "Charger dead on arrival",
    "description": "<p>Unit 1234567890 does not power on</p>",
    "description_text": "Unit 1234567890 does not power on",
    "status": 2,
    "created_at": "2024-03-01T10:00:00Z",
    "custom_fields": {"cf_vids_associated": "2345678901"},
    "requester": {"id": 7, "name": "Ada Lovelace", "email": "ada@example.com"},
    "conversations": [
        {"id": 1, "body_text": "Customer sent photos", "from_email": "ada@example.com", "private": False},
        {"id": 2, "body_text": "Checked warranty", "from_email": "agent@example.com", "private": True},
    ],
    "priority": 1,
}


def _client(handler, **kwargs):
    session = FakeSession(handler)
    return FreshdeskClient("acme", "secret-key", session=session, **kwargs), session


# ----------------------------
# Unit Test: get_ticket
# ----------------------------
def test_get_ticket_success_builds_request_and_model():
    """
    A 200 response becomes a FreshdeskTicket and the request carries the
    include parameter, basic auth and the timeout.
    """
    client, session = _client(lambda m, u, kw: FakeResponse(200, TICKET_PAYLOAD))
    ticket = client.get_ticket("12345")

    assert isinstance(ticket, FreshdeskTicket)
    assert ticket.requester.email == "ada@example.com"
    assert len(ticket.conversations) == 2

    method, url, kwargs = session.calls[0]
    assert url == "https://acme.freshdesk.com/api/v2/tickets/12345"
    assert kwargs["params"] == {"include": "conversations,requester"}
    assert kwargs["auth"] == ("secret-key", "X")
    assert kwargs["timeout"] == 15


def test_get_ticket_keeps_unknown_fields():
    """
    Extra payload fields survive a dump, so the raw document can be stored.
    """
    client, _ = _client(lambda m, u, kw: FakeResponse(200, TICKET_PAYLOAD))
    assert client.get_ticket("12345").model_dump(mode="json")["priority"] == 1


def test_get_ticket_not_found_returns_none():
    """
    A 404 is an answer, not an error.
    """
    client, _ = _client(lambda m, u, kw: FakeResponse(404, reason="Not Found"))
    assert client.get_ticket("99999999") is None


@pytest.mark.parametrize("status", [401, 403])
def test_get_ticket_auth_failure(status):
    """
    Rejected credentials raise AuthenticationError.
    """
    client, _ = _client(lambda m, u, kw: FakeResponse(status, reason="Unauthorized"))
    with pytest.raises(AuthenticationError) as exc:
        client.get_ticket("1")
    assert exc.value.service == "Freshdesk"
    assert exc.value.code == "AUTHENTICATION_ERROR"


def test_get_ticket_server_error():
    """
    Any other non-2xx response raises ExternalServiceError with the status.
    """
    client, _ = _client(lambda m, u, kw: FakeResponse(500, reason="Server Error"))
    with pytest.raises(ExternalServiceError) as exc:
        client.get_ticket("1")
    assert "500" in exc.value.message
    assert exc.value.status_code == 502


def test_get_ticket_timeout():
    """
    A timeout is reported as an ExternalServiceError.
    """
    def handler(method, url, kwargs):
        raise requests.Timeout("slow")

    client, _ = _client(handler)
    with pytest.raises(ExternalServiceError, match="timed out"):
        client.get_ticket("1")


# ----------------------------
# Unit Test: Status mapping and customer info
# ----------------------------
def test_map_status_code():
    """
    Known codes map to labels, unknown codes to their decimal string.
    """
    client, _ = _client(lambda m, u, kw: FakeResponse(200))
    assert client.map_status_code(2) == "Open"
    assert client.map_status_code(7) == "Waiting on Third Party"
    assert client.map_status_code(42) == "42"
    assert client.map_status_code(None) is None


def test_from_config_reads_status_table(cfg):
    """
    The status table and timeout come from settings.toml.
    """
    settings = type("S", (), {"freshdesk_subdomain": "acme", "freshdesk_api_key": "k", "vids_field_key": None})()
    client = FreshdeskClient.from_config(settings, cfg, session=FakeSession(lambda m, u, kw: FakeResponse()))
    assert client.map_status_code(5) == "Closed"
    assert client.timeout == cfg["timeouts"]["freshdesk"]
    assert client.vids_field_key == "cf_vids_associated"


@pytest.mark.parametrize("requester, expected", [
    (Requester(name="Ada", email="ada@example.com"), "Ada <ada@example.com>"),
    (Requester(name="Ada"), "Ada"),
    (Requester(email="ada@example.com"), "<ada@example.com>"),
    (Requester(), None),
    (None, None),
])
def test_format_customer_information(requester, expected):
    """
    Customer information renders whichever of name and email is present.
    """
    assert format_customer_information(requester) == expected


# ----------------------------
# Unit Test: Text sources and transcript
# ----------------------------
def test_ticket_text_includes_custom_field():
    """
    The configured custom field is exposed alongside the free-text sources.
    """
    client, _ = _client(lambda m, u, kw: FakeResponse(200))
    text = client.ticket_text(FreshdeskTicket.model_validate(TICKET_PAYLOAD))
    assert text.custom_field == "2345678901"
    assert text.description == "Unit 1234567890 does not power on"
    assert text.conversation_bodies == ["Customer sent photos", "Checked warranty"]


def test_transcript_layout():
    """
    The transcript carries subject, description, metadata and conversation
    lines tagged with sender and internal notes.
    """
    client, _ = _client(lambda m, u, kw: FakeResponse(200))
    transcript = client.build_transcript(FreshdeskTicket.model_validate(TICKET_PAYLOAD))

    assert transcript.startswith("TICKET SUBJECT: Charger dead on arrival")
    assert "INITIAL DESCRIPTION: Unit 1234567890 does not power on" in transcript
    assert "TICKET INFO: Status: Open, Created: 2024-03-01T10:00:00Z" in transcript
    assert "Message 1 (from: ada@example.com): Customer sent photos" in transcript
    assert "Message 2 (from: agent@example.com) [INTERNAL]: Checked warranty" in transcript


def test_transcript_is_bounded():
    """
    Long entries are truncated, only recent conversations are kept and the
    whole transcript respects the overall cap.
    """
    client, _ = _client(
        lambda m, u, kw: FakeResponse(200),
        transcript_max_chars=800,
        transcript_entry_max_chars=50,
        transcript_max_conversations=3,
    )
    ticket = FreshdeskTicket(
        subject="s",
        conversations=[Conversation(body_text=f"entry-{i} " + "x" * 100) for i in range(6)],
    )
    transcript = client.build_transcript(ticket)

    assert "entry-0" not in transcript
    assert "entry-3" in transcript and "entry-5" in transcript
    assert "x" * 60 not in transcript
    assert "..." in transcript
    assert len(transcript) <= 800

    tiny, _ = _client(lambda m, u, kw: FakeResponse(200), transcript_max_chars=10)
    assert len(tiny.build_transcript(ticket)) == 10
