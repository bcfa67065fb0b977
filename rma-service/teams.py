"""
Teams Conversation Search
=========================

Overview
--------
Looks for Microsoft Teams chat messages that mention the device identifiers
found on an RMA ticket. The Microsoft Graph API is reached with one of two
credentials:

- UserCredential      a delegated token from a signed-in user. Every
                      identifier is searched in its own job and the jobs run
                      concurrently.
- ServiceCredential   an application registration. An app token is obtained
                      with the client-credentials flow, cached, and used to
                      read the chats of a configured user within a trailing
                      time window. Only reserved-prefix identifiers are
                      searched in this mode.

Message bodies are HTML. They are stripped to text, lower-cased and matched
against several renderings of each identifier (compact, spaced, dashed,
dotted).

Runtime Contract
----------------
    TeamsSearch.search(identifiers, credential) -> SearchOutcome

Nothing is raised to the caller. A chat that fails to load is skipped, a
failed identifier becomes a "not performed" result, and any other failure
turns into a summary describing the error.
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Standard libraries
import html                                              # Entity unescaping for message bodies
import logging                                           # Module logger
import re                                                # Tag stripping and whitespace collapsing
import threading                                         # Guards the application token cache
import time                                              # Monotonic clock for token expiry
from concurrent.futures import ThreadPoolExecutor        # Concurrent per-identifier searches
from dataclasses import dataclass, field                 # Result containers
from datetime import datetime, timedelta, timezone       # Trailing search window
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union

# Third-party libraries
import requests                                          # Synchronous HTTP client for Graph and the token endpoint

# Local modules
from errors import AuthenticationError, ExternalServiceError
from extractor import RESERVED_PREFIX, is_reserved_prefix_id, search_variants

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_PAGE_MAX = 50

_TAG_RX = re.compile(r"<[^>]*>")
_WHITESPACE_RX = re.compile(r"\s+")

# -----------------------------------------------------------------------------
# Credentials
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class UserCredential:
    """Delegated Graph token obtained by the signed-in user."""
    access_token: str
    kind: ClassVar[str] = "delegated"


@dataclass(frozen=True)
class ServiceCredential:
    """
    Application registration used for the client-credentials flow.

    `user_id` names the mailbox (id or user principal name) whose chats are
    read with the application token.
    """
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    user_id: Optional[str] = None
    kind: ClassVar[str] = "service"

    @property
    def configured(self) -> bool:
        return all((self.tenant_id, self.client_id, self.client_secret, self.user_id))

    @classmethod
    def from_settings(cls, settings) -> "ServiceCredential":
        return cls(
            tenant_id=settings.microsoft_tenant_id,
            client_id=settings.microsoft_client_id,
            client_secret=settings.microsoft_client_secret,
            user_id=settings.teams_search_user_id,
        )


Credential = Union[UserCredential, ServiceCredential]

# -----------------------------------------------------------------------------
# Result models
# -----------------------------------------------------------------------------

@dataclass
class MessageHit:
    id: Optional[str]
    sender: str
    sender_email: str
    content: str
    created_at: Optional[str]
    message_type: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "fromEmail": self.sender_email,
            "content": self.content,
            "createdDateTime": self.created_at,
            "messageType": self.message_type,
        }


@dataclass
class ChatHit:
    chat_id: str
    chat_topic: str
    chat_type: str
    messages_found: int
    messages: List[MessageHit] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chatId": self.chat_id,
            "chatTopic": self.chat_topic,
            "chatType": self.chat_type,
            "messagesFound": self.messages_found,
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class DeviceSearchResult:
    """Outcome of searching the chats for one identifier."""
    device_id: str
    search_performed: bool
    chats_searched: int = 0
    total_chats: int = 0
    chats: List[ChatHit] = field(default_factory=list)
    summary: str = ""
    error: Optional[str] = None

    @property
    def total_messages(self) -> int:
        return sum(c.messages_found for c in self.chats)

    @classmethod
    def not_performed(cls, device_id: str, summary: str, error: Optional[str] = None) -> "DeviceSearchResult":
        return cls(device_id=device_id, search_performed=False, summary=summary, error=error)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "searchPerformed": self.search_performed,
            "deviceId": self.device_id,
            "chatsSearched": self.chats_searched,
            "totalChats": self.total_chats,
            "matchingChats": len(self.chats),
            "totalMessages": self.total_messages,
            "results": [c.to_dict() for c in self.chats],
            "summary": self.summary,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class SearchOutcome:
    """What the processor persists: per-identifier results and one summary."""
    results: Optional[List[Dict[str, Any]]]
    summary: Optional[str]

# -----------------------------------------------------------------------------
# Text helpers
# -----------------------------------------------------------------------------

def clean_message_content(content: str) -> str:
    """Strip HTML tags, unescape entities and collapse whitespace."""
    if not content:
        return ""
    text = html.unescape(_TAG_RX.sub(" ", content)).replace("\xa0", " ")
    return _WHITESPACE_RX.sub(" ", text).strip()


def message_matches(message: Dict[str, Any], variants: List[str]) -> bool:
    content = clean_message_content(((message.get("body") or {}).get("content")) or "").lower()
    return bool(content) and any(v in content for v in variants)


def chat_display_name(chat: Dict[str, Any]) -> str:
    if chat.get("topic"):
        return chat["topic"]
    others = [m for m in chat.get("members") or [] if "owner" not in (m.get("roles") or [])]
    if others:
        return f"Chat with {others[0].get('displayName') or 'Unknown'}"
    return "Direct Chat"


def _to_message_hit(message: Dict[str, Any]) -> MessageHit:
    user = ((message.get("from") or {}).get("user")) or {}
    return MessageHit(
        id=message.get("id"),
        sender=user.get("displayName") or "Unknown User",
        sender_email=user.get("userPrincipalName") or user.get("email") or "",
        content=clean_message_content(((message.get("body") or {}).get("content")) or ""),
        created_at=message.get("createdDateTime"),
        message_type=message.get("messageType") or "message",
    )


def summarize_device_search(device_id: str, chats: List[ChatHit], chats_searched: int,
                            total_chats: int, preview_length: int = 100) -> str:
    """
    Human-readable summary for one identifier.

    Lists up to three chat names with an overflow count and previews the most
    recent matching message. `chats` must be ordered most recent first.
    """
    if not chats:
        return (f"No Teams messages found for device {device_id}. "
                f"Searched {chats_searched} of {total_chats} accessible chats.")

    total_messages = sum(c.messages_found for c in chats)
    chat_list = ", ".join(c.chat_topic for c in chats[:3])

    summary = f"Found {total_messages} message(s) mentioning device {device_id} across {len(chats)} chat(s).\n\n"
    if len(chats) <= 3:
        summary += f"Found in: {chat_list}"
    else:
        summary += f"Found in: {chat_list} and {len(chats) - 3} other chat(s)"

    recent = chats[0].messages[0] if chats[0].messages else None
    if recent:
        summary += f'\n\nMost recent: "{recent.content[:preview_length]}..." - {recent.sender}'

    summary += f"\n\nSearched {chats_searched} of {total_chats} accessible chats."
    return summary

# -----------------------------------------------------------------------------
# Graph access
# -----------------------------------------------------------------------------

class GraphClient:
    """Bearer-token GET access to Microsoft Graph with nextLink paging."""

    def __init__(self, access_token: str, timeout: float = 10, session: Optional[requests.Session] = None,
                 base_url: str = GRAPH_BASE_URL):
        self.access_token = access_token
        self.timeout = timeout
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            resp = self.session.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout,
            )
        except requests.Timeout as err:
            raise ExternalServiceError("Microsoft Graph", f"request timed out after {self.timeout}s") from err
        except requests.RequestException as err:
            raise ExternalServiceError("Microsoft Graph", str(err)) from err

        if resp.status_code in (401, 403):
            raise AuthenticationError("Microsoft Graph", f"access denied ({resp.status_code})")
        if not resp.ok:
            raise ExternalServiceError("Microsoft Graph", f"{resp.status_code} - {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as err:
            raise ExternalServiceError("Microsoft Graph", f"invalid JSON: {err}") from err

    def collect(self, path: str, params: Optional[Dict[str, Any]] = None, limit: int = GRAPH_PAGE_MAX) -> List[Dict[str, Any]]:
        """Follow @odata.nextLink until `limit` items were read."""
        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = path
        while next_url and len(items) < limit:
            data = self.get(next_url, params)
            items.extend(data.get("value") or [])
            next_url = data.get("@odata.nextLink")
            params = None
        return items[:limit]

# -----------------------------------------------------------------------------
# Chat scanning
# -----------------------------------------------------------------------------

def _created_key(message: Dict[str, Any]) -> str:
    return message.get("createdDateTime") or ""


class ChatScanner:
    """
    Scan a set of chats for messages that mention one identifier.

    Parameters
    ----------
    graph : GraphClient
        Authenticated Graph access.
    chats_path : str
        Endpoint listing chats, e.g. "/me/chats".
    messages_path : str
        Endpoint template listing messages, formatted with `chat_id`.
    message_params : callable
        Returns the query parameters for one page of messages.
    """

    def __init__(self, graph: GraphClient, chats_path: str, messages_path: str,
                 message_params: Callable[[int], Dict[str, Any]], max_chats: int,
                 messages_per_chat: int, max_messages: int, messages_per_result: int = 5,
                 preview_length: int = 100):
        self.graph = graph
        self.chats_path = chats_path
        self.messages_path = messages_path
        self.message_params = message_params
        self.max_chats = max_chats
        self.messages_per_chat = messages_per_chat
        self.max_messages = max_messages
        self.messages_per_result = messages_per_result
        self.preview_length = preview_length

    def list_chats(self) -> List[Dict[str, Any]]:
        params = {"$top": min(self.max_chats, GRAPH_PAGE_MAX), "$expand": "members"}
        return self.graph.collect(self.chats_path, params=params, limit=self.max_chats)

    def scan(self, device_id: str, chats: Optional[List[Dict[str, Any]]] = None) -> DeviceSearchResult:
        variants = search_variants(device_id)
        if chats is None:
            try:
                chats = self.list_chats()
            except ExternalServiceError as err:
                logger.error("Could not list Teams chats for %s: %s", device_id, err)
                return DeviceSearchResult.not_performed(device_id, f"Teams search failed: {err}", str(err))

        hits: List[ChatHit] = []
        searched = 0
        scanned = 0
        for chat in chats:
            if scanned >= self.max_messages:
                break
            chat_id = chat.get("id")
            if not chat_id:
                continue
            searched += 1
            budget = min(self.messages_per_chat, self.max_messages - scanned)
            try:
                messages = self.graph.collect(
                    self.messages_path.format(chat_id=chat_id),
                    params=self.message_params(budget),
                    limit=budget,
                )
            except ExternalServiceError as err:
                logger.warning("Could not access messages in chat %s: %s", chat_id, err)
                continue

            scanned += len(messages)
            matching = sorted((m for m in messages if message_matches(m, variants)), key=_created_key, reverse=True)
            if matching:
                hits.append(ChatHit(
                    chat_id=chat_id,
                    chat_topic=chat_display_name(chat),
                    chat_type=chat.get("chatType") or "oneOnOne",
                    messages_found=len(matching),
                    messages=[_to_message_hit(m) for m in matching[:self.messages_per_result]],
                ))

        hits.sort(key=lambda c: (c.messages[0].created_at or "") if c.messages else "", reverse=True)
        logger.info("Searched %d chats, found %d messages mentioning %s",
                    searched, sum(c.messages_found for c in hits), device_id)
        return DeviceSearchResult(
            device_id=device_id,
            search_performed=True,
            chats_searched=searched,
            total_chats=len(chats),
            chats=hits,
            summary=summarize_device_search(device_id, hits, searched, len(chats), self.preview_length),
        )

# -----------------------------------------------------------------------------
# Search modes
# -----------------------------------------------------------------------------

class DelegatedSearch:
    """Search the signed-in user's chats, one concurrent job per identifier."""

    def __init__(self, credential: UserCredential, teams_cfg: dict, timeout: float = 10,
                 session: Optional[requests.Session] = None):
        self.graph = GraphClient(credential.access_token, timeout=timeout, session=session)
        self.scanner = ChatScanner(
            self.graph,
            chats_path="/me/chats",
            messages_path="/me/chats/{chat_id}/messages",
            message_params=lambda budget: {"$top": min(budget, GRAPH_PAGE_MAX)},
            max_chats=teams_cfg["user_max_chats"],
            messages_per_chat=teams_cfg["user_messages_per_chat"],
            max_messages=teams_cfg["max_messages_per_search"],
            messages_per_result=teams_cfg["messages_per_result"],
            preview_length=teams_cfg["preview_length"],
        )

    def search_one(self, device_id: str) -> DeviceSearchResult:
        return self.scanner.scan(device_id)

    def search(self, identifiers: List[str]) -> List[DeviceSearchResult]:
        if not identifiers:
            return []
        results: List[DeviceSearchResult] = []
        with ThreadPoolExecutor(max_workers=len(identifiers), thread_name_prefix="teams-search") as pool:
            futures = [pool.submit(self.search_one, device_id) for device_id in identifiers]
            for device_id, future in zip(identifiers, futures):
                try:
                    results.append(future.result())
                except Exception as err:
                    logger.error("Teams search failed for %s: %s", device_id, err)
                    results.append(DeviceSearchResult.not_performed(device_id, "Teams search failed", str(err)))
        return results


class ServiceSearch:
    """
    Search a configured user's chats with an application token.

    The token is cached on the instance until shortly before it expires, so
    one ServiceSearch should live as long as the service.
    """

    def __init__(self, credential: ServiceCredential, teams_cfg: dict, timeout: float = 10,
                 token_timeout: float = 10, session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.credential = credential
        self.teams_cfg = teams_cfg
        self.timeout = timeout
        self.token_timeout = token_timeout
        self.session = session or requests.Session()
        self._clock = clock
        self._now = now
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def acquire_token(self) -> str:
        with self._lock:
            now = self._clock()
            if self._token and now < self._expires_at:
                return self._token

            url = TOKEN_URL.format(tenant_id=self.credential.tenant_id)
            data = {
                "client_id": self.credential.client_id,
                "client_secret": self.credential.client_secret,
                "scope": GRAPH_SCOPE,
                "grant_type": "client_credentials",
            }
            try:
                resp = self.session.post(url, data=data, timeout=self.token_timeout)
            except requests.RequestException as err:
                raise AuthenticationError("Microsoft Teams", f"token request failed: {err}") from err
            if not resp.ok:
                raise AuthenticationError("Microsoft Teams", f"token request failed: {resp.status_code}")

            try:
                payload = resp.json()
            except ValueError as err:
                raise AuthenticationError("Microsoft Teams", f"token response was not JSON: {err}") from err
            token = payload.get("access_token")
            if not token:
                raise AuthenticationError("Microsoft Teams", "token response did not include an access token")

            self._token = token
            self._expires_at = now + max(int(payload.get("expires_in", 3600)) - 60, 0)
            return token

    def _message_params(self, budget: int) -> Dict[str, Any]:
        since = self._now() - timedelta(days=30 * self.teams_cfg["search_months_back"])
        return {
            "$top": min(budget, GRAPH_PAGE_MAX),
            "$orderby": "createdDateTime desc",
            "$filter": f"createdDateTime gt {since.strftime('%Y-%m-%dT%H:%M:%SZ')}",
        }

    def search(self, identifiers: List[str]) -> List[DeviceSearchResult]:
        try:
            token = self.acquire_token()
        except AuthenticationError as err:
            logger.error("Microsoft Teams authentication failed: %s", err)
            return [DeviceSearchResult.not_performed(d, f"Teams search failed: {err}", str(err)) for d in identifiers]

        cfg = self.teams_cfg
        scanner = ChatScanner(
            GraphClient(token, timeout=self.timeout, session=self.session),
            chats_path=f"/users/{self.credential.user_id}/chats",
            messages_path="/chats/{chat_id}/messages",
            message_params=self._message_params,
            max_chats=cfg["service_max_chats"],
            messages_per_chat=cfg["service_messages_per_chat"],
            max_messages=cfg["max_messages_per_search"],
            messages_per_result=cfg["messages_per_result"],
            preview_length=cfg["preview_length"],
        )
        return [scanner.scan(device_id) for device_id in identifiers]

# -----------------------------------------------------------------------------
# Entry point used by the processor
# -----------------------------------------------------------------------------

class TeamsSearch:
    """
    Dispatch a search to the implementation matching the credential kind and
    fold the per-identifier results into a SearchOutcome.

    Parameters
    ----------
    teams_cfg : dict
        [teams] section of settings.toml.
    timeouts : dict
        [timeouts] section of settings.toml (teams, token).
    max_search_terms : int
        Upper bound on the identifiers searched per request.
    session : requests.Session, optional
        Shared by every Graph and token call made through this instance.
    """

    def __init__(self, teams_cfg: dict, timeouts: dict, max_search_terms: int = 10,
                 session: Optional[requests.Session] = None):
        self.teams_cfg = teams_cfg
        self.timeout = timeouts.get("teams", 10)
        self.token_timeout = timeouts.get("token", 10)
        self.max_search_terms = max_search_terms
        self.session = session or requests.Session()
        self._service_searches: Dict[ServiceCredential, ServiceSearch] = {}
        self._lock = threading.Lock()
        self._modes = {
            UserCredential.kind: self._search_delegated,
            ServiceCredential.kind: self._search_service,
        }

    def delegated(self, credential: UserCredential) -> DelegatedSearch:
        return DelegatedSearch(credential, self.teams_cfg, timeout=self.timeout, session=self.session)

    def service(self, credential: ServiceCredential) -> ServiceSearch:
        with self._lock:
            if credential not in self._service_searches:
                self._service_searches[credential] = ServiceSearch(
                    credential, self.teams_cfg, timeout=self.timeout,
                    token_timeout=self.token_timeout, session=self.session,
                )
            return self._service_searches[credential]

    def search(self, identifiers: List[str], credential: Credential) -> SearchOutcome:
        terms = list(identifiers)[:self.max_search_terms]
        try:
            return self._modes[credential.kind](terms, credential)
        except Exception as err:
            logger.error("Teams search failed: %s", err)
            return SearchOutcome(results=None, summary=f"Teams search attempted but failed: {err}")

    def _search_delegated(self, terms: List[str], credential: UserCredential) -> SearchOutcome:
        results = self.delegated(credential).search(terms)
        if results and not any(r.search_performed for r in results):
            first_error = next((r.error for r in results if r.error), "search not performed")
            return SearchOutcome(
                results=[r.to_dict() for r in results],
                summary=f"Teams search attempted but failed: {first_error}",
            )

        with_hits = [r for r in results if r.chats]
        if not with_hits:
            return SearchOutcome(
                results=None,
                summary=("Teams search performed with user authentication but no messages found "
                         f"for device IDs: {', '.join(terms)}"),
            )
        total = sum(r.total_messages for r in results)
        chats = sum(len(r.chats) for r in results)
        return SearchOutcome(
            results=[r.to_dict() for r in results],
            summary=(f"Teams search performed with user authentication. Found {total} message(s) "
                     f"across {chats} chat(s) for device IDs: {', '.join(terms)}"),
        )

    def _search_service(self, terms: List[str], credential: ServiceCredential) -> SearchOutcome:
        if not credential.configured:
            return SearchOutcome(results=None, summary="Microsoft Teams credentials not configured - search skipped")

        searchable = [t for t in terms if is_reserved_prefix_id(t)]
        if not searchable:
            return SearchOutcome(
                results=None,
                summary=f"No {RESERVED_PREFIX} device IDs found to search in Teams (skipped: {', '.join(terms)})",
            )

        results = self.service(credential).search(searchable)
        return SearchOutcome(
            results=[r.to_dict() for r in results],
            summary="\n\n---\n\n".join(r.summary for r in results),
        )
