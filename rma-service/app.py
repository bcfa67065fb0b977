"""
RMA Ticket Enrichment Service
=============================

Overview
--------
Web API that turns an RMA number into an enriched ticket record. Each
request runs the processor pipeline: Freshdesk fetch, device identifier
extraction, return-reason classification with an OpenAI model, an optional
Microsoft Teams search for the identifiers, and persistence of the result.

Scope
-----
1) Process an RMA number (idempotent once completed).
2) Read, list and delete stored records.
3) Search Teams for one device id with a delegated user token.

Design Principles
-----------------
- Behavior, prompts and limits externalized in `prompts/settings.toml`
- Secrets from the environment (`.env` supported)
- Collaborators built once per process and injected with FastAPI `Depends`
- Every error rendered as `{error, details?, code?}`

Endpoints
---------
POST   /api/rma/process          {rmaNumber, userCredential?} -> {success, ticket, message}
GET    /api/rma                  ?limit&offset -> {tickets, pagination} | ?rma=<n> -> {ticket}
GET    /api/rma/{rmaNumber}      -> {ticket}
DELETE /api/rma/{rmaNumber}      -> {success, message}
POST   /api/teams/search         {deviceId, accessToken} -> search result
GET    /health                   -> {ok: true}

Usage
-----
    python app.py                 start the Web API
    python app.py --cli 12345     process one RMA from the console
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Standard libraries
import os                                                # Environment variables
import sys                                               # Command-line mode selection
import logging                                           # Service-wide logging setup
from functools import lru_cache                          # Build collaborators once per process
from typing import Optional                              # Type hints for clarity and safety

# Third-party libraries
from dotenv import load_dotenv                           # Load environment variables
from openai import OpenAI                                # Official OpenAI Python SDK
from rich import print, print_json                       # Styled console output for the CLI mode
from rich.logging import RichHandler                     # Readable log records
from fastapi import Depends, FastAPI, Path, Query, Request  # Web API framework
from fastapi.exceptions import RequestValidationError    # Request validation failures
from fastapi.responses import JSONResponse               # Structured error bodies
from pydantic import AliasChoices, BaseModel, Field, field_validator  # Request schemas
import uvicorn                                           # ASGI server for running FastAPI apps

# Local modules
from classifier import ReasonClassifier
from config import Settings, cached_config, validate_environment
from errors import AppError, NotFoundError, ValidationError
from freshdesk import FreshdeskClient
from processor import RmaProcessor
from store import TicketStore
from teams import ServiceCredential, TeamsSearch, UserCredential

# -----------------------------------------------------------------------------
# Configuration bootstrap
# -----------------------------------------------------------------------------

load_dotenv()

RMA_NUMBER_PATTERN = r"^[0-9]+$"
LIMITS = cached_config()["limits"]


def configure_logging(level: Optional[str] = None) -> None:
    """Install a RichHandler at LOG_LEVEL (default INFO) and quiet chatty clients."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    for noisy in ("httpx", "openai", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


configure_logging()
logger = logging.getLogger("rma-service")

# -----------------------------------------------------------------------------
# Collaborators
# -----------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def get_teams_search() -> TeamsSearch:
    cfg = cached_config()
    return TeamsSearch(cfg["teams"], cfg["timeouts"], max_search_terms=cfg["limits"]["max_search_terms"])


@lru_cache(maxsize=1)
def get_processor() -> RmaProcessor:
    """
    Build the processor and its collaborators once per process.

    Raises
    ------
    RuntimeError
        When required environment variables are missing.
    """
    validate_environment()
    cfg = cached_config()
    settings = get_settings()

    store = TicketStore.from_url(settings.database_url or cfg["database"]["default_url"])
    classifier = ReasonClassifier(
        OpenAI(api_key=settings.openai_api_key),
        cfg["general"],
        cfg["prompts"],
        timeout=cfg["timeouts"]["openai"],
        model=settings.openai_model,
    )
    return RmaProcessor(
        store=store,
        helpdesk=FreshdeskClient.from_config(settings, cfg),
        classifier=classifier,
        searcher=get_teams_search(),
        service_credential=ServiceCredential.from_settings(settings),
        max_device_ids=cfg["limits"]["max_device_ids"],
    )

# -----------------------------------------------------------------------------
# Request schemas
# -----------------------------------------------------------------------------

class ProcessIn(BaseModel):
    rma_number: str = Field(
        validation_alias=AliasChoices("rmaNumber", "rma_number"),
        min_length=1,
        pattern=RMA_NUMBER_PATTERN,
    )
    user_credential: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("userCredential", "teamsAccessToken"),
    )

    @field_validator("rma_number", mode="before")
    @classmethod
    def _coerce_number(cls, value):
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value.strip() if isinstance(value, str) else value


class TeamsSearchIn(BaseModel):
    device_id: str = Field(validation_alias=AliasChoices("deviceId", "device_id"), min_length=1)
    access_token: str = Field(validation_alias=AliasChoices("accessToken", "access_token"), min_length=1)

# -----------------------------------------------------------------------------
# Web application and error handlers
# -----------------------------------------------------------------------------

app = FastAPI(title="RMA Ticket Enrichment Service")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = ", ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ())[1:])}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"error": "Validation failed", "details": details, "code": "VALIDATION_ERROR"},
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("API error %s: %s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = {"error": "Internal server error"}
    if get_settings().is_development:
        body["details"] = str(exc)[:500]
    return JSONResponse(status_code=500, content=body)

# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------

@app.get("/health")
def health() -> dict:
    return {"ok": True}


@app.post("/api/rma/process")
def process_rma(req: ProcessIn, processor: RmaProcessor = Depends(get_processor)) -> dict:
    """
    Process one RMA number.

    A completed record is returned as stored. Otherwise the full pipeline
    runs; failures are recorded on the ticket and surfaced as an error body.
    """
    ticket = processor.process(req.rma_number, req.user_credential)
    return {
        "success": True,
        "ticket": ticket.to_api(),
        "message": f"RMA {req.rma_number} processed successfully",
    }


@app.get("/api/rma")
def list_rma(
    limit: int = Query(LIMITS["default_page_size"], ge=1, le=LIMITS["max_page_size"]),
    offset: int = Query(0, ge=0),
    rma: Optional[str] = Query(None, pattern=RMA_NUMBER_PATTERN),
    processor: RmaProcessor = Depends(get_processor),
) -> dict:
    if rma:
        ticket = processor.get_ticket(rma)
        if ticket is None:
            raise NotFoundError("RMA ticket")
        return {"ticket": ticket.to_api()}

    tickets = processor.list_tickets(limit=limit, offset=offset)
    return {
        "tickets": [t.to_api() for t in tickets],
        "pagination": {
            "limit": limit,
            "offset": offset,
            "count": len(tickets),
            "hasMore": len(tickets) == limit,
        },
    }


@app.get("/api/rma/{rma_number}")
def get_rma(
    rma_number: str = Path(pattern=RMA_NUMBER_PATTERN),
    processor: RmaProcessor = Depends(get_processor),
) -> dict:
    ticket = processor.get_ticket(rma_number)
    if ticket is None:
        raise NotFoundError("RMA ticket")
    return {"ticket": ticket.to_api()}


@app.delete("/api/rma/{rma_number}")
def delete_rma(
    rma_number: str = Path(pattern=RMA_NUMBER_PATTERN),
    processor: RmaProcessor = Depends(get_processor),
) -> dict:
    if processor.get_ticket(rma_number) is None:
        raise NotFoundError("RMA ticket")
    processor.delete_ticket(rma_number)
    return {"success": True, "message": f"RMA {rma_number} deleted successfully"}


@app.post("/api/teams/search")
def teams_search(req: TeamsSearchIn, searcher: TeamsSearch = Depends(get_teams_search)) -> dict:
    """Search the signed-in user's chats for a single device id."""
    result = searcher.delegated(UserCredential(req.access_token)).search_one(req.device_id)
    return result.to_dict()

# -----------------------------------------------------------------------------
# Command-line interface
# -----------------------------------------------------------------------------

def run_cli(rma_number: str, user_token: Optional[str] = None) -> int:
    """Process one RMA from the console and print the stored record."""
    try:
        ticket = get_processor().process(rma_number, user_token)
    except ValidationError as err:
        print(f"[red]{err.message}[/red]")
        return 2
    except Exception as err:
        print(f"[red]Failed to process RMA {rma_number}:[/red] {err}")
        return 1
    print_json(data=ticket.to_api())
    return 0

# -----------------------------------------------------------------------------
# Application entrypoint
# -----------------------------------------------------------------------------

if __name__ == "__main__":
    """
    Determine the execution interface from command-line arguments

    Examples
    --------
    python app.py --cli 12345
        Processes RMA 12345 and prints the record

    python app.py
        Starts the Web API
    """
    if "--cli" in sys.argv:
        args = sys.argv[sys.argv.index("--cli") + 1:]
        if not args:
            print("[yellow]Usage: python app.py --cli <rmaNumber> [userToken][/yellow]")
            sys.exit(2)
        sys.exit(run_cli(args[0], args[1] if len(args) > 1 else None))
    else:
        port = int(os.getenv("PORT", "8000"))
        uvicorn.run("app:app", host="0.0.0.0", port=port)
