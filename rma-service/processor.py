"""
RMA Processor
=============

Overview
--------
Control unit of the service. Given an RMA number it:

1) Returns the stored record untouched when it is already completed.
2) Upserts a `processing` placeholder for the number.
3) Fetches the Freshdesk ticket. A missing ticket completes the record as
   "Not found".
4) Extracts device identifiers, customer and status fields.
5) Builds the transcript and classifies the return reason.
6) Searches Teams for the identifiers, with the caller's delegated token when
   one is supplied and the service credential otherwise.
7) Saves everything in one update and marks the record completed.

Any exception raised in steps 2-7 marks the record failed with the error text
and is re-raised to the caller.

Concurrency
-----------
Two simultaneous requests for the same number both pass step 1 and both run
the full pipeline; the last update wins.
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Standard libraries
import logging                                           # Module logger
import re                                                # RMA number format
import time                                              # Processing duration
from typing import List, Optional                        # Type hints for clarity and safety

# Local modules
from classifier import ReasonClassifier
from errors import ValidationError
from extractor import extract_device_ids
from freshdesk import FreshdeskClient, format_customer_information
from store import ProcessingStatus, TicketRecord, TicketStore, utcnow
from teams import SearchOutcome, ServiceCredential, TeamsSearch, UserCredential

logger = logging.getLogger(__name__)

NOT_FOUND_STATUS = "Not found"
NOT_FOUND_MESSAGE = "Ticket not found in Freshdesk"
NO_DEVICE_IDS_SUMMARY = "No device IDs found to search in Teams"

_RMA_NUMBER_RX = re.compile(r"[0-9]+")


class RmaProcessor:
    """
    Orchestrates one RMA through Freshdesk, OpenAI, Teams and the store.

    All collaborators are injected so the same instance can be shared by
    every request and replaced by fakes in tests.
    """

    def __init__(
        self,
        store: TicketStore,
        helpdesk: FreshdeskClient,
        classifier: ReasonClassifier,
        searcher: TeamsSearch,
        service_credential: Optional[ServiceCredential] = None,
        max_device_ids: int = 20,
    ):
        self.store = store
        self.helpdesk = helpdesk
        self.classifier = classifier
        self.searcher = searcher
        self.service_credential = service_credential or ServiceCredential()
        self.max_device_ids = max_device_ids

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def process(self, rma_number: str, user_token: Optional[str] = None) -> TicketRecord:
        """
        Process one RMA number and return the stored record.

        Parameters
        ----------
        rma_number : str
            Digits-only RMA number, also the Freshdesk ticket id.
        user_token : str, optional
            Delegated Microsoft Graph token of the signed-in user.

        Raises
        ------
        ValidationError
            The number is not digits only.
        Exception
            Whatever the failing step raised, after the record was marked
            failed.
        """
        if not rma_number or not _RMA_NUMBER_RX.fullmatch(rma_number):
            raise ValidationError(f"Invalid RMA number format: {rma_number!r}")

        started = time.monotonic()
        logger.info("Starting RMA processing rma=%s", rma_number)

        existing = self.store.get_by_number(rma_number)
        if existing is not None and existing.processing_status == ProcessingStatus.COMPLETED:
            logger.info("RMA already processed rma=%s", rma_number)
            return existing

        try:
            record = self.store.upsert_processing(rma_number)

            logger.info("Fetching Freshdesk ticket rma=%s", rma_number)
            ticket = self.helpdesk.get_ticket(rma_number)
            if ticket is None:
                logger.info("RMA marked as not found rma=%s", rma_number)
                return self.store.update(
                    record.id,
                    processing_status=ProcessingStatus.COMPLETED,
                    status=NOT_FOUND_STATUS,
                    error_message=NOT_FOUND_MESSAGE,
                    ticket_date=utcnow(),
                )

            device_ids = extract_device_ids(self.helpdesk.ticket_text(ticket))
            requester = ticket.requester
            customer_information = format_customer_information(requester)
            logger.info("Data extracted rma=%s device_ids=%d customer=%s",
                        rma_number, len(device_ids), customer_information)

            transcript = self.helpdesk.build_transcript(ticket)
            analysis = self.classifier.classify(transcript)
            logger.info("AI analysis complete rma=%s primary_reason=%s", rma_number, analysis.primary_reason)

            search = self._search(device_ids, user_token)

            final = self.store.update(
                record.id,
                processing_status=ProcessingStatus.COMPLETED,
                ticket_date=ticket.created_datetime(),
                customer_name=(requester.name if requester else None) or None,
                customer_email=(requester.email if requester else None) or None,
                customer_information=customer_information,
                status=self.helpdesk.map_status_code(ticket.status),
                source_status_code=ticket.status,
                device_ids=", ".join(device_ids) if device_ids else None,
                primary_reason=analysis.primary_reason,
                specific_issue=analysis.specific_issue,
                customer_impact=analysis.customer_impact,
                timeline=analysis.timeline,
                additional_notes=analysis.additional_notes,
                raw_ticket_data=ticket.model_dump(mode="json"),
                conversation_search_results=search.results,
                conversation_search_summary=search.summary,
                error_message=None,
            )
            logger.info("RMA processed successfully rma=%s elapsed=%.0fms",
                        rma_number, (time.monotonic() - started) * 1000)
            return final

        except Exception as err:
            logger.error("RMA processing failed rma=%s error=%s", rma_number, err)
            self._mark_failed(rma_number, err)
            raise

    def _mark_failed(self, rma_number: str, err: Exception) -> None:
        try:
            current = self.store.get_by_number(rma_number)
            if current is not None:
                self.store.update(current.id, processing_status=ProcessingStatus.FAILED, error_message=str(err))
        except Exception as store_err:
            logger.error("Could not record failure rma=%s error=%s", rma_number, store_err)

    def _search(self, device_ids: List[str], user_token: Optional[str]) -> SearchOutcome:
        if not device_ids:
            return SearchOutcome(results=None, summary=NO_DEVICE_IDS_SUMMARY)

        terms = device_ids[:self.max_device_ids]
        credential = UserCredential(user_token) if user_token else self.service_credential
        logger.info("Starting Teams search terms=%d mode=%s", len(terms), credential.kind)
        return self.searcher.search(terms, credential)

    # -------------------------------------------------------------------------
    # Read / delete
    # -------------------------------------------------------------------------

    def list_tickets(self, limit: int = 50, offset: int = 0) -> List[TicketRecord]:
        return self.store.list(limit=limit, offset=offset)

    def get_ticket(self, rma_number: str) -> Optional[TicketRecord]:
        return self.store.get_by_number(rma_number)

    def delete_ticket(self, rma_number: str) -> None:
        self.store.delete_by_number(rma_number)
        logger.info("RMA deleted rma=%s", rma_number)
