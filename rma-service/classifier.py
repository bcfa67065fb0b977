"""
Return Reason Classifier
========================

Overview
--------
Asks an OpenAI chat model why a product was returned. The model receives a
fixed system instruction (prompts.classifier_system in settings.toml) and the
ticket transcript, and answers with a labeled block:

    **PRIMARY REASON:** Product Defect
    **SPECIFIC ISSUE:** ...
    **CUSTOMER IMPACT:** ...
    **TIMELINE:** ...
    **ADDITIONAL NOTES:** ...

Runtime Contract
----------------
    ReasonClassifier.classify(transcript: str) -> ReasonAnalysis

`classify` never raises. Transport errors, empty completions and answers
without any recognizable section produce an "API Error" analysis flagged for
manual review.
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Standard libraries
import logging                                           # Module logger
import re                                                # Section header recognition
from dataclasses import dataclass, asdict                # Typed reason breakdown
from typing import Dict, Optional                        # Type hints for clarity and safety

# Third-party libraries
from openai import OpenAI                                # Official OpenAI Python SDK

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Vocabulary
# -----------------------------------------------------------------------------

PRIMARY_REASONS = (
    "Product Defect",
    "Wrong Item",
    "Quality Issue",
    "Installation Problem",
    "Customer Decision",
    "Shipping Damage",
    "Warranty Claim",
    "Other",
)
UNABLE_TO_DETERMINE = "Unable to Determine"
API_ERROR = "API Error"
NOT_SPECIFIED = "Not specified"

# Header label -> ReasonAnalysis attribute
SECTION_FIELDS: Dict[str, str] = {
    "PRIMARY REASON": "primary_reason",
    "SPECIFIC ISSUE": "specific_issue",
    "CUSTOMER IMPACT": "customer_impact",
    "TIMELINE": "timeline",
    "ADDITIONAL NOTES": "additional_notes",
}

_HEADER_RX = re.compile(
    r"^\*\*(" + "|".join(re.escape(k) for k in SECTION_FIELDS) + r"):\*\*\s*(.*)$",
    re.IGNORECASE,
)

# -----------------------------------------------------------------------------
# Data models
# -----------------------------------------------------------------------------

@dataclass
class ReasonAnalysis:
    primary_reason: str = ""
    specific_issue: str = ""
    customer_impact: str = ""
    timeline: str = ""
    additional_notes: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    def is_empty(self) -> bool:
        return not any(self.to_dict().values())


def is_known_reason(primary_reason: str) -> bool:
    """True for one of PRIMARY_REASONS or UNABLE_TO_DETERMINE, ignoring case."""
    known = {r.lower() for r in PRIMARY_REASONS} | {UNABLE_TO_DETERMINE.lower()}
    return (primary_reason or "").strip().lower() in known


def fallback_analysis(detail: str) -> ReasonAnalysis:
    """Analysis returned when the model could not be consulted."""
    return ReasonAnalysis(
        primary_reason=API_ERROR,
        specific_issue=f"OpenAI analysis failed: {detail}",
        customer_impact=NOT_SPECIFIED,
        timeline=NOT_SPECIFIED,
        additional_notes="Manual review required due to AI analysis failure",
    )

# -----------------------------------------------------------------------------
# Response parsing
# -----------------------------------------------------------------------------

def parse_reason_response(text: str) -> ReasonAnalysis:
    """
    Parse the labeled block returned by the model.

    Strategy
    --------
    Scan line by line. A recognized bold header switches the active field and
    seeds it with the rest of the line. Non-header lines are appended to the
    active field with a single space. Lines before the first header are
    dropped. Missing sections stay empty; this function never raises.
    """
    result = ReasonAnalysis()
    current: Optional[str] = None

    for line in (text or "").splitlines():
        stripped = line.strip()
        if not stripped:
            continue

        m = _HEADER_RX.match(stripped)
        if m:
            current = SECTION_FIELDS[m.group(1).upper()]
            setattr(result, current, m.group(2).strip())
            continue

        if current:
            existing = getattr(result, current)
            setattr(result, current, f"{existing} {stripped}" if existing else stripped)

    return result

# -----------------------------------------------------------------------------
# Classifier
# -----------------------------------------------------------------------------

class ReasonClassifier:
    """
    Classify the return reason of an RMA transcript.

    Parameters
    ----------
    client : OpenAI
        SDK client; tests inject a stub exposing `chat.completions.create`.
    general_cfg : dict
        [general] section of settings.toml (model, temperature, max_tokens,
        presence_penalty, frequency_penalty).
    prompts_cfg : dict
        [prompts] section of settings.toml.
    timeout : float
        Seconds before the completion request is abandoned.
    model : str, optional
        Overrides general_cfg["model"], typically from OPENAI_MODEL.
    """

    def __init__(self, client: OpenAI, general_cfg: dict, prompts_cfg: dict,
                 timeout: float = 20, model: Optional[str] = None):
        self.client = client
        self.general_cfg = general_cfg
        self.system_prompt = prompts_cfg["classifier_system"].strip()
        self.user_template = prompts_cfg["classifier_user"].strip()
        self.timeout = timeout
        self.model = model or general_cfg["model"]

    def _render_user_prompt(self, transcript: str) -> str:
        return self.user_template.replace("{{ticket_text}}", transcript or "")

    def _complete(self, transcript: str) -> str:
        g = self.general_cfg
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": self._render_user_prompt(transcript)},
            ],
            temperature=float(g["temperature"]),
            max_tokens=int(g["max_tokens"]),
            presence_penalty=float(g.get("presence_penalty", 0.0)),
            frequency_penalty=float(g.get("frequency_penalty", 0.0)),
            timeout=self.timeout,
        )
        content = resp.choices[0].message.content if resp.choices else None
        content = (content or "").strip()
        if not content:
            raise ValueError("OpenAI returned empty response")
        return content

    def classify(self, transcript: str) -> ReasonAnalysis:
        try:
            raw = self._complete(transcript)
            analysis = parse_reason_response(raw)
            if analysis.is_empty():
                raise ValueError("response did not contain any recognizable section")
            if not is_known_reason(analysis.primary_reason):
                logger.warning("Model returned a primary reason outside the vocabulary: %r",
                               analysis.primary_reason)
            return analysis
        except Exception as err:
            logger.error("OpenAI reason analysis failed: %s", err)
            return fallback_analysis(str(err) or err.__class__.__name__)
