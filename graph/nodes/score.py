import re
from typing import List, Tuple

from graph.state import LeadState
from loguru import logger

WEIGHTS = {
    "phone": 20,
    "email": 15,
    "name": 10,
    "address": 10,
    "service": 15,
    "detailed_notes": 10,
    "long_notes": 5,
    "urgency": 25,
    "preferred_source": 15,
}

URGENT_KEYWORDS = ("urgent", "asap", "emergency", "leak", "damage", "immediately", "help")
URGENT_LEVELS = ("emergency", "urgent", "high")
PREFERRED_SOURCES = ("yelp",)

HIGH_PRIORITY_ABOVE = 70
MEDIUM_PRIORITY_ABOVE = 40


def rule_score(record: dict) -> Tuple[int, List[str]]:
    """Weighted sum over the canonical record, capped at 100."""
    score = 0
    reasons = []

    def add(key: str, reason: str):
        nonlocal score
        score += WEIGHTS[key]
        reasons.append(f"{reason} (+{WEIGHTS[key]})")

    # Contact completeness
    phone = str(record.get("phone") or "")
    if len(re.sub(r"\D", "", phone)) >= 10:
        add("phone", "Valid phone number")
    if "@" in str(record.get("email") or ""):
        add("email", "Valid email address")
    name = f"{record.get('firstName', '')} {record.get('lastName', '')}".strip()
    if len(name) > 2:
        add("name", "Name provided")
    if len(str(record.get("address") or "")) > 10:
        add("address", "Property address provided")

    # Service interest
    if record.get("serviceType"):
        add("service", f"Service requested: {record['serviceType']}")

    # Message quality
    notes = str(record.get("notes") or "")
    if len(notes) > 20:
        add("detailed_notes", "Detailed message")
    if len(notes) > 100:
        add("long_notes", "Long message")

    # Urgency
    lowered = notes.lower()
    if str(record.get("urgency") or "").lower() in URGENT_LEVELS or any(k in lowered for k in URGENT_KEYWORDS):
        add("urgency", "Urgent request")

    if str(record.get("source") or "").lower() in PREFERRED_SOURCES:
        add("preferred_source", f"High-quality source: {record['source']}")

    return min(score, 100), reasons


def priority_for(score: float) -> str:
    if score > HIGH_PRIORITY_ABOVE:
        return "High"
    if score > MEDIUM_PRIORITY_ABOVE:
        return "Medium"
    return "Low"


def score(state: LeadState) -> LeadState:
    """Score the canonical record and set the lead's priority."""
    logger.info(f"Starting scoring for lead: {state.get('lead_id', 'unknown')}")

    record = state.get("record", {})
    computed, reasons = rule_score(record)

    # A score supplied by the source wins over the computed one
    provided = record.get("leadScore")
    final_score = provided if provided is not None else computed
    if provided is not None:
        reasons = [f"Score provided by source: {provided}"]
    else:
        record["leadScore"] = computed

    state["score"] = final_score
    state["score_reasons"] = reasons
    state["priority"] = priority_for(final_score)
    record["priority"] = state["priority"]
    state["record"] = record

    logger.info(f"Final score: {final_score} ({state['priority']}) for {state.get('lead_id')}")
    return state
