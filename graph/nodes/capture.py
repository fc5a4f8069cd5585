from graph.state import LeadState
from loguru import logger

def capture(state: LeadState) -> LeadState:
    """Stamp request metadata on the inbound payload and assign a lead id."""
    raw = dict(state.get("raw") or {})
    source = state.get("source") or raw.get("source") or "unknown"
    request_id = state.get("request_id", "")

    logger.info(f"Starting capture for request {request_id} from {source}")

    raw.setdefault("source", source)
    raw.setdefault("requestId", request_id)
    state["raw"] = raw
    state["source"] = source
    state.setdefault("errors", [])
    state.setdefault("forward", True)

    email = raw.get("email") or raw.get("emailAddress") or raw.get("email_address")
    state["lead_id"] = raw.get("id") or raw.get("lead_id") or request_id or email or "unknown"

    logger.info(f"Capture completed for {state['lead_id']}")
    return state
