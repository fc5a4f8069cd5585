import copy

from graph.state import LeadState
from tools.retry import DeliveryClient, RetryEngine
from loguru import logger

async def deliver(state: LeadState, engine: RetryEngine, client: DeliveryClient) -> LeadState:
    """Forward the canonical record to the CRM through the retry engine."""
    lead_id = state.get("lead_id", "unknown")

    if not state.get("forward", True) or client is None:
        logger.info(f"Forwarding skipped for lead: {lead_id}")
        state["delivery"] = None
        state["decided_path"] = "skipped"
        return state

    logger.info(f"Forwarding lead {lead_id} to CRM")

    payload = copy.deepcopy(state.get("record", {}))
    mapping = state.get("mapping")
    if mapping is not None:
        payload["_metadata"] = mapping.metadata()

    result = await engine.execute_with_retry(
        client,
        payload,
        {"headers": {"X-Request-ID": state.get("request_id", lead_id)}},
    )
    state["delivery"] = result.to_dict()

    if result.success:
        state["decided_path"] = "forwarded"
        logger.info(f"Lead {lead_id} forwarded after {result.attempts} attempt(s) in {result.duration}ms")
    else:
        error_type = result.error.get("type") if result.error else "UNKNOWN_ERROR"
        state.setdefault("errors", []).append(f"delivery_failed: {error_type}")
        state["decided_path"] = "queued" if result.queued else "failed"
        logger.error(f"Forwarding lead {lead_id} failed ({error_type}), path={state['decided_path']}")

    return state
