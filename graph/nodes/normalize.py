from graph.state import LeadState
from tools.field_mapper import FieldMapper
from loguru import logger

def normalize(state: LeadState, mapper: FieldMapper) -> LeadState:
    """Map the raw payload onto the canonical contact record."""
    logger.info(f"Starting normalization for lead: {state.get('lead_id', 'unknown')}")

    result = mapper.map(state.get("raw", {}), state.get("overrides"))
    state["mapping"] = result
    state["record"] = dict(result.record)
    state["warnings"] = list(result.warnings)

    if not result.is_valid:
        state.setdefault("errors", []).extend(
            f"{e.field}: {e.reason}" for e in result.errors
        )
        state["decided_path"] = "rejected"
        logger.warning(f"Validation failed for {state.get('lead_id')}: {[e.field for e in result.errors]}")
    else:
        logger.info(
            f"Mapped {len(result.mapped_fields)} fields with {len(result.warnings)} warning(s) "
            f"for {state.get('lead_id')}"
        )

    return state
