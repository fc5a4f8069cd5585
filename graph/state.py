from typing import TypedDict, Optional, List, Dict, Any

class LeadState(TypedDict, total=False):
    """State shape for the lead intake workflow."""
    lead_id: str
    request_id: str
    source: str                      # "yelp" | "facebook" | "google" | "website" | "email" | ...
    raw: Dict[str, Any]              # inbound payload, stamped with source/receivedAt/requestId
    forward: bool                    # False skips CRM delivery (test endpoint, forwarding disabled)
    overrides: Dict[str, Any]        # per-call FieldMapper rule overrides
    mapping: Any                     # tools.field_mapper.MappingResult
    record: Dict[str, Any]           # canonical contact record
    warnings: List[str]
    score: int                       # 0..100
    priority: str                    # "High" | "Medium" | "Low"
    score_reasons: List[str]
    delivery: Optional[Dict[str, Any]]  # DeliveryResult.to_dict()
    errors: List[str]
    decided_path: str                # "rejected" | "forwarded" | "queued" | "failed" | "skipped"
