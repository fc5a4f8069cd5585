import hashlib
import hmac
import json
import os
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from langgraph.graph import StateGraph, START, END
from dotenv import load_dotenv

from config import Settings, parse_bool
from graph.state import LeadState
from graph.nodes.capture import capture
from graph.nodes.normalize import normalize
from graph.nodes.score import score
from graph.nodes.deliver import deliver
from tools.crm import CrmWebhookClient
from tools.email_parser import EMAIL_RULE_OVERRIDES, parse_lead_email
from tools.field_mapper import FieldMapper
from tools.rate_limit import RateLimitMiddleware
from tools.retry import DeliveryClient, RetryEngine

# Load environment variables
load_dotenv()

VERSION = "1.0.0"
SIGNATURE_HEADERS = ("x-webhook-signature", "x-hub-signature-256", "x-signature")


class PayloadError(Exception):
    """Inbound request carried no usable lead payload."""


class PayloadTooLarge(Exception):
    def __init__(self, limit: int):
        super().__init__(f"Request body exceeds {limit} bytes")
        self.limit = limit


# log file path -> loguru sink id
_log_sinks: Dict[str, int] = {}


def configure_logging(settings: Settings) -> None:
    """Add the rotating file sink once per log file path."""
    if not settings.log_file or settings.log_file in _log_sinks:
        return
    _log_sinks[settings.log_file] = logger.add(
        settings.log_file, rotation="1 day", retention="7 days", level=settings.log_level
    )


def generate_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of an HMAC-SHA256 hex signature, with or without a ``sha256=`` prefix."""
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


async def read_body(request: Request, limit: int) -> bytes:
    """Read the request body, refusing anything over ``limit`` bytes."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise PayloadTooLarge(limit)

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise PayloadTooLarge(limit)
    return bytes(body)


def extract_payload(body: bytes, query: Dict[str, str]) -> Dict[str, Any]:
    """JSON object body first, then url-encoded form body, then query parameters."""
    text = body.decode("utf-8", errors="replace").strip() if body else ""

    if text:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            if data:
                return data
        elif data is None:
            form = dict(parse_qsl(text, keep_blank_values=False))
            if form:
                return form

    if query:
        return dict(query)

    raise PayloadError("No lead data found in request body or query parameters")


class RelayMetrics:
    """Request counters for the relay itself; delivery metrics live on the RetryEngine."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.started = time.monotonic()
        self.started_at = datetime.now(timezone.utc)
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.by_source: Counter = Counter()
        self.by_endpoint: Counter = Counter()

    def record(self, endpoint: str, source: Optional[str], success: bool) -> None:
        self.total_requests += 1
        self.by_endpoint[endpoint] += 1
        if source:
            self.by_source[source] += 1
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started

    def snapshot(self) -> Dict[str, Any]:
        uptime = self.uptime
        total = self.total_requests
        return {
            "total_requests": total,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": round(self.successful_requests / total * 100, 2) if total else 0.0,
            "requests_per_minute": round(total / (uptime / 60), 2) if uptime > 0 else 0.0,
            "by_source": dict(self.by_source),
            "by_endpoint": dict(self.by_endpoint),
            "started_at": self.started_at.isoformat(),
            "uptime": round(uptime, 3),
        }


# Build the LangGraph workflow
def build_workflow(mapper: FieldMapper, engine: RetryEngine, client: Optional[DeliveryClient]):
    """Build the lead processing workflow."""
    workflow = StateGraph(LeadState)

    def normalize_node(state: LeadState) -> LeadState:
        return normalize(state, mapper)

    async def deliver_node(state: LeadState) -> LeadState:
        return await deliver(state, engine, client)

    # Add nodes
    workflow.add_node("capture", capture)
    workflow.add_node("normalize", normalize_node)
    workflow.add_node("score", score)
    workflow.add_node("deliver", deliver_node)

    # Add edges
    workflow.add_edge(START, "capture")
    workflow.add_edge("capture", "normalize")

    def validation_decision(state: LeadState) -> str:
        if state.get("decided_path") == "rejected":
            logger.info(f"Lead rejected by validation: {state.get('lead_id')}")
            return END
        return "score"

    workflow.add_conditional_edges("normalize", validation_decision, {"score": "score", END: END})
    workflow.add_edge("score", "deliver")
    workflow.add_edge("deliver", END)

    return workflow.compile()


def _response_for(result: Dict[str, Any]) -> JSONResponse:
    path = result.get("decided_path")
    mapping = result.get("mapping")
    delivery = result.get("delivery")
    base = {
        "requestId": result.get("request_id"),
        "leadId": result.get("lead_id"),
        "source": result.get("source"),
        "warnings": result.get("warnings", []),
    }

    if path == "rejected":
        return JSONResponse(status_code=422, content={
            **base,
            "status": "error",
            "message": "Lead validation failed",
            "errors": [e.to_dict() for e in mapping.errors] if mapping else result.get("errors", []),
        })

    outcome = {
        **base,
        "mappedFields": list(mapping.mapped_fields) if mapping else [],
        "score": result.get("score"),
        "priority": result.get("priority"),
        "path": path,
        "forwarded": path == "forwarded",
        "delivery": delivery,
    }

    if path == "queued":
        return JSONResponse(status_code=202, content={
            **outcome,
            "status": "queued",
            "message": "CRM delivery failed, lead queued for retry",
        })
    if path == "failed":
        return JSONResponse(status_code=502, content={
            **outcome,
            "status": "error",
            "message": "CRM delivery failed",
        })
    return JSONResponse(status_code=200, content={**outcome, "status": "success"})


def create_app(
    settings: Optional[Settings] = None,
    mapper: Optional[FieldMapper] = None,
    engine: Optional[RetryEngine] = None,
    client: Optional[DeliveryClient] = None,
) -> FastAPI:
    """Build the relay app. Collaborators not passed in are built from settings."""
    settings = settings or Settings.from_env()
    configure_logging(settings)

    mapper = mapper or FieldMapper()
    engine = engine or RetryEngine(settings.retry_config())
    if client is None and settings.forwarding_enabled:
        client = CrmWebhookClient(settings.crm_webhook_url, user_agent=settings.crm_user_agent)
    if client is None:
        logger.warning("CRM forwarding disabled, leads will be mapped but not delivered")

    app = FastAPI(
        title="Lead Intake Relay",
        description="Normalizes inbound lead webhooks and forwards them to a CRM with retries",
        version=VERSION,
    )
    app.state.settings = settings
    app.state.mapper = mapper
    app.state.engine = engine
    app.state.client = client
    app.state.metrics = RelayMetrics()
    app.state.graph = build_workflow(mapper, engine, client)

    # Middleware (innermost first)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_max,
        window=settings.rate_limit_window,
    )
    if settings.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )

    metrics: RelayMetrics = app.state.metrics
    lead_graph = app.state.graph

    def signature_ok(request: Request, body: bytes) -> bool:
        if not settings.webhook_secret:
            return True
        signature = next((request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None)
        return verify_signature(body, signature, settings.webhook_secret)

    def unauthorized(request_id: str) -> JSONResponse:
        logger.warning(f"Invalid webhook signature for request {request_id}")
        return JSONResponse(
            status_code=401,
            content={"status": "error", "message": "Invalid webhook signature", "requestId": request_id},
        )

    async def run_pipeline(
        raw: Dict[str, Any],
        source: str,
        endpoint: str,
        request_id: str,
        forward: bool = True,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        start_time = time.time()
        raw = dict(raw)
        raw["source"] = source
        raw["receivedAt"] = datetime.now(timezone.utc).isoformat()
        raw["requestId"] = request_id

        initial_state = {
            "raw": raw,
            "source": source,
            "request_id": request_id,
            "forward": forward,
            "overrides": overrides or {},
            "errors": [],
            "warnings": [],
            "score_reasons": [],
        }

        logger.info(f"Starting workflow execution for request {request_id} ({source})")
        result = await lead_graph.ainvoke(initial_state)
        response = _response_for(result)

        metrics.record(endpoint, source, response.status_code < 300)
        logger.info(
            f"Request {request_id} completed in {time.time() - start_time:.2f}s: "
            f"{result.get('decided_path')} ({response.status_code})"
        )
        return response

    async def handle_webhook(request: Request, source: str, endpoint: str) -> JSONResponse:
        request_id = generate_request_id()
        body = await read_body(request, settings.max_payload_bytes)

        if not signature_ok(request, body):
            metrics.record(endpoint, source, False)
            return unauthorized(request_id)

        try:
            raw = extract_payload(body, dict(request.query_params))
        except PayloadError as e:
            metrics.record(endpoint, source, False)
            logger.warning(f"Rejected request {request_id}: {e}")
            return JSONResponse(
                status_code=400,
                content={"status": "error", "message": str(e), "requestId": request_id},
            )

        logger.info(f"Received {source} webhook {request_id} with {len(raw)} fields")
        return await run_pipeline(raw, source, endpoint, request_id)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(metrics.uptime, 3),
            "version": VERSION,
            "services": {
                "crm_forwarding": "enabled" if client is not None else "disabled",
                "circuit_breaker": engine.breaker.status,
                "workflow": "ready",
            },
            "metrics": metrics.snapshot(),
        }

    @app.get("/metrics")
    def get_metrics():
        """Relay, delivery and mapping metrics."""
        return {
            "server": metrics.snapshot(),
            "delivery": engine.get_metrics(),
            "mapping": mapper.describe(),
        }

    @app.post("/webhook/email")
    async def email_webhook(request: Request):
        """
        Intake for forwarded lead-notification emails.

        Accepts either a JSON object:
        {
            "subject": "New lead from Jane Smith",
            "body": "Name: Jane Smith ...",
            "date": "2024-05-01T10:00:00Z"
        }
        or the raw email text as the body.
        """
        endpoint = "/webhook/email"
        request_id = generate_request_id()
        body = await read_body(request, settings.max_payload_bytes)

        if not signature_ok(request, body):
            metrics.record(endpoint, "email", False)
            return unauthorized(request_id)

        text = body.decode("utf-8", errors="replace").strip()
        try:
            data = json.loads(text) if text else None
        except json.JSONDecodeError:
            data = None

        if isinstance(data, dict):
            subject = str(data.get("subject") or "")
            content = str(data.get("body") or data.get("textPlain") or data.get("text") or "")
            date = str(data["date"]) if data.get("date") else None
            source = str(data.get("source") or "yelp").lower()
        else:
            subject, content, date, source = "", text, None, "yelp"

        if not subject and not content:
            metrics.record(endpoint, source, False)
            return JSONResponse(
                status_code=400,
                content={"status": "error", "message": "Email subject or body is required", "requestId": request_id},
            )

        logger.info(f"Received forwarded email {request_id}: {subject[:60]}")
        raw = parse_lead_email(subject, content, date=date, source=source)
        return await run_pipeline(raw, source, endpoint, request_id, overrides=EMAIL_RULE_OVERRIDES)

    @app.post("/webhook/test")
    async def test_webhook(request: Request):
        """Runs the full pipeline; forwards to the CRM only when the body sets "forward": true."""
        endpoint = "/webhook/test"
        request_id = generate_request_id()
        body = await read_body(request, settings.max_payload_bytes)

        try:
            raw = extract_payload(body, dict(request.query_params))
        except PayloadError as e:
            metrics.record(endpoint, "test", False)
            return JSONResponse(
                status_code=400,
                content={"status": "error", "message": str(e), "requestId": request_id},
            )

        flag = raw.pop("forward", False)
        try:
            forward = flag if isinstance(flag, bool) else parse_bool(str(flag))
        except ValueError:
            metrics.record(endpoint, "test", False)
            return JSONResponse(
                status_code=400,
                content={"status": "error", "message": f"Invalid forward flag: {flag!r}", "requestId": request_id},
            )
        if forward and not signature_ok(request, body):
            metrics.record(endpoint, "test", False)
            return unauthorized(request_id)

        return await run_pipeline(raw, "test", endpoint, request_id, forward=forward)

    @app.post("/webhook")
    async def generic_webhook(request: Request):
        return await handle_webhook(request, "generic", "/webhook")

    @app.post("/webhook/{source}")
    async def source_webhook(source: str, request: Request):
        """Lead webhook for a named source (yelp, facebook, google, website, ...)."""
        return await handle_webhook(request, source.lower(), f"/webhook/{source.lower()}")

    @app.post("/admin/queue/process")
    async def process_queue():
        """Retry every delivery sitting in the fallback queue."""
        if client is None:
            return JSONResponse(
                status_code=409,
                content={"status": "error", "message": "CRM forwarding is not configured"},
            )
        results = await engine.process_error_queue(client)
        return {
            "status": "success",
            "processed": len(results),
            "succeeded": sum(1 for r in results if r.success),
            "failed": sum(1 for r in results if not r.success),
            "queue_size": len(engine.error_queue),
            "results": [r.to_dict() for r in results],
        }

    @app.delete("/admin/queue")
    def clear_queue():
        cleared = engine.clear_error_queue()
        return {"status": "success", "cleared": cleared}

    @app.post("/admin/metrics/reset")
    def reset_metrics():
        metrics.reset()
        engine.reset_metrics()
        logger.info("Relay and delivery metrics reset")
        return {"status": "success", "message": "Metrics reset"}

    # Error handlers
    @app.exception_handler(PayloadTooLarge)
    async def payload_too_large_handler(request: Request, exc: PayloadTooLarge):
        logger.warning(f"Rejected oversized request on {request.url.path}: {exc}")
        return JSONResponse(status_code=413, content={"status": "error", "message": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Internal server error"},
        )

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Lead Intake Relay")

    uvicorn.run(
        "app:app",
        host=app.state.settings.host,
        port=app.state.settings.port,
        log_level="info"
    )
