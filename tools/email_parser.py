import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

FALLBACK_NAME = "Yelp Customer"
FALLBACK_EMAIL = "yelp-lead@example.com"

NAME_PATTERNS = [
    re.compile(r"From:\s*([^<\n\r]+?)(?:\s*<|$)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"Name:\s*([^\n\r]+)", re.IGNORECASE),
    re.compile(r"Customer:\s*([^\n\r]+)", re.IGNORECASE),
    re.compile(r"\b([A-Z][a-z]+ [A-Z][a-z]+)\b"),
]
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(r"\(?\d{3}\)?[-. ]?\d{3}[-. ]?\d{4}")

# Addresses of the notification senders themselves, never the customer
PLATFORM_DOMAINS = ("yelp.com", "facebookmail.com", "google.com")

SERVICE_KEYWORDS = [
    (("gutter",), "gutter_cleaning"),
    (("pressure", "washing"), "pressure_washing"),
    (("moss",), "moss_removal"),
    (("both", "combo"), "combo_service"),
]
DEFAULT_SERVICE = "roof_cleaning"

URGENT_KEYWORDS = ("urgent", "asap", "emergency")
HIGH_KEYWORDS = ("soon", "quickly", "immediate")

KNOWN_CITIES = (
    "North Vancouver", "West Vancouver", "Vancouver", "Burnaby", "Richmond",
    "Surrey", "Coquitlam", "Delta",
)

ESTIMATED_VALUES = {
    "gutter_cleaning": 400,
    "pressure_washing": 600,
    "combo_service": 1200,
}
DEFAULT_ESTIMATED_VALUE = 800

# Forwarded notification emails may carry no phone number
EMAIL_RULE_OVERRIDES = {"contact": {"phone": {"required": False}}}


def extract_name(content: str) -> str:
    for pattern in NAME_PATTERNS:
        match = pattern.search(content)
        if not match:
            continue
        candidate = match.group(1).strip()
        if len(candidate) > 2 and "@" not in candidate:
            return candidate
    return FALLBACK_NAME


def extract_email(content: str) -> Optional[str]:
    for candidate in EMAIL_PATTERN.findall(content):
        if not candidate.lower().endswith(PLATFORM_DOMAINS):
            return candidate
    return None


def detect_service_type(content: str) -> str:
    lowered = content.lower()
    for keywords, service in SERVICE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return service
    return DEFAULT_SERVICE


def detect_urgency(content: str) -> str:
    lowered = content.lower()
    if any(keyword in lowered for keyword in URGENT_KEYWORDS):
        return "urgent"
    if any(keyword in lowered for keyword in HIGH_KEYWORDS):
        return "high"
    return "normal"


def detect_city(content: str) -> Optional[str]:
    for city in KNOWN_CITIES:
        if re.search(rf"\b{re.escape(city)}\b", content, re.IGNORECASE):
            return city
    return None


def parse_lead_email(
    subject: str,
    body: str,
    date: Optional[str] = None,
    source: str = "yelp",
    fallback_email: str = FALLBACK_EMAIL,
) -> Dict[str, Any]:
    """
    Turn a forwarded lead-notification email into a raw lead record.

    The result uses the same key names a website form would send, so it goes
    through the regular FieldMapper afterwards.

    Args:
        subject: Email subject line
        body: Plain-text email body
        date: When the email was received (ISO string), defaults to now
        source: Lead source tag
        fallback_email: Used when the body carries no customer address

    Returns:
        Raw lead record
    """
    subject = subject or ""
    body = body or ""
    content = f"{body} {subject}"

    name = extract_name(content)
    first, _, last = name.partition(" ")
    email = extract_email(content)
    phone_match = PHONE_PATTERN.search(content)
    service_type = detect_service_type(content)
    urgency = detect_urgency(content)
    city = detect_city(content)

    if not email:
        logger.warning(f"No customer email found in forwarded email '{subject[:60]}', using fallback")

    record = {
        "firstName": first or "Yelp",
        "lastName": last.strip() or "Customer",
        "email": email or fallback_email,
        "phone": phone_match.group(0) if phone_match else "",
        "serviceType": service_type,
        "urgency": urgency,
        "source": source,
        "medium": "email_forward",
        "notes": f"{source.upper()} LEAD\n\nSubject: {subject}\n\nMessage:\n{body.strip()}",
        "tags": [
            f"{source}-lead",
            "email-forward",
            service_type,
            "hot-lead" if urgency == "urgent" else "warm-lead",
        ],
        "customFields": {
            "lead_source_detail": f"{source.title()} Email Notification",
            "original_subject": subject,
            "email_received_date": date or datetime.now(timezone.utc).isoformat(),
            "estimated_value": ESTIMATED_VALUES.get(service_type, DEFAULT_ESTIMATED_VALUE),
        },
    }
    if city:
        record["city"] = city

    return record
