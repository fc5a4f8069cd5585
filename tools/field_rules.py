"""
Declarative field rules for turning inbound lead payloads into the canonical
contact record.

A rule set is a two-level tree: category -> field name -> FieldRule. The
defaults below cover the intake sources we see today (website forms, Yelp,
Facebook, Google lead ads, forwarded emails). Callers customize them by
passing an override tree to ``merge_rule_sets``.
"""

import re
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from tools.errors import RuleConfigurationError


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    ARRAY = "array"
    OBJECT = "object"
    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    SELECT = "select"


TEXTUAL_TYPES = (FieldType.STRING, FieldType.TEXT)


@dataclass(frozen=True)
class FieldRule:
    """How to produce one canonical field from a raw record."""
    sources: Tuple[str, ...]
    type: FieldType = FieldType.STRING
    required: bool = False
    default: Any = None
    max_length: Optional[int] = None
    min: Optional[float] = None
    max: Optional[float] = None
    options: Optional[Tuple[Any, ...]] = None
    validation: Optional[str] = None
    transformation: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.sources, str):
            object.__setattr__(self, "sources", (self.sources,))
        else:
            object.__setattr__(self, "sources", tuple(self.sources))
        if not self.sources:
            raise RuleConfigurationError("FieldRule needs at least one source key")

        try:
            object.__setattr__(self, "type", FieldType(self.type))
        except ValueError:
            raise RuleConfigurationError(f"Unknown field type: {self.type!r}")

        if self.options is not None:
            object.__setattr__(self, "options", tuple(self.options))
        if self.max_length is not None and self.max_length <= 0:
            raise RuleConfigurationError("max_length must be positive")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise RuleConfigurationError("min must not exceed max")

    @property
    def has_default(self) -> bool:
        return self.default is not None


RuleSet = Dict[str, Dict[str, FieldRule]]

RULE_ATTRIBUTES = frozenset(f.name for f in fields(FieldRule))

# Override keys accepted in camelCase as they appear in JSON configs
_ATTRIBUTE_ALIASES = {"maxLength": "max_length"}


@dataclass(frozen=True)
class Validator:
    """Named pattern check with an optional value transform."""
    pattern: re.Pattern
    message: str
    transform: Optional[Callable[[str], str]] = None

    def matches(self, value: Any) -> bool:
        return bool(self.pattern.match(str(value)))


def format_phone_number(phone: str) -> str:
    """Format a US/CA number as (NNN) NNN-NNNN, or return it unchanged."""
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    if len(digits) == 11 and digits[0] == "1":
        return f"+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:]}"
    return phone


def format_postal_code(code: str) -> str:
    """Canadian codes become 'A1A 1A1'; US ZIP codes pass through."""
    compact = re.sub(r"[\s-]", "", code).upper()
    if len(compact) == 6 and compact[0].isalpha():
        return f"{compact[:3]} {compact[3:]}"
    return code


VALIDATORS: Dict[str, Validator] = {
    "email": Validator(
        pattern=re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$"),
        message="Invalid email format",
    ),
    "phone": Validator(
        pattern=re.compile(r"^\+?[\d\s().-]*\d[\d\s().-]*$"),
        message="Invalid phone number format",
        transform=format_phone_number,
    ),
    "postalCode": Validator(
        pattern=re.compile(r"^(\d{5}(-\d{4})?|[A-Za-z]\d[A-Za-z][ -]?\d[A-Za-z]\d)$"),
        message="Invalid postal code format",
        transform=format_postal_code,
    ),
    "roofSize": Validator(
        pattern=re.compile(r"^\d+(\.\d+)?\s*(sq\s?ft|square\s?feet|sqft|sf)?$", re.IGNORECASE),
        message='Invalid roof size format (e.g., "2500 sq ft")',
    ),
}

TRANSFORMATIONS: Dict[str, Dict[str, str]] = {
    "stateCode": {
        "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
        "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
        "florida": "FL", "georgia": "GA", "hawaii": "HI", "idaho": "ID",
        "illinois": "IL", "indiana": "IN", "iowa": "IA", "kansas": "KS",
        "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
        "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
        "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
        "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
        "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK",
        "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI", "south carolina": "SC",
        "south dakota": "SD", "tennessee": "TN", "texas": "TX", "utah": "UT",
        "vermont": "VT", "virginia": "VA", "washington": "WA", "west virginia": "WV",
        "wisconsin": "WI", "wyoming": "WY",
        # Canadian provinces and territories
        "alberta": "AB", "british columbia": "BC", "manitoba": "MB", "new brunswick": "NB",
        "newfoundland and labrador": "NL", "nova scotia": "NS", "ontario": "ON",
        "prince edward island": "PE", "quebec": "QC", "saskatchewan": "SK",
        "northwest territories": "NT", "nunavut": "NU", "yukon": "YT",
    },
    "countryCode": {
        "united states": "US", "usa": "US", "canada": "CA", "mexico": "MX",
        "united kingdom": "GB", "australia": "AU",
    },
}


def _rule(*sources: str, **attrs) -> FieldRule:
    return FieldRule(sources=sources, **attrs)


DEFAULT_RULES: Mapping[str, Mapping[str, FieldRule]] = {
    "contact": {
        "firstName": _rule("firstName", "first_name", "fname", "given_name",
                           required=True, max_length=50),
        "lastName": _rule("lastName", "last_name", "lname", "family_name", "surname",
                          required=True, max_length=50),
        "email": _rule("email", "emailAddress", "email_address", "mail",
                       type=FieldType.EMAIL, required=True, validation="email"),
        "phone": _rule("phone", "phoneNumber", "phone_number", "mobile", "cell", "telephone",
                       type=FieldType.PHONE, required=True, validation="phone"),
    },
    "address": {
        "address": _rule("address", "street", "street_address", "address1", "property_address",
                         max_length=200),
        "address2": _rule("address2", "apt", "apartment", "unit", "suite", max_length=100),
        "city": _rule("city", "locality", "town", max_length=50),
        "state": _rule("state", "province", "region", "state_province",
                       max_length=50, transformation="stateCode"),
        "postalCode": _rule("postalCode", "zipCode", "zip", "postal_code", "zip_code",
                            validation="postalCode"),
        "country": _rule("country", "country_code", default="US", transformation="countryCode"),
    },
    "roofing": {
        "propertyType": _rule("propertyType", "property_type", "building_type",
                              type=FieldType.SELECT, default="residential",
                              options=("residential", "commercial", "industrial", "multi-family")),
        "roofType": _rule("roofType", "roof_type", "roofing_type", type=FieldType.SELECT,
                          options=("asphalt", "metal", "tile", "slate", "wood", "flat", "other")),
        "roofAge": _rule("roofAge", "roof_age", "age_of_roof", type=FieldType.SELECT,
                         options=("0-5", "6-10", "11-15", "16-20", "21-30", "30+", "unknown")),
        "roofSize": _rule("roofSize", "roof_size", "square_footage", validation="roofSize"),
        "roofCondition": _rule("roofCondition", "roof_condition", "condition", type=FieldType.SELECT,
                               options=("excellent", "good", "fair", "poor", "needs_replacement")),
    },
    "service": {
        "serviceType": _rule("serviceType", "service_type", "service_needed", "request_type",
                             type=FieldType.SELECT, default="estimate",
                             options=("estimate", "repair", "replacement", "inspection",
                                      "maintenance", "emergency", "consultation")),
        "urgency": _rule("urgency", "priority", "timeline", type=FieldType.SELECT, default="normal",
                         options=("emergency", "urgent", "normal", "flexible")),
        "preferredContactTime": _rule("preferredContactTime", "contact_time", "best_time_to_call",
                                      type=FieldType.SELECT, default="anytime",
                                      options=("morning", "afternoon", "evening", "anytime")),
        "budget": _rule("budget", "estimated_budget", "price_range", type=FieldType.SELECT,
                        options=("under_5k", "5k_10k", "10k_20k", "20k_50k", "over_50k", "not_sure")),
    },
    "attribution": {
        "source": _rule("source", "utm_source", "lead_source", "referral_source", default="website"),
        "medium": _rule("medium", "utm_medium", "marketing_medium", default="organic"),
        "campaign": _rule("campaign", "utm_campaign", "campaign_name"),
        "term": _rule("term", "utm_term", "keyword"),
        "content": _rule("content", "utm_content", "ad_content"),
    },
    "additional": {
        "notes": _rule("notes", "message", "comments", "description", "details",
                       type=FieldType.TEXT, max_length=2000),
        "tags": _rule("tags", "categories", "labels", type=FieldType.ARRAY, default=("website-lead",)),
        "customFields": _rule("customFields", "custom_fields", "additional_data", type=FieldType.OBJECT),
        "leadScore": _rule("leadScore", "lead_score", "score", type=FieldType.NUMBER, min=0, max=100),
    },
}

CATEGORY_DESCRIPTIONS = {
    "contact": "Basic contact information for the lead",
    "address": "Property and mailing address information",
    "roofing": "Roofing-specific property details",
    "service": "Service request and preference information",
    "attribution": "Marketing attribution and tracking data",
    "additional": "Additional notes and custom fields",
}

FIELD_DESCRIPTIONS = {
    "firstName": "Lead's first name",
    "lastName": "Lead's last name",
    "email": "Primary email address",
    "phone": "Primary phone number",
    "address": "Street address of property",
    "city": "City name",
    "state": "State or province",
    "postalCode": "ZIP or postal code",
    "country": "Country code (default: US)",
    "propertyType": "Type of property (residential, commercial, etc.)",
    "roofType": "Current roofing material type",
    "roofAge": "Age range of current roof",
    "roofSize": "Approximate size of roof area",
    "roofCondition": "Current condition of roof",
    "serviceType": "Type of service requested",
    "urgency": "Urgency level of request",
    "preferredContactTime": "Best time to contact lead",
    "budget": "Estimated budget range",
    "source": "Lead source (e.g., website, referral)",
    "medium": "Marketing medium",
    "campaign": "Marketing campaign name",
    "notes": "Additional notes or comments",
    "tags": "Categorization tags for the lead",
}


def _rule_from_override(category: str, name: str, base: Optional[FieldRule], override: Any) -> FieldRule:
    if isinstance(override, FieldRule):
        return override
    if not isinstance(override, Mapping):
        raise RuleConfigurationError(
            f"Override for {category}.{name} must be a FieldRule or a mapping, got {type(override).__name__}"
        )

    attrs = {_ATTRIBUTE_ALIASES.get(key, key): value for key, value in override.items()}
    unknown = set(attrs) - RULE_ATTRIBUTES
    if unknown:
        raise RuleConfigurationError(f"Unknown rule attributes for {category}.{name}: {sorted(unknown)}")

    if base is None:
        if "sources" not in attrs:
            raise RuleConfigurationError(f"New field {category}.{name} needs 'sources'")
        return FieldRule(**attrs)
    return replace(base, **attrs)


def merge_rule_sets(base: Mapping[str, Mapping[str, FieldRule]], overrides: Optional[Mapping[str, Any]]) -> RuleSet:
    """
    Deep-merge an override tree over a rule set.

    Categories and fields merge recursively. On a field, a FieldRule override
    replaces the rule outright while a mapping of attributes is applied on
    top of the existing rule. New categories and fields are allowed.

    Raises:
        RuleConfigurationError: if the override tree has an invalid shape
    """
    merged: RuleSet = {category: dict(rules) for category, rules in base.items()}
    if not overrides:
        return merged
    if not isinstance(overrides, Mapping):
        raise RuleConfigurationError("Rule overrides must be a mapping of category -> field -> rule")

    for category, field_overrides in overrides.items():
        if not isinstance(field_overrides, Mapping):
            raise RuleConfigurationError(f"Category {category!r} override must be a mapping")
        target = merged.setdefault(category, {})
        for name, override in field_overrides.items():
            target[name] = _rule_from_override(category, name, target.get(name), override)

    return merged


def check_rule_references(rules: RuleSet, validators: Mapping[str, Validator],
                          transformations: Mapping[str, Mapping[str, str]]) -> None:
    """Fail fast when a rule names a validator or lookup table that does not exist."""
    for category, category_rules in rules.items():
        for name, rule in category_rules.items():
            if rule.validation and rule.validation not in validators:
                raise RuleConfigurationError(f"{category}.{name}: unknown validation {rule.validation!r}")
            if rule.transformation and rule.transformation not in transformations:
                raise RuleConfigurationError(f"{category}.{name}: unknown transformation {rule.transformation!r}")
