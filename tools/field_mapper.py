import copy
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from tools.errors import MappingError
from tools.field_rules import (
    CATEGORY_DESCRIPTIONS,
    DEFAULT_RULES,
    FIELD_DESCRIPTIONS,
    TRANSFORMATIONS,
    TEXTUAL_TYPES,
    VALIDATORS,
    FieldRule,
    FieldType,
    RuleSet,
    Validator,
    check_rule_references,
    merge_rule_sets,
)

SCHEMA_TITLE = "Lead Intake Canonical Contact Schema"
SCHEMA_VERSION = "1.0.0"
REQUIRED_MISSING = "Required field missing"


@dataclass(frozen=True)
class MappingResult:
    """Canonical record produced by one FieldMapper.map call, plus its report."""
    record: Dict[str, Any]
    mapped_at: str
    original_fields: List[str]
    mapped_fields: List[str]
    errors: List[MappingError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def metadata(self) -> Dict[str, Any]:
        return {
            "mappedAt": self.mapped_at,
            "originalFields": list(self.original_fields),
            "mappedFields": list(self.mapped_fields),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
            "isValid": self.is_valid,
        }

    def to_payload(self) -> Dict[str, Any]:
        """Record plus a `_metadata` block, the shape forwarded to the CRM."""
        payload = copy.deepcopy(self.record)
        payload["_metadata"] = self.metadata()
        return payload


@dataclass
class _Processed:
    value: Any
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def extract_value(raw: Mapping[str, Any], sources: Tuple[str, ...]) -> Any:
    """Return the first non-empty value found under any of the source keys."""
    for source in sources:
        if source in raw and not _is_blank(raw[source]):
            return raw[source]
    return None


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = value
    else:
        try:
            number = float(str(value).strip())
        except (TypeError, ValueError):
            return None
        if number.is_integer():
            number = int(number)
    if isinstance(number, float) and (math.isnan(number) or math.isinf(number)):
        return None
    return number


class FieldMapper:
    """Maps heterogeneous inbound lead payloads onto the canonical contact record.

    The mapper is pure: it holds an immutable effective rule set and reads the
    clock only to stamp ``mapped_at``. Data problems never raise; they are
    reported on the returned MappingResult.
    """

    def __init__(
        self,
        overrides: Optional[Mapping[str, Any]] = None,
        validators: Optional[Mapping[str, Validator]] = None,
        transformations: Optional[Mapping[str, Mapping[str, str]]] = None,
        base_rules: Optional[Mapping[str, Mapping[str, FieldRule]]] = None,
    ):
        self.validators = dict(VALIDATORS if validators is None else validators)
        self.transformations = dict(TRANSFORMATIONS if transformations is None else transformations)
        self.rules = merge_rule_sets(DEFAULT_RULES if base_rules is None else base_rules, overrides)
        check_rule_references(self.rules, self.validators, self.transformations)

    def effective_rules(self, overrides: Optional[Mapping[str, Any]] = None) -> RuleSet:
        """Rules for one call; raises RuleConfigurationError on a malformed override."""
        if not overrides:
            return self.rules
        rules = merge_rule_sets(self.rules, overrides)
        check_rule_references(rules, self.validators, self.transformations)
        return rules

    def map(self, raw: Mapping[str, Any], overrides: Optional[Mapping[str, Any]] = None) -> MappingResult:
        """
        Map a raw inbound record into the canonical record.

        Args:
            raw: Inbound payload (any key naming)
            overrides: Optional rule overrides deep-merged over this mapper's rules

        Returns:
            MappingResult; ``is_valid`` is False when any field produced an error
        """
        rules = self.effective_rules(overrides)
        record: Dict[str, Any] = {}
        errors: List[MappingError] = []
        warnings: List[str] = []

        for category_rules in rules.values():
            for name, rule in category_rules.items():
                value = extract_value(raw, rule.sources)

                if value is None:
                    if rule.required:
                        errors.append(MappingError(field=name, reason=REQUIRED_MISSING))
                    elif rule.has_default:
                        record[name] = self._default_for(rule)
                    continue

                processed = self.process_value(value, rule, name)
                if processed.ok:
                    record[name] = processed.value
                    warnings.extend(processed.warnings)
                else:
                    errors.extend(MappingError(field=name, reason=reason, value=value) for reason in processed.errors)

        result = MappingResult(
            record=record,
            mapped_at=datetime.now(timezone.utc).isoformat(),
            original_fields=list(raw.keys()),
            mapped_fields=list(record.keys()),
            errors=errors,
            warnings=warnings,
        )

        if errors:
            logger.debug(f"Mapping produced {len(errors)} error(s): {[e.field for e in errors]}")
        return result

    def _default_for(self, rule: FieldRule) -> Any:
        if rule.type == FieldType.ARRAY and isinstance(rule.default, tuple):
            return list(rule.default)
        return copy.deepcopy(rule.default)

    def process_value(self, value: Any, rule: FieldRule, name: str) -> _Processed:
        """Run one candidate value through coercion, bounds, validation and transforms."""
        result = _Processed(value=value)

        # Type coercion
        if rule.type in TEXTUAL_TYPES and not isinstance(value, str):
            result.value = str(value)
        elif rule.type == FieldType.NUMBER:
            number = _to_number(value)
            if number is None:
                result.errors.append(f"Invalid number format for field '{name}'")
                return result
            result.value = number
        elif rule.type == FieldType.ARRAY and not isinstance(value, list):
            if isinstance(value, str):
                result.value = [part.strip() for part in value.split(",")]
            elif isinstance(value, tuple):
                result.value = list(value)
            else:
                result.value = [value]
        elif rule.type in (FieldType.ARRAY, FieldType.OBJECT):
            result.value = copy.deepcopy(value)

        if rule.max_length and isinstance(result.value, str) and len(result.value) > rule.max_length:
            result.value = result.value[:rule.max_length]
            result.warnings.append(f"Field '{name}' truncated to {rule.max_length} characters")

        if rule.type == FieldType.NUMBER:
            if rule.min is not None and result.value < rule.min:
                result.errors.append(f"Field '{name}' must be at least {rule.min}")
                return result
            if rule.max is not None and result.value > rule.max:
                result.errors.append(f"Field '{name}' must be at most {rule.max}")
                return result

        # Out-of-options values are kept, warning only
        if rule.options and result.value not in rule.options:
            result.warnings.append(f"Field '{name}' value '{result.value}' not in predefined options")

        if rule.validation:
            validator = self.validators[rule.validation]
            if not validator.matches(result.value):
                result.errors.append(validator.message)
                return result
            if validator.transform:
                result.value = validator.transform(str(result.value))

        if rule.transformation:
            table = self.transformations[rule.transformation]
            hit = table.get(str(result.value).lower())
            if hit:
                result.value = hit

        if isinstance(result.value, str):
            result.value = result.value.strip()

        return result

    def validate_overrides(self, overrides: Mapping[str, Any]) -> Dict[str, Any]:
        """Report unknown categories and fields in an override tree without applying it."""
        errors: List[str] = []
        warnings: List[str] = []

        for category, field_overrides in overrides.items():
            if category not in self.rules:
                warnings.append(f"Unknown category: {category}")
                continue
            if not isinstance(field_overrides, Mapping):
                errors.append(f"Category {category} override must be a mapping")
                continue
            for name in field_overrides:
                if name not in self.rules[category]:
                    warnings.append(f"Unknown field in category {category}: {name}")

        return {"is_valid": not errors, "errors": errors, "warnings": warnings}

    def describe(self) -> Dict[str, Any]:
        """Documentation schema of the effective rule set (served on /metrics)."""
        schema = {
            "title": SCHEMA_TITLE,
            "version": SCHEMA_VERSION,
            "generated": datetime.now(timezone.utc).isoformat(),
            "categories": {},
        }
        for category, category_rules in self.rules.items():
            schema["categories"][category] = {
                "description": CATEGORY_DESCRIPTIONS.get(category, "Category description not available"),
                "fields": {
                    name: {
                        "sources": list(rule.sources),
                        "type": rule.type.value,
                        "required": rule.required,
                        "description": FIELD_DESCRIPTIONS.get(name, "Field description not available"),
                        "validation": rule.validation,
                        "options": list(rule.options) if rule.options else None,
                        "default": self._default_for(rule),
                        "maxLength": rule.max_length,
                    }
                    for name, rule in category_rules.items()
                },
            }
        return schema
