import pytest
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tools.errors import RuleConfigurationError
from tools.field_mapper import FieldMapper, REQUIRED_MISSING, extract_value
from tools.field_rules import FieldRule, FieldType, format_phone_number, format_postal_code


class TestFieldMapper:
    """Test mapping of inbound payloads onto the canonical record."""

    def setup_method(self):
        """Set up test fixtures."""
        self.mapper = FieldMapper()
        self.lead = {
            "first_name": "John",
            "lastName": "Doe",
            "emailAddress": "john@example.com",
            "phoneNumber": "5551234567",
            "zip": "12345",
            "state": "california",
        }

    def test_map_aliased_payload(self):
        """Test aliases, defaults, phone formatting and state lookup."""
        result = self.mapper.map(self.lead)

        assert result.is_valid
        assert result.warnings == []
        assert result.record["firstName"] == "John"
        assert result.record["lastName"] == "Doe"
        assert result.record["email"] == "john@example.com"
        assert result.record["phone"] == "(555) 123-4567"
        assert result.record["postalCode"] == "12345"
        assert result.record["state"] == "CA"
        assert result.record["country"] == "US"
        assert result.record["source"] == "website"
        assert result.record["serviceType"] == "estimate"
        assert result.record["tags"] == ["website-lead"]
        assert result.original_fields == list(self.lead.keys())
        assert "firstName" in result.mapped_fields
        assert "first_name" not in result.record

    def test_missing_required_field(self):
        """Test a missing required field is reported and omitted."""
        lead = dict(self.lead)
        del lead["lastName"]

        result = self.mapper.map(lead)

        assert not result.is_valid
        assert [(e.field, e.reason) for e in result.errors] == [("lastName", REQUIRED_MISSING)]
        assert "lastName" not in result.record
        assert result.record["firstName"] == "John"

    def test_empty_string_counts_as_missing(self):
        """Test an empty string falls through to the next alias."""
        lead = dict(self.lead, email="", mail="backup@example.com")
        del lead["emailAddress"]

        result = self.mapper.map(lead)

        assert result.record["email"] == "backup@example.com"

    @pytest.mark.parametrize("raw, expected", [
        ("555-123-4567", "(555) 123-4567"),
        ("(555) 123 4567", "(555) 123-4567"),
        ("1-555-123-4567", "+1 (555) 123-4567"),
        ("+44 20 7946 0958", "+44 20 7946 0958"),
    ])
    def test_phone_formats(self, raw, expected):
        """Test phone normalization for common shapes."""
        result = self.mapper.map(dict(self.lead, phoneNumber=raw))

        assert result.is_valid
        assert result.record["phone"] == expected

    def test_invalid_phone(self):
        """Test a phone value without digits fails validation."""
        result = self.mapper.map(dict(self.lead, phoneNumber="call me"))

        assert not result.is_valid
        assert result.errors[0].field == "phone"
        assert result.errors[0].reason == "Invalid phone number format"
        assert "phone" not in result.record

    def test_invalid_email(self):
        """Test an invalid email is an error."""
        result = self.mapper.map(dict(self.lead, emailAddress="not-an-email"))

        assert not result.is_valid
        assert result.errors[0].field == "email"

    def test_truncation_warns_once(self):
        """Test an over-long string is truncated with a single warning."""
        result = self.mapper.map(dict(self.lead, first_name="J" * 60))

        assert result.is_valid
        assert result.record["firstName"] == "J" * 50
        assert result.warnings == ["Field 'firstName' truncated to 50 characters"]

    def test_number_bounds(self):
        """Test numeric coercion and bounds."""
        assert self.mapper.map(dict(self.lead, leadScore="42")).record["leadScore"] == 42
        assert self.mapper.map(dict(self.lead, score=7.5)).record["leadScore"] == 7.5

        too_high = self.mapper.map(dict(self.lead, leadScore=150))
        assert not too_high.is_valid
        assert "leadScore" not in too_high.record

        not_a_number = self.mapper.map(dict(self.lead, leadScore="high"))
        assert not_a_number.errors[0].reason == "Invalid number format for field 'leadScore'"

    def test_select_option_warning(self):
        """Test values outside the option list are kept with a warning."""
        result = self.mapper.map(dict(self.lead, roof_type="thatch"))

        assert result.is_valid
        assert result.record["roofType"] == "thatch"
        assert result.warnings == ["Field 'roofType' value 'thatch' not in predefined options"]

    def test_array_coercion(self):
        """Test comma-separated strings become lists."""
        result = self.mapper.map(dict(self.lead, tags="storm, urgent"))

        assert result.record["tags"] == ["storm", "urgent"]

    def test_postal_code_and_province(self):
        """Test Canadian postal code formatting and province lookup."""
        result = self.mapper.map(dict(self.lead, zip="v6b1a1", state="British Columbia", country="Canada"))

        assert result.record["postalCode"] == "V6B 1A1"
        assert result.record["state"] == "BC"
        assert result.record["country"] == "CA"

    def test_unknown_state_passes_through(self):
        """Test values missing from a lookup table are kept as-is."""
        result = self.mapper.map(dict(self.lead, state="  Atlantis  "))

        assert result.record["state"] == "Atlantis"

    def test_mapping_is_idempotent(self):
        """Test mapping the same input twice gives the same result apart from mapped_at."""
        lead = dict(
            self.lead,
            first_name="J" * 60,
            roof_type="thatch",
            tags="storm, urgent",
            customFields={"roof": {"pitch": 6}},
            leadScore="150",
        )

        first = self.mapper.map(lead)
        second = self.mapper.map(lead)

        assert first.warnings
        assert first.errors
        assert second.record == first.record
        assert second.errors == first.errors
        assert second.warnings == first.warnings
        assert second.original_fields == first.original_fields
        assert second.mapped_fields == first.mapped_fields
        assert second.is_valid == first.is_valid

    def test_canonical_record_is_a_fixpoint(self):
        """Test mapping an already canonical record yields the same record."""
        first = self.mapper.map(self.lead)
        second = self.mapper.map(first.record)

        assert second.record == first.record
        assert second.is_valid

    def test_input_not_mutated(self):
        """Test the raw payload is left untouched."""
        lead = dict(self.lead, customFields={"roof": {"pitch": 6}})
        result = self.mapper.map(lead)
        result.record["customFields"]["roof"]["pitch"] = 12

        assert lead["customFields"]["roof"]["pitch"] == 6

    def test_per_call_overrides(self):
        """Test overrides merge over defaults for one call only."""
        overrides = {
            "contact": {"phone": {"required": False}},
            "custom": {"referrer": {"sources": ["referred_by"], "maxLength": 5}},
        }
        lead = dict(self.lead, referred_by="Neighbour")
        del lead["phoneNumber"]

        result = self.mapper.map(lead, overrides)

        assert result.is_valid
        assert result.record["referrer"] == "Neigh"
        assert not self.mapper.map(lead).is_valid

    def test_constructor_overrides(self):
        """Test a FieldRule override replaces the default rule."""
        mapper = FieldMapper({"contact": {"email": FieldRule(sources=("contact_email",), type=FieldType.EMAIL)}})
        lead = dict(self.lead)
        del lead["emailAddress"]

        result = mapper.map(lead)

        assert result.is_valid
        assert "email" not in result.record

    def test_malformed_override_raises(self):
        """Test an override with an invalid shape is a configuration error."""
        with pytest.raises(RuleConfigurationError):
            self.mapper.map(self.lead, {"contact": {"email": {"pattern": "x"}}})
        with pytest.raises(RuleConfigurationError):
            FieldMapper({"contact": {"email": {"validation": "nope"}}})

    def test_metadata_and_payload(self):
        """Test the metadata block forwarded with the record."""
        result = self.mapper.map(self.lead)
        payload = result.to_payload()

        assert payload["_metadata"]["isValid"] is True
        assert payload["_metadata"]["originalFields"] == list(self.lead.keys())
        assert "_metadata" not in result.record

    def test_validate_overrides(self):
        """Test override reports flag unknown categories and fields."""
        report = self.mapper.validate_overrides({
            "contact": {"nickname": {"sources": ["nick"]}},
            "billing": {"card": {}},
        })

        assert report["is_valid"] is True
        assert "Unknown category: billing" in report["warnings"]
        assert "Unknown field in category contact: nickname" in report["warnings"]

    def test_describe(self):
        """Test the documentation schema."""
        schema = self.mapper.describe()

        assert schema["title"] == "Lead Intake Canonical Contact Schema"
        assert schema["categories"]["contact"]["fields"]["email"]["required"] is True
        assert schema["categories"]["additional"]["fields"]["tags"]["default"] == ["website-lead"]


class TestHelpers:
    """Test standalone mapping helpers."""

    def test_extract_value_first_non_empty(self):
        assert extract_value({"a": None, "b": "", "c": 0}, ("a", "b", "c")) == 0
        assert extract_value({}, ("a",)) is None

    def test_format_phone_number(self):
        assert format_phone_number("555.123.4567") == "(555) 123-4567"
        assert format_phone_number("12345") == "12345"

    def test_format_postal_code(self):
        assert format_postal_code("m5v-3l9") == "M5V 3L9"
        assert format_postal_code("12345-6789") == "12345-6789"

if __name__ == "__main__":
    # Run tests
    pytest.main([__file__, "-v"])
