"""
Record validation / normalization tests.
"""

from datetime import datetime, timezone

import pytest

from practice_pipeline import LeadRecord, NormalizedRecord, normalize_record


def _record(**overrides):
    values = {
        "company": "Bright Smile Dental",
        "domain": "brightsmile.co.uk",
        "source_url": "https://brightsmile.co.uk",
        "practice_id": "bright-smile-dental-123456",
        "location": "London",
        "phone": "+44 20 7946 0958",
        "email": "hello@brightsmile.co.uk",
        "services": ("Cosmetic dental services", "Family care"),
        "treatments": ("teeth whitening", "dental implants"),
        "specializations": ("cosmetic dentistry",),
        "practice_type": "dental",
        "lead_score": 88,
        "enrichment_succeeded": True,
        "created_at": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return LeadRecord(**values)


@pytest.mark.unit
class TestNormalizeRecord:

    def test_flattens_lists(self):
        normalized = normalize_record(_record())

        assert normalized.services == "Cosmetic dental services, Family care"
        assert normalized.treatments == "teeth whitening, dental implants"
        assert normalized.specializations == "cosmetic dentistry"
        assert normalized.website == "https://brightsmile.co.uk"
        assert normalized.status == "Lead Captured"
        assert normalized.scraped_at == "2026-03-01T12:00:00+00:00"

    def test_is_idempotent(self):
        once = normalize_record(_record(company="  Bright\tSmile\n Dental  ", phone="tel: 020 7946 0958"))
        twice = normalize_record(once)

        assert twice == once

    @pytest.mark.parametrize("source_url", ["", "https://[acme.com", "http://acme.com]:80"])
    def test_idempotent_for_degenerate_input(self, source_url):
        record = _record(
            company="",
            phone="123",
            email="nope",
            location="",
            source_url=source_url,
            services=(),
            treatments=(),
            specializations=(),
            lead_score=250,
        )
        once = normalize_record(record)

        assert normalize_record(once) == once

    def test_invalid_contact_details_become_empty(self):
        normalized = normalize_record(_record(phone="12345", email="not-an-email"))

        assert normalized.phone == ""
        assert normalized.email == ""

    def test_phone_keeps_allowed_characters_only(self):
        normalized = normalize_record(_record(phone="Tel: +1 (555) 123-4567 ext"))

        assert normalized.phone == "+1 (555) 123-4567"

    def test_control_and_non_printable_characters_are_removed(self):
        normalized = normalize_record(_record(company="Café\tDental\x00 Clinic"))

        assert normalized.company == "Caf Dental Clinic"

    def test_defaults_for_missing_fields(self):
        normalized = normalize_record(
            _record(company="", location="", practice_type="", services=(), treatments=(), specializations=())
        )

        assert normalized.company == "Healthcare Practice"
        assert normalized.location == "Healthcare Location"
        assert normalized.practice_type == "healthcare"
        assert normalized.services == "Healthcare Services"
        assert normalized.treatments == "Consultation"
        assert normalized.specializations == "General Healthcare"

    def test_missing_scheme_is_added(self):
        assert normalize_record(_record(source_url="brightsmile.co.uk/contact")).website == "https://brightsmile.co.uk/contact"

    def test_unparseable_website_keeps_https_prefix(self):
        assert normalize_record(_record(source_url="https://[acme.com")).website == "https://[acme.com"

    def test_empty_website_derives_from_domain(self):
        assert normalize_record(_record(source_url="")).website == "https://brightsmile.co.uk"

    def test_long_text_is_truncated(self):
        normalized = normalize_record(_record(company="x" * 5000, treatments=tuple(f"treatment {i}" for i in range(200))))

        assert len(normalized.company) == 2000
        assert len(normalized.treatments) <= 1000

    def test_string_lists_are_accepted(self):
        normalized = normalize_record(_record(services="Implants, Whitening"))

        assert normalized.services == "Implants, Whitening"

    def test_score_is_clamped(self):
        assert normalize_record(_record(lead_score=150)).lead_score == 100
        assert normalize_record(_record(lead_score=-4)).lead_score == 0

    def test_accepts_normalized_input(self):
        normalized = normalize_record(_record())
        assert isinstance(normalize_record(normalized), NormalizedRecord)
