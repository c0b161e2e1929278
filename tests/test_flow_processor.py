"""
Tests for WhatsApp Flow (form) submissions
"""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from grievance_bot.core.exceptions import GrievanceException
from grievance_bot.domain.services.grievance_service import GrievanceCreateResult, GrievanceService
from grievance_bot.state_machine import templates
from grievance_bot.state_machine.flow_processor import (
    FlowProcessor,
    map_flow_payload,
    parse_flow_response,
)

SENDER = "919876543210"


@pytest.fixture
def form_payload() -> dict:
    return {
        "name": "Asha Verma",
        "email": "asha@example.com",
        "contact_phone": "",
        "title": "Broken streetlight",
        "description": "The streetlight near the market has been off for two weeks.",
        "category": "Electricity",
        "district_name": "Lucknow",
        "subdistrict_name": "Sadar",
        "area": "Hazratganj",
        "latitude": "26.85",
        "longitude": "80.95",
        "images": ["https://bucket/a.jpg", "not-a-url", {"url": "https://bucket/b.jpg"}],
        "documents": [{"url": "ftp://bucket/c.pdf"}],
    }


@pytest.fixture
def fake_service():
    service = MagicMock(spec=GrievanceService)
    service.create = AsyncMock(return_value=GrievanceCreateResult(id=7, grievance_id="31012026MLA007"))
    return service


class TestMapping:

    @pytest.mark.unit
    def test_aliases_and_coercion(self, form_payload):
        mapped = map_flow_payload(form_payload)
        assert mapped["contact_name"] == "Asha Verma"
        assert mapped["contact_email"] == "asha@example.com"
        assert mapped["contact_phone"] is None
        assert mapped["latitude"] == 26.85
        assert mapped["longitude"] == 80.95
        assert mapped["images"] == [{"url": "https://bucket/a.jpg"}, {"url": "https://bucket/b.jpg"}]
        assert mapped["documents"] == []

    @pytest.mark.unit
    def test_bad_coordinates_become_none(self):
        mapped = map_flow_payload({"latitude": "north", "longitude": ""})
        assert mapped["latitude"] is None
        assert mapped["longitude"] is None

    @pytest.mark.unit
    def test_parse_flow_response(self):
        assert parse_flow_response('{"name": "Asha"}') == {"name": "Asha"}
        with pytest.raises(ValueError):
            parse_flow_response("[1, 2]")
        with pytest.raises(ValueError):
            parse_flow_response("not json")


class TestFlowProcessor:

    @pytest.mark.unit
    async def test_valid_submission_creates_grievance(self, fake_service, form_payload):
        result = await FlowProcessor(fake_service).process(SENDER, form_payload)

        assert result.ok is True
        assert result.grievance_id == "31012026MLA007"
        assert result.message == templates.submitted("31012026MLA007")
        grievance = fake_service.create.await_args.args[0]
        assert grievance.category == "electricity"
        assert grievance.attachment_urls == ["https://bucket/a.jpg", "https://bucket/b.jpg"]

    @pytest.mark.unit
    async def test_invalid_submission_lists_issues(self, fake_service, form_payload):
        form_payload["email"] = "nope"
        form_payload["title"] = "Bad"
        result = await FlowProcessor(fake_service).process(SENDER, form_payload)

        assert result.ok is False
        assert result.grievance_id is None
        assert result.message.startswith("Some answers are missing/invalid:")
        assert "contact_email" in result.message
        assert "title" in result.message
        fake_service.create.assert_not_awaited()

    @pytest.mark.unit
    async def test_missing_coordinates_rejected(self, fake_service, form_payload):
        del form_payload["latitude"]
        result = await FlowProcessor(fake_service).process(SENDER, form_payload)
        assert result.ok is False
        assert "Location" in result.message or "latitude" in result.message

    @pytest.mark.unit
    async def test_persistence_error_propagates(self, fake_service, form_payload):
        fake_service.create.side_effect = GrievanceException("db down")
        with pytest.raises(GrievanceException):
            await FlowProcessor(fake_service).process(SENDER, form_payload)

    @pytest.mark.integration
    async def test_creates_row(self, grievance_service, form_payload):
        result = await FlowProcessor(grievance_service).process(SENDER, form_payload)
        stored = await grievance_service.find_by_reference(result.grievance_id)
        assert stored.attachments == ["https://bucket/a.jpg", "https://bucket/b.jpg"]
        assert stored.area == "Hazratganj"

    @pytest.mark.unit
    def test_round_trip_through_response_json(self, form_payload):
        assert parse_flow_response(json.dumps(form_payload)) == form_payload
