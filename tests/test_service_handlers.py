"""
Boundary handler tests: /automate, /recover, /status and friends.
"""

import asyncio
from unittest.mock import patch

import pytest

from practice_pipeline import STATUS_COMPLETE, AutomationService
from tests.conftest import FakeSearch


@pytest.fixture
def service(make_orchestrator):
    return AutomationService(make_orchestrator())


@pytest.mark.integration
class TestAutomate:

    def test_single_url(self, service):
        status, body = asyncio.run(service.automate({"url": "https://brightsmile.co.uk"}))

        assert status == 200
        assert body["overall_status"] == STATUS_COMPLETE
        assert set(body["phases"]) == {"enrichment", "validation", "persistence", "provisioning"}
        assert body["practice_id"]

    def test_batch(self, service):
        urls = ["https://a-dental.example.com", "https://b-dental.example.com", "https://c-dental.example.com",
                "https://d-dental.example.com"]

        status, body = asyncio.run(service.automate({"urls": urls, "provision": False}))

        assert status == 200
        assert body["total_processed"] == 4
        assert body["complete"] == 4
        assert [r["target_url"] for r in body["batch_results"]] == urls

    @pytest.mark.parametrize("payload", [None, {}, {"url": ""}, {"urls": []}])
    def test_missing_target_is_400(self, service, payload):
        status, body = asyncio.run(service.automate(payload))

        assert status == 400
        assert body == {"error": "URL or URLs array required"}

    def test_invalid_url_is_400(self, service):
        status, body = asyncio.run(service.automate({"url": "not a url"}))

        assert status == 400
        assert "not a url" in body["error"]

    def test_urls_must_be_strings(self, service):
        status, _ = asyncio.run(service.automate({"urls": ["https://a.example.com", 7]}))

        assert status == 400

    def test_provision_must_be_boolean(self, service):
        status, _ = asyncio.run(service.automate({"url": "https://a.example.com", "provision": "yes"}))

        assert status == 400

    def test_orchestration_fault_is_500_with_phase(self, service):
        with patch("practice_pipeline.aggregate_status", side_effect=RuntimeError("bug")):
            status, body = asyncio.run(service.automate({"url": "https://brightsmile.co.uk"}))

        assert status == 500
        assert body["success"] is False
        assert body["current_phase"] == "aggregation"

    def test_batch_invalid_url_is_reported_not_raised(self, service):
        status, body = asyncio.run(service.automate({"urls": ["not a url"], "provision": False}))

        assert status == 200
        assert body["failed"] == 1


@pytest.mark.integration
class TestRecover:

    def test_recover_after_workflow(self, service):
        _, workflow = asyncio.run(service.automate({"url": "https://brightsmile.co.uk", "provision": False}))

        status, body = asyncio.run(service.recover({"practice_id": workflow["practice_id"], "phase": "persistence"}))

        assert status == 200
        assert body["success"] is True
        assert body["practice_id"] == workflow["practice_id"]
        assert "workflow history" in body["detail"]

    def test_camel_case_and_retry_phase_keys(self, service):
        status, body = asyncio.run(service.recover({"practiceId": "ghost-1", "retry_phase": "deployment"}))

        assert status == 200
        assert body["data"]["method"]

    def test_missing_practice_id(self, service):
        status, body = asyncio.run(service.recover({"phase": "persistence"}))

        assert status == 400
        assert body["error"] == "practice_id required"

    def test_unknown_phase(self, service):
        status, body = asyncio.run(service.recover({"practice_id": "ghost-1", "phase": "enrichment"}))

        assert status == 400
        assert "Unknown recovery phase" in body["error"]


@pytest.mark.integration
class TestStatusAndReporting:

    def test_status_counts(self, service):
        asyncio.run(service.automate({"urls": ["https://a-dental.example.com", "not a url"], "provision": False}))

        status, body = service.status()

        assert status == 200
        stats = body["workflow_stats"]
        assert stats["total_workflows"] == 2
        assert stats["complete"] == 1
        assert stats["failed"] == 1
        assert body["config_health"]["healthy"] is False
        assert body["config_health"]["providers"]["exa"]["status"] == "not_configured"
        assert len(body["recent_results"]) == 2

    def test_deployments_filters(self, service):
        asyncio.run(service.automate({"urls": ["https://a-dental.example.com", "not a url"], "provision": False}))

        _, success = service.deployments(status="success")
        _, failed = service.deployments(status="failed")
        bad_status, _ = service.deployments(status="weird")

        assert len(success["deployments"]) == 1
        assert len(failed["deployments"]) == 1
        assert bad_status == 400

    def test_health(self, service):
        status, body = service.health()

        assert status == 200
        assert body["status"] == "healthy"
        assert body["version"]

    def test_health_without_probe_makes_no_calls(self, service):
        with patch("practice_pipeline.HealthCheck._check_connectivity") as mock_probe:
            _, body = service.health()

        mock_probe.assert_not_called()
        assert "connectivity" not in body

    def test_health_probe_reports_unreachable_providers(self, service):
        with patch("practice_pipeline.HealthCheck._check_connectivity", return_value=False):
            status, body = service.health(probe=True)

        assert status == 200
        assert body["status"] == "degraded"
        assert body["connectivity"]["reachable"] is False
        assert any("Exa unreachable" in issue for issue in body["connectivity"]["issues"])

    def test_health_probe_all_reachable(self, service):
        with patch("practice_pipeline.HealthCheck._check_connectivity", return_value=True):
            _, body = service.health(probe=True)

        assert body["status"] == "healthy"
        assert body["connectivity"] == {"reachable": True, "issues": []}


@pytest.mark.integration
class TestDiscover:

    def test_query_required(self, service):
        status, _ = asyncio.run(service.discover({}))

        assert status == 400

    def test_returns_leads(self, make_orchestrator):
        search = FakeSearch(results=[
            {"url": "https://www.brightsmile.co.uk", "title": "Bright Smile", "text": "Dentist in London", "score": 0.9},
            {"title": "no url"},
        ])
        service = AutomationService(make_orchestrator(search=search))

        status, body = asyncio.run(service.discover({"query": "cosmetic dentist", "location": "London", "limit": 5}))

        assert status == 200
        assert body["leads_found"] == 1
        lead = body["leads"][0]
        assert lead["domain"] == "www.brightsmile.co.uk"
        assert lead["demo"] is False
        query, domains, limit = search.calls[0]
        assert "in London" in query
        assert domains == [".co.uk", ".uk"]
        assert limit == 5

    def test_demo_leads_when_search_fails(self, make_orchestrator):
        service = AutomationService(make_orchestrator(search=FakeSearch(error=RuntimeError("exa down"))))

        status, body = asyncio.run(service.discover({"query": "Physio", "limit": 1}))

        assert status == 200
        assert body["leads_found"] == 1
        assert body["leads"][0]["demo"] is True

    def test_demo_leads_when_unconfigured(self, make_orchestrator):
        search = FakeSearch(configured=False)
        service = AutomationService(make_orchestrator(search=search))

        _, body = asyncio.run(service.discover({"query": "Physio"}))

        assert search.calls == []
        assert all(lead["demo"] for lead in body["leads"])
