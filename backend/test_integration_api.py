"""
Integration Tests for the Storage Quota Ledger API
==================================================
Test Suite: Provisioning against a running server

Start the server first:
    python manage.py migrate && python manage.py runserver

Test Coverage:
- Organisation quota upsert and lookup
- Project quota upsert (requires the org quota)
- Project listing, filtering and usage report
- Error responses (404, 400)

The whole module is skipped when no server answers on BASE_URL.
"""

import os
import time
import pytest
import requests
from typing import Dict, Optional

# Test Configuration
BASE_URL = os.environ.get("QUOTA_API_URL", "http://127.0.0.1:8000")
API_ENDPOINT = f"{BASE_URL}/internal/quota"
TIMEOUT = 10  # seconds

# Constants
MB = 1024 * 1024


class TestHelper:
    """Helper class for common test operations"""

    @staticmethod
    def unique_org_id() -> int:
        """Org ids are never deleted through the API, so each test uses a fresh one"""
        return time.time_ns() // 1000

    @staticmethod
    def upsert_org(org_id: int, max_bytes: int) -> requests.Response:
        """Create or update an organisation quota"""
        payload = {"org_id": org_id, "max_bytes": max_bytes}
        return requests.put(f"{API_ENDPOINT}/org/", json=payload, timeout=TIMEOUT)

    @staticmethod
    def upsert_project(org_id: int, project_id: int, max_bytes: int) -> requests.Response:
        """Create or update a project quota"""
        payload = {"org_id": org_id, "project_id": project_id, "max_bytes": max_bytes}
        return requests.put(f"{API_ENDPOINT}/project/", json=payload, timeout=TIMEOUT)

    @staticmethod
    def get_org(org_id: int) -> requests.Response:
        return requests.get(f"{API_ENDPOINT}/org/{org_id}/", timeout=TIMEOUT)

    @staticmethod
    def get_project(org_id: int, project_id: int) -> requests.Response:
        return requests.get(f"{API_ENDPOINT}/project/{org_id}/{project_id}/", timeout=TIMEOUT)

    @staticmethod
    def list_projects(org_id: int, params: Optional[Dict] = None) -> requests.Response:
        """List project quotas of an organisation"""
        return requests.get(f"{API_ENDPOINT}/org/{org_id}/projects/", params=params or {}, timeout=TIMEOUT)

    @staticmethod
    def get_usage(org_id: int) -> requests.Response:
        return requests.get(f"{API_ENDPOINT}/org/{org_id}/usage/", timeout=TIMEOUT)


@pytest.fixture(scope="module", autouse=True)
def live_server_required():
    """Skip the module unless the API server is reachable"""
    try:
        requests.get(f"{BASE_URL}/", timeout=2)
    except requests.exceptions.ConnectionError:
        pytest.skip(f"Quota API server not running at {BASE_URL}")


class TestOrganisationQuota:
    """Organisation quota provisioning"""

    def test_upsert_and_get_org(self):
        """Test creating, reading and updating an org quota"""
        org_id = TestHelper.unique_org_id()

        response = TestHelper.upsert_org(org_id, 10 * MB)
        assert response.status_code == 200, f"Upsert failed: {response.text}"
        data = response.json()
        assert data["org_id"] == org_id
        assert data["max_bytes"] == 10 * MB
        assert data["used_bytes"] == 0

        response = TestHelper.upsert_org(org_id, 20 * MB)
        assert response.status_code == 200

        response = TestHelper.get_org(org_id)
        assert response.status_code == 200
        assert response.json()["max_bytes"] == 20 * MB
        assert response.json()["remaining_bytes"] == 20 * MB

    def test_missing_org_returns_404(self):
        """Test that an unknown org quota returns 404"""
        response = TestHelper.get_org(TestHelper.unique_org_id())
        assert response.status_code == 404

    def test_negative_limit_rejected(self):
        """Test that a negative limit returns 400"""
        response = TestHelper.upsert_org(TestHelper.unique_org_id(), -1)
        assert response.status_code == 400
        assert "max_bytes" in response.json()


class TestProjectQuota:
    """Project quota provisioning"""

    def test_project_requires_org(self):
        """Test that a project quota cannot be provisioned before its org"""
        response = TestHelper.upsert_project(TestHelper.unique_org_id(), 1, MB)
        assert response.status_code == 404
        assert response.json()["code"] == "quota_not_provisioned"

    def test_upsert_list_and_usage(self):
        """Test provisioning projects and reading the org breakdown"""
        org_id = TestHelper.unique_org_id()
        assert TestHelper.upsert_org(org_id, 10 * MB).status_code == 200

        for project_id, limit in ((1, 2 * MB), (2, 3 * MB)):
            response = TestHelper.upsert_project(org_id, project_id, limit)
            assert response.status_code == 200, f"Project upsert failed: {response.text}"

        response = TestHelper.get_project(org_id, 2)
        assert response.status_code == 200
        assert response.json()["max_bytes"] == 3 * MB

        response = TestHelper.list_projects(org_id)
        assert response.status_code == 200
        assert response.json()["count"] == 2

        response = TestHelper.list_projects(org_id, {"min_max_bytes": 3 * MB})
        assert [p["project_id"] for p in response.json()["results"]] == [2]

        usage = TestHelper.get_usage(org_id).json()
        assert usage["allocated_to_projects"] == 5 * MB
        assert usage["used_bytes"] == 0
        assert len(usage["projects"]) == 2
