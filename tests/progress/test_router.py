"""Tests for the progress, enrollment and admin HTTP endpoints."""

import asyncio
from unittest.mock import ANY, AsyncMock, Mock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError


@pytest.fixture
def module_content(seed_module, module_id):
    return asyncio.run(seed_module(module_id, count=2, content_type="video"))


@pytest.fixture
def enrolled(client, student_headers, module_id, module_content):
    response = client.post(
        "/v1/enrollments", json={"module_id": str(module_id)}, headers=student_headers
    )
    assert response.status_code == 201
    return module_content


class TestAuthentication:
    def test_missing_token(self, client: TestClient) -> None:
        response = client.post("/v1/progress/content/start", json={"content_id": str(uuid4())})

        assert response.status_code == 401
        assert response.json()["error"] is True

    def test_invalid_token(self, client: TestClient) -> None:
        response = client.get(
            "/v1/enrollments/my", headers={"Authorization": "Bearer not-a-jwt"}
        )

        assert response.status_code == 401

    def test_admin_endpoint_requires_admin(self, client, student_headers) -> None:
        response = client.post(
            "/v1/admin/progress/reconcile", json={}, headers=student_headers
        )

        assert response.status_code == 403


class TestProgressEndpoints:
    def test_start_unknown_content(self, client, student_headers) -> None:
        response = client.post(
            "/v1/progress/content/start",
            json={"content_id": str(uuid4())},
            headers=student_headers,
        )

        assert response.status_code == 404
        assert response.json()["message"] == "Content not found"

    def test_start_without_enrollment(
        self, client, student_headers, module_content
    ) -> None:
        response = client.post(
            "/v1/progress/content/start",
            json={"content_id": str(module_content[0].id)},
            headers=student_headers,
        )

        assert response.status_code == 403

    def test_start_twice(self, client, student_headers, enrolled) -> None:
        payload = {"content_id": str(enrolled[0].id)}

        first = client.post(
            "/v1/progress/content/start", json=payload, headers=student_headers
        )
        second = client.post(
            "/v1/progress/content/start", json=payload, headers=student_headers
        )

        assert first.status_code == 200
        assert first.json()["already_started"] is False
        assert first.json()["progress"]["status"] == "in_progress"
        assert second.json()["already_started"] is True

    def test_position_auto_completes_video(
        self, client, student_headers, enrolled, module_id
    ) -> None:
        response = client.put(
            "/v1/progress/content/position",
            json={
                "content_id": str(enrolled[0].id),
                "percentage": 92,
                "position": 610,
                "time_spent": 30,
            },
            headers=student_headers,
        )
        enrollment = client.get(f"/v1/enrollments/{module_id}", headers=student_headers)

        assert response.status_code == 200
        assert response.json()["progress"]["status"] == "completed"
        assert enrollment.json()["progress_percentage"] == 50

    def test_position_validation(self, client, student_headers) -> None:
        response = client.put(
            "/v1/progress/content/position",
            json={"content_id": str(uuid4()), "percentage": 150, "position": 0},
            headers=student_headers,
        )

        assert response.status_code == 422
        assert response.json()["message"] == "Validation error"

    def test_complete_with_score(self, client, student_headers, enrolled) -> None:
        response = client.post(
            "/v1/progress/content/complete",
            json={"content_id": str(enrolled[1].id), "score": 8, "max_score": 10},
            headers=student_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["already_completed"] is False
        assert data["progress"]["score"] == 8
        assert data["progress"]["progress_percentage"] == 100

    def test_max_score_requires_score(self, client, student_headers) -> None:
        response = client.post(
            "/v1/progress/content/complete",
            json={"content_id": str(uuid4()), "max_score": 10},
            headers=student_headers,
        )

        assert response.status_code == 422

    def test_get_untouched_content(self, client, student_headers, enrolled) -> None:
        response = client.get(
            f"/v1/progress/content/{enrolled[0].id}", headers=student_headers
        )

        assert response.status_code == 404

    def test_get_content_progress(self, client, student_headers, enrolled) -> None:
        client.post(
            "/v1/progress/content/start",
            json={"content_id": str(enrolled[0].id)},
            headers=student_headers,
        )

        response = client.get(
            f"/v1/progress/content/{enrolled[0].id}", headers=student_headers
        )

        assert response.status_code == 200
        assert response.json()["status"] == "in_progress"

    def test_module_breakdown(
        self, client, student_headers, enrolled, module_id
    ) -> None:
        client.post(
            "/v1/progress/content/complete",
            json={"content_id": str(enrolled[0].id)},
            headers=student_headers,
        )

        response = client.get(f"/v1/progress/modules/{module_id}", headers=student_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["enrollment"]["completed_sections"] == 1
        assert data["content_type_progress"]["video"] == {
            "completed": 1,
            "total": 2,
            "percentage": 50,
        }
        assert len(data["detailed_progress"]) == 2


class TestEnrollmentEndpoints:
    def test_duplicate_enrollment(
        self, client, student_headers, enrolled, module_id
    ) -> None:
        response = client.post(
            "/v1/enrollments", json={"module_id": str(module_id)}, headers=student_headers
        )

        assert response.status_code == 409

    def test_list_my_enrollments(
        self, client, student_headers, enrolled, module_id
    ) -> None:
        response = client.get("/v1/enrollments/my", headers=student_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["module_id"] == str(module_id)
        assert data["items"][0]["total_sections"] == 2

    def test_unknown_enrollment(self, client, student_headers) -> None:
        response = client.get(f"/v1/enrollments/{uuid4()}", headers=student_headers)

        assert response.status_code == 404

    def test_pause_blocks_progress(
        self, client, student_headers, enrolled, module_id
    ) -> None:
        paused = client.patch(
            f"/v1/enrollments/{module_id}/status",
            json={"status": "paused"},
            headers=student_headers,
        )
        start = client.post(
            "/v1/progress/content/start",
            json={"content_id": str(enrolled[0].id)},
            headers=student_headers,
        )

        assert paused.status_code == 200
        assert paused.json()["status"] == "paused"
        assert start.status_code == 403

    def test_invalid_status_change(
        self, client, student_headers, enrolled, module_id
    ) -> None:
        response = client.patch(
            f"/v1/enrollments/{module_id}/status",
            json={"status": "completed"},
            headers=student_headers,
        )

        assert response.status_code == 409


class TestAdminEndpoints:
    def test_reconcile(self, client, admin_headers, enrolled) -> None:
        response = client.post(
            "/v1/admin/progress/reconcile",
            json={"dry_run": True, "detect_drift": True},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["scope"] == "all"
        assert data["total_enrollments"] == 1
        assert data["dry_run"] is True
        assert data["success_rate"] == 100.0

    def test_reconcile_rejects_zero_batch(self, client, admin_headers) -> None:
        response = client.post(
            "/v1/admin/progress/reconcile",
            json={"batch_size": 0},
            headers=admin_headers,
        )

        assert response.status_code == 422

    def test_refresh_section_counts(
        self, client, admin_headers, enrolled, module_id, services
    ) -> None:
        from coursetrack.content.models import ContentItem

        asyncio.run(
            services.registry.register(
                ContentItem(id=uuid4(), module_id=module_id, section="extra", order=5)
            )
        )

        response = client.post(
            f"/v1/admin/progress/modules/{module_id}/section-counts",
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "module_id": str(module_id),
            "updated": 1,
            "errors": 0,
            "dry_run": False,
        }

    def test_recompute_enrollment(
        self, client, admin_headers, enrolled, user_id, module_id
    ) -> None:
        response = client.post(
            f"/v1/admin/progress/enrollments/{user_id}/{module_id}/recompute",
            params={"dry_run": True},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "unchanged"
        assert data["total_sections"] == 2


def _redis_with_pipeline(**execute_kwargs):
    pipe = Mock()
    pipe.execute = AsyncMock(**execute_kwargs)
    redis_mock = Mock()
    redis_mock.pipeline = Mock(return_value=pipe)
    return redis_mock, pipe


class TestRateLimiting:
    def test_limit_exceeded(self, app, client, student_headers) -> None:
        redis_mock, _ = _redis_with_pipeline(return_value=[101, False])
        app.state.redis = redis_mock

        response = client.post(
            "/v1/progress/content/start",
            json={"content_id": str(uuid4())},
            headers=student_headers,
        )

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "900"

    def test_counter_and_ttl_share_a_pipeline(
        self, app, client, student_headers
    ) -> None:
        redis_mock, pipe = _redis_with_pipeline(return_value=[1, True])
        app.state.redis = redis_mock

        response = client.post(
            "/v1/progress/content/start",
            json={"content_id": str(uuid4())},
            headers=student_headers,
        )

        assert response.status_code == 404
        redis_mock.pipeline.assert_called_once()
        pipe.incr.assert_called_once()
        pipe.expire.assert_called_once_with(ANY, 900, nx=True)
        pipe.execute.assert_awaited_once()

    def test_redis_failure_allows_request(self, app, client, student_headers) -> None:
        redis_mock, _ = _redis_with_pipeline(
            side_effect=RedisConnectionError("down")
        )
        app.state.redis = redis_mock

        response = client.post(
            "/v1/progress/content/start",
            json={"content_id": str(uuid4())},
            headers=student_headers,
        )

        assert response.status_code == 404

    def test_reads_are_not_limited(self, app, client, student_headers) -> None:
        redis_mock, _ = _redis_with_pipeline(return_value=[500, False])
        app.state.redis = redis_mock

        response = client.get("/v1/enrollments/my", headers=student_headers)

        assert response.status_code == 200
        redis_mock.pipeline.assert_not_called()


class TestServiceUnavailable:
    def test_missing_services(self, app, client, student_headers) -> None:
        app.state.progress = None

        response = client.get("/v1/enrollments/my", headers=student_headers)

        assert response.status_code == 503
