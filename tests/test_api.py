"""
Integration tests for web API
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from lightkeeper.config import ConfigModel
from lightkeeper.context import build_context
from lightkeeper.models import Task, UserRole
from lightkeeper.sync.models import SyncDirection
from lightkeeper.sync.provider import ProviderNetworkError, ProviderRateLimitError
from lightkeeper.sync.scheduler import SchedulerState
from lightkeeper.webapp.app import create_app

from conftest import GRANT_ID, NOW, FakeMailProvider, extracted, make_event, make_message


def make_context(config, db, provider, clock, mail_provider=None, extractor=None):
    context = build_context(config=config, db=db, provider=provider, clock=clock,
                            mail_provider=mail_provider, extractor=extractor)
    context.auth_service.bcrypt_rounds = 4
    return context


@pytest.fixture
def context(test_config, db, provider, clock, mail_provider, extractor):
    return make_context(test_config, db, provider, clock, mail_provider, extractor)


@pytest.fixture
def client(context):
    """Create test client"""
    with TestClient(create_app(context)) as client:
        yield client


def register(client, email="member@example.com", role="member"):
    response = client.post("/api/auth/register", json={
        "email": email,
        "name": "Test User",
        "password": "password123",
        "role": role,
    })
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def auth_headers(client):
    token = register(client)["access_token"]
    return {"Authorization": f"Bearer {token}"}


class TestGeneral:
    """Test service endpoints"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["api"]["calendar"] == "/api/calendar"
        assert response.json()["api"]["emails"] == "/api/emails"

    def test_unhandled_error_returns_json(self, context):
        app = create_app(context)
        with TestClient(app, raise_server_exceptions=False) as client:
            token = register(client)["access_token"]
            with patch.object(context.db, "list_tasks_for_user", AsyncMock(side_effect=RuntimeError("boom"))):
                response = client.get("/api/tasks", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 500
        assert response.json()["type"] == "internal_error"


class TestAuthAPI:
    """Test authentication endpoints"""

    def test_register_returns_token_and_user(self, client):
        data = register(client, email="Org@Example.com", role="organisation")

        assert data["token_type"] == "Bearer"
        assert data["user"]["email"] == "org@example.com"
        assert data["user"]["role"] == "organisation"

    def test_duplicate_registration(self, client):
        register(client)
        response = client.post("/api/auth/register", json={
            "email": "member@example.com",
            "name": "Again",
            "password": "password123",
        })
        assert response.status_code == 400

    def test_login_and_me(self, client):
        register(client)

        response = client.post("/api/auth/login", json={
            "email": "member@example.com",
            "password": "password123",
        })
        assert response.status_code == 200
        token = response.json()["access_token"]

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["email"] == "member@example.com"

    def test_login_wrong_password(self, client):
        register(client)

        response = client.post("/api/auth/login", json={
            "email": "member@example.com",
            "password": "wrong-password",
        })
        assert response.status_code == 401

    def test_me_requires_token(self, client):
        assert client.get("/api/auth/me").status_code == 401
        bad = client.get("/api/auth/me", headers={"Authorization": "Bearer nonsense"})
        assert bad.status_code == 401


class TestCalendarAPI:
    """Test calendar sync endpoints"""

    def test_manual_sync(self, client, auth_headers, provider):
        provider.events = [
            make_event("evt-1", title="Planning", start=NOW + timedelta(days=1)),
            make_event("evt-2", title="Someday"),
        ]

        response = client.post("/api/calendar/sync", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Calendar sync completed"
        assert data["result"]["total_events"] == 2
        assert data["result"]["tasks_created"] == 1
        assert data["result"]["skipped_missing_start"] == 1
        assert data["result"]["errors"] == []
        assert provider.fetch_calls[0]["grant_id"] == GRANT_ID

        tasks = client.get("/api/tasks", headers=auth_headers).json()
        assert tasks["count"] == 1
        assert tasks["tasks"][0]["source"] == "calendar"

    def test_manual_sync_requires_auth(self, client):
        assert client.post("/api/calendar/sync").status_code == 401

    def test_manual_sync_provider_failure(self, client, auth_headers, provider):
        provider.fetch_error = ProviderNetworkError("connection refused")

        response = client.post("/api/calendar/sync", headers=auth_headers)

        assert response.status_code == 502
        assert "connection refused" in response.json()["detail"]

    def test_sync_stats(self, client, auth_headers, provider):
        provider.events = [
            make_event("evt-1", start=NOW + timedelta(days=1)),
            make_event("evt-2", start=NOW + timedelta(days=2)),
        ]
        client.post("/api/calendar/sync", headers=auth_headers)

        stats = client.get("/api/calendar/sync-stats", headers=auth_headers).json()

        assert stats["total_synced"] == 2
        assert stats["upcoming_events"] == 2
        assert stats["past_events"] == 0
        assert len(stats["recent_syncs"]) == 2

    def test_list_events(self, client, auth_headers, provider):
        provider.events = [make_event("evt-1", title="Planning", start=NOW + timedelta(days=1))]

        response = client.get(
            "/api/calendar/events",
            params={"calendar_id": "cal-primary", "limit": 10},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["count"] == 1
        assert response.json()["events"][0]["title"] == "Planning"
        assert provider.fetch_calls[0]["limit"] == 10

    def test_list_calendars(self, client, auth_headers):
        response = client.get("/api/calendar/calendars", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["calendars"][0]["id"] == "cal-primary"

    def test_scheduler_status(self, client, auth_headers):
        status = client.get("/api/calendar/scheduler", headers=auth_headers).json()

        assert status["state"] == "idle"
        assert status["pass_count"] == 0


class TestCalendarNotConfigured:
    """Test behaviour without provider credentials"""

    @pytest.mark.parametrize("api_key,grant_id", [(None, None), ("key", None), (None, GRANT_ID)])
    def test_manual_sync_returns_503(self, tmp_path, db, clock, api_key, grant_id):
        config = ConfigModel(
            data_dir=str(tmp_path),
            nylas_api_key=api_key,
            nylas_grant_id=grant_id,
            scheduler_enabled=False,
            jwt_secret="test-secret",
        )
        context = make_context(config, db, None, clock)

        with TestClient(create_app(context)) as client:
            token = register(client)["access_token"]
            headers = {"Authorization": f"Bearer {token}"}
            response = client.post("/api/calendar/sync", headers=headers)
            events = client.get("/api/calendar/events", headers=headers)

        assert response.status_code == 503
        assert response.json() == {"detail": "Calendar provider not configured"}
        assert events.status_code == 503

    def test_tasks_still_work(self, tmp_path, db, clock):
        config = ConfigModel(data_dir=str(tmp_path), scheduler_enabled=False, jwt_secret="s")
        context = make_context(config, db, None, clock)

        with TestClient(create_app(context)) as client:
            headers = {"Authorization": f"Bearer {register(client)['access_token']}"}
            response = client.post("/api/tasks", headers=headers, json={
                "title": "Offline task",
                "description": "No calendar",
                "due_date": (NOW + timedelta(days=1)).isoformat(),
            })
            scheduler = client.get("/api/calendar/scheduler", headers=headers).json()

        assert response.status_code == 201
        assert scheduler["state"] == "disabled"


class TestSchedulerLifespan:
    """Test scheduler start and stop with the application"""

    def test_scheduler_runs_with_app(self, test_config, db, provider, clock):
        test_config.scheduler_enabled = True
        context = make_context(test_config, db, provider, clock)

        with TestClient(create_app(context)) as client:
            headers = {"Authorization": f"Bearer {register(client)['access_token']}"}
            status = client.get("/api/calendar/scheduler", headers=headers).json()
            assert status["state"] == "armed"

        assert context.scheduler.state == SchedulerState.STOPPED
        assert provider.closed is True

    def test_email_scheduler_runs_with_app(self, test_config, db, provider, mail_provider, clock):
        test_config.scheduler_enabled = True
        context = make_context(test_config, db, provider, clock, mail_provider)

        with TestClient(create_app(context)) as client:
            headers = {"Authorization": f"Bearer {register(client)['access_token']}"}
            status = client.get("/api/emails/scheduler", headers=headers).json()
            assert status["state"] == "armed"
            assert status["job"] == "email"

        assert context.email_scheduler.state == SchedulerState.STOPPED
        assert mail_provider.closed is True

    def test_email_scan_can_be_disabled(self, test_config, db, provider, mail_provider, clock):
        test_config.scheduler_enabled = True
        test_config.email_scan_enabled = False
        context = make_context(test_config, db, provider, clock, mail_provider)

        with TestClient(create_app(context)):
            assert context.scheduler.state == SchedulerState.ARMED
            assert context.email_scheduler.state == SchedulerState.IDLE


class TestTasksAPI:
    """Test task endpoints"""

    def test_create_task_pushes_to_calendar(self, client, auth_headers, provider, context):
        due = NOW + timedelta(days=1)

        response = client.post("/api/tasks", headers=auth_headers, json={
            "title": "Write report",
            "description": "Draft the Q1 report",
            "priority": "high",
            "due_date": due.isoformat(),
        })

        assert response.status_code == 201
        task = response.json()
        assert task["priority"] == "high"
        assert task["source"] == "manual"

        assert len(provider.created) == 1
        assert provider.created[0].title == "[Lightkeeper] Write report"

    async def test_pushed_task_has_record(self, context, provider):
        user = await context.db.create_user("member@example.com", "Member")
        task = await context.db.create_task(Task(
            title="t", description="d", created_by=user.id, due_date=NOW + timedelta(days=1)
        ))

        await context.engine.sync_task_to_external_calendar(task)

        record = await context.record_store.find_by_task(task.id, SyncDirection.TASK_TO_EXTERNAL)
        assert record.event_id == provider.created[0].id

    def test_create_task_without_due_date_is_not_pushed(self, client, auth_headers, provider):
        response = client.post("/api/tasks", headers=auth_headers, json={
            "title": "Someday",
            "description": "No date",
        })

        assert response.status_code == 201
        assert provider.created == []

    def test_calendar_failure_does_not_fail_request(self, client, auth_headers, provider):
        provider.create_error = ProviderNetworkError("timeout")

        response = client.post("/api/tasks", headers=auth_headers, json={
            "title": "Write report",
            "description": "Draft",
            "due_date": (NOW + timedelta(days=1)).isoformat(),
        })

        assert response.status_code == 201

    def test_title_too_long(self, client, auth_headers):
        response = client.post("/api/tasks", headers=auth_headers, json={
            "title": "x" * 101,
            "description": "d",
        })
        assert response.status_code == 422

    def test_unknown_assignee(self, client, auth_headers):
        response = client.post("/api/tasks", headers=auth_headers, json={
            "title": "t",
            "description": "d",
            "assigned_to": 999,
        })
        assert response.status_code == 400

    def test_list_tasks(self, client, auth_headers):
        client.post("/api/tasks", headers=auth_headers, json={"title": "One", "description": "d"})
        client.post("/api/tasks", headers=auth_headers, json={"title": "Two", "description": "d"})

        data = client.get("/api/tasks", headers=auth_headers).json()

        assert data["count"] == 2
        assert sorted(t["title"] for t in data["tasks"]) == ["One", "Two"]

    def test_organisation_can_register(self, client):
        data = register(client, email="org@example.com", role=UserRole.ORGANISATION.value)
        assert data["user"]["role"] == "organisation"


class TestEmailAPI:
    """Test email ingestion endpoints"""

    def test_manual_scan(self, client, auth_headers, mail_provider, extractor):
        mail_provider.messages = [make_message("msg-1", subject="Report")]
        extractor.results = {"Report": extracted()}

        response = client.post("/api/emails/scan", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Email scan completed"
        assert body["result"]["total_scanned"] == 1
        assert body["result"]["tasks_created"] == 1
        assert mail_provider.fetch_calls[0]["grant_id"] == GRANT_ID

        tasks = client.get("/api/tasks", headers=auth_headers).json()["tasks"]
        assert tasks[0]["source"] == "email"
        assert tasks[0]["is_private"] is True

    def test_manual_scan_with_grant(self, client, auth_headers, mail_provider):
        response = client.post("/api/emails/scan", headers=auth_headers, json={"grant_id": "grant-other"})

        assert response.status_code == 200
        assert mail_provider.fetch_calls[0]["grant_id"] == "grant-other"

    def test_manual_scan_requires_auth(self, client):
        assert client.post("/api/emails/scan").status_code == 401

    def test_manual_scan_provider_failure(self, client, auth_headers, mail_provider):
        mail_provider.fetch_error = ProviderRateLimitError("Nylas API error 429: slow down", 429)

        response = client.post("/api/emails/scan", headers=auth_headers)

        assert response.status_code == 502
        assert response.json()["detail"] == "Email provider error: Nylas API error 429: slow down"

    def test_stats(self, client, auth_headers, mail_provider, extractor):
        mail_provider.messages = [
            make_message("msg-1", subject="Report"),
            make_message("msg-2", subject="Photos", received=NOW - timedelta(minutes=30)),
        ]
        extractor.results = {"Report": extracted()}
        client.post("/api/emails/scan", headers=auth_headers)

        stats = client.get("/api/emails/stats", headers=auth_headers).json()

        assert stats["total_emails_processed"] == 2
        assert stats["tasks_created"] == 1
        assert stats["last_processed_at"] == NOW.isoformat()
        assert stats["last_email_date"] == (NOW - timedelta(minutes=30)).isoformat()

    def test_process_creates_task(self, client, auth_headers, mail_provider, extractor):
        mail_provider.messages = [make_message("msg-1", subject="Report")]
        extractor.results = {"Report": extracted()}

        response = client.post("/api/emails/process", headers=auth_headers, json={"message_id": "msg-1"})
        again = client.post("/api/emails/process", headers=auth_headers, json={"message_id": "msg-1"})

        assert response.status_code == 201
        assert response.json()["message"] == "Task created successfully from email"
        assert response.json()["task"]["title"] == "Send the report"
        assert response.json()["extracted"]["confidence"] == 0.9
        assert again.status_code == 200
        assert again.json()["message"] == "Email already processed"

    def test_process_without_task(self, client, auth_headers, mail_provider):
        mail_provider.messages = [make_message("msg-1", subject="Photos")]

        response = client.post("/api/emails/process", headers=auth_headers, json={"message_id": "msg-1"})

        assert response.status_code == 200
        assert response.json()["message"] == "No actionable task found in this email"
        assert response.json()["task"] is None

    def test_process_missing_message(self, client, auth_headers):
        response = client.post("/api/emails/process", headers=auth_headers, json={"message_id": "gone"})

        assert response.status_code == 404

    def test_process_requires_message_id(self, client, auth_headers):
        response = client.post("/api/emails/process", headers=auth_headers, json={})

        assert response.status_code == 422


class TestEmailNotConfigured:
    """Test email endpoints without a mail provider or grant"""

    def test_scan_returns_503_without_provider(self, tmp_path, db, clock):
        config = ConfigModel(data_dir=str(tmp_path), scheduler_enabled=False, jwt_secret="s")
        context = make_context(config, db, None, clock)

        with TestClient(create_app(context)) as client:
            headers = {"Authorization": f"Bearer {register(client)['access_token']}"}
            response = client.post("/api/emails/scan", headers=headers)
            scheduler = client.get("/api/emails/scheduler", headers=headers).json()
            stats = client.get("/api/emails/stats", headers=headers)

        assert response.status_code == 503
        assert response.json() == {"detail": "Email provider not configured"}
        assert scheduler["state"] == "disabled"
        assert stats.status_code == 200

    def test_scan_needs_a_grant(self, tmp_path, db, clock):
        config = ConfigModel(data_dir=str(tmp_path), scheduler_enabled=False, jwt_secret="s")
        context = make_context(config, db, None, clock, FakeMailProvider())

        with TestClient(create_app(context)) as client:
            headers = {"Authorization": f"Bearer {register(client)['access_token']}"}
            missing = client.post("/api/emails/scan", headers=headers)
            given = client.post("/api/emails/scan", headers=headers, json={"grant_id": "grant-x"})

        assert missing.status_code == 400
        assert missing.json() == {"detail": "Grant ID is required"}
        assert given.status_code == 200
