"""Application factory: config, middleware, generic error handlers and CLI."""
import json
import logging
from datetime import date

import pytest

import portal.services.workflow_engine as engine
from portal.config import ProductionConfig
from portal.middleware.logging_config import JSONFormatter, ReadableFormatter
from portal.models.audit import write_audit
from portal.models.approver_spec import DirectSupervisor
from portal.models.vacation import VacationSchedule, VacationStatus


class TestFactory:
    def test_testing_config(self, app):
        assert app.config["TESTING"] is True
        assert app.config["RATELIMIT_ENABLED"] is False

    def test_production_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            ProductionConfig()


class TestMiddleware:
    def test_timing_headers(self, client):
        res = client.get("/api/v1/health", headers={"X-Trace-ID": "abc123"})
        assert res.status_code == 200
        assert res.headers["X-Trace-ID"] == "abc123"
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_unknown_api_path(self, client):
        res = client.get("/api/v1/nowhere")
        assert res.status_code == 404
        assert res.get_json()["path"] == "/api/v1/nowhere"

    def test_method_not_allowed(self, client):
        assert client.put("/api/v1/health").status_code == 405


class TestCli:
    def test_update_vacation_statuses(self, app, org, make_template, vacation_form):
        template = make_template(DirectSupervisor(), is_vacation_request=True)
        req = engine.submit_request(template.id, org.employee.id, vacation_form())
        engine.approve_step(req.id, req.approval_steps[0].id, org.supervisor.id)

        runner = app.test_cli_runner()
        result = runner.invoke(args=["update-vacation-statuses", "--date", "2026-11-03"])

        assert result.exit_code == 0
        assert "activated=1 completed=0" in result.output
        schedule = VacationSchedule.query.filter_by(source_request_id=req.id).one()
        assert schedule.status == VacationStatus.ACTIVE
        assert schedule.start_date == date(2026, 11, 2)


def _record(**extra):
    record = logging.LogRecord("portal.test", logging.INFO, __file__, 10, "Step approved", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLogging:
    def test_json_formatter_nests_workflow_context(self):
        entry = json.loads(JSONFormatter().format(_record(request_id=7, step_id=3, status=200)))
        assert entry["message"] == "Step approved"
        assert entry["level"] == "INFO"
        assert entry["status"] == 200
        assert entry["context"] == {"request_id": 7, "step_id": 3}

    def test_json_formatter_without_context(self):
        entry = json.loads(JSONFormatter().format(_record()))
        assert "context" not in entry

    def test_readable_formatter_appends_context(self):
        line = ReadableFormatter().format(_record(request_id=7, duration_ms=12.4))
        assert "Step approved (request_id=7)" in line
        assert line.endswith("[12ms]")


class TestAudit:
    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError, match="Unknown audit action"):
            write_audit(entity_type="request", entity_id=1, action="request.delete")
