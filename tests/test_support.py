"""Tests for configuration, logging, retries and the default collaborators."""

import json
import logging
import os

import pytest
import requests

from flowengine.config import (
    EngineConfig, SchedulerKind, StorageBackend, get_config, get_development_config, get_testing_config,
    load_config, reset_config, validate_config
)
from flowengine.core.collaborators import HttpIntegrationService, IntegrationResult, LoggingAuditSink, StaticDirectory
from flowengine.core.error_recovery import RetryConfig, execute_with_retry
from flowengine.core.exceptions import (
    ConcurrentModification, ConfigurationError, IntegrationFailure, PermissionDenied
)
from flowengine.core.logging import (
    StructuredFormatter, WorkflowTextFormatter, _context_filter, clear_logging_context, get_logging_context,
    set_logging_context
)
from flowengine.core.scheduler import InlineBranchScheduler, ThreadPoolBranchScheduler
from flowengine.factory import create_scheduler
from flowengine.models.core import HistoryAction, HistoryEntry, InstanceStatus, IntegrationKind, WorkflowInstance


class TestConfig:
    """Test cases for EngineConfig."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.storage_backend == StorageBackend.MEMORY
        assert config.branch_scheduler == SchedulerKind.INLINE
        assert config.is_sqlite
        assert config.get_database_connect_args() == {"check_same_thread": False}

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("FLOWENGINE_STORAGE_BACKEND", "database")
        monkeypatch.setenv("FLOWENGINE_BRANCH_SCHEDULER", "thread_pool")
        monkeypatch.setenv("FLOWENGINE_MAX_BRANCH_WORKERS", "3")
        monkeypatch.setenv("FLOWENGINE_DEBUG", "true")
        monkeypatch.setenv("FLOWENGINE_LOG_LEVEL", "debug")

        config = get_config()
        assert config.storage_backend == StorageBackend.DATABASE
        assert config.branch_scheduler == SchedulerKind.THREAD_POOL
        assert config.max_branch_workers == 3
        assert config.debug is True
        assert config.log_level.value == "DEBUG"
        assert get_config() is config

    def test_load_config_reads_dotenv(self, tmp_path, monkeypatch):
        env_file = tmp_path / "engine.env"
        env_file.write_text("FLOWENGINE_APP_NAME=Approvals\nFLOWENGINE_COMMIT_RETRY_ATTEMPTS=9\n")
        monkeypatch.delenv("FLOWENGINE_APP_NAME", raising=False)
        monkeypatch.delenv("FLOWENGINE_COMMIT_RETRY_ATTEMPTS", raising=False)

        try:
            config = load_config(str(env_file))
            assert config.app_name == "Approvals"
            assert config.commit_retry_attempts == 9
        finally:
            os.environ.pop("FLOWENGINE_APP_NAME", None)
            os.environ.pop("FLOWENGINE_COMMIT_RETRY_ATTEMPTS", None)
            reset_config()

    @pytest.mark.parametrize("field,value", [
        ("database_url", "oracle://db"),
        ("max_branch_workers", 0),
        ("commit_retry_base_delay", -1.0),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValueError):
            EngineConfig(**{field: value})

    def test_validate_config(self):
        validate_config(get_testing_config())
        validate_config(get_development_config())
        assert get_development_config().storage_backend == StorageBackend.DATABASE
        config = EngineConfig(integration_retry_base_delay=5.0, integration_retry_max_delay=1.0)
        with pytest.raises(ConfigurationError):
            validate_config(config)

    def test_create_scheduler(self):
        assert isinstance(create_scheduler(EngineConfig()), InlineBranchScheduler)
        scheduler = create_scheduler(EngineConfig(branch_scheduler=SchedulerKind.THREAD_POOL, max_branch_workers=2))
        try:
            assert isinstance(scheduler, ThreadPoolBranchScheduler)
        finally:
            scheduler.shutdown()


class TestLogging:
    def test_context_is_attached_to_structured_records(self):
        set_logging_context(instance_id="inst-1", token="t1")
        try:
            assert get_logging_context() == {"instance_id": "inst-1", "token": "t1"}
            record = logging.LogRecord("flowengine.core", logging.INFO, __file__, 1, "hello %s", ("world",), None)
            _context_filter.filter(record)
            entry = json.loads(StructuredFormatter().format(record))
        finally:
            clear_logging_context()

        assert entry["message"] == "hello world"
        assert entry["instance_id"] == "inst-1"
        assert entry["level"] == "INFO"
        assert get_logging_context() == {}

    def test_text_marker_lists_known_context_keys(self):
        formatter = WorkflowTextFormatter(fmt="%(message)s%(workflow)s")
        record = logging.LogRecord("flowengine.core", logging.INFO, __file__, 1, "step", (), None)
        record.extra_fields = {"instance_id": "inst-1", "node_id": "review", "other": "x"}
        assert formatter.format(record) == "step [instance=inst-1 node=review]"

        bare = logging.LogRecord("flowengine.core", logging.INFO, __file__, 1, "step", (), None)
        assert formatter.format(bare) == "step"

    def test_audit_lines_carry_entry_fields(self, caplog):
        instance = WorkflowInstance(id="inst-1", definition_id="d", definition_version=1, title="t",
                                    initiated_by="ann")
        entry = HistoryEntry(seq=3, node_id="review", action=HistoryAction.COMPLETE, actor="ann",
                             token="root", status=InstanceStatus.RUNNING)

        with caplog.at_level(logging.INFO, logger="flowengine.audit"):
            LoggingAuditSink().record(instance, entry)

        record = caplog.records[-1]
        assert record.name == "flowengine.audit"
        assert record.extra_fields["seq"] == 3
        assert record.extra_fields["node_id"] == "review"
        assert record.extra_fields["status"] == InstanceStatus.RUNNING.value
        assert json.loads(StructuredFormatter().format(record))["actor"] == "ann"


class TestRetry:
    """Test cases for execute_with_retry."""

    def _config(self, **kwargs):
        delays = []
        config = RetryConfig(base_delay=0.1, jitter=False, sleep=delays.append, **kwargs)
        return config, delays

    def test_recovers_from_transient_error(self):
        config, delays = self._config(max_attempts=3)
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConcurrentModification("inst-1", expected_version=1, actual_version=2)
            return "ok"

        assert execute_with_retry(flaky, config) == "ok"
        assert delays == [0.1, 0.2]

    def test_gives_up_and_propagates(self):
        config, _ = self._config(max_attempts=2, retryable_exceptions=[IntegrationFailure])
        calls = []

        def failing():
            calls.append(1)
            raise IntegrationFailure("down")

        with pytest.raises(IntegrationFailure):
            execute_with_retry(failing, config)
        assert len(calls) == 2

    def test_non_retryable_errors_fail_immediately(self):
        config, delays = self._config(max_attempts=5)
        calls = []

        def denied():
            calls.append(1)
            raise PermissionDenied("no")

        with pytest.raises(PermissionDenied):
            execute_with_retry(denied, config)
        assert len(calls) == 1
        assert delays == []

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self.ok = status_code < 400
        self._body = body
        self.text = "" if body is None else json.dumps(body)

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response


class TestHttpIntegrationService:
    """Webhook and API calls through a session."""

    CONTEXT = {"instance_id": "inst-1", "variables": {"amount": 10}}

    def test_webhook_posts_workflow_context(self):
        session = FakeSession(FakeResponse(200, {"accepted": True}))
        service = HttpIntegrationService(timeout=3.0, session=session)

        result = service.invoke(IntegrationKind.WEBHOOK, {"url": "https://hooks.example.com", "payload": {"a": 1}},
                                self.CONTEXT)

        assert result.success
        assert result.data == {"status_code": 200, "body": {"accepted": True}}
        method, url, kwargs = session.requests[0]
        assert (method, url) == ("POST", "https://hooks.example.com")
        assert kwargs["json"] == {"workflow": self.CONTEXT, "payload": {"a": 1}}
        assert kwargs["timeout"] == 3.0

    def test_api_defaults_to_get(self):
        session = FakeSession(FakeResponse(204))
        result = HttpIntegrationService(session=session).invoke(
            IntegrationKind.API, {"url": "https://api.example.com/items"}, self.CONTEXT
        )
        assert result.success
        assert session.requests[0][0] == "GET"
        assert session.requests[0][2]["json"] is None

    def test_failures_are_results(self):
        service = HttpIntegrationService(session=FakeSession(FakeResponse(503)))
        result = service.invoke(IntegrationKind.WEBHOOK, {"url": "https://hooks.example.com"}, self.CONTEXT)
        assert not result.success
        assert "HTTP 503" in result.reason

        service = HttpIntegrationService(session=FakeSession(error=requests.ConnectionError("refused")))
        assert not service.invoke(IntegrationKind.WEBHOOK, {"url": "https://x"}, self.CONTEXT).success
        assert not service.invoke(IntegrationKind.WEBHOOK, {}, self.CONTEXT).success

    def test_custom_handlers(self):
        service = HttpIntegrationService(session=FakeSession())
        assert not service.invoke(IntegrationKind.EMAIL, {}, self.CONTEXT).success

        service.register(IntegrationKind.EMAIL, lambda config, context: IntegrationResult(success=True))
        assert service.invoke(IntegrationKind.EMAIL, {}, self.CONTEXT).success


class TestStaticDirectory:
    def test_resolves_references_without_duplicates(self):
        directory = StaticDirectory(groups={"ops": ["ann", "ben"]})
        instance = WorkflowInstance(id="i", definition_id="d", definition_version=1, title="t",
                                    initiated_by="ann", assigned_to=["cat"])

        assert directory.resolve(["initiator", "group:ops", "assignee", "dan"], instance) == ["ann", "ben", "cat", "dan"]
        assert directory.resolve(["group:unknown"], instance) == []
