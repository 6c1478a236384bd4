"""Factory wiring the repository, collaborators and engine into one system."""

import time
from datetime import datetime
from typing import Callable, Optional

from .config import EngineConfig, SchedulerKind, StorageBackend, get_config, validate_config
from .core.collaborators import (
    AuditSink, Directory, HttpIntegrationService, InMemoryTaskService, IntegrationService,
    LoggingAuditSink, LoggingNotificationService, NotificationService, StaticDirectory, TaskService
)
from .core.execution_engine import ExecutionEngine
from .core.graph_manager import DefinitionManager
from .core.graph_validator import GraphValidator
from .core.logging import get_logger, setup_logging
from .core.permissions import AccessPolicy
from .core.scheduler import BranchScheduler, InlineBranchScheduler, ThreadPoolBranchScheduler
from .core.statistics import ExecutionRecorder
from .models.core import utc_now
from .storage.database import create_database_engine, create_session_factory, create_tables
from .storage.repository import InMemoryRepository, WorkflowRepository
from .storage.sql_repository import DatabaseAuditSink, SqlAlchemyRepository

logger = get_logger(__name__)


class WorkflowSystem:
    """Container for the wired components of one workflow engine."""

    def __init__(
        self,
        config: EngineConfig,
        repository: WorkflowRepository,
        definitions: DefinitionManager,
        engine: ExecutionEngine,
        task_service: TaskService,
        notification_service: NotificationService,
        integration_service: IntegrationService,
        audit_sink: AuditSink,
        directory: Directory
    ):
        self.config = config
        self.repository = repository
        self.definitions = definitions
        self.engine = engine
        self.task_service = task_service
        self.notification_service = notification_service
        self.integration_service = integration_service
        self.audit_sink = audit_sink
        self.directory = directory

    def shutdown(self) -> None:
        logger.info(f"Shutting down {self.config.app_name}")
        try:
            self.engine.shutdown()
        except Exception as e:
            logger.error(f"Error during execution engine shutdown: {str(e)}")


def create_scheduler(config: EngineConfig) -> BranchScheduler:
    if config.branch_scheduler == SchedulerKind.THREAD_POOL:
        return ThreadPoolBranchScheduler(max_workers=config.max_branch_workers)
    return InlineBranchScheduler()


def create_workflow_system(
    config: Optional[EngineConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    task_service: Optional[TaskService] = None,
    notification_service: Optional[NotificationService] = None,
    integration_service: Optional[IntegrationService] = None,
    audit_sink: Optional[AuditSink] = None,
    directory: Optional[Directory] = None,
    policy: Optional[AccessPolicy] = None,
    scheduler: Optional[BranchScheduler] = None,
    clock: Optional[Callable[[], datetime]] = None,
    sleep: Optional[Callable[[float], None]] = None,
    configure_logging: bool = False
) -> WorkflowSystem:
    """
    Create a fully wired workflow system.

    Components not supplied are built from ``config``: the repository from
    ``storage_backend``, the scheduler from ``branch_scheduler`` and
    in-process defaults for the collaborators.

    Args:
        config: Engine configuration, defaults to the global configuration
        configure_logging: Apply the configuration's logging settings

    Returns:
        WorkflowSystem: The wired components
    """
    config = config or get_config()
    validate_config(config)

    if configure_logging:
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )

    clock = clock or utc_now
    sleep = sleep or time.sleep

    if repository is None:
        if config.storage_backend == StorageBackend.DATABASE:
            db_engine = create_database_engine(
                config.database_url,
                echo=config.database_echo,
                connect_args=config.get_database_connect_args()
            )
            create_tables(db_engine)
            session_factory = create_session_factory(db_engine)
            repository = SqlAlchemyRepository(session_factory)
            if audit_sink is None:
                audit_sink = DatabaseAuditSink(session_factory)
            logger.info("Database storage initialized")
        else:
            repository = InMemoryRepository()

    task_service = task_service or InMemoryTaskService()
    notification_service = notification_service or LoggingNotificationService()
    integration_service = integration_service or HttpIntegrationService(timeout=config.integration_timeout)
    audit_sink = audit_sink or LoggingAuditSink()
    directory = directory or StaticDirectory()
    policy = policy or AccessPolicy()

    definitions = DefinitionManager(repository, GraphValidator(), policy, clock)
    engine = ExecutionEngine(
        repository=repository,
        task_service=task_service,
        notification_service=notification_service,
        integration_service=integration_service,
        directory=directory,
        recorder=ExecutionRecorder(repository, audit_sink, clock),
        policy=policy,
        scheduler=scheduler or create_scheduler(config),
        config=config,
        clock=clock,
        sleep=sleep
    )

    logger.info(f"{config.app_name} initialized with {config.storage_backend.value} storage")
    return WorkflowSystem(
        config=config,
        repository=repository,
        definitions=definitions,
        engine=engine,
        task_service=task_service,
        notification_service=notification_service,
        integration_service=integration_service,
        audit_sink=audit_sink,
        directory=directory
    )
