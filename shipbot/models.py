"""Модели базы данных для сервисов, деплоев и сборок."""
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from shipbot.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class DeploymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    BUILDING = "BUILDING"
    DEPLOYING = "DEPLOYING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"
    CRASHED = "CRASHED"


class BuildStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    BUILDING = "BUILDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Service(Base):
    """Модель сервиса: собирается из git-репозитория или запускается из готового образа."""
    __tablename__ = "services"

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, nullable=False, index=True)
    workspace_id = Column(String, nullable=False)
    name = Column(String, nullable=False)

    repository_url = Column(String, nullable=True)
    repository_branch = Column(String, nullable=True)
    github_installation_id = Column(Integer, nullable=True)
    github_repo_full_name = Column(String, nullable=True)
    image = Column(String, nullable=True)

    default_cpu_limit = Column(String, nullable=True)
    default_memory_limit = Column(String, nullable=True)
    default_cpu_request = Column(String, nullable=True)
    default_memory_request = Column(String, nullable=True)
    default_port = Column(Integer, default=8080)
    default_health_check_path = Column(String, nullable=True)
    default_replicas = Column(Integer, default=1)

    auto_deploy = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    deployments = relationship("Deployment", back_populates="service")

    @property
    def source_kind(self) -> str:
        return "git" if self.repository_url else "image"


class Deployment(Base):
    """Модель деплоя: одна попытка запустить сервис на конкретной ревизии."""
    __tablename__ = "deployments"

    id = Column(String, primary_key=True, default=new_id)
    service_id = Column(String, ForeignKey("services.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default=DeploymentStatus.PENDING.value)

    git_commit_sha = Column(String, nullable=True)
    git_commit_message = Column(Text, nullable=True)
    git_author = Column(String, nullable=True)
    git_branch = Column(String, nullable=True)

    image_url = Column(String, nullable=True)
    image_tag = Column(String, nullable=True)
    build_logs = Column(Text, nullable=True)
    deployment_logs = Column(Text, nullable=True)

    # Переопределения ресурсов; None означает значение по умолчанию из сервиса
    port = Column(Integer, nullable=True)
    replicas = Column(Integer, nullable=True)
    cpu_limit = Column(String, nullable=True)
    memory_limit = Column(String, nullable=True)
    cpu_request = Column(String, nullable=True)
    memory_request = Column(String, nullable=True)
    health_check_path = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    deployed_at = Column(DateTime, nullable=True)
    stopped_at = Column(DateTime, nullable=True)

    service = relationship("Service", back_populates="deployments")
    builds = relationship("BuildQueueItem", back_populates="deployment", order_by="BuildQueueItem.created_at")

    def effective_resources(self) -> Dict[str, Any]:
        """Ресурсы деплоя с подстановкой значений сервиса."""
        service = self.service

        def pick(own, default):
            return own if own is not None else default

        return {
            "port": pick(self.port, service.default_port),
            "replicas": pick(self.replicas, service.default_replicas),
            "cpu_limit": pick(self.cpu_limit, service.default_cpu_limit),
            "memory_limit": pick(self.memory_limit, service.default_memory_limit),
            "cpu_request": pick(self.cpu_request, service.default_cpu_request),
            "memory_request": pick(self.memory_request, service.default_memory_request),
            "health_check_path": pick(self.health_check_path, service.default_health_check_path),
        }


class BuildQueueItem(Base):
    """Учетная запись одной попытки сборки в очереди."""
    __tablename__ = "build_queue"

    id = Column(String, primary_key=True, default=new_id)
    service_id = Column(String, ForeignKey("services.id"), nullable=False)
    deployment_id = Column(String, ForeignKey("deployments.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default=BuildStatus.QUEUED.value)
    attempts = Column(Integer, nullable=False, default=0)
    build_start_time = Column(DateTime, nullable=True)
    build_end_time = Column(DateTime, nullable=True)
    build_duration_seconds = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    deployment = relationship("Deployment", back_populates="builds")


class WebhookEvent(Base):
    """Журнал входящих вебхуков. Записи только добавляются."""
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=new_id)
    service_id = Column(String, ForeignKey("services.id"), nullable=True)
    provider = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    delivery_id = Column(String, nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    signature = Column(String, nullable=True)
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
