"""Сообщения очередей сборки и деплоя и политика повторов."""
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from shipbot.models import BuildQueueItem, Deployment, Service

BUILD_QUEUE = "build"
DEPLOY_QUEUE = "deploy"

BUILD_TASK = "shipbot.tasks.build_image"
# Задача обрабатывается внешним контроллером деплоя, у нас только имя
DEPLOY_TASK = "deploy.deployment"


class _Message(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_message(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_message(cls, data: dict):
        return cls.model_validate(data)


class BuildJob(_Message):
    """Задание на сборку: все, что нужно воркеру без повторного чтения сервиса."""
    build_queue_id: str
    project_id: str
    deployment_id: str
    repository_url: str
    branch: str
    commit_sha: str
    commit_message: Optional[str] = None
    author: Optional[str] = None
    installation_id: Optional[int] = None
    repo_full_name: Optional[str] = None


class DeployJob(_Message):
    deployment_id: str
    project_id: str
    workspace_id: str


class RetryPolicy(BaseModel):
    """Ограничение числа доставок и экспоненциальная задержка между ними."""
    max_attempts: int = 3
    backoff_delay: float = 5.0

    def should_retry(self, attempt: int) -> bool:
        """attempt - номер только что завершившейся доставки, начиная с 1."""
        return attempt < self.max_attempts

    def countdown(self, attempt: int) -> float:
        """Задержка перед доставкой номер attempt + 1: 5, 10, 20..."""
        return self.backoff_delay * (2 ** (attempt - 1))


def build_job_for(service: Service, deployment: Deployment, item: BuildQueueItem) -> BuildJob:
    """Задание сборки для элемента очереди."""
    return BuildJob(
        build_queue_id=item.id,
        project_id=service.project_id,
        deployment_id=deployment.id,
        repository_url=service.repository_url,
        branch=deployment.git_branch or service.repository_branch,
        commit_sha=deployment.git_commit_sha,
        commit_message=deployment.git_commit_message,
        author=deployment.git_author,
        installation_id=service.github_installation_id,
        repo_full_name=service.github_repo_full_name,
    )


def deploy_job_for(service: Service, deployment: Deployment) -> DeployJob:
    """Задание деплоя для собранного деплоймента."""
    return DeployJob(
        deployment_id=deployment.id,
        project_id=service.project_id,
        workspace_id=service.workspace_id,
    )
