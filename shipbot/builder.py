"""Исполнитель сборок: клон, сборка образа, публикация, передача контроллеру деплоя."""
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ContextManager, Optional

import structlog
from sqlalchemy.orm import Session

from shipbot.config import AppConfig
from shipbot.database import session_scope
from shipbot.git import GitClient
from shipbot.github_auth import GitHubAppAuth
from shipbot.jobs import BuildJob, DeployJob
from shipbot.lifecycle import InvalidTransition, can_transition, transition
from shipbot.models import BuildQueueItem, BuildStatus, Deployment, DeploymentStatus, utcnow
from shipbot.registry import ImageRegistry, image_tag_for, normalize_image_name
from shipbot.runner import BoundedLog

logger = structlog.get_logger()
# Отдельный канал: сборка прошла, но контроллер деплоя о ней не узнал
handoff_logger = structlog.get_logger("shipbot.handoff")


class BuildError(Exception):
    """Ошибка времени сборки (не ошибка очереди)."""


@dataclass
class BuildResult:
    deployment_id: str
    status: str
    image_url: Optional[str] = None
    image_tag: Optional[str] = None
    duration_seconds: Optional[int] = None
    handoff_ok: Optional[bool] = None


def _duration(start, end) -> int:
    return int((end - start).total_seconds())


class BuildExecutor:
    def __init__(
        self,
        git: GitClient,
        registry: ImageRegistry,
        deploy_queue,
        github_auth: Optional[GitHubAppAuth] = None,
        max_log_size: int = 100_000,
        dockerfile: str = "Dockerfile",
        session_factory: Callable[[], ContextManager[Session]] = session_scope,
    ):
        self.git = git
        self.registry = registry
        self.deploy_queue = deploy_queue
        self.github_auth = github_auth
        self.max_log_size = max_log_size
        self.dockerfile = dockerfile
        self.session_factory = session_factory

    @classmethod
    def from_config(cls, config: AppConfig, deploy_queue) -> "BuildExecutor":
        return cls(
            git=GitClient(config.build.workdir),
            registry=ImageRegistry(config.registry.url, config.build.dockerfile),
            deploy_queue=deploy_queue,
            github_auth=GitHubAppAuth(config.github),
            max_log_size=config.build.max_log_size,
            dockerfile=config.build.dockerfile,
        )

    def execute(self, job: BuildJob, attempt: int = 1, max_attempts: int = 1) -> BuildResult:
        """Выполнить одно задание сборки.

        Любая ошибка до публикации образа сохраняется в деплое и записи
        очереди и пробрасывается дальше, чтобы очередь решила о повторе.
        """
        log = logger.bind(deployment_id=job.deployment_id, build_queue_id=job.build_queue_id, attempt=attempt)

        with self.session_factory() as db:
            item = db.get(BuildQueueItem, job.build_queue_id)
            deployment = db.get(Deployment, job.deployment_id)
            if item is None or deployment is None:
                raise BuildError(f"Сборка {job.build_queue_id} или деплой {job.deployment_id} не найдены")

            if item.status == BuildStatus.COMPLETED.value:
                # Повторная доставка уже выполненного задания
                log.info("build_already_completed")
                return BuildResult(deployment.id, "skipped", deployment.image_url, deployment.image_tag)

            start = utcnow()
            try:
                self._begin(db, item, deployment, attempt, start)
            except InvalidTransition as e:
                log.warning("build_skipped", reason=str(e))
                item.status = BuildStatus.FAILED.value
                item.error_message = str(e)
                db.commit()
                return BuildResult(deployment.id, "skipped")

            log.info("build_started")
            build_log = BoundedLog(self.max_log_size)
            build_log.line(f"Сборка {job.commit_sha[:7]} из {job.branch} (попытка {attempt}/{max_attempts})")
            build_path = None
            try:
                clone_url = self._authenticated_url(job, build_log)
                build_path = self.git.clone(
                    job.repository_url,
                    job.branch,
                    job.commit_sha,
                    authenticated_url=clone_url,
                    on_line=build_log.append,
                )
                build_log.line("Репозиторий склонирован")
                self._save_logs(db, deployment, build_log)

                if not (Path(build_path) / self.dockerfile).is_file():
                    raise BuildError(f"{self.dockerfile} не найден в репозитории")

                image_name = normalize_image_name(job.project_id)
                image_tag = image_tag_for(job.commit_sha)
                self.registry.build(build_path, image_name, image_tag, on_line=build_log.append)
                image_id = self.registry.inspect(image_name, image_tag)
                build_log.line(f"Образ собран: {image_name}:{image_tag} ({image_id})")
                self._save_logs(db, deployment, build_log)

                image_url = self.registry.push(image_name, image_tag, on_line=build_log.append)
                build_log.line(f"Образ опубликован: {image_url}")

                deployment.image_url = image_url
                deployment.image_tag = image_tag
                deployment.build_logs = build_log.getvalue()
                transition(deployment, DeploymentStatus.DEPLOYING)

                end = utcnow()
                item.status = BuildStatus.COMPLETED.value
                item.build_end_time = end
                item.build_duration_seconds = _duration(start, end)
                db.commit()
            except Exception as e:
                log.error("build_failed", error=str(e))
                self._fail(db, item, deployment, start, build_log, e, attempt, max_attempts)
                raise
            finally:
                if build_path:
                    self.git.cleanup(build_path)

            log.info("build_completed", image=image_url, duration=item.build_duration_seconds)
            deploy_job = DeployJob(
                deployment_id=deployment.id,
                project_id=job.project_id,
                workspace_id=deployment.service.workspace_id,
            )
            handoff_ok = self._handoff(deploy_job)
            return BuildResult(
                deployment.id,
                DeploymentStatus.DEPLOYING.value,
                image_url,
                image_tag,
                item.build_duration_seconds,
                handoff_ok,
            )

    def _begin(self, db: Session, item: BuildQueueItem, deployment: Deployment, attempt: int, start) -> None:
        if deployment.status == DeploymentStatus.FAILED.value:
            # Очередь повторно доставила упавшее задание: это автоматический повтор
            transition(deployment, DeploymentStatus.PENDING)
        transition(deployment, DeploymentStatus.BUILDING)
        deployment.build_logs = None
        item.status = BuildStatus.BUILDING.value
        item.attempts = attempt
        item.build_start_time = start
        item.build_end_time = None
        item.build_duration_seconds = None
        item.error_message = None
        db.commit()

    def _authenticated_url(self, job: BuildJob, build_log: BoundedLog) -> Optional[str]:
        if not (job.installation_id and job.repo_full_name):
            return None
        if not (self.github_auth and self.github_auth.is_configured()):
            return None
        build_log.line(f"Получение токена установки GitHub App {job.installation_id}")
        return self.github_auth.get_authenticated_clone_url(job.installation_id, job.repo_full_name)

    def _save_logs(self, db: Session, deployment: Deployment, build_log: BoundedLog) -> None:
        deployment.build_logs = build_log.getvalue()
        db.commit()

    def _fail(self, db, item, deployment, start, build_log, error, attempt, max_attempts) -> None:
        db.rollback()
        end = utcnow()
        item.status = BuildStatus.FAILED.value
        item.build_end_time = end
        item.build_duration_seconds = _duration(start, end)
        item.error_message = str(error) or error.__class__.__name__

        # Сообщение об ошибке важнее вывода сборки, поэтому пишется первым
        failure_log = BoundedLog(self.max_log_size)
        failure_log.append(f"Build failed: {error}\n\n")
        failure_log.append("".join(traceback.format_exception(type(error), error, error.__traceback__)))
        if attempt < max_attempts:
            failure_log.append(f"\nПопытка {attempt}/{max_attempts}, сборка будет повторена\n")
        output = build_log.getvalue()
        if output:
            failure_log.append("\n--- вывод сборки ---\n")
            failure_log.append(output)
        deployment.build_logs = failure_log.getvalue()

        if can_transition(deployment.status, DeploymentStatus.FAILED):
            transition(deployment, DeploymentStatus.FAILED)
        db.commit()

    def _handoff(self, deploy_job: DeployJob) -> bool:
        """Передать деплой контроллеру. Сбой не откатывает успешную сборку."""
        try:
            self.deploy_queue.enqueue(deploy_job)
        except Exception as e:
            handoff_logger.error(
                "deploy_handoff_failed",
                deployment_id=deploy_job.deployment_id,
                project_id=deploy_job.project_id,
                error=str(e),
            )
            return False
        logger.info("deploy_job_enqueued", deployment_id=deploy_job.deployment_id)
        return True

    def mark_exhausted(self, build_queue_id: str, error: str, attempts: int) -> None:
        """Окончательно пометить сборку упавшей после последней доставки."""
        with self.session_factory() as db:
            item = db.get(BuildQueueItem, build_queue_id)
            if item is None:
                return
            item.status = BuildStatus.FAILED.value
            item.attempts = attempts
            item.error_message = item.error_message or error or "build failed"
            db.commit()
        logger.error("build_attempts_exhausted", build_queue_id=build_queue_id, attempts=attempts)
