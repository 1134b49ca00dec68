"""Обработка вебхуков от GitHub и GitLab."""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from shipbot.jobs import build_job_for
from shipbot.lifecycle import transition
from shipbot.models import BuildQueueItem, BuildStatus, Deployment, DeploymentStatus, Service, WebhookEvent, utcnow
from shipbot.resolver import find_service_by_repository
from shipbot.signatures import GITHUB, GITLAB

logger = structlog.get_logger()

PUSH_EVENTS = {
    GITHUB: "push",
    GITLAB: "Push Hook",
}


class MalformedPayload(Exception):
    """Payload нельзя разобрать как push-событие."""


@dataclass(frozen=True)
class PushEvent:
    """Нормализованное push-событие, одинаковое для всех провайдеров."""
    repository_url: str
    branch: Optional[str]
    commit_sha: str
    commit_message: str
    author: str


@dataclass
class WebhookResult:
    """Итог обработки вебхука: accepted или ignored с причиной."""

    status: str
    reason: Optional[str] = None
    service_id: Optional[str] = None
    deployment_id: Optional[str] = None
    webhook_event_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        result = {"result": self.status, "reason": self.reason}
        if self.deployment_id:
            result["deploymentId"] = self.deployment_id
        return result


def _branch_from_ref(ref: Any) -> Optional[str]:
    if not isinstance(ref, str) or not ref:
        return None
    return ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_github_push(payload: Dict[str, Any]) -> PushEvent:
    """Push от GitHub: URL из repository, коммит из head_commit."""
    repository = _dict(payload.get("repository"))
    repository_url = repository.get("clone_url") or repository.get("url")
    head_commit = payload.get("head_commit")

    if not repository_url or not isinstance(head_commit, dict) or not head_commit.get("id"):
        raise MalformedPayload("Неверный push payload: нет URL репозитория или head_commit")

    author = _dict(head_commit.get("author"))
    return PushEvent(
        repository_url=repository_url,
        branch=_branch_from_ref(payload.get("ref")),
        commit_sha=head_commit["id"],
        commit_message=head_commit.get("message") or "",
        author=author.get("name") or author.get("username") or "Unknown",
    )


def parse_gitlab_push(payload: Dict[str, Any]) -> PushEvent:
    """Push от GitLab: URL из project, коммит - последний в списке commits."""
    project = _dict(payload.get("project"))
    repository = _dict(payload.get("repository"))
    repository_url = project.get("git_http_url") or repository.get("url")
    commits = payload.get("commits") or []
    # Последний коммит в списке - голова ветки
    head_commit = commits[-1] if isinstance(commits, list) and commits else None

    if not repository_url or not isinstance(head_commit, dict) or not head_commit.get("id"):
        raise MalformedPayload("Неверный push payload: нет URL репозитория или коммитов")

    author = _dict(head_commit.get("author"))
    return PushEvent(
        repository_url=repository_url,
        branch=_branch_from_ref(payload.get("ref")),
        commit_sha=head_commit["id"],
        commit_message=head_commit.get("message") or "",
        author=author.get("name") or "Unknown",
    )


PUSH_PARSERS: Dict[str, Callable[[Dict[str, Any]], PushEvent]] = {
    GITHUB: parse_github_push,
    GITLAB: parse_gitlab_push,
}


def save_webhook_event(
    db: Session,
    service: Service,
    provider: str,
    event_type: str,
    payload: Dict[str, Any],
    signature: Optional[str],
    delivery_id: Optional[str],
) -> WebhookEvent:
    webhook_event = WebhookEvent(
        service_id=service.id,
        provider=provider,
        event_type=event_type,
        delivery_id=delivery_id,
        payload=payload,
        signature=signature,
        processed=False,
    )
    db.add(webhook_event)
    db.commit()
    db.refresh(webhook_event)
    logger.info("webhook_event_saved", webhook_event_id=webhook_event.id, service_id=service.id)
    return webhook_event


def mark_webhook_processed(db: Session, webhook_event: WebhookEvent, error: Optional[str] = None) -> None:
    webhook_event.processed = True
    webhook_event.processed_at = utcnow()
    webhook_event.error = error
    db.commit()


def is_duplicate_delivery(db: Session, provider: str, delivery_id: Optional[str]) -> bool:
    if not delivery_id:
        return False
    # Доставка, на которой упала постановка в очередь, может прийти снова
    return (
        db.query(WebhookEvent.id)
        .filter(
            WebhookEvent.provider == provider,
            WebhookEvent.delivery_id == delivery_id,
            WebhookEvent.error.is_(None),
        )
        .first()
        is not None
    )


def enqueue_build(db: Session, build_queue, service: Service, push: PushEvent) -> Deployment:
    """Создать деплой и запись очереди, поставить задание на сборку."""
    deployment = Deployment(
        service_id=service.id,
        name=f"{service.name}-{push.commit_sha[:7]}-{utcnow().strftime('%Y%m%d%H%M%S%f')}",
        status=DeploymentStatus.PENDING.value,
        git_commit_sha=push.commit_sha,
        git_commit_message=push.commit_message,
        git_author=push.author,
        git_branch=push.branch,
    )
    db.add(deployment)
    db.flush()

    build_item = BuildQueueItem(
        service_id=service.id,
        deployment_id=deployment.id,
        status=BuildStatus.QUEUED.value,
    )
    db.add(build_item)
    db.commit()
    db.refresh(deployment)
    db.refresh(build_item)
    logger.info("deployment_created", deployment_id=deployment.id, build_queue_id=build_item.id)

    try:
        build_queue.enqueue(build_job_for(service, deployment, build_item))
    except Exception as e:
        # Задание не попало в брокер: запись не должна висеть в PENDING
        transition(deployment, DeploymentStatus.FAILED)
        deployment.build_logs = f"Не удалось поставить сборку в очередь: {e}"
        build_item.status = BuildStatus.FAILED.value
        build_item.error_message = str(e)
        db.commit()
        raise

    logger.info("build_enqueued", deployment_id=deployment.id, commit_sha=push.commit_sha)
    return deployment


def handle_push(
    db: Session,
    build_queue,
    provider: str,
    event_type: str,
    payload: Dict[str, Any],
    signature: Optional[str],
    delivery_id: Optional[str] = None,
    dedupe: bool = True,
) -> WebhookResult:
    """Обработать вебхук уже прошедший проверку подписи.

    Несовпадения (неизвестный репозиторий, другая ветка, выключенный
    автодеплой) - штатный трафик, а не ошибки. Исключения бросаются только
    на некорректный payload и на сбой постановки в очередь.
    """
    log = logger.bind(provider=provider, event_type=event_type, delivery_id=delivery_id)

    if event_type != PUSH_EVENTS[provider]:
        log.info("webhook_event_ignored", reason="unsupported event")
        return WebhookResult(status="ignored", reason="unsupported_event")

    push = PUSH_PARSERS[provider](payload)
    log = log.bind(repository_url=push.repository_url, branch=push.branch)
    log.info("push_event_received", commit_sha=push.commit_sha)

    service = find_service_by_repository(db, push.repository_url)
    if not service:
        log.warning("service_not_found")
        return WebhookResult(status="ignored", reason="no_service")

    if dedupe and is_duplicate_delivery(db, provider, delivery_id):
        log.info("webhook_duplicate_delivery", service_id=service.id)
        return WebhookResult(status="ignored", reason="duplicate", service_id=service.id)

    webhook_event = save_webhook_event(db, service, provider, event_type, payload, signature, delivery_id)
    result = WebhookResult(status="ignored", service_id=service.id, webhook_event_id=webhook_event.id)

    if not service.auto_deploy:
        log.info("auto_deploy_disabled", service_id=service.id)
        mark_webhook_processed(db, webhook_event)
        result.reason = "auto_deploy_disabled"
        return result

    if service.repository_branch != push.branch:
        log.info("branch_mismatch", service_id=service.id, expected=service.repository_branch)
        mark_webhook_processed(db, webhook_event)
        result.reason = "branch_mismatch"
        return result

    try:
        deployment = enqueue_build(db, build_queue, service, push)
    except Exception as e:
        db.rollback()
        mark_webhook_processed(db, webhook_event, error=str(e))
        log.error("build_enqueue_failed", service_id=service.id, error=str(e))
        raise

    mark_webhook_processed(db, webhook_event)
    log.info("webhook_processed", webhook_event_id=webhook_event.id, deployment_id=deployment.id)
    result.status = "accepted"
    result.reason = "build_enqueued"
    result.deployment_id = deployment.id
    return result
