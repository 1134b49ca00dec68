"""Главный файл FastAPI приложения."""
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy import desc
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from shipbot.config import AppConfig, get_config
from shipbot.database import configure_engine, get_db, init_db, session_scope
from shipbot.lifecycle import InvalidTransition, retry_deployment
from shipbot.logs import configure_logging
from shipbot.models import BuildQueueItem, Deployment, DeploymentStatus, Service
from shipbot.signatures import GITHUB, GITLAB, verify
from shipbot.webhook import MalformedPayload, handle_push

logger = structlog.get_logger()


def sync_services(db: Session, config: AppConfig) -> None:
    """Синхронизировать сервисы из конфигурации с базой данных.

    Сервисы только добавляются и обновляются: деплои ссылаются на них навсегда.
    """
    for service_config in config.services:
        service = db.get(Service, service_config.id)
        if not service:
            service = Service(id=service_config.id)
            db.add(service)
        service.name = service_config.name
        service.project_id = service_config.project_id
        service.workspace_id = service_config.workspace_id
        service.repository_url = service_config.repository_url
        service.repository_branch = service_config.branch if service_config.repository_url else None
        service.image = service_config.image
        service.auto_deploy = service_config.auto_deploy
        service.github_installation_id = service_config.github_installation_id
        service.github_repo_full_name = service_config.github_repo_full_name
        service.default_cpu_limit = service_config.cpu_limit
        service.default_memory_limit = service_config.memory_limit
        service.default_cpu_request = service_config.cpu_request
        service.default_memory_request = service_config.memory_request
        service.default_port = service_config.port
        service.default_health_check_path = service_config.health_check_path
        service.default_replicas = service_config.replicas
    db.commit()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Инициализация при старте."""
    config = get_config()
    configure_logging(config.log_level, config.log_format)
    configure_engine(config.database_url)
    init_db()
    with session_scope() as db:
        sync_services(db, config)
    logger.info("shipbot_started", services=len(config.services))
    yield


app = FastAPI(title="ShipBot", lifespan=lifespan)


def get_build_queue():
    from shipbot.tasks import CeleryBuildQueue

    return CeleryBuildQueue()


def get_deploy_queue():
    from shipbot.tasks import CeleryDeployQueue

    return CeleryDeployQueue()


def _secret_for(provider: str) -> Optional[str]:
    config = get_config()
    return config.github.webhook_secret if provider == GITHUB else config.gitlab.webhook_secret


async def _handle_webhook_request(
    request: Request,
    db: Session,
    build_queue,
    provider: str,
    event_type: Optional[str],
    signature: str,
    delivery_id: Optional[str],
) -> Dict[str, Any]:
    """Общая функция для обработки webhook запросов."""
    content_type = request.headers.get("Content-Type", "")
    if "application/json" not in content_type:
        raise HTTPException(
            status_code=400,
            detail=f"Неверный Content-Type. Ожидается application/json, получен: {content_type}",
        )

    # Подпись считается от сырого тела, поэтому читаем bytes
    body_bytes = await request.body()
    if not body_bytes:
        raise HTTPException(status_code=400, detail="Тело запроса пусто")

    if not verify(provider, body_bytes, signature, _secret_for(provider)):
        logger.warning("webhook_signature_invalid", provider=provider, delivery_id=delivery_id)
        raise HTTPException(status_code=401, detail="Неверная подпись webhook")

    if not event_type:
        raise HTTPException(status_code=400, detail="Отсутствует заголовок с типом события")

    try:
        payload = json.loads(body_bytes.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise HTTPException(status_code=400, detail=f"Ошибка декодирования UTF-8: {str(e)}")
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"Неверный формат JSON: {str(e)}")

    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload должен быть JSON объектом (словарем)")

    try:
        result = await run_in_threadpool(
            handle_push,
            db,
            build_queue,
            provider,
            event_type,
            payload,
            signature,
            delivery_id,
            get_config().pipeline.dedupe_deliveries,
        )
    except MalformedPayload as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("webhook_processing_failed", provider=provider, delivery_id=delivery_id)
        raise HTTPException(status_code=503, detail=f"Не удалось поставить сборку в очередь: {e}")

    return {"status": "accepted", **result.as_dict()}


@app.post("/webhooks/github")
async def github_webhook(
    request: Request,
    x_github_event: Optional[str] = Header(None),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_delivery: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    build_queue=Depends(get_build_queue),
):
    """Эндпоинт для приема вебхуков от GitHub."""
    logger.info("webhook_received", provider=GITHUB, event_type=x_github_event, delivery_id=x_github_delivery)
    if not x_hub_signature_256:
        raise HTTPException(status_code=400, detail="Отсутствует заголовок подписи")

    response = await _handle_webhook_request(
        request, db, build_queue, GITHUB, x_github_event, x_hub_signature_256, x_github_delivery
    )
    response["deliveryId"] = x_github_delivery
    return response


@app.post("/webhooks/gitlab")
async def gitlab_webhook(
    request: Request,
    x_gitlab_event: Optional[str] = Header(None),
    x_gitlab_token: Optional[str] = Header(None),
    x_gitlab_event_uuid: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    build_queue=Depends(get_build_queue),
):
    """Эндпоинт для приема вебхуков от GitLab."""
    logger.info("webhook_received", provider=GITLAB, event_type=x_gitlab_event, delivery_id=x_gitlab_event_uuid)
    if not x_gitlab_token:
        raise HTTPException(status_code=400, detail="Отсутствует заголовок с токеном")

    return await _handle_webhook_request(
        request, db, build_queue, GITLAB, x_gitlab_event, x_gitlab_token, x_gitlab_event_uuid
    )


def _deployment_to_dict(deployment: Deployment, with_logs: bool = False) -> Dict[str, Any]:
    data = {
        "id": deployment.id,
        "service_id": deployment.service_id,
        "name": deployment.name,
        "status": deployment.status,
        "git_commit_sha": deployment.git_commit_sha,
        "git_commit_message": deployment.git_commit_message,
        "git_author": deployment.git_author,
        "git_branch": deployment.git_branch,
        "image_url": deployment.image_url,
        "image_tag": deployment.image_tag,
        "resources": deployment.effective_resources(),
        "created_at": deployment.created_at.isoformat() if deployment.created_at else None,
        "deployed_at": deployment.deployed_at.isoformat() if deployment.deployed_at else None,
        "stopped_at": deployment.stopped_at.isoformat() if deployment.stopped_at else None,
    }
    if with_logs:
        data["build_logs"] = deployment.build_logs
        data["deployment_logs"] = deployment.deployment_logs
    return data


def _build_to_dict(item: BuildQueueItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "deployment_id": item.deployment_id,
        "status": item.status,
        "attempts": item.attempts,
        "build_start_time": item.build_start_time.isoformat() if item.build_start_time else None,
        "build_end_time": item.build_end_time.isoformat() if item.build_end_time else None,
        "build_duration_seconds": item.build_duration_seconds,
        "error_message": item.error_message,
    }


def _get_deployment_or_404(db: Session, deployment_id: str) -> Deployment:
    deployment = db.get(Deployment, deployment_id)
    if not deployment:
        raise HTTPException(status_code=404, detail="Деплой не найден")
    return deployment


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/services")
def get_services(db: Session = Depends(get_db)):
    """API для получения списка сервисов."""
    services = db.query(Service).order_by(Service.name).all()
    result = [
        {
            "id": s.id,
            "name": s.name,
            "project_id": s.project_id,
            "source_kind": s.source_kind,
            "repository_url": s.repository_url,
            "branch": s.repository_branch,
            "image": s.image,
            "auto_deploy": s.auto_deploy,
        }
        for s in services
    ]
    return {"services": result}


@app.get("/api/deployments")
def get_deployments(limit: int = 50, status: Optional[str] = None, db: Session = Depends(get_db)):
    """API для получения списка деплоев."""
    query = db.query(Deployment)
    if status:
        try:
            status = DeploymentStatus(status.upper()).value
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Неизвестный статус: {status}")
        query = query.filter(Deployment.status == status)
    deployments = query.order_by(desc(Deployment.created_at)).limit(limit).all()
    return {"deployments": [_deployment_to_dict(d) for d in deployments]}


@app.get("/api/deployments/{deployment_id}")
def get_deployment(deployment_id: str, db: Session = Depends(get_db)):
    """API для получения информации о деплое."""
    return _deployment_to_dict(_get_deployment_or_404(db, deployment_id), with_logs=True)


@app.get("/api/deployments/{deployment_id}/builds")
def get_deployment_builds(deployment_id: str, db: Session = Depends(get_db)):
    """История попыток сборки деплоя."""
    deployment = _get_deployment_or_404(db, deployment_id)
    return {"builds": [_build_to_dict(item) for item in deployment.builds]}


@app.post("/api/deployments/{deployment_id}/retry")
def retry(
    deployment_id: str,
    db: Session = Depends(get_db),
    build_queue=Depends(get_build_queue),
    deploy_queue=Depends(get_deploy_queue),
):
    """Повторить упавший деплой с текущими настройками сервиса."""
    deployment = _get_deployment_or_404(db, deployment_id)
    try:
        item = retry_deployment(db, deployment, build_queue, deploy_queue)
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.exception("deployment_retry_failed", deployment_id=deployment_id)
        raise HTTPException(status_code=503, detail=f"Не удалось поставить задание в очередь: {e}")

    return {
        "message": "Деплой поставлен на повтор",
        "deployment_id": deployment.id,
        "status": deployment.status,
        "build_queue_id": item.id if item else None,
    }
