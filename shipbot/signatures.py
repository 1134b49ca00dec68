"""Проверка подлинности вебхуков от провайдеров."""
import hashlib
import hmac
from typing import Optional

import structlog

logger = structlog.get_logger()

GITHUB = "github"
GITLAB = "gitlab"


def verify_github_signature(payload_body: bytes, signature_header: str, secret: str) -> bool:
    """Проверить подпись GitHub webhook (HMAC-SHA256 от сырого тела)."""
    # GitHub использует формат "sha256=<hash>"
    if not signature_header.startswith("sha256="):
        return False

    expected_hash = signature_header[7:]
    computed_hash = hmac.new(
        secret.encode("utf-8"),
        payload_body,
        hashlib.sha256,
    ).hexdigest()

    # Сравниваем байты: заголовок может содержать не-ASCII символы
    return hmac.compare_digest(expected_hash.encode("utf-8"), computed_hash.encode("utf-8"))


def verify_gitlab_token(token_header: str, secret: str) -> bool:
    """GitLab не подписывает тело, а присылает статический токен."""
    return token_header == secret


_POLICIES = {
    GITHUB: verify_github_signature,
    GITLAB: lambda payload_body, token, secret: verify_gitlab_token(token, secret),
}


def verify(provider: str, payload_body: bytes, signature: str, secret: Optional[str]) -> bool:
    """Проверить вебхук по политике провайдера.

    Если секрет не настроен, проверка пропускается с предупреждением.
    Наличие заголовка проверяет HTTP-слой до вызова.
    """
    if not secret:
        logger.warning("webhook_verification_skipped", provider=provider, reason="secret not configured")
        return True
    try:
        policy = _POLICIES[provider]
    except KeyError:
        raise ValueError(f"Неизвестный провайдер: {provider}")
    return policy(payload_body, signature, secret)
