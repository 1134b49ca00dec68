"""Клонирование репозиториев во временные рабочие каталоги."""
import os
import re
import shutil
import time
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import urlsplit

import structlog

from shipbot.runner import CommandError, CommandRunner

logger = structlog.get_logger()


class CloneError(Exception):
    """Не удалось склонировать репозиторий."""


def extract_repo_name(repository_url: str) -> str:
    """https://github.com/user/repo.git -> repo"""
    last_part = repository_url.rstrip("/").split("/")[-1]
    if last_part.endswith(".git"):
        last_part = last_part[:-4]
    # Имя идет в путь на диске
    return re.sub(r"[^A-Za-z0-9._-]", "-", last_part) or "repo"


def _url_secrets(authenticated_url: Optional[str]) -> List[str]:
    """Что скрывать в выводе git: URL с токеном и сам токен."""
    if not authenticated_url:
        return []
    secrets = [authenticated_url]
    password = urlsplit(authenticated_url).password
    if password:
        secrets.append(password)
    return secrets


class GitClient:
    def __init__(self, workdir: str):
        self.workdir = Path(workdir)

    def _clone_path(self, repository_url: str) -> Path:
        # Уникальное имя на попытку, чтобы параллельные воркеры не пересекались
        return self.workdir / f"{extract_repo_name(repository_url)}-{time.time_ns()}"

    def clone(
        self,
        repository_url: str,
        branch: str,
        commit_sha: Optional[str] = None,
        authenticated_url: Optional[str] = None,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Склонировать ветку и, если задан коммит, переключиться на него.

        При ошибке частично созданный каталог удаляется.
        """
        self.workdir.mkdir(parents=True, exist_ok=True)
        clone_path = self._clone_path(repository_url)
        clone_url = authenticated_url or repository_url
        runner = CommandRunner(secrets=_url_secrets(authenticated_url))

        logger.info("git_clone_started", repository_url=repository_url, branch=branch, path=str(clone_path))
        try:
            runner.run(
                ["git", "clone", "--depth", "1", "--single-branch", "--branch", branch, clone_url, str(clone_path)],
                on_line=on_line,
            )
            if commit_sha:
                # Для конкретного коммита нужна полная история ветки
                if (clone_path / ".git" / "shallow").exists():
                    runner.run(["git", "fetch", "--unshallow"], cwd=str(clone_path), on_line=on_line)
                runner.run(["git", "checkout", "--quiet", commit_sha], cwd=str(clone_path), on_line=on_line)
                logger.info("git_checkout_done", commit_sha=commit_sha)
        except (CommandError, OSError) as e:
            logger.error("git_clone_failed", repository_url=repository_url, error=str(e))
            self.cleanup(str(clone_path))
            raise CloneError(f"Не удалось склонировать {repository_url}: {e}") from e

        logger.info("git_clone_done", path=str(clone_path))
        return str(clone_path)

    def cleanup(self, path: str) -> None:
        """Удалить рабочий каталог сборки."""
        if os.path.exists(path):
            shutil.rmtree(path, ignore_errors=True)
            logger.info("build_dir_removed", path=path)
