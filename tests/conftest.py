"""Pytest configuration and fixtures."""

import hashlib
import hmac
import json
import os
import shutil
from pathlib import Path

import pytest

# Окружение задается до импорта модулей приложения
os.environ["SHIPBOT_CONFIG"] = "/nonexistent/shipbot-test-config.yaml"
os.environ.setdefault("REDIS_URL", "memory://")

from shipbot.config import AppConfig, GithubConfig, GitlabConfig, reset_config, set_config  # noqa: E402
from shipbot.database import SessionLocal, configure_engine, init_db  # noqa: E402
from shipbot.models import Service  # noqa: E402

GITHUB_SECRET = "github-test-secret"
GITLAB_SECRET = "gitlab-test-token"
REPO_URL = "https://github.com/acme/shop.git"


class FakeQueue:
    """Очередь, которая запоминает задания вместо отправки в брокер."""

    def __init__(self, error: Exception = None):
        self.jobs = []
        self.error = error

    def enqueue(self, job):
        if self.error:
            raise self.error
        self.jobs.append(job)
        return f"task-{len(self.jobs)}"


class FakeGit:
    """Вместо клонирования создает каталог с заданными файлами."""

    def __init__(self, workdir, files=None, error: Exception = None):
        self.workdir = Path(workdir)
        self.files = {"Dockerfile": "FROM scratch\n"} if files is None else files
        self.error = error
        self.clones = []
        self.cleaned = []

    def clone(self, repository_url, branch, commit_sha=None, authenticated_url=None, on_line=None):
        self.clones.append((repository_url, branch, commit_sha, authenticated_url))
        if self.error:
            raise self.error
        path = self.workdir / f"clone-{len(self.clones)}"
        path.mkdir(parents=True)
        for name, content in self.files.items():
            (path / name).write_text(content)
        if on_line:
            on_line("Cloning into 'shop'...\n")
        return str(path)

    def cleanup(self, path):
        self.cleaned.append(path)
        shutil.rmtree(path, ignore_errors=True)


class FakeRegistry:
    def __init__(self, registry_url="registry.local:5000", output_lines=(), build_error: Exception = None):
        self.registry_url = registry_url
        self.output_lines = list(output_lines)
        self.build_error = build_error
        self.built = []
        self.pushed = []

    def image_ref(self, image_name, image_tag):
        return f"{self.registry_url}/{image_name}:{image_tag}"

    def build(self, context_path, image_name, image_tag, on_line=None):
        for line in self.output_lines:
            if on_line:
                on_line(line)
        if self.build_error:
            raise self.build_error
        self.built.append((context_path, image_name, image_tag))
        return self.image_ref(image_name, image_tag)

    def inspect(self, image_name, image_tag):
        return "sha256:" + image_tag * 2

    def push(self, image_name, image_tag, on_line=None):
        self.pushed.append((image_name, image_tag))
        return self.image_ref(image_name, image_tag)


def github_signature(body: bytes, secret: str = GITHUB_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def github_push_payload(repo_url=REPO_URL, ref="refs/heads/main", sha="abc1234def5678", message="Fix checkout"):
    return {
        "ref": ref,
        "repository": {"clone_url": repo_url, "full_name": "acme/shop"},
        "head_commit": {
            "id": sha,
            "message": message,
            "author": {"name": "Dana", "username": "dana"},
        },
    }


def gitlab_push_payload(repo_url="https://gitlab.com/acme/api.git", ref="refs/heads/main"):
    return {
        "object_kind": "push",
        "ref": ref,
        "project": {"git_http_url": repo_url},
        "commits": [
            {"id": "1111111aaaa", "message": "first", "author": {"name": "Lee"}},
            {"id": "2222222bbbb", "message": "second", "author": {"name": "Kim"}},
        ],
    }


def to_body(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def config(tmp_path):
    """Тестовая конфигурация с секретами вебхуков."""
    cfg = AppConfig(
        database_url="sqlite://",
        redis_url="memory://",
        github=GithubConfig(webhook_secret=GITHUB_SECRET, app_id=None, private_key=None),
        gitlab=GitlabConfig(webhook_secret=GITLAB_SECRET),
    )
    cfg.build.workdir = str(tmp_path / "builds")
    set_config(cfg)
    yield cfg
    reset_config()


@pytest.fixture
def db(config):
    """Сессия к чистой in-memory базе."""
    engine = configure_engine("sqlite://")
    init_db()
    session = SessionLocal()
    yield session
    session.close()
    engine.dispose()


def make_service(db, **overrides) -> Service:
    values = {
        "id": "svc-shop",
        "name": "shop",
        "project_id": "Proj_Shop",
        "workspace_id": "ws-1",
        "repository_url": REPO_URL,
        "repository_branch": "main",
        "auto_deploy": True,
        "default_port": 8080,
        "default_replicas": 1,
    }
    values.update(overrides)
    service = Service(**values)
    db.add(service)
    db.commit()
    return service


@pytest.fixture
def service(db):
    return make_service(db)


@pytest.fixture
def build_queue():
    return FakeQueue()


@pytest.fixture
def deploy_queue():
    return FakeQueue()
