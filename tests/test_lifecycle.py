"""Tests for the deployment state machine."""

import pytest

from shipbot.jobs import BuildJob, DeployJob
from shipbot.lifecycle import (
    InvalidTransition,
    can_transition,
    is_terminal,
    reset_for_retry,
    retry_deployment,
    transition,
)
from shipbot.models import BuildQueueItem, BuildStatus, Deployment, DeploymentStatus

S = DeploymentStatus


def make_deployment(db, service, status=S.PENDING, **values) -> Deployment:
    deployment = Deployment(
        service_id=service.id,
        name="shop-abc1234",
        status=status.value,
        git_commit_sha="abc1234def5678",
        git_branch="main",
        **values,
    )
    db.add(deployment)
    db.commit()
    return deployment


class TestTransitions:
    """Tests for the transition table."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.PENDING, S.BUILDING),
            (S.BUILDING, S.DEPLOYING),
            (S.BUILDING, S.BUILDING),
            (S.DEPLOYING, S.RUNNING),
            (S.RUNNING, S.STOPPED),
            (S.RUNNING, S.CRASHED),
            (S.FAILED, S.PENDING),
            (S.PENDING, S.FAILED),
            (S.BUILDING, S.FAILED),
            (S.DEPLOYING, S.CRASHED),
        ],
    )
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.PENDING, S.DEPLOYING),
            (S.PENDING, S.RUNNING),
            (S.RUNNING, S.FAILED),
            (S.RUNNING, S.BUILDING),
            (S.STOPPED, S.PENDING),
            (S.CRASHED, S.PENDING),
            (S.FAILED, S.BUILDING),
            (S.DEPLOYING, S.BUILDING),
        ],
    )
    def test_forbidden(self, current, target):
        assert not can_transition(current, target)

    def test_transition_rejects_and_keeps_state(self, db, service):
        deployment = make_deployment(db, service, S.RUNNING)

        with pytest.raises(InvalidTransition) as exc_info:
            transition(deployment, S.FAILED)

        assert deployment.status == "RUNNING"
        assert exc_info.value.current == "RUNNING"
        assert exc_info.value.target == "FAILED"

    def test_timestamps(self, db, service):
        deployment = make_deployment(db, service, S.DEPLOYING)

        transition(deployment, S.RUNNING)
        assert deployment.deployed_at is not None
        assert deployment.stopped_at is None

        transition(deployment, S.STOPPED)
        assert deployment.stopped_at is not None

    def test_terminal_states(self):
        assert is_terminal("RUNNING")
        assert is_terminal("FAILED")
        assert not is_terminal("BUILDING")
        assert not is_terminal("PENDING")


class TestRetry:
    """Tests for the administrative retry."""

    def test_reset_applies_current_service_defaults(self, db, service):
        deployment = make_deployment(
            db, service, S.FAILED, port=9000, replicas=5, deployment_logs="old logs"
        )
        deployment.stopped_at = deployment.created_at
        service.default_port = 8081
        service.default_replicas = 2
        service.default_memory_limit = "512Mi"
        db.commit()

        reset_for_retry(deployment)

        assert deployment.status == "PENDING"
        assert deployment.deployment_logs is None
        assert deployment.stopped_at is None
        assert deployment.port == 8081
        assert deployment.replicas == 2
        assert deployment.memory_limit == "512Mi"

    def test_only_failed_can_be_retried(self, db, service, build_queue, deploy_queue):
        deployment = make_deployment(db, service, S.RUNNING)

        with pytest.raises(InvalidTransition):
            retry_deployment(db, deployment, build_queue, deploy_queue)

        assert build_queue.jobs == []
        assert deploy_queue.jobs == []

    def test_retry_without_image_rebuilds(self, db, service, build_queue, deploy_queue):
        deployment = make_deployment(db, service, S.FAILED, git_commit_message="Fix", git_author="Dana")

        item = retry_deployment(db, deployment, build_queue, deploy_queue)

        assert item is not None
        assert item.status == BuildStatus.QUEUED.value
        assert deployment.status == "PENDING"
        assert db.query(BuildQueueItem).count() == 1
        assert deploy_queue.jobs == []

        job = build_queue.jobs[0]
        assert isinstance(job, BuildJob)
        assert job.build_queue_id == item.id
        assert job.deployment_id == deployment.id
        assert job.branch == "main"
        assert job.commit_sha == "abc1234def5678"

    def test_retry_with_image_redeploys(self, db, service, build_queue, deploy_queue):
        deployment = make_deployment(
            db, service, S.FAILED, image_url="registry.local:5000/proj_shop:abc1234", image_tag="abc1234"
        )

        item = retry_deployment(db, deployment, build_queue, deploy_queue)

        assert item is None
        assert build_queue.jobs == []
        assert deploy_queue.jobs == [
            DeployJob(deployment_id=deployment.id, project_id="Proj_Shop", workspace_id="ws-1")
        ]

    def test_rebuild_enqueue_failure_marks_failed(self, db, service, build_queue, deploy_queue):
        deployment = make_deployment(db, service, S.FAILED)
        build_queue.error = ConnectionError("broker down")

        with pytest.raises(ConnectionError):
            retry_deployment(db, deployment, build_queue, deploy_queue)

        db.expire_all()
        assert db.get(Deployment, deployment.id).status == "FAILED"
        assert "broker down" in db.get(Deployment, deployment.id).build_logs
        item = db.query(BuildQueueItem).one()
        assert item.status == BuildStatus.FAILED.value
        assert item.error_message == "broker down"

    def test_redeploy_enqueue_failure_marks_failed(self, db, service, build_queue, deploy_queue):
        deployment = make_deployment(
            db, service, S.FAILED, image_url="registry.local:5000/proj_shop:abc1234", image_tag="abc1234"
        )
        deploy_queue.error = ConnectionError("broker down")

        with pytest.raises(ConnectionError):
            retry_deployment(db, deployment, build_queue, deploy_queue)

        db.expire_all()
        reloaded = db.get(Deployment, deployment.id)
        assert reloaded.status == "FAILED"
        assert "broker down" in reloaded.deployment_logs
        assert db.query(BuildQueueItem).count() == 0

        # Повтор после восстановления брокера снова возможен
        deploy_queue.error = None
        assert retry_deployment(db, reloaded, build_queue, deploy_queue) is None
        assert len(deploy_queue.jobs) == 1
