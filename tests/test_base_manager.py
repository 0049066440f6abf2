"""
Tests for the manager base class.
"""
from unittest.mock import MagicMock

import pytest

from devstack_safety.base_manager import BaseManager
from devstack_safety.config import SafetyConfig, SafetyContext
from devstack_safety.errors import ActionFailed, OperationInProgress


class RedisManager(BaseManager):
    """Minimal manager editing a redis.conf."""

    def __init__(self, context, conf_path, **kwargs):
        self.conf_path = conf_path
        self.reported = []
        super().__init__(context, **kwargs)

    @classmethod
    def manager_name(cls):
        return "redis"

    def health_check(self):
        return {"status": "healthy", "checks": {"config": self.conf_path.exists()}}

    def set_port(self, port, fail=False):
        def action():
            text = self.conf_path.read_text().replace("port 6379", f"port {port}")
            self.conf_path.write_text(text)
            if fail:
                raise RuntimeError("redis-server refused to start")
            return port

        return self.execute_with_safety("set-port", action, target_paths=[self.conf_path], port=port)

    def handle_error(self, operation_key, error):
        self.reported.append((operation_key, error))


@pytest.fixture
def manager(framework, redis_conf):
    return RedisManager(framework.context, redis_conf, framework=framework)


def test_operation_key_is_namespaced(manager):
    assert manager.operation_key("set-port") == "redis-set-port"


def test_execute_with_safety_success(manager, framework, redis_conf):
    assert manager.set_port(6380) == 6380
    assert "port 6380" in redis_conf.read_text()

    operation = framework.get_operation("redis-set-port")
    assert operation.metadata.backup_requested is True
    assert operation.metadata.context == {"port": 6380}


def test_execute_with_safety_failure_rolls_back_and_reports(manager, redis_conf):
    original = redis_conf.read_text()

    with pytest.raises(ActionFailed):
        manager.set_port(6380, fail=True)

    assert redis_conf.read_text() == original
    [(key, error)] = manager.reported
    assert key == "redis-set-port"
    assert error.rollback_status == "ROLLED_BACK"


def test_without_target_paths_no_backup(manager, framework):
    manager.execute_with_safety("ping", lambda: "PONG")

    operation = framework.get_operation("redis-ping")
    assert operation.metadata.backup_requested is False
    assert operation.backups == []


def test_in_progress_error_reported(manager, framework):
    framework.registry.begin("redis-ping", "hash")

    with pytest.raises(OperationInProgress):
        manager.execute_with_safety("ping", lambda: "PONG")

    assert isinstance(manager.reported[0][1], OperationInProgress)


def test_dry_run_skips_action(tmp_path, redis_conf):
    context = SafetyContext(config=SafetyConfig(safety_dir=tmp_path / "safety"), dry_run=True)
    manager = RedisManager(context, redis_conf)
    action = MagicMock()

    assert manager.execute_with_safety("set-port", action, target_paths=[redis_conf]) is None
    action.assert_not_called()
    assert manager.framework.get_operation("redis-set-port") is None


def test_managers_share_context_not_globals(framework, redis_conf):
    first = RedisManager(framework.context, redis_conf, framework=framework)
    second = RedisManager(framework.context, redis_conf, framework=framework)

    assert first.framework is second.framework
    assert first.context is second.context
    assert first.health_check()["status"] == "healthy"
