"""
Common test fixtures for devstack-safety.
"""
import os

import pytest

from devstack_safety.config import SafetyConfig, SafetyContext
from devstack_safety.safety import SafetyFramework


@pytest.fixture
def safety_context(tmp_path):
    """Context whose safety directory lives under the test's tmp dir."""
    config = SafetyConfig(safety_dir=tmp_path / "safety", default_timeout=10)
    return SafetyContext(config=config)


@pytest.fixture
def framework(safety_context):
    return SafetyFramework(safety_context)


@pytest.fixture
def host_dir(tmp_path):
    """Stand-in for the host filesystem a manager mutates."""
    path = tmp_path / "host"
    path.mkdir()
    return path


@pytest.fixture
def redis_conf(host_dir):
    """An existing config file with non-default permissions."""
    conf_dir = host_dir / "etc" / "redis"
    conf_dir.mkdir(parents=True)
    conf = conf_dir / "redis.conf"
    conf.write_text("port 6379\nappendonly no\n")
    os.chmod(conf, 0o640)
    return conf


@pytest.fixture
def site_dir(host_dir):
    """A directory tree with nested files and a symlink."""
    root = host_dir / "nginx" / "sites"
    (root / "available").mkdir(parents=True)
    (root / "available" / "default").write_text("server { listen 80; }\n")
    (root / "available" / "api").write_text("server { listen 8080; }\n")
    os.symlink("../available/default", root / "enabled-default")
    os.chmod(root / "available" / "api", 0o600)
    return root
