"""
Tests for the backup manager.
"""
import json
import os
import shutil
import stat
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from devstack_safety.errors import BackupFailed
from devstack_safety.models import BackupRecord
from devstack_safety.safety.backup import BackupManager
from devstack_safety.safety.verification import path_checksum


@pytest.fixture
def manager(tmp_path):
    return BackupManager(tmp_path / "backups")


def _mode(path):
    return stat.S_IMODE(os.lstat(path).st_mode)


def test_snapshot_file_records_content_and_mode(manager, redis_conf):
    [record] = manager.snapshot([redis_conf], "redis-config")

    assert record.existed_before is True
    assert record.kind == "file"
    assert record.mode == 0o640
    assert record.snapshot_ref.read_text() == "port 6379\nappendonly no\n"
    assert manager.verify_backup(record)


def test_snapshot_missing_path_has_no_snapshot(manager, host_dir):
    [record] = manager.snapshot([host_dir / "new.conf"], "create-conf")

    assert record.existed_before is False
    assert record.snapshot_ref is None


def test_restore_overwritten_file(manager, redis_conf):
    records = manager.snapshot([redis_conf], "redis-config")

    redis_conf.write_text("port 7000\n")
    os.chmod(redis_conf, 0o777)

    [outcome] = manager.restore(records)

    assert outcome.success
    assert redis_conf.read_text() == "port 6379\nappendonly no\n"
    assert _mode(redis_conf) == 0o640


def test_restore_file_replaced_by_directory(manager, redis_conf):
    records = manager.snapshot([redis_conf], "redis-config")

    redis_conf.unlink()
    redis_conf.mkdir()
    (redis_conf / "junk").write_text("x")

    [outcome] = manager.restore(records)

    assert outcome.success
    assert redis_conf.is_file()
    assert redis_conf.read_text() == "port 6379\nappendonly no\n"


def test_restore_deletes_created_paths(manager, host_dir):
    new_file = host_dir / "created.conf"
    new_dir = host_dir / "created.d"
    records = manager.snapshot([new_file, new_dir], "create")

    new_file.write_text("created")
    new_dir.mkdir()
    (new_dir / "nested").write_text("nested")

    outcomes = manager.restore(records)

    assert all(o.success for o in outcomes)
    assert not new_file.exists()
    assert not new_dir.exists()


def test_restore_directory_tree_exactly(manager, site_dir):
    before = path_checksum(site_dir)
    records = manager.snapshot([site_dir], "nginx-sites")
    assert records[0].kind == "directory"

    (site_dir / "available" / "default").write_text("broken")
    (site_dir / "available" / "extra").write_text("extra")
    os.unlink(site_dir / "enabled-default")
    os.chmod(site_dir / "available" / "api", 0o644)

    [outcome] = manager.restore(records)

    assert outcome.success
    assert path_checksum(site_dir) == before
    assert os.readlink(site_dir / "enabled-default") == "../available/default"


def test_restore_symlink_target(manager, site_dir):
    link = site_dir / "enabled-default"
    records = manager.snapshot([link], "nginx-enable")
    assert records[0].kind == "symlink"

    link.unlink()
    os.symlink("../available/api", link)

    manager.restore(records)

    assert os.readlink(link) == "../available/default"


def test_snapshot_fails_closed(manager, host_dir, redis_conf):
    other = host_dir / "other.conf"
    other.write_text("other")
    real_copy2 = shutil.copy2

    def copy2(src, dst, *args, **kwargs):
        if Path(src) == other:
            raise PermissionError(13, "Permission denied", str(src))
        return real_copy2(src, dst, *args, **kwargs)

    with patch("devstack_safety.safety.backup.shutil.copy2", side_effect=copy2):
        with pytest.raises(BackupFailed) as exc_info:
            manager.snapshot([redis_conf, other], "two-files")

    assert exc_info.value.path == other
    assert exc_info.value.operation_key == "two-files"
    assert isinstance(exc_info.value.cause, PermissionError)
    assert list(manager.backup_dir.iterdir()) == []


def test_restore_collects_every_outcome(manager, host_dir, redis_conf):
    created = host_dir / "created.conf"
    records = manager.snapshot([redis_conf, created], "mixed")
    created.write_text("new")
    redis_conf.write_text("changed")

    shutil.rmtree(records[0].snapshot_ref.parent)

    outcomes = manager.restore(records)

    assert [o.success for o in outcomes] == [False, True]
    assert outcomes[0].path == redis_conf
    assert "Snapshot missing" in outcomes[0].error
    assert not created.exists()


def test_create_backup_single_path(manager, redis_conf):
    record = manager.create_backup("manual", redis_conf)

    assert record.existed_before
    backups = manager.list_backups()
    assert len(backups) == 1
    assert backups[0]["operation_key"] == "manual"
    assert backups[0]["record_count"] == 1


def test_create_backup_fails_closed(manager, redis_conf):
    with patch.object(manager, "_snapshot_path", side_effect=PermissionError("denied")):
        with pytest.raises(BackupFailed):
            manager.create_backup("manual", redis_conf)


def test_records_round_trip_through_manifest(manager, redis_conf):
    records = manager.snapshot([redis_conf], "redis-config")
    set_dir = records[0].snapshot_ref.parent.parent

    loaded = manager.records_for(set_dir)

    assert loaded == records


def test_load_manifest_rejects_invalid(manager, tmp_path):
    bogus = manager.backup_dir / "bogus"
    bogus.mkdir()
    (bogus / "manifest.json").write_text("{not json")

    with pytest.raises(ValueError):
        manager.load_manifest(bogus)

    with pytest.raises(FileNotFoundError):
        manager.load_manifest(tmp_path / "nowhere")


def _age_backup(manager, name, days):
    info = next(b for b in manager.list_backups() if b["operation_key"] == name)
    manifest_path = info["path"] / "manifest.json"
    manifest = json.loads(manifest_path.read_text())
    manifest["timestamp"] = (datetime.now() - timedelta(days=days)).isoformat()
    manifest_path.write_text(json.dumps(manifest))


def test_list_backups_newest_first(manager, redis_conf):
    for index, name in enumerate(["first", "second", "third"]):
        manager.create_backup(name, redis_conf)
        _age_backup(manager, name, days=3 - index)

    names = [b["operation_key"] for b in manager.list_backups()]

    assert names == ["third", "second", "first"]


def test_list_backups_reports_incomplete_sets(manager):
    (manager.backup_dir / "half-written").mkdir()

    [info] = manager.list_backups()

    assert info["complete"] is False
    assert info["operation_key"] is None


def test_cleanup_keep_count_and_protected(manager, redis_conf):
    for index, name in enumerate(["a", "b", "c"]):
        manager.create_backup(name, redis_conf)
        _age_backup(manager, name, days=3 - index)

    deleted = manager.cleanup_old_backups(keep_count=1, protected=["a"])

    assert deleted == 1
    remaining = sorted(b["operation_key"] for b in manager.list_backups())
    assert remaining == ["a", "c"]


def test_cleanup_max_age(manager, redis_conf):
    manager.create_backup("old", redis_conf)
    manager.create_backup("new", redis_conf)
    _age_backup(manager, "old", days=40)

    deleted = manager.cleanup_old_backups(max_age_days=30)

    assert deleted == 1
    assert [b["operation_key"] for b in manager.list_backups()] == ["new"]


def test_cleanup_skips_incomplete_sets(manager):
    (manager.backup_dir / "in-progress").mkdir()

    assert manager.cleanup_old_backups(keep_count=0) == 0
    assert (manager.backup_dir / "in-progress").exists()


def test_verify_backup_detects_tampering(manager, redis_conf):
    [record] = manager.snapshot([redis_conf], "redis-config")

    record.snapshot_ref.write_text("tampered")

    assert manager.verify_backup(record) is False
    assert manager.verify_backup(BackupRecord(path=redis_conf, existed_before=False))


def test_get_backup_size(manager, redis_conf):
    assert manager.get_backup_size() == 0

    manager.create_backup("size", redis_conf)

    assert manager.get_backup_size() > len("port 6379\nappendonly no\n")


def test_snapshot_set_held_until_released(manager, redis_conf):
    manager.snapshot([redis_conf], "redis-config")
    other = BackupManager(manager.backup_dir)

    [info] = other.list_backups()
    assert info["in_flight"] is True
    assert other.cleanup_old_backups(keep_count=0) == 0

    manager.release("redis-config")

    [info] = other.list_backups()
    assert info["in_flight"] is False
    assert other.cleanup_old_backups(keep_count=0) == 1


def test_marker_of_dead_process_does_not_block_pruning(manager, redis_conf):
    manager.snapshot([redis_conf], "redis-config")

    with patch("devstack_safety.safety.backup._process_alive", return_value=False):
        assert manager.cleanup_old_backups(keep_count=0) == 1


def test_create_backup_is_not_held(manager, redis_conf):
    manager.create_backup("redis-conf-manual", redis_conf)

    [info] = manager.list_backups()
    assert info["in_flight"] is False


def test_release_without_snapshot_is_noop(manager):
    manager.release("never-snapshotted")

    assert manager.list_backups() == []


def test_restore_removes_read_only_dirs_inside_created_tree(manager, host_dir):
    created = host_dir / "letsencrypt"
    [record] = manager.snapshot([created], "certbot")
    (created / "keys").mkdir(parents=True)
    (created / "keys" / "privkey.pem").write_text("key")
    os.chmod(created / "keys", 0o555)
    parent_mode = _mode(host_dir)

    [outcome] = manager.restore([record])

    assert outcome.success
    assert not created.exists()
    assert _mode(host_dir) == parent_mode


@pytest.mark.skipif(os.geteuid() == 0, reason="root ignores directory permissions")
def test_restore_never_changes_parent_permissions(manager, host_dir):
    conf_d = host_dir / "conf.d"
    conf_d.mkdir()
    target = conf_d / "app"
    [record] = manager.snapshot([target], "app-config")
    target.mkdir()
    os.chmod(conf_d, 0o555)

    try:
        [outcome] = manager.restore([record])

        assert not outcome.success
        assert "Permission denied" in outcome.error
        assert _mode(conf_d) == 0o555
        assert target.is_dir()
    finally:
        os.chmod(conf_d, 0o755)
