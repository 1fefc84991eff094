import pytest

import lightsail_deploy as ld


def frozen_clock(value=1_700_000_000):
    return lambda: value


def test_first_run_creates_fresh_workspace(auth, tmp_path):
    path = tmp_path / "terraform-deployer"
    workspace = ld.prepare_workspace(auth, ld.LocalRunner(), str(path))
    assert workspace.state == "fresh"
    assert workspace.backup is None
    assert path.is_dir()
    assert list(path.iterdir()) == []


def test_rerun_keeps_old_workspace_in_exactly_one_backup(auth, tmp_path):
    path = tmp_path / "terraform-deployer"
    path.mkdir()
    (path / "marker.txt").write_text("keep me")

    workspace = ld.prepare_workspace(
        auth, ld.LocalRunner(), str(path), clock=frozen_clock()
    )

    backups = sorted(tmp_path.glob("terraform-deployer.backup.*"))
    assert [b.name for b in backups] == ["terraform-deployer.backup.1700000000"]
    assert (backups[0] / "marker.txt").read_text() == "keep me"
    assert workspace.backup == str(backups[0])
    assert workspace.state == "fresh"
    assert path.is_dir()
    assert not (path / "marker.txt").exists()


def test_backup_name_collision_bumps_timestamp(auth, tmp_path):
    runner = ld.LocalRunner()
    path = tmp_path / "app"
    path.mkdir()
    ld.prepare_workspace(auth, runner, str(path), clock=frozen_clock())
    (path / "second.txt").write_text("2")
    ld.prepare_workspace(auth, runner, str(path), clock=frozen_clock())

    names = sorted(b.name for b in tmp_path.glob("app.backup.*"))
    assert names == ["app.backup.1700000000", "app.backup.1700000001"]
    assert (tmp_path / "app.backup.1700000001" / "second.txt").exists()


def test_list_backups_oldest_first(auth, tmp_path):
    for stamp in ("1700000100", "1700000002", "1700000050"):
        (tmp_path / f"app.backup.{stamp}").mkdir()
    (tmp_path / "app").mkdir()
    found = ld.list_backups(ld.LocalRunner(), str(tmp_path / "app"))
    assert [f.rsplit(".", 1)[1] for f in found] == ["1700000002", "1700000050", "1700000100"]


def test_list_backups_none(tmp_path):
    assert ld.list_backups(ld.LocalRunner(), str(tmp_path / "app")) == []


def test_failure_to_create_is_a_workspace_error(auth, host):
    host.fail_on("mkdir -p")
    with pytest.raises(ld.WorkspaceError, match="/home/ubuntu/app"):
        ld.prepare_workspace(auth, host, "/home/ubuntu/app")
