import threading
import time

from conftest import systemctl_calls, write_systemctl_stub
from webpilotx.modules.deployments import worker_registry
from webpilotx.modules.deployments.commands import EXIT_CANCELLED, EXIT_FAILURE
from webpilotx.modules.deployments.deployment_worker import deploy_page_async, start_deployment_worker
from webpilotx.modules.deployments.log_store import (
    COMPLETION_SENTINEL,
    NO_BUILD_SCRIPT_TEXT,
    DeploymentLog,
)
from webpilotx.modules.deployments.service import DeploymentService
from webpilotx.modules.deployments.service_provisioner import unit_path
from webpilotx.modules.pages.service import working_tree_path


def _run(fake_db, page):
    deployment = DeploymentService(fake_db).create_deployment(page["id"])
    code = deploy_page_async(page["id"], deployment.id)
    return deployment.id, code, DeploymentLog(deployment.id).read().decode()


def test_no_build_script_succeeds_with_marker(fake_db, stub_sync, systemctl_dir):
    page = fake_db.add_page(name="site")

    deployment_id, code, content = _run(fake_db, page)

    assert code == 0
    assert fake_db.deployment(deployment_id)["exit_code"] == 0
    assert NO_BUILD_SCRIPT_TEXT in content
    assert content.rstrip().endswith(COMPLETION_SENTINEL)
    assert "--user restart webpilotx-site.service" in systemctl_calls(systemctl_dir)


def test_build_output_is_logged_and_service_provisioned(fake_db, stub_sync, systemctl_dir):
    page = fake_db.add_page(name="app", repo="org/app", branch="main", build_script="echo build-ok")
    fake_db.add_env(page["id"], "PORT", "3000")

    deployment_id, code, content = _run(fake_db, page)

    assert code == 0
    assert "build-ok" in content
    for marker in ("===WRITING ENV FILE===", "===RUNNING BUILD SCRIPT===", "===CONFIGURING SYSTEMD SERVICE==="):
        assert marker in content
    assert content.index("build-ok") < content.index(COMPLETION_SENTINEL)
    env_file = working_tree_path(page["id"]) / ".env"
    assert env_file.read_text() == 'PORT="3000"\n'
    assert 'Environment="PORT=3000"' in unit_path("app").read_text()
    assert stub_sync == [("org/app", "main", None)]


def test_env_entries_reach_the_build(fake_db, stub_sync):
    page = fake_db.add_page(build_script='test "$SECRET" = "opaque value" && test -f .env')
    fake_db.add_env(page["id"], "SECRET", "opaque value")

    _, code, _ = _run(fake_db, page)

    assert code == 0


def test_failing_build_stores_its_exit_code_and_skips_provisioning(fake_db, stub_sync, systemctl_dir):
    page = fake_db.add_page(name="broken", build_script="echo compiling\nexit 42")

    deployment_id, code, content = _run(fake_db, page)

    assert code == 42
    assert fake_db.deployment(deployment_id)["exit_code"] == 42
    assert "compiling" in content
    assert systemctl_calls(systemctl_dir) == []
    assert not unit_path("broken").exists()
    assert content.rstrip().endswith(COMPLETION_SENTINEL)


def test_sync_failure_aborts_before_build(fake_db, monkeypatch, systemctl_dir):
    from webpilotx.modules.deployments.repository_sync import RepositorySync

    monkeypatch.setattr(RepositorySync, "sync", lambda self, *args, **kwargs: 128)
    page = fake_db.add_page(build_script="echo should-not-run")

    deployment_id, code, content = _run(fake_db, page)

    assert code == 128
    assert "should-not-run" not in content
    assert systemctl_calls(systemctl_dir) == []


def test_account_token_is_handed_to_sync(fake_db, stub_sync):
    fake_db.add_account("octo", "tok-123")
    page = fake_db.add_page(account_login="octo")

    _run(fake_db, page)

    assert stub_sync[0][2] == "tok-123"


def test_provisioning_failure_is_logged_but_not_fatal(fake_db, stub_sync, tmp_path, app_settings, monkeypatch):
    failing = tmp_path / "failing"
    failing.mkdir()
    monkeypatch.setattr(app_settings, "systemctl_binary", str(write_systemctl_stub(failing, exit_code=1)))
    page = fake_db.add_page(name="flaky")

    _, code, content = _run(fake_db, page)

    assert code == 0
    assert "could not be fully activated" in content


def test_strict_provisioning_fails_the_deployment(fake_db, stub_sync, tmp_path, app_settings, monkeypatch):
    failing = tmp_path / "failing"
    failing.mkdir()
    monkeypatch.setattr(app_settings, "systemctl_binary", str(write_systemctl_stub(failing, exit_code=1)))
    monkeypatch.setattr(app_settings, "strict_provisioning", True)
    page = fake_db.add_page(name="flaky")

    _, code, _ = _run(fake_db, page)

    assert code == EXIT_FAILURE


def test_unexpected_error_still_records_a_failure(fake_db, stub_sync, monkeypatch):
    from webpilotx.modules.deployments import deployment_worker

    def boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(deployment_worker, "write_env_file", boom)
    page = fake_db.add_page()

    deployment_id, code, content = _run(fake_db, page)

    assert code == EXIT_FAILURE
    assert fake_db.deployment(deployment_id)["exit_code"] == EXIT_FAILURE
    assert "===DEPLOYMENT ERROR===\ndisk on fire" in content
    assert content.rstrip().endswith(COMPLETION_SENTINEL)


def test_deleted_page_fails_the_worker(fake_db):
    deployment = DeploymentService(fake_db).create_deployment(12345)

    assert deploy_page_async(12345, deployment.id) == EXIT_FAILURE
    assert "Page not found" in DeploymentLog(deployment.id).read().decode()


def test_deployments_of_one_page_run_one_at_a_time(fake_db, stub_sync, tmp_path):
    trace = tmp_path / "trace.txt"
    page = fake_db.add_page(build_script=f"echo start >> {trace}\nsleep 0.5\necho end >> {trace}")
    service = DeploymentService(fake_db)
    first = service.create_deployment(page["id"])
    second = service.create_deployment(page["id"])

    start_deployment_worker(page["id"], first.id)
    start_deployment_worker(page["id"], second.id)
    assert worker_registry.join(first.id, timeout=30)
    assert worker_registry.join(second.id, timeout=30)

    assert trace.read_text().split() == ["start", "end", "start", "end"]
    assert fake_db.deployment(first.id)["exit_code"] == 0
    assert fake_db.deployment(second.id)["exit_code"] == 0
    assert "Waiting for an earlier deployment" in DeploymentLog(second.id).read().decode()
    assert "Waiting for an earlier deployment" not in DeploymentLog(first.id).read().decode()


def test_different_pages_build_concurrently(fake_db, stub_sync, tmp_path):
    marker_dir = tmp_path / "markers"
    marker_dir.mkdir()
    script = (
        f"touch {marker_dir}/$PAGE_TAG\n"
        f"for i in $(seq 1 100); do [ $(ls {marker_dir} | wc -l) -ge 2 ] && exit 0; sleep 0.05; done\n"
        "exit 9"
    )
    service = DeploymentService(fake_db)
    started = []
    for tag in ("a", "b"):
        page = fake_db.add_page(build_script=script)
        fake_db.add_env(page["id"], "PAGE_TAG", tag)
        deployment = service.create_deployment(page["id"])
        start_deployment_worker(page["id"], deployment.id)
        started.append(deployment.id)

    for deployment_id in started:
        assert worker_registry.join(deployment_id, timeout=30)
        assert fake_db.deployment(deployment_id)["exit_code"] == 0


def test_cancel_terminates_running_build(fake_db, stub_sync):
    from webpilotx.modules.deployments import process_registry

    page = fake_db.add_page(build_script="echo started\nsleep 30")
    deployment = DeploymentService(fake_db).create_deployment(page["id"])
    start_deployment_worker(page["id"], deployment.id)
    log = DeploymentLog(deployment.id)

    deadline = time.monotonic() + 10
    while b"started" not in log.read() and time.monotonic() < deadline:
        time.sleep(0.05)
    assert worker_registry.request_cancel(deployment.id)
    process_registry.terminate(deployment.id)

    assert worker_registry.join(deployment.id, timeout=15)
    assert fake_db.deployment(deployment.id)["exit_code"] == EXIT_CANCELLED


def test_start_returns_before_build_finishes(fake_db, stub_sync):
    page = fake_db.add_page(build_script="sleep 1")
    deployment = DeploymentService(fake_db).create_deployment(page["id"])

    started = time.monotonic()
    thread = start_deployment_worker(page["id"], deployment.id)
    assert time.monotonic() - started < 0.5
    assert isinstance(thread, threading.Thread)
    assert worker_registry.join(deployment.id, timeout=30)


def test_backgrounded_build_output_never_follows_the_sentinel(fake_db, stub_sync):
    page = fake_db.add_page(build_script="echo hi\n(sleep 3; echo late-output) &")

    deployment_id, code, content = _run(fake_db, page)
    time.sleep(4)

    assert code == 0
    assert content.endswith(f"\n{COMPLETION_SENTINEL}\n")
    assert DeploymentLog(deployment_id).read().decode() == content
    assert "late-output" not in content


def test_deployment_queued_behind_page_delete_does_not_rebuild_it(fake_db, stub_sync, systemctl_dir):
    page = fake_db.add_page(name="doomed", build_script="echo should-not-run")
    delete_ticket = object()
    assert worker_registry.acquire_page(page["id"], delete_ticket, timeout=0)
    try:
        deployment = DeploymentService(fake_db).create_deployment(page["id"])
        start_deployment_worker(page["id"], deployment.id)
        log = DeploymentLog(deployment.id)
        deadline = time.monotonic() + 10
        while b"Waiting for an earlier deployment" not in log.read() and time.monotonic() < deadline:
            time.sleep(0.05)
        # The delete removes the rows while it still holds the page
        fake_db.tables["pages"] = []
        fake_db.tables["deployments"] = []
    finally:
        worker_registry.release_page(page["id"], delete_ticket)

    assert worker_registry.join(deployment.id, timeout=30)
    content = log.read().decode()
    assert "Page not found" in content
    assert "should-not-run" not in content
    assert stub_sync == []
    assert not working_tree_path(page["id"]).exists()
    assert not unit_path("doomed").exists()
    assert systemctl_calls(systemctl_dir) == []
    assert worker_registry.page_queue(page["id"]) == []


def test_cancel_while_queued_leaves_the_page_queue(fake_db, stub_sync):
    page = fake_db.add_page()
    holder = object()
    assert worker_registry.acquire_page(page["id"], holder, timeout=0)
    try:
        deployment = DeploymentService(fake_db).create_deployment(page["id"])
        start_deployment_worker(page["id"], deployment.id)
        assert worker_registry.page_queue(page["id"]) == [holder, deployment.id]

        assert worker_registry.request_cancel(deployment.id)
        assert worker_registry.join(deployment.id, timeout=10)

        assert fake_db.deployment(deployment.id)["exit_code"] == EXIT_CANCELLED
        assert worker_registry.page_queue(page["id"]) == [holder]
        assert stub_sync == []
    finally:
        worker_registry.release_page(page["id"], holder)
