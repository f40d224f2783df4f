"""Tests for the command runner and the Helm wrapper."""

import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from conftest import completed, listing
from preview_controller.exceptions import CommandError
from preview_controller.services.helm import HelmClient
from preview_controller.services.shell import CommandRunner


# ============================================
# CommandRunner
# ============================================


def test_non_zero_exit_raises(logger):
    with patch("subprocess.run", return_value=completed(returncode=2, stderr="nope")):
        with pytest.raises(CommandError) as exc:
            CommandRunner(logger).run(["kubectl", "get", "pods"])

    assert exc.value.returncode == 2
    assert exc.value.stderr == "nope"


def test_unchecked_failure_returns_result(logger):
    with patch("subprocess.run", return_value=completed(returncode=1)):
        assert CommandRunner(logger).run(["false"], check=False).returncode == 1


def test_env_is_merged_into_process_environment(logger, monkeypatch):
    monkeypatch.setenv("PATH", "/usr/bin")
    with patch("subprocess.run", return_value=completed()) as run:
        CommandRunner(logger).run(["terraform", "init"], env={"KUBECONFIG": "/tmp/kc"})

    env = run.call_args.kwargs["env"]
    assert env["KUBECONFIG"] == "/tmp/kc"
    assert env["PATH"] == "/usr/bin"


@pytest.mark.asyncio
async def test_run_async(logger):
    with patch("subprocess.run", return_value=completed(stdout="ok")):
        result = await CommandRunner(logger).run_async(["echo", "ok"])

    assert result.stdout == "ok"


# ============================================
# Helm
# ============================================


def test_stuck_release_is_cleaned_before_upgrade(core_dev, runner, logger):
    def helm(argv, check=True):
        if "status" in argv:
            return completed(stdout=json.dumps({"info": {"status": "pending-upgrade"}}))
        return completed()

    runner.run.side_effect = helm
    core_dev.core_api.list_namespaced_secret.return_value = listing(
        [SimpleNamespace(metadata=SimpleNamespace(name="sh.helm.release.v1.gitpod.v3"))]
    )

    HelmClient(core_dev, runner, logger).upgrade_install("gitpod", "chart", "staging-foo", {"version": "v1"})

    commands = [c.args[0][3] for c in runner.run.call_args_list]
    assert commands == ["status", "uninstall", "upgrade"]
    upgrade = runner.run.call_args_list[-1].args[0]
    assert "--install" in upgrade and "version=v1" in upgrade
    core_dev.core_api.delete_namespaced_secret.assert_called_once()


def test_uninstall_skips_missing_release(core_dev, runner, logger):
    runner.run.return_value = completed(returncode=1, stderr="release: not found")

    HelmClient(core_dev, runner, logger).uninstall("gitpod", "staging-foo")

    assert [c.args[0][3] for c in runner.run.call_args_list] == ["status"]
