"""Shared test fixtures: clusters with mocked Kubernetes APIs and a fake command runner."""

import dataclasses
import logging
import subprocess
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes.client import ApiException

from preview_controller.config import Settings
from preview_controller.services.kubernetes_service import ClusterHandle
from preview_controller.services.shell import CommandRunner


def api_error(status: int) -> ApiException:
    return ApiException(status=status, reason="test")


def completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def make_cluster(name: str) -> ClusterHandle:
    cluster = ClusterHandle(name, f"/tmp/kubeconfigs/{name}")
    cluster.core_api = MagicMock()
    cluster.apps_api = MagicMock()
    cluster.custom_api = MagicMock()
    cluster.dynamic_client = MagicMock()
    return cluster


def pod(name: str, phase: str, owner: str = "ReplicaSet"):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, owner_references=[SimpleNamespace(kind=owner)]),
        status=SimpleNamespace(phase=phase),
    )


def listing(items):
    return SimpleNamespace(items=list(items))


# ============================================
# Settings / Logging
# ============================================


@pytest.fixture
def settings() -> Settings:
    return dataclasses.replace(
        Settings(),
        REDIS_URL="",
        GC_DRY_RUN=False,
        GC_MATCH_LEGACY_NAMES=True,
        TRUNK_BRANCH="main",
    )


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("preview-controller-test")


# ============================================
# Cluster / Runner Fixtures
# ============================================


@pytest.fixture
def core_dev() -> ClusterHandle:
    return make_cluster("core-dev")


@pytest.fixture
def harvester() -> ClusterHandle:
    return make_cluster("harvester")


@pytest.fixture
def runner() -> MagicMock:
    r = MagicMock(spec=CommandRunner)
    r.run.return_value = completed()
    r.run_async = AsyncMock(return_value=completed())
    return r


@pytest.fixture
def events() -> MagicMock:
    e = MagicMock()
    e.read.return_value = []
    return e
