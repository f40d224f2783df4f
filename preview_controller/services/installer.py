"""
Deployment of the product into a preview namespace.

Rendering is done by external tools (the installer binary or Helm); this
module only feeds them the per-preview values, pins the daemon ports into
the rendered manifests and applies them. Re-running a deploy is safe.
"""
import asyncio
import json
import logging
import os
import tempfile

import yaml

from ..config import Settings
from ..models import (
    AnalyticsSink, BuildConfig, DaemonsetPorts, DeployMode, PreviewEnvironment, StorageBackend,
)
from .helm import HelmClient
from .kubernetes_service import ClusterHandle
from .shell import CommandRunner

HELM_RELEASE = "gitpod"
INSTALLER_BINARY = "/app/installer"


def installer_config_overrides(env: PreviewEnvironment, build: BuildConfig,
                               secret_name: str) -> dict:
    """Values merged into the installer's default config for this preview."""
    overrides = {
        "domain": env.domain,
        "certificate": {"kind": "secret", "name": secret_name},
        "metadata": {"shortname": "dev"},
        "workspace": {"resources": {"requests": {"cpu": "100m", "memory": "256Mi"}}},
    }
    if build.storage == StorageBackend.MINIO:
        overrides["objectStorage"] = {"inCluster": True}
    elif build.storage == StorageBackend.GCP:
        overrides["objectStorage"] = {
            "inCluster": False,
            "cloudStorage": {"project": "gitpod-core-dev",
                             "serviceAccount": {"kind": "secret", "name": "gcp-storage"}},
        }
    if build.analytics == AnalyticsSink.SEGMENT:
        overrides["analytics"] = {"writer": "segment", "segmentKey": build.analytics_token}
    else:
        overrides["analytics"] = {"writer": ""}
    return overrides


def merge(base: dict, overrides: dict) -> dict:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merge(base[key], value)
        else:
            base[key] = value
    return base


def _set_host_port(doc: dict, port: int):
    for container in doc["spec"]["template"]["spec"].get("containers", []):
        for p in container.get("ports", []) or []:
            if p.get("hostPort"):
                p["hostPort"] = port


def post_process(documents: list, ports: DaemonsetPorts, feature_flags: list[str],
                 license_key: str = "") -> list:
    """Pin the allocated daemon ports and inject per-preview settings into rendered manifests."""
    for doc in documents:
        if not doc:
            continue
        kind = doc.get("kind")
        name = doc.get("metadata", {}).get("name")
        if kind == "DaemonSet" and name == "ws-daemon":
            _set_host_port(doc, ports.ws_daemon)
        elif kind == "DaemonSet" and name == "registry-facade":
            _set_host_port(doc, ports.registry_facade)
        elif kind == "Service" and name == "registry-facade":
            for p in doc["spec"].get("ports", []) or []:
                p["nodePort"] = ports.registry_node_port
            doc["spec"]["type"] = "NodePort"
        elif kind == "ConfigMap" and name == "server-config" and feature_flags:
            config = json.loads(doc["data"]["config.json"])
            config.setdefault("workspaceDefaults", {})["defaultFeatureFlags"] = feature_flags
            doc["data"]["config.json"] = json.dumps(config)
        elif kind == "ConfigMap" and name == "gitpod-license" and license_key:
            doc.setdefault("data", {})["license"] = license_key
    return documents


class Deployer:
    def __init__(self, cluster: ClusterHandle, runner: CommandRunner,
                 logger: logging.Logger, settings: Settings):
        self.cluster = cluster
        self.runner = runner
        self.logger = logger
        self.settings = settings
        self.helm = HelmClient(cluster, runner, logger)

    async def deploy(self, env: PreviewEnvironment, build: BuildConfig,
                     ports: DaemonsetPorts, secret_name: str):
        if build.deploy_mode == DeployMode.INSTALLER:
            await self._deploy_with_installer(env, build, ports, secret_name)
        elif build.deploy_mode == DeployMode.HELM:
            await asyncio.to_thread(self._deploy_with_helm, env, build, ports, secret_name)
        else:
            raise ValueError(f"Unknown deploy mode {build.deploy_mode}")

    def _license_key(self, build: BuildConfig) -> str:
        if not build.with_ee_license:
            return ""
        with open(self.settings.EE_LICENSE_PATH) as f:
            return f.read().strip()

    async def fetch_installer(self, version: str, dest: str) -> str:
        """Copy the installer binary out of the installer image built for `version`."""
        image = f"{self.settings.INSTALLER_IMAGE_REPO}:{version}"
        self.logger.info(f"Fetching installer from {image}")
        created = await self.runner.run_async(["docker", "create", image])
        container = created.stdout.strip()
        try:
            await self.runner.run_async(["docker", "cp", f"{container}:{INSTALLER_BINARY}", dest])
        finally:
            await self.runner.run_async(["docker", "rm", container], check=False)
        return dest

    async def _deploy_with_installer(self, env: PreviewEnvironment, build: BuildConfig,
                                     ports: DaemonsetPorts, secret_name: str):
        with tempfile.TemporaryDirectory(prefix=f"preview-{env.name}-") as workdir:
            # the installer renders the component versions it was built with
            installer = await self.fetch_installer(build.version, os.path.join(workdir, "installer"))
            config_path = os.path.join(workdir, "config.yaml")
            self.logger.info(f"[{env.name}] Initializing installer config")
            await self.runner.run_async([installer, "config", "init", "--overwrite", "--config", config_path])
            with open(config_path) as f:
                config = yaml.safe_load(f) or {}
            merge(config, installer_config_overrides(env, build, secret_name))
            with open(config_path, "w") as f:
                yaml.safe_dump(config, f)

            await self.runner.run_async([installer, "validate", "config", "--config", config_path])
            self.logger.info(f"[{env.name}] Rendering manifests")
            rendered = await self.runner.run_async(
                [installer, "render", "--use-experimental-config",
                 "--namespace", env.deployment_namespace, "--config", config_path],
                silent=True,
            )
            documents = post_process(
                list(yaml.safe_load_all(rendered.stdout)), ports,
                build.workspace_feature_flags, self._license_key(build),
            )
            manifest = yaml.safe_dump_all([d for d in documents if d])

        # the migrations job is immutable, it has to go before re-applying
        await self.runner.run_async(
            self.cluster.kubectl("delete", "-n", env.deployment_namespace, "job", "migrations", "--ignore-not-found=true"),
            check=False,
        )
        self.logger.info(f"[{env.name}] Applying manifests to {env.deployment_namespace}")
        # output may contain secrets when kubectl patches existing objects
        await self.runner.run_async(
            self.cluster.kubectl("apply", "-n", env.deployment_namespace, "-f", "-"),
            input=manifest,
            silent=True,
        )

    def _deploy_with_helm(self, env: PreviewEnvironment, build: BuildConfig,
                          ports: DaemonsetPorts, secret_name: str):
        values = {
            "version": build.version,
            "hostname": env.domain,
            "devBranch": env.name,
            "certificatesSecret.secretName": secret_name,
            "components.wsDaemon.servicePort": ports.ws_daemon,
            "components.wsDaemon.registryProxyPort": ports.registry_facade,
            "components.registryFacade.ports.registry.servicePort": ports.registry_node_port,
        }
        for i, flag in enumerate(build.workspace_feature_flags):
            values[f"components.server.defaultFeatureFlags[{i}]"] = flag
        self.logger.info(f"[{env.name}] Helm upgrade --install {HELM_RELEASE}")
        self.helm.upgrade_install(
            HELM_RELEASE, self.settings.HELM_CHART_PATH, env.deployment_namespace, values,
            timeout=self.settings.PROVISION_TIMEOUT,
        )
