"""
Stale Environment Detector — the periodic GC sweep.

  live       → preview namespaces (discovery label) on core-dev and harvester
  expected   → namespaces derived from the remote branches (trunk excluded)
  stale      → expected namespaces whose branch has no recent commit
  inactive   → namespaces whose database saw no recent writes

An environment is deleted iff its namespace is not expected, or its branch
is stale and the environment is inactive. Requiring both signals for an
existing branch keeps environments that are still being used.

Deletions fan out concurrently. A failing deletion never cancels its
siblings; the sweep reports failure once all of them are done.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from kubernetes.client import ApiException

from .cleanup import EnvironmentDeleter
from .config import Settings
from .events import GC_DELETIONS, LIVE_ENVIRONMENTS
from .exceptions import ConfigurationError, SweepError
from .models import Backing, GCDecision, PreviewEnvironment, SweepReport
from .naming import legacy_preview_name_from_branch, namespace_for, preview_name_from_branch
from .services.activity import ActivityProbe
from .services.certificates import CertificateCoordinator
from .services.git_service import GitRepository
from .services.kubernetes_service import ClusterHandle
from .services.namespaces import NamespaceReconciler
from .services.vm import VMProvisioner

REASON_MISSING_BRANCH = "missing branch"
REASON_STALE_AND_INACTIVE = "no recent commit and DB activity"
REASON_ACTIVE = "active"


def classify(env: PreviewEnvironment, expected: set, branch_stale: bool, inactive: bool) -> GCDecision:
    """The deletion rule, free of any I/O."""
    if env.namespace not in expected:
        delete, reason = True, REASON_MISSING_BRANCH
    elif branch_stale and inactive:
        delete, reason = True, REASON_STALE_AND_INACTIVE
    else:
        delete, reason = False, REASON_ACTIVE
    return GCDecision(
        name=env.name, namespace=env.namespace, backing=env.backing, delete=delete, reason=reason,
    )


class StaleEnvironmentDetector:
    def __init__(
        self,
        settings: Settings,
        logger: logging.Logger,
        core_dev: ClusterHandle,
        harvester: ClusterHandle,
        git: GitRepository,
        activity: ActivityProbe,
        deleter: EnvironmentDeleter,
        certificates: CertificateCoordinator,
        namespaces_for: Callable[[ClusterHandle], NamespaceReconciler],
        vms: VMProvisioner,
        workload_cluster: Optional[Callable[[PreviewEnvironment], Awaitable[ClusterHandle]]] = None,
    ):
        self.settings = settings
        self.logger = logger
        self.core_dev = core_dev
        self.harvester = harvester
        self.git = git
        self.activity = activity
        self.deleter = deleter
        self.certificates = certificates
        self.namespaces_for = namespaces_for
        self.vms = vms
        self.workload_cluster = workload_cluster or self._workload_cluster

    async def _workload_cluster(self, env: PreviewEnvironment) -> ClusterHandle:
        if env.backing == Backing.SHARED_CLUSTER:
            return self.core_dev
        if env.backing == Backing.DEDICATED_VM:
            # the sweep runs apart from the deploy job that wrote the kubeconfig
            return await self.vms.restore_kubeconfig(env)
        raise ValueError(f"Unknown backing {env.backing}")

    # ------------------------------------------------------------------
    # inputs
    # ------------------------------------------------------------------

    async def live_environments(self) -> list[PreviewEnvironment]:
        trunk = preview_name_from_branch(self.settings.TRUNK_BRANCH)
        shared, dedicated = await asyncio.gather(
            self.namespaces_for(self.core_dev).list_preview_namespaces(),
            self.namespaces_for(self.harvester).list_preview_namespaces(),
        )
        envs = []
        for backing, namespaces in ((Backing.SHARED_CLUSTER, shared), (Backing.DEDICATED_VM, dedicated)):
            for ns in namespaces:
                try:
                    env = PreviewEnvironment.from_namespace(ns, backing, self.settings)
                except ConfigurationError as e:
                    self.logger.warning(f"Ignoring labelled namespace {ns}: {e}")
                    continue
                if env.name == trunk:
                    continue
                envs.append(env)
        self.logger.info(f"Found {len(envs)} live preview environments")
        return envs

    def expected_namespaces(self, branches: list[str]) -> dict[str, str]:
        """Expected namespace → the branch it belongs to."""
        derivations = [preview_name_from_branch]
        if self.settings.GC_MATCH_LEGACY_NAMES:
            derivations.append(legacy_preview_name_from_branch)
        prefixes = (self.settings.SHARED_NAMESPACE_PREFIX, self.settings.VM_NAMESPACE_PREFIX)

        expected = {}
        for branch in branches:
            if branch == self.settings.TRUNK_BRANCH:
                continue
            for derive in derivations:
                name = derive(branch)
                for prefix in prefixes:
                    expected.setdefault(namespace_for(prefix, name), branch)
        return expected

    async def _decide(self, env: PreviewEnvironment, expected: dict[str, str]) -> GCDecision:
        branch = expected.get(env.namespace)
        if branch is None:
            return classify(env, set(expected), branch_stale=False, inactive=False)
        branch_stale = not await self.git.has_recent_commits(branch, self.settings.STALE_BRANCH_DAYS)
        # usage only matters once the branch has gone quiet
        inactive = False
        if branch_stale:
            try:
                cluster = await self.workload_cluster(env)
            except (ApiException, OSError, ConfigurationError) as e:
                self.logger.warning(f"No access to the cluster of {env.name} ({env.namespace}), keeping it: {e}")
                return classify(env, set(expected), branch_stale=branch_stale, inactive=False)
            inactive = not await self.activity.is_active(cluster, env.deployment_namespace)
        return classify(env, set(expected), branch_stale=branch_stale, inactive=inactive)

    # ------------------------------------------------------------------
    # plan / sweep
    # ------------------------------------------------------------------

    async def plan(self) -> tuple[list[PreviewEnvironment], list[GCDecision]]:
        envs, branches = await asyncio.gather(self.live_environments(), self.git.list_branches())
        expected = self.expected_namespaces(branches)
        decisions = list(await asyncio.gather(*(self._decide(env, expected) for env in envs)))
        for d in decisions:
            verb = "delete" if d.delete else "keep"
            self.logger.info(f"{d.namespace} ({d.backing.value}): {verb} ({d.reason})")
        for backing in Backing:
            LIVE_ENVIRONMENTS.labels(backing=backing.value).set(
                sum(1 for env in envs if env.backing == backing)
            )
        return envs, decisions

    async def sweep(self, dry_run: Optional[bool] = None) -> SweepReport:
        """
        Delete every stale environment, then orphaned certificates and VM
        load balancers. Raises SweepError, carrying the report, if any
        deletion failed.
        """
        if dry_run is None:
            dry_run = self.settings.GC_DRY_RUN
        envs, decisions = await self.plan()
        report = SweepReport(decisions=decisions, dry_run=dry_run)
        # decisions are in the order of envs; the same name can live on both clusters
        doomed = [env for env, d in zip(envs, decisions) if d.delete]
        survivors = [env for env, d in zip(envs, decisions) if not d.delete]

        if dry_run:
            survivors = list(envs)
            for env in doomed:
                self.logger.info(f"Preview {env.name} ({env.namespace}) would have been deleted")
        elif doomed:
            self.logger.info(f"Deleting {len(doomed)} stale preview environments")
            outcomes = await asyncio.gather(
                *(self.deleter.delete(env) for env in doomed), return_exceptions=True,
            )
            for env, outcome in zip(doomed, outcomes):
                if isinstance(outcome, Exception):
                    self.logger.error(f"Deleting {env.name} ({env.namespace}) failed: {outcome}")
                    report.failed[env.namespace] = str(outcome)[:500]
                    survivors.append(env)
                    GC_DELETIONS.labels(result="failure").inc()
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    report.deleted.append(env.namespace)
                    GC_DELETIONS.labels(result="success").inc()

        await self.certificates.remove_orphan_certificates(
            {env.name for env in survivors}, dry_run=dry_run,
        )
        await self.deleter.remove_orphan_load_balancers(
            {env.name for env in survivors if env.backing == Backing.DEDICATED_VM}, dry_run=dry_run,
        )

        self.logger.info(
            f"Sweep done: {len(decisions)} live, {len(report.deleted)} deleted, "
            f"{len(report.failed)} failed, dry_run={dry_run}"
        )
        if report.failed:
            raise SweepError(report.failed, report)
        return report
