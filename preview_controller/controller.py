"""
Wiring of the controller's components for one process: one handle per
cluster, one command runner, one event publisher. Job entry points and the
status API both start from `build_controller`.
"""
import logging
from dataclasses import dataclass

from .cleanup import EnvironmentDeleter
from .config import Settings
from .events import EventPublisher
from .gc import StaleEnvironmentDetector
from .provisioner import EnvironmentProvisioner
from .services.activity import ActivityProbe
from .services.certificates import CertificateCoordinator
from .services.dns import DNSBinder
from .services.git_service import GitRepository
from .services.kubernetes_service import ClusterHandle, core_dev_cluster, harvester_cluster
from .services.namespaces import NamespaceReconciler
from .services.shell import CommandRunner
from .services.vm import VMProvisioner


@dataclass
class Controller:
    settings: Settings
    core_dev: ClusterHandle
    harvester: ClusterHandle
    events: EventPublisher
    provisioner: EnvironmentProvisioner
    deleter: EnvironmentDeleter
    detector: StaleEnvironmentDetector


def build_controller(settings: Settings, logger: logging.Logger) -> Controller:
    runner = CommandRunner(logger, default_timeout=settings.PROVISION_TIMEOUT)
    core_dev = core_dev_cluster(settings)
    harvester = harvester_cluster(settings)
    events = EventPublisher(settings.REDIS_URL, logger)
    certificates = CertificateCoordinator(core_dev, runner, logger, settings)
    dns = DNSBinder(runner, logger, settings)
    vms = VMProvisioner(harvester, runner, logger, settings)

    def namespaces_for(cluster: ClusterHandle) -> NamespaceReconciler:
        return NamespaceReconciler(cluster, runner, logger, settings)

    provisioner = EnvironmentProvisioner(
        settings, logger, runner, core_dev, harvester, events,
        certificates=certificates, dns=dns, vms=vms, namespaces_for=namespaces_for,
    )
    deleter = EnvironmentDeleter(settings, logger, core_dev, harvester, dns, events, namespaces_for)
    detector = StaleEnvironmentDetector(
        settings, logger, core_dev, harvester,
        git=GitRepository(runner, logger, remote=settings.GIT_REMOTE),
        activity=ActivityProbe(runner, logger, settings.INACTIVE_HOURS),
        deleter=deleter,
        certificates=certificates,
        namespaces_for=namespaces_for,
        vms=vms,
    )
    return Controller(settings, core_dev, harvester, events, provisioner, deleter, detector)
