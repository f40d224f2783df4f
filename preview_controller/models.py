"""
Pydantic models for preview environments, build configuration and API
request/response validation.
"""
from enum import Enum
from typing import Optional, List, Dict

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import Settings, settings as default_settings
from .naming import (
    name_from_namespace, namespace_for, preview_name_from_branch, validate_preview_name,
)


class Backing(str, Enum):
    """Where the environment's workload cluster runs."""
    SHARED_CLUSTER = "shared-cluster"
    DEDICATED_VM = "dedicated-vm"


class StorageBackend(str, Enum):
    MINIO = "minio"
    GCP = "gcp"


class AnalyticsSink(str, Enum):
    NONE = "none"
    SEGMENT = "segment"


class DeployMode(str, Enum):
    INSTALLER = "installer"
    HELM = "helm"


class ResourceClass(BaseModel):
    """Sizing for a dedicated VM."""
    cpu: int = Field(default=6, ge=2, le=32)
    memory_gi: int = Field(default=12, ge=4, le=128)


class BuildConfig(BaseModel):
    """
    Typed options for one provisioning run. Validated once, before any
    cluster mutation.
    """
    branch: str = Field(..., min_length=1, description="Branch the build targets")
    version: str = Field(..., min_length=1, description="Image tag produced by the build")
    preview_name: Optional[str] = Field(
        default=None, description="Explicit environment name; derived from the branch if unset",
    )
    domain: Optional[str] = Field(default=None, description="Override of the derived domain")
    clean_slate: bool = True
    with_vm: bool = False
    deploy_mode: DeployMode = DeployMode.INSTALLER
    workspace_feature_flags: List[str] = []
    resource_class: ResourceClass = ResourceClass()
    storage: StorageBackend = StorageBackend.MINIO
    analytics: AnalyticsSink = AnalyticsSink.NONE
    analytics_token: Optional[str] = None
    with_ee_license: bool = False

    @field_validator("workspace_feature_flags", mode="before")
    @classmethod
    def _split_flags(cls, value):
        if isinstance(value, str):
            value = value.split(",")
        return [f.strip() for f in value if f and f.strip()]

    @field_validator("preview_name")
    @classmethod
    def _check_name(cls, value):
        if value is not None:
            validate_preview_name(value)
        return value

    @model_validator(mode="after")
    def _check_analytics(self):
        if self.analytics == AnalyticsSink.SEGMENT and not self.analytics_token:
            raise ValueError("analytics_token is required when analytics=segment")
        return self

    @property
    def backing(self) -> Backing:
        return Backing.DEDICATED_VM if self.with_vm else Backing.SHARED_CLUSTER


class PreviewEnvironment(BaseModel):
    """A preview environment as derived from its name and backing."""
    model_config = {"frozen": True}

    name: str
    namespace: str
    domain: str
    backing: Backing

    @property
    def url(self) -> str:
        return f"https://{self.domain}"

    @property
    def vm_name(self) -> str:
        return self.name

    @property
    def deployment_namespace(self) -> str:
        """Namespace the product is deployed into, on the environment's workload cluster."""
        if self.backing == Backing.SHARED_CLUSTER:
            return self.namespace
        if self.backing == Backing.DEDICATED_VM:
            return "default"
        raise ValueError(f"Unknown backing {self.backing}")

    @classmethod
    def create(cls, name: str, backing: Backing, settings: Settings = default_settings,
               domain: Optional[str] = None) -> "PreviewEnvironment":
        validate_preview_name(name)
        if backing == Backing.SHARED_CLUSTER:
            prefix, base = settings.SHARED_NAMESPACE_PREFIX, settings.SHARED_BASE_DOMAIN
        elif backing == Backing.DEDICATED_VM:
            prefix, base = settings.VM_NAMESPACE_PREFIX, settings.VM_BASE_DOMAIN
        else:
            raise ValueError(f"Unknown backing {backing}")
        return cls(
            name=name,
            namespace=namespace_for(prefix, name),
            domain=domain or f"{name}.{base}",
            backing=backing,
        )

    @classmethod
    def from_branch(cls, branch: str, backing: Backing,
                    settings: Settings = default_settings) -> "PreviewEnvironment":
        return cls.create(preview_name_from_branch(branch), backing, settings)

    @classmethod
    def from_build_config(cls, build: BuildConfig,
                          settings: Settings = default_settings) -> "PreviewEnvironment":
        name = build.preview_name or preview_name_from_branch(build.branch)
        return cls.create(name, build.backing, settings, domain=build.domain)

    @classmethod
    def from_namespace(cls, namespace: str, backing: Backing,
                       settings: Settings = default_settings) -> "PreviewEnvironment":
        """
        Environment discovered on a cluster. The name is not length-checked:
        namespaces created under the legacy naming scheme may exceed the cap.
        """
        if backing == Backing.SHARED_CLUSTER:
            prefix, base = settings.SHARED_NAMESPACE_PREFIX, settings.SHARED_BASE_DOMAIN
        elif backing == Backing.DEDICATED_VM:
            prefix, base = settings.VM_NAMESPACE_PREFIX, settings.VM_BASE_DOMAIN
        else:
            raise ValueError(f"Unknown backing {backing}")
        name = name_from_namespace(prefix, namespace)
        return cls(name=name, namespace=namespace, domain=f"{name}.{base}", backing=backing)


class CertificateRequest(BaseModel):
    cert_name: str
    cert_namespace: str
    domain: str
    subdomains: List[str] = ["", "*.", "*.ws-dev."]
    ip: str
    zone: str
    owner: str = ""


class DaemonsetPorts(BaseModel):
    """Host ports of the node-local daemons plus the registry node port."""
    registry_facade: int
    ws_daemon: int
    registry_node_port: int


class ProvisionPhase(str, Enum):
    PREPARE = "prepare"
    NAMESPACE = "namespace"
    CERTIFICATE = "certificate"
    DEPLOY = "deploy"
    READINESS = "readiness"
    DNS = "dns"
    DONE = "done"


class ProvisionResult(BaseModel):
    """Outcome of one provisioning run. Published even when the run fails."""
    environment: PreviewEnvironment
    url: str
    phase: ProvisionPhase = ProvisionPhase.PREPARE
    ports: Optional[DaemonsetPorts] = None
    succeeded: bool = False
    error: Optional[str] = None


class GCDecision(BaseModel):
    name: str
    namespace: str
    backing: Backing
    delete: bool
    reason: str


class SweepReport(BaseModel):
    """Outcome of one sweep. `deleted` and `failed` are keyed by namespace."""
    decisions: List[GCDecision] = []
    deleted: List[str] = []
    failed: Dict[str, str] = {}
    dry_run: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failed


# --- API models ---

class EnvironmentResponse(BaseModel):
    name: str
    namespace: str
    backing: Backing
    url: str
    phase: str = "Unknown"
    createdAt: Optional[str] = None


class EnvironmentListResponse(BaseModel):
    environments: List[EnvironmentResponse]
    total: int


class GCPlanResponse(BaseModel):
    decisions: List[GCDecision]
    toDelete: int


class ErrorResponse(BaseModel):
    detail: str
    code: str = "UNKNOWN_ERROR"
