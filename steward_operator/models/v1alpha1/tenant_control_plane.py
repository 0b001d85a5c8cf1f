import datetime as dt
import ipaddress

from kube_custom_resource import CustomResource, schema
from pydantic import Field, field_validator


class AdditionalMetadata(schema.BaseModel):
    """
    Extra labels and annotations for a child object.
    """

    labels: schema.Dict[str, str] = Field(
        default_factory=dict, description="Extra labels for the object."
    )
    annotations: schema.Dict[str, str] = Field(
        default_factory=dict, description="Extra annotations for the object."
    )


class NetworkProfileSpec(schema.BaseModel):
    """
    The network profile of the tenant control plane.
    """

    address: schema.Optional[schema.constr(min_length=1)] = Field(
        None,
        description=(
            "A static IP address for the control plane. "
            "When given, this takes precedence over any address from the service."
        ),
    )
    allow_address_as_external_ip: bool = Field(
        False,
        alias="allowAddressAsExternalIP",
        description=(
            "Indicates if the static address should be set as an external IP "
            "of the control plane service."
        ),
    )
    port: schema.conint(gt=0, lt=65536) = Field(
        6443, description="The port that the API server listens on."
    )
    cert_sans: list[schema.constr(min_length=1)] = Field(
        default_factory=list,
        description="Extra SANs for the API server certificate.",
    )
    pod_cidr: schema.constr(min_length=1) = Field(
        "10.244.0.0/16", description="The CIDR for pods in the tenant cluster."
    )
    service_cidr: schema.constr(min_length=1) = Field(
        "10.96.0.0/16", description="The CIDR for services in the tenant cluster."
    )
    cluster_domain: schema.constr(min_length=1) = Field(
        "cluster.local", description="The DNS domain of the tenant cluster."
    )
    load_balancer_source_ranges: list[schema.constr(min_length=1)] = Field(
        default_factory=list,
        description="CIDRs that are permitted to reach a LoadBalancer service.",
    )
    load_balancer_class: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The load balancer class for a LoadBalancer service."
    )

    @field_validator("address")
    @classmethod
    def check_address(cls, v):
        if v is not None:
            ipaddress.ip_address(v)
        return v


class DeploymentSpec(schema.BaseModel):
    """
    The spec for the control plane deployment.
    """

    replicas: schema.Optional[schema.conint(ge=0)] = Field(
        None, description="The number of control plane replicas. Defaults to 2."
    )
    additional_metadata: AdditionalMetadata = Field(
        default_factory=AdditionalMetadata,
        description="Extra metadata for the control plane pods.",
    )


class ServiceType(str, schema.Enum):
    """
    The type of the control plane service.
    """

    CLUSTER_IP = "ClusterIP"
    NODE_PORT = "NodePort"
    LOAD_BALANCER = "LoadBalancer"


class ServiceSpec(schema.BaseModel):
    """
    The spec for the control plane service.
    """

    service_type: ServiceType = Field(
        ServiceType.LOAD_BALANCER.value, description="The type of the service."
    )
    additional_metadata: AdditionalMetadata = Field(
        default_factory=AdditionalMetadata,
        description="Extra metadata for the service.",
    )


class IngressSpec(schema.BaseModel):
    """
    The spec for exposing the control plane using an ingress.
    """

    hostname: schema.constr(min_length=1) = Field(
        ..., description="The hostname to expose the control plane on."
    )
    ingress_class_name: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The ingress class to use."
    )
    controller_type: schema.Optional[schema.constr(min_length=1)] = Field(
        None,
        description=(
            "The type of the ingress controller. "
            "When set to 'traefik', a TLS passthrough IngressRouteTCP is used."
        ),
    )
    additional_metadata: AdditionalMetadata = Field(
        default_factory=AdditionalMetadata,
        description="Extra metadata for the ingress.",
    )

    @property
    def is_traefik(self):
        return (self.controller_type or "").lower() == "traefik"


class GatewaySpec(schema.BaseModel):
    """
    The spec for exposing the control plane using a gateway.
    """

    hostname: schema.constr(min_length=1) = Field(
        ..., description="The hostname to expose the control plane on."
    )


class ControlPlaneSpec(schema.BaseModel):
    """
    The spec for the control plane workloads and how they are exposed.
    """

    deployment: DeploymentSpec = Field(
        default_factory=DeploymentSpec,
        description="The control plane deployment.",
    )
    service: ServiceSpec = Field(
        default_factory=ServiceSpec,
        description="The control plane service.",
    )
    ingress: schema.Optional[IngressSpec] = Field(
        None, description="Exposes the control plane using an ingress."
    )
    gateway: schema.Optional[GatewaySpec] = Field(
        None, description="Exposes the control plane using a gateway."
    )


class KubernetesSpec(schema.BaseModel):
    """
    The spec for the Kubernetes version of the tenant control plane.
    """

    version: schema.constr(pattern=r"^v?\d+\.\d+\.\d+") = Field(
        ..., description="The Kubernetes version for the control plane."
    )


class WritePermissions(schema.BaseModel):
    """
    Limitations on writes to the tenant cluster.
    """

    block_create: bool = Field(False, description="Blocks create operations.")
    block_update: bool = Field(False, description="Blocks update operations.")
    block_delete: bool = Field(False, description="Blocks delete operations.")

    def has_any_limitation(self):
        return self.block_create or self.block_update or self.block_delete


class KonnectivitySpec(schema.BaseModel):
    """
    The spec for the Konnectivity addon.
    """

    port: schema.conint(gt=0, lt=65536) = Field(
        8132, description="The port for the Konnectivity server."
    )


class TCPProxySpec(schema.BaseModel):
    """
    The spec for the TCP proxy addon.
    """

    image: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The image for the TCP proxy agent."
    )


class WorkerBootstrapProvider(str, schema.Enum):
    """
    The providers that can bootstrap worker nodes.
    """

    TALOS = "talos"


class TalosSpec(schema.BaseModel):
    """
    The spec for the Talos trustd service.
    """

    image: schema.constr(min_length=1) = Field(
        "ghcr.io/butlerdotdev/steward-trustd", description="The trustd image."
    )
    image_tag: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The tag for the trustd image."
    )
    port: schema.Optional[schema.conint(gt=0, lt=65536)] = Field(
        None,
        description=(
            "The port that trustd listens on. "
            "If not given, the default port for the operator is used."
        ),
    )
    cert_sans: list[schema.constr(min_length=1)] = Field(
        default_factory=list,
        description="Extra SANs for the trustd server certificate.",
    )


class CSRApprovalSpec(schema.BaseModel):
    """
    The policy for approving kubelet serving certificates.
    """

    auto_approve: bool = Field(
        True,
        description="Indicates if kubelet serving certificates are approved automatically.",
    )
    allowed_subnets: list[schema.constr(min_length=1)] = Field(
        default_factory=list,
        description=(
            "CIDRs that IP SANs in kubelet serving certificates must fall within. "
            "When empty, any IP is permitted."
        ),
    )


class WorkerBootstrapSpec(schema.BaseModel):
    """
    The spec for the worker bootstrap addon.
    """

    provider: WorkerBootstrapProvider = Field(
        ..., description="The provider used to bootstrap workers."
    )
    talos: schema.Optional[TalosSpec] = Field(
        None, description="Configuration for the Talos provider."
    )
    csr_approval: CSRApprovalSpec = Field(
        default_factory=CSRApprovalSpec,
        description="The policy for approving kubelet serving certificates.",
    )


class AddonsSpec(schema.BaseModel):
    """
    The spec for the addons of the tenant control plane.
    """

    konnectivity: schema.Optional[KonnectivitySpec] = Field(
        None, description="Enables the Konnectivity addon."
    )
    tcp_proxy: schema.Optional[TCPProxySpec] = Field(
        None, description="Enables the TCP proxy addon."
    )
    worker_bootstrap: schema.Optional[WorkerBootstrapSpec] = Field(
        None, description="Enables the worker bootstrap addon."
    )


class TenantControlPlaneSpec(schema.BaseModel):
    """
    The spec for a tenant control plane.
    """

    network_profile: NetworkProfileSpec = Field(
        default_factory=NetworkProfileSpec,
        description="The network profile of the control plane.",
    )
    control_plane: ControlPlaneSpec = Field(
        default_factory=ControlPlaneSpec,
        description="The control plane workloads.",
    )
    kubernetes: KubernetesSpec = Field(
        ..., description="The Kubernetes configuration."
    )
    write_permissions: WritePermissions = Field(
        default_factory=WritePermissions,
        description="Limitations on writes to the tenant cluster.",
    )
    addons: AddonsSpec = Field(
        default_factory=AddonsSpec, description="The addons for the control plane."
    )


class KubernetesVersionStatus(str, schema.Enum):
    """
    The state of the Kubernetes version of the control plane.
    """

    SLEEPING = "Sleeping"
    NOT_READY = "NotReady"
    WRITE_LIMITED = "WriteLimited"
    PROVISIONING = "Provisioning"
    UPGRADING = "Upgrading"
    READY = "Ready"
    UNKNOWN = "Unknown"


class CertificateStatus(schema.BaseModel):
    """
    The status of a certificate secret.
    """

    secret_name: schema.Optional[str] = Field(
        None, description="The name of the secret holding the certificate."
    )
    checksum: schema.Optional[str] = Field(
        None, description="The checksum of the data in the secret."
    )
    last_update: schema.Optional[dt.datetime] = Field(
        None, description="The time the status was last updated."
    )


class CertificatesStatus(schema.BaseModel):
    """
    The status of the control plane certificates.
    """

    ca: CertificateStatus = Field(default_factory=CertificateStatus)
    front_proxy_ca: CertificateStatus = Field(default_factory=CertificateStatus)
    service_account: CertificateStatus = Field(default_factory=CertificateStatus)
    apiserver: CertificateStatus = Field(default_factory=CertificateStatus)


class KubeadmConfigStatus(schema.BaseModel):
    """
    The status of the kubeadm configuration.
    """

    configmap_name: schema.Optional[str] = Field(
        None, description="The name of the config map holding the configuration."
    )
    checksum: schema.Optional[str] = Field(
        None, description="The checksum of the configuration."
    )
    last_update: schema.Optional[dt.datetime] = Field(
        None, description="The time the status was last updated."
    )


class KubeconfigStatus(schema.BaseModel):
    """
    The status of the admin kubeconfig.
    """

    secret_name: schema.Optional[str] = Field(
        None, description="The name of the secret holding the kubeconfig."
    )
    checksum: schema.Optional[str] = Field(
        None, description="The checksum of the kubeconfig."
    )
    last_update: schema.Optional[dt.datetime] = Field(
        None, description="The time the status was last updated."
    )


class VersionStatus(schema.BaseModel):
    """
    The status of the Kubernetes version.
    """

    version: schema.Optional[str] = Field(
        None, description="The Kubernetes version that is fully rolled out."
    )
    status: KubernetesVersionStatus = Field(
        KubernetesVersionStatus.UNKNOWN.value,
        description="The state of the Kubernetes version.",
    )


class DeploymentStatus(schema.BaseModel):
    """
    The observed status of the control plane deployment.
    """

    name: schema.Optional[str] = Field(None, description="The deployment name.")
    namespace: schema.Optional[str] = Field(
        None, description="The deployment namespace."
    )
    selector: schema.Optional[str] = Field(
        None, description="The label selector for the pods."
    )
    observed_generation: int = Field(0, description="The observed generation.")
    replicas: int = Field(0, description="The number of replicas.")
    ready_replicas: int = Field(0, description="The number of ready replicas.")
    updated_replicas: int = Field(0, description="The number of updated replicas.")
    available_replicas: int = Field(
        0, description="The number of available replicas."
    )
    unavailable_replicas: int = Field(
        0, description="The number of unavailable replicas."
    )
    last_update: schema.Optional[dt.datetime] = Field(
        None, description="The time the status was last updated."
    )


class LoadBalancerIngress(schema.BaseModel):
    """
    An ingress point for a load balancer.
    """

    ip: schema.Optional[str] = Field(None, description="The IP of the ingress point.")
    hostname: schema.Optional[str] = Field(
        None, description="The hostname of the ingress point."
    )


class ServiceStatus(schema.BaseModel):
    """
    The observed status of the control plane service.
    """

    name: schema.Optional[str] = Field(None, description="The service name.")
    namespace: schema.Optional[str] = Field(
        None, description="The service namespace."
    )
    port: int = Field(0, description="The API server port of the service.")
    load_balancer: list[LoadBalancerIngress] = Field(
        default_factory=list,
        description="The ingress points of the load balancer, if any.",
    )


class IngressStatus(schema.BaseModel):
    """
    The observed status of the control plane ingress.
    """

    kind: schema.Optional[str] = Field(
        None, description="The kind of the object exposing the control plane."
    )
    name: schema.Optional[str] = Field(None, description="The ingress name.")
    namespace: schema.Optional[str] = Field(
        None, description="The ingress namespace."
    )
    load_balancer: list[LoadBalancerIngress] = Field(
        default_factory=list,
        description="The ingress points of the ingress controller, if any.",
    )


class KubernetesStatus(schema.BaseModel):
    """
    The observed status of the Kubernetes objects for the control plane.
    """

    version: VersionStatus = Field(default_factory=VersionStatus)
    deployment: DeploymentStatus = Field(default_factory=DeploymentStatus)
    service: ServiceStatus = Field(default_factory=ServiceStatus)
    ingress: schema.Optional[IngressStatus] = Field(None)


class ExternalObjectStatus(schema.BaseModel):
    """
    A reference to an object in the tenant cluster.
    """

    name: schema.Optional[str] = Field(None, description="The object name.")
    namespace: schema.Optional[str] = Field(
        None, description="The object namespace, if namespaced."
    )
    last_update: schema.Optional[dt.datetime] = Field(
        None, description="The time the status was last updated."
    )


class KonnectivityStatus(schema.BaseModel):
    """
    The status of the Konnectivity addon.
    """

    enabled: bool = Field(False)
    certificate: CertificateStatus = Field(default_factory=CertificateStatus)


class TCPProxyStatus(schema.BaseModel):
    """
    The status of the TCP proxy addon.
    """

    enabled: bool = Field(False)
    service_account: ExternalObjectStatus = Field(default_factory=ExternalObjectStatus)
    cluster_role: ExternalObjectStatus = Field(default_factory=ExternalObjectStatus)
    cluster_role_binding: ExternalObjectStatus = Field(
        default_factory=ExternalObjectStatus
    )
    service: ExternalObjectStatus = Field(default_factory=ExternalObjectStatus)
    deployment: ExternalObjectStatus = Field(default_factory=ExternalObjectStatus)


class WorkerBootstrapCredentialsStatus(schema.BaseModel):
    """
    The status of the worker bootstrap credentials.
    """

    secret_name: schema.Optional[str] = Field(None)
    checksum: schema.Optional[str] = Field(None)


class WorkerBootstrapServiceStatus(schema.BaseModel):
    """
    The status of the trustd port on the control plane service.
    """

    name: schema.Optional[str] = Field(None)
    namespace: schema.Optional[str] = Field(None)
    port: int = Field(0)


class WorkerBootstrapRouteStatus(schema.BaseModel):
    """
    The status of the Traefik route that exposes trustd through the ingress controller.
    """

    name: schema.Optional[str] = Field(None)
    namespace: schema.Optional[str] = Field(None)


class WorkerBootstrapStatus(schema.BaseModel):
    """
    The status of the worker bootstrap addon.
    """

    enabled: bool = Field(False)
    provider: schema.Optional[str] = Field(None)
    credentials: WorkerBootstrapCredentialsStatus = Field(
        default_factory=WorkerBootstrapCredentialsStatus
    )
    service: WorkerBootstrapServiceStatus = Field(
        default_factory=WorkerBootstrapServiceStatus
    )
    route: WorkerBootstrapRouteStatus = Field(
        default_factory=WorkerBootstrapRouteStatus
    )
    endpoint: schema.Optional[str] = Field(
        None, description="The host:port that workers use to reach trustd."
    )


class AddonsStatus(schema.BaseModel):
    """
    The status of the addons.
    """

    konnectivity: KonnectivityStatus = Field(default_factory=KonnectivityStatus)
    tcp_proxy: TCPProxyStatus = Field(default_factory=TCPProxyStatus)
    worker_bootstrap: WorkerBootstrapStatus = Field(
        default_factory=WorkerBootstrapStatus
    )


class TenantControlPlaneStatus(schema.BaseModel, extra="allow"):
    """
    The status of the tenant control plane.
    """

    certificates: CertificatesStatus = Field(default_factory=CertificatesStatus)
    kubeadm_config: KubeadmConfigStatus = Field(default_factory=KubeadmConfigStatus)
    kubeconfig: KubeconfigStatus = Field(default_factory=KubeconfigStatus)
    kubernetes: KubernetesStatus = Field(default_factory=KubernetesStatus)
    addons: AddonsStatus = Field(default_factory=AddonsStatus)
    control_plane_endpoint: schema.Optional[str] = Field(
        None, description="The host:port of the control plane endpoint."
    )


class TenantControlPlane(
    CustomResource,
    subresources={"status": {}},
    printer_columns=[
        {
            "name": "Version",
            "type": "string",
            "jsonPath": ".spec.kubernetes.version",
        },
        {
            "name": "Installed Version",
            "type": "string",
            "jsonPath": ".status.kubernetes.version.version",
        },
        {
            "name": "Status",
            "type": "string",
            "jsonPath": ".status.kubernetes.version.status",
        },
        {
            "name": "Control Plane Endpoint",
            "type": "string",
            "jsonPath": ".status.controlPlaneEndpoint",
        },
        {
            "name": "Service Type",
            "type": "string",
            "jsonPath": ".spec.controlPlane.service.serviceType",
            "priority": 1,
        },
    ],
):
    """
    A Kubernetes control plane that runs as a workload in the management cluster.
    """

    spec: TenantControlPlaneSpec
    status: TenantControlPlaneStatus = Field(default_factory=TenantControlPlaneStatus)
