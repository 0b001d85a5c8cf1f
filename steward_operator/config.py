import typing as t

from configomatic import (
    Configuration as BaseConfiguration,
)
from configomatic import (
    LoggingConfiguration,
    Section,
)
from pydantic import (
    Field,
    FilePath,
    ValidationInfo,
    conint,
    constr,
    field_validator,
)


class ControlPlaneConfiguration(Section):
    """
    Configuration for the tenant control plane workloads.
    """

    #: The image repository for the Kubernetes control plane components
    #: The tag is taken from the Kubernetes version of each tenant control plane
    image_repository: constr(min_length=1) = "registry.k8s.io"
    #: The etcd endpoints that tenant control planes store their data in
    etcd_endpoints: list[constr(min_length=1)] = Field(
        default_factory=lambda: ["https://etcd.steward-system.svc:2379"]
    )
    #: The default number of control plane replicas when a TCP does not specify one
    default_replicas: conint(ge=0) = 2
    #: The key in the admin kubeconfig secret that holds the kubeconfig
    admin_kubeconfig_key: constr(min_length=1) = "admin.conf"


class TCPProxyConfiguration(Section):
    """
    Configuration for the TCP proxy agent that is deployed into tenant clusters.
    """

    #: The default image for the agent, used when the TCP does not specify one
    image: constr(min_length=1) = "ghcr.io/butlerdotdev/steward-tcp-proxy:latest"
    #: The namespace in the tenant cluster that the agent is deployed into
    namespace: constr(min_length=1) = "kube-system"
    #: The name used for the agent objects in the tenant cluster
    name: constr(min_length=1) = "steward-tcp-proxy"
    #: The name of the cluster role and binding for the agent
    cluster_role_name: constr(min_length=1) = "steward:tcp-proxy"
    #: The ports used by the agent
    listen_port: conint(gt=0, lt=65536) = 6443
    health_port: conint(gt=0, lt=65536) = 8080
    metrics_port: conint(gt=0, lt=65536) = 9090
    #: The number of agent replicas
    replicas: conint(ge=1) = 2


class WorkerBootstrapConfiguration(Section):
    """
    Configuration for worker bootstrap credentials.
    """

    #: The prefix for generated bootstrap tokens
    token_prefix: constr(pattern=r"^[a-z0-9]+$") = "butler"
    #: The default port for the trustd service
    default_port: conint(gt=0, lt=65536) = 50001


class MetricsConfiguration(Section):
    """
    Configuration for the metrics endpoint.
    """

    #: Indicates whether the metrics server should be started
    enabled: bool = True
    #: The port to serve metrics on
    port: conint(gt=0, lt=65536) = 8080


class WebhookConfiguration(Section):
    """
    Configuration for the internal webhook server.
    """

    #: The port to run the webhook server on
    port: conint(ge=1000) = 8443
    #: Indicates whether kopf should manage the webhook configurations
    managed: bool = False
    #: The path to the TLS certificate to use
    certfile: FilePath | None = Field(None, validate_default=False)
    #: The path to the key for the TLS certificate
    keyfile: FilePath | None = Field(None, validate_default=False)
    #: The host for the webhook server (required for self-signed certificate generation)
    host: constr(min_length=1) | None = Field(None, validate_default=False)

    @field_validator("keyfile")
    @classmethod
    def validate_keyfile(cls, v, info: ValidationInfo):
        """
        Validate that keyfile is specified when certfile is present.
        """
        if info.data.get("certfile") is not None and v is None:
            raise ValueError("required when certfile is given")
        return v


class Configuration(
    BaseConfiguration,
    default_path="/etc/steward/operator.yaml",
    path_env_var="STEWARD_CONFIG",
    env_prefix="STEWARD",
):
    """
    Top-level configuration model.
    """

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    #: The API group of the tenant control plane CRDs
    api_group: constr(min_length=1) = "steward.butlerlabs.dev"
    #: A list of categories to place CRDs into
    crd_categories: list[constr(min_length=1)] = Field(
        default_factory=lambda: ["steward"]
    )

    #: The prefix to use for operator annotations and labels
    annotation_prefix: str = "steward.butlerlabs.dev"

    #: The number of seconds to wait between timer executions
    timer_interval: conint(gt=0) = 60

    #: The field manager name to use for server-side apply
    easykube_field_manager: constr(min_length=1) = "steward-operator"

    #: The amount of time (seconds) before a watch is forcefully restarted
    watch_timeout: conint(gt=0) = 600

    #: The number of seconds before expiry at which a certificate is renewed
    cert_expiration_threshold: conint(gt=0) = 24 * 60 * 60

    #: The number of times a write is retried when it hits a version conflict
    upsert_conflict_retries: conint(ge=0) = 5

    #: The number of seconds to wait when notifying a dependent controller
    trigger_timeout: conint(gt=0) = 10

    #: Extra SANs added to every API server certificate
    extra_cert_sans: list[constr(min_length=1)] = Field(default_factory=list)

    #: The control plane configuration
    control_plane: ControlPlaneConfiguration = Field(
        default_factory=ControlPlaneConfiguration
    )

    #: The TCP proxy configuration
    tcp_proxy: TCPProxyConfiguration = Field(default_factory=TCPProxyConfiguration)

    #: The worker bootstrap configuration
    worker_bootstrap: WorkerBootstrapConfiguration = Field(
        default_factory=WorkerBootstrapConfiguration
    )

    #: The metrics configuration
    metrics: MetricsConfiguration = Field(default_factory=MetricsConfiguration)

    #: The webhook configuration
    webhook: WebhookConfiguration = Field(default_factory=WebhookConfiguration)

    @property
    def project_labels(self) -> t.Dict[str, str]:
        """
        The label pair that marks an object as managed by this operator.
        """
        return {f"{self.annotation_prefix}/project": "steward"}


settings = Configuration()
