from .config import settings
from .models.v1alpha1 import KubernetesVersionStatus


def desired_replicas(tcp):
    """
    Returns the number of control plane replicas requested by the tenant control plane.
    """
    replicas = tcp.spec.control_plane.deployment.replicas
    return settings.control_plane.default_replicas if replicas is None else replicas


def is_progressing(deployment):
    """
    Returns true if the deployment has not yet converged to its desired state.

    A deployment has converged when its generation has been observed, there are no
    unavailable replicas and the updated, ready and total replica counts all match the
    desired count.
    """
    metadata = deployment.get("metadata", {})
    spec = deployment.get("spec", {})
    status = deployment.get("status", {})
    if metadata.get("generation", 0) != status.get("observedGeneration", 0):
        return True
    if status.get("unavailableReplicas", 0) > 0:
        return True
    desired = spec.get("replicas", settings.control_plane.default_replicas)
    return any(
        status.get(key, 0) != desired
        for key in ["updatedReplicas", "readyReplicas", "replicas"]
    )


def compute_version_status(tcp, deployment):
    """
    Returns the state of the Kubernetes version of the tenant control plane given the
    current state of its deployment.
    """
    recorded_version = tcp.status.kubernetes.version.version
    if desired_replicas(tcp) == 0:
        return KubernetesVersionStatus.SLEEPING
    if deployment.get("status", {}).get("readyReplicas", 0) == 0:
        return KubernetesVersionStatus.NOT_READY
    if tcp.spec.write_permissions.has_any_limitation():
        return KubernetesVersionStatus.WRITE_LIMITED
    progressing = is_progressing(deployment)
    if not progressing:
        return KubernetesVersionStatus.READY
    if recorded_version and recorded_version != tcp.spec.kubernetes.version:
        return KubernetesVersionStatus.UPGRADING
    if not recorded_version:
        return KubernetesVersionStatus.PROVISIONING
    return KubernetesVersionStatus.UNKNOWN


def next_recorded_version(tcp, state):
    """
    Returns the version that should be recorded in the status for the given state.

    The version only advances when the rollout is complete or the control plane is
    sleeping, so that the status never claims a version that was not rolled out.
    """
    if state in {KubernetesVersionStatus.READY, KubernetesVersionStatus.SLEEPING}:
        return tcp.spec.kubernetes.version
    return tcp.status.kubernetes.version.version
