class StewardError(Exception):
    """
    Base class for errors raised while reconciling a tenant control plane.
    """


class ConfigurationIncompleteError(StewardError):
    """
    Raised when a resource depends on something that has not converged yet.

    These errors are expected to resolve on a later reconcile, once the resources
    earlier in the list have converged.
    """


class NonExposedLoadBalancerError(ConfigurationIncompleteError):
    """
    Raised when a LoadBalancer service has not been assigned an ingress yet.
    """

    def __init__(self):
        super().__init__("load balancer has not been assigned an address yet")


class MissingValidIPError(ConfigurationIncompleteError):
    """
    Raised when no valid IP address is available for the control plane.
    """

    def __init__(self, detail = None):
        message = "no valid IP address is available for the control plane"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ServiceNotReadyError(ConfigurationIncompleteError):
    """
    Raised when a resource needs the control plane service and it is not ready.
    """


class LoadBalancerHostnameError(StewardError):
    """
    Raised when a LoadBalancer service only publishes a hostname.
    """

    def __init__(self, hostname):
        self.hostname = hostname
        super().__init__(
            f"hostname not supported for LoadBalancer ingress ({hostname}): "
            "use static IP instead"
        )


class CertificateError(StewardError):
    """
    Raised when stored certificate material cannot be used.
    """


class PausedReconciliationError(StewardError):
    """
    Raised when reconciliation of a tenant control plane is paused.
    """
