import ipaddress
import re

import easysemver

from . import addresses
from .models.v1alpha1 import ServiceType


#: Pattern for a DNS name that may be used as a SAN, optionally with a leading wildcard
DNS_NAME_REGEX = re.compile(
    r"^(\*\.)?([a-z0-9]([-a-z0-9]*[a-z0-9])?)(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$",
    re.IGNORECASE
)


def _version(value):
    return easysemver.Version(value.lstrip("v"))


def _check_cidr(value, field):
    try:
        ipaddress.ip_network(value, strict = False)
    except ValueError:
        return [f"{field}: {value} is not a valid CIDR"]
    return []


def _check_san(value, field):
    try:
        ipaddress.ip_address(value)
    except ValueError:
        if not DNS_NAME_REGEX.match(value) or len(value) > 253:
            return [f"{field}: {value} is not a valid IP address or DNS name"]
    return []


def validate_spec(spec):
    """
    Returns a list of problems with the given tenant control plane spec.
    """
    problems = []
    network_profile = spec.network_profile
    control_plane = spec.control_plane

    problems.extend(_check_cidr(network_profile.pod_cidr, "networkProfile.podCidr"))
    problems.extend(_check_cidr(network_profile.service_cidr, "networkProfile.serviceCidr"))
    for cidr in network_profile.load_balancer_source_ranges:
        problems.extend(_check_cidr(cidr, "networkProfile.loadBalancerSourceRanges"))
    for san in network_profile.cert_sans:
        problems.extend(_check_san(san, "networkProfile.certSans"))

    if control_plane.ingress and control_plane.gateway:
        problems.append("controlPlane: ingress and gateway are mutually exclusive")

    is_load_balancer = (
        ServiceType(control_plane.service.service_type) == ServiceType.LOAD_BALANCER
    )
    if not is_load_balancer:
        if network_profile.load_balancer_source_ranges:
            problems.append(
                "networkProfile.loadBalancerSourceRanges: "
                "only permitted for LoadBalancer services"
            )
        if network_profile.load_balancer_class:
            problems.append(
                "networkProfile.loadBalancerClass: only permitted for LoadBalancer services"
            )
    if network_profile.allow_address_as_external_ip and not network_profile.address:
        problems.append(
            "networkProfile.allowAddressAsExternalIP: requires networkProfile.address"
        )

    worker_bootstrap = spec.addons.worker_bootstrap
    if worker_bootstrap:
        if not worker_bootstrap.talos:
            problems.append("addons.workerBootstrap.talos: required for the talos provider")
        else:
            for san in worker_bootstrap.talos.cert_sans:
                problems.extend(_check_san(san, "addons.workerBootstrap.talos.certSans"))
            if addresses.trustd_port(worker_bootstrap.talos) == network_profile.port:
                problems.append(
                    "addons.workerBootstrap.talos.port: "
                    "must not be the same as the API server port"
                )
        for cidr in worker_bootstrap.csr_approval.allowed_subnets:
            problems.extend(
                _check_cidr(cidr, "addons.workerBootstrap.csrApproval.allowedSubnets")
            )

    konnectivity = spec.addons.konnectivity
    if konnectivity and konnectivity.port == network_profile.port:
        problems.append(
            "addons.konnectivity.port: must not be the same as the API server port"
        )
    return problems


def validate_version_change(current_version, next_version):
    """
    Returns a list of problems with changing the Kubernetes version of an existing
    tenant control plane.
    """
    current = _version(current_version)
    target = _version(next_version)
    if target < current:
        return ["kubernetes.version: downgrading is not supported"]
    if target.major != current.major:
        return ["kubernetes.version: upgrading to a new major version is not supported"]
    if target.minor > current.minor.increment():
        return [
            "kubernetes.version: upgrading by more than one minor version is not supported"
        ]
    return []


def validate(spec, current = None):
    """
    Returns a list of problems with the given spec for a tenant control plane.

    When the tenant control plane already exists, changes to the Kubernetes version are
    also checked against the version in the current spec and the version that is
    rolled out.
    """
    problems = validate_spec(spec)
    if current is not None:
        versions = {current.spec.kubernetes.version}
        if current.status.kubernetes.version.version:
            versions.add(current.status.kubernetes.version.version)
        for version in sorted(versions):
            if version == spec.kubernetes.version:
                continue
            for problem in validate_version_change(version, spec.kubernetes.version):
                if problem not in problems:
                    problems.append(problem)
    return problems
