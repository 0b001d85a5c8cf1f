import base64
import datetime as dt
import ipaddress
import logging

from easykube import ApiError

from .errors import CertificateError
from .pki import csr_ip_addresses

logger = logging.getLogger(__name__)


CSR_API_VERSION = "certificates.k8s.io/v1"
KUBELET_SERVING_SIGNER = "kubernetes.io/kubelet-serving"
NODE_USERNAME_PREFIX = "system:node:"
NODES_GROUP = "system:nodes"
SERVER_AUTH_USAGE = "server auth"
APPROVAL_REASON = "StewardAutoApproved"


def is_approved_or_denied(csr):
    """
    Returns true if the CSR already has an approved or denied condition.
    """
    conditions = csr.get("status", {}).get("conditions") or []
    return any(c.get("type") in {"Approved", "Denied"} for c in conditions)


def is_kubelet_serving(csr):
    """
    Returns true if the CSR is for a kubelet serving certificate.
    """
    return csr.get("spec", {}).get("signerName") == KUBELET_SERVING_SIGNER


def _parse_networks(cidrs):
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning("ignoring invalid allowed subnet %s", cidr)
    return networks


def validate_csr(csr, csr_approval):
    """
    Returns true if the kubelet serving CSR satisfies the approval policy.

    The requestor must be a node in the nodes group, the request must be for server
    auth and, when allowed subnets are configured, every requested IP must fall within
    one of them. Failures are logged at debug level and never raise.
    """
    name = csr.get("metadata", {}).get("name")
    spec = csr.get("spec", {})
    username = spec.get("username", "")
    if not username.startswith(NODE_USERNAME_PREFIX):
        logger.debug("skipping CSR %s - username %s is not a node", name, username)
        return False
    if NODES_GROUP not in (spec.get("groups") or []):
        logger.debug("skipping CSR %s - requestor is not in %s", name, NODES_GROUP)
        return False
    if SERVER_AUTH_USAGE not in (spec.get("usages") or []):
        logger.debug("skipping CSR %s - server auth usage not requested", name)
        return False
    if csr_approval.allowed_subnets:
        networks = _parse_networks(csr_approval.allowed_subnets)
        try:
            ips = csr_ip_addresses(base64.b64decode(spec.get("request", "")))
        except (CertificateError, ValueError) as exc:
            logger.debug("skipping CSR %s - unable to parse request: %s", name, exc)
            return False
        for ip in ips:
            if not any(ip.version == n.version and ip in n for n in networks):
                logger.debug("skipping CSR %s - IP %s is not in an allowed subnet", name, ip)
                return False
    return True


def approve(csr):
    """
    Returns a copy of the CSR with an approved condition appended.
    """
    now = dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    status = dict(csr.get("status") or {})
    status["conditions"] = list(status.get("conditions") or []) + [
        {
            "type": "Approved",
            "status": "True",
            "reason": APPROVAL_REASON,
            "message": "Approved by steward worker bootstrap policy",
            "lastUpdateTime": now,
        },
    ]
    return {**csr, "status": status}


async def reconcile_csrs(client, worker_bootstrap):
    """
    Approves the pending kubelet serving CSRs in the tenant cluster that satisfy the
    approval policy of the worker bootstrap addon.

    Returns the names of the approved CSRs.
    """
    if not worker_bootstrap or not worker_bootstrap.csr_approval.auto_approve:
        return []
    ekapi = client.api(CSR_API_VERSION)
    ekcsrs = await ekapi.resource("certificatesigningrequests")
    ekapprovals = await ekapi.resource("certificatesigningrequests/approval")
    approved = []
    async for csr in ekcsrs.list():
        if await approve_if_valid(ekapprovals, csr, worker_bootstrap):
            approved.append(csr["metadata"]["name"])
    return approved


async def approve_if_valid(ekapprovals, csr, worker_bootstrap):
    """
    Approves a single CSR through the approval subresource if it is pending, for a
    kubelet serving certificate and satisfies the approval policy.

    Returns true if the CSR was approved, false otherwise. A failure to write the
    approval is logged so that the remaining CSRs are still processed.
    """
    if is_approved_or_denied(csr) or not is_kubelet_serving(csr):
        return False
    if not validate_csr(csr, worker_bootstrap.csr_approval):
        return False
    name = csr["metadata"]["name"]
    try:
        await ekapprovals.replace(name, approve(csr))
    except ApiError as exc:
        # The CSR is left pending and picked up again by the next reconcile or event
        logger.warning("failed to approve kubelet serving CSR %s: %s", name, exc)
        return False
    logger.info("approved kubelet serving CSR %s", name)
    return True
