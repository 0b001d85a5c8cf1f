import copy
import enum
import inspect
import logging

from easykube import ApiError

from .config import settings
from .utils import is_managed, is_owned_by

logger = logging.getLogger(__name__)


class OperationResult(str, enum.Enum):
    """
    The outcome of a create-or-update operation.
    """

    NONE = "unchanged"
    CREATED = "created"
    UPDATED = "updated"


async def _apply(mutate, obj):
    result = mutate(obj)
    if inspect.isawaitable(result):
        await result


async def _create_or_update_once(ekresource, name, namespace, mutate):
    try:
        existing = await ekresource.fetch(name, namespace = namespace)
    except ApiError as exc:
        if exc.status_code != 404:
            raise
        obj = { "metadata": { "name": name } }
        if namespace:
            obj["metadata"]["namespace"] = namespace
        await _apply(mutate, obj)
        created = await ekresource.create(obj, namespace = namespace)
        return OperationResult.CREATED, created
    desired = copy.deepcopy(dict(existing))
    await _apply(mutate, desired)
    if desired == existing:
        return OperationResult.NONE, existing
    # The object still carries the resource version from the fetch, so a concurrent
    # write results in a conflict rather than a lost update
    updated = await ekresource.replace(name, desired, namespace = namespace)
    return OperationResult.UPDATED, updated


async def create_or_update(ekresource, name, mutate, namespace = None, retries = None):
    """
    Fetches or creates the named object, applies the mutation and persists the result.

    The mutation receives the object and must re-derive every managed field from its
    inputs, so that applying it again to a refetched object is safe. It may be a plain
    function or a coroutine function.

    Returns a tuple of the operation result and the persisted object. When the mutation
    produces no change, nothing is written and the result is OperationResult.NONE.

    Version conflicts are retried by refetching the object and reapplying the mutation,
    up to the given number of retries, after which the conflict is raised.
    """
    if retries is None:
        retries = settings.upsert_conflict_retries
    attempt = 0
    while True:
        try:
            return await _create_or_update_once(ekresource, name, namespace, mutate)
        except ApiError as exc:
            if exc.status_code != 409 or attempt >= retries:
                raise
            attempt += 1
            logger.debug(
                "conflict writing %s/%s - retrying (attempt %d of %d)",
                namespace or "",
                name,
                attempt,
                retries
            )


async def fetch_or_none(ekresource, name, namespace = None):
    """
    Fetches the named object, returning None if it does not exist.
    """
    try:
        return await ekresource.fetch(name, namespace = namespace)
    except ApiError as exc:
        if exc.status_code == 404:
            return None
        else:
            raise


async def delete_if_managed(ekresource, name, namespace = None, owner_uid = None):
    """
    Deletes the named object if it is managed by this operator.

    When an owner UID is given, the object must also be controlled by that owner.
    Returns true if an object was deleted, false otherwise.
    """
    obj = await fetch_or_none(ekresource, name, namespace = namespace)
    if obj is None:
        return False
    if not is_managed(obj):
        logger.warning(
            "refusing to delete %s/%s - not managed by steward",
            namespace or "",
            name
        )
        return False
    if owner_uid and not is_owned_by(obj, owner_uid):
        logger.warning(
            "refusing to delete %s/%s - not owned by the tenant control plane",
            namespace or "",
            name
        )
        return False
    try:
        await ekresource.delete(name, namespace = namespace)
    except ApiError as exc:
        if exc.status_code == 404:
            return False
        else:
            raise
    return True
