import base64

from .config import settings


def b64encode(value):
    """
    Wrapper around base64.b64encode that accepts str or bytes and returns str.
    """
    if isinstance(value, str):
        value = value.encode()
    return base64.b64encode(value).decode()


def b64decode(value):
    """
    Wrapper around base64.b64decode that returns bytes, with None for no value.
    """
    return base64.b64decode(value) if value else None


def secret_data(secret):
    """
    Returns the decoded data of the given secret as a dictionary of bytes.
    """
    return {
        key: base64.b64decode(value)
        for key, value in (secret.get("data") or {}).items()
    }


def merge_named(existing, desired):
    """
    Merges two lists of objects that are identified by a name key, e.g. containers.

    Objects are deep-merged with the desired object taking precedence, so that fields
    populated by the server survive. The order and membership of the result follows
    the desired list.
    """
    existing_by_name = { item.get("name"): item for item in existing or [] }
    return [
        merge_managed(existing_by_name.get(item.get("name"), {}), item)
        for item in desired
    ]


def merge_managed(existing, desired):
    """
    Returns the result of applying the managed fields in desired on top of existing.

    Dictionaries are merged recursively, lists of named objects are merged by name and
    anything else is replaced by the desired value.
    """
    if isinstance(existing, dict) and isinstance(desired, dict):
        merged = dict(existing)
        for key, value in desired.items():
            merged[key] = merge_managed(existing.get(key), value)
        return merged
    elif (
        isinstance(existing, list) and
        isinstance(desired, list) and
        desired and
        all(isinstance(item, dict) and "name" in item for item in desired)
    ):
        return merge_named(existing, desired)
    else:
        return desired


def steward_labels(tcp_name, component):
    """
    Returns the labels for a child object of the given tenant control plane.
    """
    return {
        **settings.project_labels,
        f"{settings.annotation_prefix}/name": tcp_name,
        f"{settings.annotation_prefix}/component": component,
    }


def is_managed(obj):
    """
    Returns true if the object carries the project labels, false otherwise.
    """
    labels = obj.get("metadata", {}).get("labels") or {}
    return all(labels.get(key) == value for key, value in settings.project_labels.items())


def is_owned_by(obj, owner_uid):
    """
    Returns true if the object has an owner reference to the given owner.
    """
    return any(
        ref.get("uid") == owner_uid
        for ref in obj.get("metadata", {}).get("ownerReferences") or []
    )


def tenant_prefixed_name(tcp, name):
    """
    Returns the name of a child object of the tenant control plane.
    """
    return f"{tcp.metadata.name}-{name}"


def selector_labels(tcp_name):
    """
    Returns the labels that select the control plane pods of a tenant control plane.
    """
    return {
        **settings.project_labels,
        f"{settings.annotation_prefix}/name": tcp_name,
    }
