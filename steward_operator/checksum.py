import datetime as dt
import hashlib

from .config import settings


def _annotation(name):
    return f"{settings.annotation_prefix}/{name}"


CHECKSUM_ANNOTATION = _annotation("checksum")
ROTATE_ANNOTATION = _annotation("rotate")
LAST_ROTATION_ANNOTATION = _annotation("last-rotation")


def calculate_checksum(data):
    """
    Returns a deterministic checksum for a mapping of keys to str or bytes values.

    The keys are processed in sorted order so that the checksum does not depend on
    the order in which the data was produced.
    """
    md5 = hashlib.md5()
    for key in sorted(data):
        value = data[key]
        if isinstance(value, str):
            value = value.encode()
        md5.update(key.encode())
        md5.update(value or b"")
    return md5.hexdigest()


def get_object_checksum(obj):
    """
    Returns the checksum recorded on the object, or None if there isn't one.
    """
    annotations = obj.get("metadata", {}).get("annotations") or {}
    return annotations.get(CHECKSUM_ANNOTATION)


def set_object_checksum(obj, data):
    """
    Records the checksum of the given data on the object and returns it.
    """
    checksum = calculate_checksum(data)
    annotations = obj.setdefault("metadata", {}).setdefault("annotations", {})
    annotations[CHECKSUM_ANNOTATION] = checksum
    return checksum


def is_rotation_requested(obj):
    """
    Returns true if regeneration of the object's content has been requested.
    """
    annotations = obj.get("metadata", {}).get("annotations") or {}
    return ROTATE_ANNOTATION in annotations


def set_last_rotation_timestamp(obj):
    """
    Clears the rotation request on the object and records when the rotation happened.
    """
    annotations = obj.setdefault("metadata", {}).setdefault("annotations", {})
    annotations.pop(ROTATE_ANNOTATION, None)
    annotations[LAST_ROTATION_ANNOTATION] = (
        dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    )


def should_revalidate(obj, recorded_checksum):
    """
    Returns true if the existing content of the object can be kept, provided that it
    passes validation, and false if it must be regenerated.

    Content is only considered for reuse when no rotation is requested and either the
    checksum recorded in the status matches the object or the object already exists.
    """
    if is_rotation_requested(obj):
        return False
    object_checksum = get_object_checksum(obj)
    if recorded_checksum and recorded_checksum == object_checksum:
        return True
    return bool(obj.get("metadata", {}).get("uid"))
