"""
Confidential participant identifiers.

Confidential responses are stored under an identifier derived from the study
participant id with the global and study secrets. The transform is one-way and
deterministic, so the same inputs always resolve to the same identifier.
"""

import hashlib

from .errors import ConfigError

ID_MAPPING_METHOD_SAME = "same"
ID_MAPPING_METHOD_SHA224 = "sha224"
ID_MAPPING_METHOD_SHA256 = "sha256"

DEFAULT_ID_MAPPING_METHOD = ID_MAPPING_METHOD_SHA224


def profile_id_to_participant_id(
    profile_id: str,
    global_secret: str,
    study_secret: str,
    method: str = "",
) -> str:
    """
    Derive the confidential identifier for ``profile_id``.

    Raises:
        ConfigError: If ``method`` is not a supported mapping method.
    """
    method = method or DEFAULT_ID_MAPPING_METHOD
    if method == ID_MAPPING_METHOD_SAME:
        return profile_id

    payload = f"{study_secret}{profile_id}{global_secret}".encode("utf-8")
    if method == ID_MAPPING_METHOD_SHA224:
        return hashlib.sha224(payload).hexdigest()
    if method == ID_MAPPING_METHOD_SHA256:
        return hashlib.sha256(payload).hexdigest()

    raise ConfigError(f"unknown id mapping method: {method}")
