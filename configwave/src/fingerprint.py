from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from hashlib import sha256
from typing import Any

from configwave.src.errors import MissingDependency
from configwave.src.objects import CONFIG_HASH_ANNOTATION, CONFIG_MAP, Reference, metadata_of


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {
        str(k): ("" if v is None else str(v))
        for k, v in raw.items()
    }


def dependency_content(kind: str, obj: Any) -> dict[str, dict[str, str]]:
    """Return the hashable content of a ConfigMap or Secret.

    ConfigMap ``data`` is text and ``binaryData`` is base64; Secret ``data``
    is base64 as delivered by the API server.  ``stringData`` on a Secret is
    write-only and never read back, so it is ignored.
    """
    if obj is None:
        return {"data": {}, "binaryData": {}}
    if kind == CONFIG_MAP:
        return {
            "data": _string_map(getattr(obj, "data", None)),
            "binaryData": _string_map(getattr(obj, "binary_data", None)),
        }
    return {"data": _string_map(getattr(obj, "data", None)), "binaryData": {}}


def compute_fingerprint(
    references: Iterable[Reference],
    contents: Mapping[tuple[str, str], Any],
) -> str:
    """Return the SHA-256 hex digest over every reference and its content.

    ``contents`` maps ``(kind, name)`` to the fetched object, or to ``None``
    (or no entry) when the object does not exist.  A missing required object
    raises :class:`MissingDependency`; a missing optional one hashes as empty.

    References are sorted before hashing and each content map is serialised
    with sorted keys, so neither fetch order nor dict ordering can change
    the result.
    """
    entries: list[dict[str, Any]] = []
    for ref in sorted(references):
        obj = contents.get((ref.kind, ref.name))
        if obj is None and ref.required:
            raise MissingDependency(ref)
        entries.append({"kind": ref.kind, "name": ref.name, **dependency_content(ref.kind, obj)})

    stable_payload = json.dumps(entries, sort_keys=True, separators=(",", ":"))
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def current_fingerprint(template: Any) -> str | None:
    annotations = getattr(getattr(template, "metadata", None), "annotations", None) or {}
    return annotations.get(CONFIG_HASH_ANNOTATION)


def apply_fingerprint(template: Any, digest: str) -> bool:
    """Store *digest* on the pod template; return whether anything changed.

    Only the config-hash annotation is touched.
    """
    metadata = metadata_of(template)
    if metadata.annotations is None:
        metadata.annotations = {}
    if metadata.annotations.get(CONFIG_HASH_ANNOTATION) == digest:
        return False
    metadata.annotations[CONFIG_HASH_ANNOTATION] = digest
    return True
