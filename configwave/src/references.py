from __future__ import annotations

from collections.abc import Iterator
from typing import Any

from configwave.src.errors import ExtractionAmbiguity
from configwave.src.objects import CONFIG_MAP, SECRET, Reference


def _required(source: Any) -> bool:
    return not bool(getattr(source, "optional", False))


def _reference(kind: str, name: Any, source: Any, where: str) -> Reference:
    if not isinstance(name, str) or not name.strip():
        raise ExtractionAmbiguity(f"{kind} reference in {where} has no name")
    return Reference(kind=kind, name=name, required=_required(source))


def _volume_references(spec: Any) -> Iterator[Reference]:
    for volume in getattr(spec, "volumes", None) or []:
        where = f"volume {getattr(volume, 'name', None)!r}"
        config_map = getattr(volume, "config_map", None)
        if config_map is not None:
            yield _reference(CONFIG_MAP, config_map.name, config_map, where)
        secret = getattr(volume, "secret", None)
        if secret is not None:
            yield _reference(SECRET, secret.secret_name, secret, where)

        projected = getattr(volume, "projected", None)
        for source in getattr(projected, "sources", None) or []:
            config_map = getattr(source, "config_map", None)
            if config_map is not None:
                yield _reference(CONFIG_MAP, config_map.name, config_map, f"projected {where}")
            secret = getattr(source, "secret", None)
            if secret is not None:
                yield _reference(SECRET, secret.name, secret, f"projected {where}")


def _container_references(container: Any) -> Iterator[Reference]:
    where = f"container {getattr(container, 'name', None)!r}"
    for env_from in getattr(container, "env_from", None) or []:
        config_map_ref = getattr(env_from, "config_map_ref", None)
        secret_ref = getattr(env_from, "secret_ref", None)
        if config_map_ref is not None and secret_ref is not None:
            raise ExtractionAmbiguity(f"envFrom entry in {where} names both a ConfigMap and a Secret")
        if config_map_ref is not None:
            yield _reference(CONFIG_MAP, config_map_ref.name, config_map_ref, f"envFrom of {where}")
        if secret_ref is not None:
            yield _reference(SECRET, secret_ref.name, secret_ref, f"envFrom of {where}")

    for env in getattr(container, "env", None) or []:
        value_from = getattr(env, "value_from", None)
        if value_from is None:
            continue
        env_where = f"env {getattr(env, 'name', None)!r} of {where}"
        key_ref = getattr(value_from, "config_map_key_ref", None)
        if key_ref is not None:
            yield _reference(CONFIG_MAP, key_ref.name, key_ref, env_where)
        key_ref = getattr(value_from, "secret_key_ref", None)
        if key_ref is not None:
            yield _reference(SECRET, key_ref.name, key_ref, env_where)


def extract_references(template: Any) -> list[Reference]:
    """Return every ConfigMap and Secret the pod template depends on.

    Volumes, projected volume sources, ``envFrom`` and ``env[].valueFrom`` of
    both containers and init containers are scanned.  A name mentioned more
    than once yields a single reference that is required if any mention is
    required.  The result is sorted by kind then name so downstream hashing
    does not depend on where in the template a reference appeared.

    Raises :class:`ExtractionAmbiguity` for a reference without a name.
    """
    spec = getattr(template, "spec", None)
    if spec is None:
        return []

    found: list[Reference] = list(_volume_references(spec))
    containers = list(getattr(spec, "init_containers", None) or [])
    containers.extend(getattr(spec, "containers", None) or [])
    for container in containers:
        found.extend(_container_references(container))

    merged: dict[tuple[str, str], bool] = {}
    for ref in found:
        identity = (ref.kind, ref.name)
        merged[identity] = merged.get(identity, False) or ref.required

    return sorted(
        Reference(kind=kind, name=name, required=required)
        for (kind, name), required in merged.items()
    )
