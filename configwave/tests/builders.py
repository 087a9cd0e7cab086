from __future__ import annotations

from typing import Any

from kubernetes.client import (
    V1ConfigMap,
    V1ConfigMapEnvSource,
    V1ConfigMapKeySelector,
    V1ConfigMapProjection,
    V1ConfigMapVolumeSource,
    V1Container,
    V1DaemonSet,
    V1DaemonSetSpec,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvFromSource,
    V1EnvVar,
    V1EnvVarSource,
    V1LabelSelector,
    V1ObjectMeta,
    V1OwnerReference,
    V1PodSpec,
    V1PodTemplateSpec,
    V1ProjectedVolumeSource,
    V1Secret,
    V1SecretEnvSource,
    V1SecretKeySelector,
    V1SecretProjection,
    V1SecretVolumeSource,
    V1StatefulSet,
    V1StatefulSetSpec,
    V1Volume,
    V1VolumeProjection,
)

NAMESPACE = "default"


def config_map_volume(name: str, optional: bool | None = None, volume: str | None = None) -> V1Volume:
    return V1Volume(
        name=volume or f"vol-{name}",
        config_map=V1ConfigMapVolumeSource(name=name, optional=optional),
    )


def secret_volume(name: str, optional: bool | None = None) -> V1Volume:
    return V1Volume(
        name=f"vol-{name}",
        secret=V1SecretVolumeSource(secret_name=name, optional=optional),
    )


def projected_volume(
    config_maps: tuple[str, ...] = (),
    secrets: tuple[str, ...] = (),
    optional: bool | None = None,
) -> V1Volume:
    sources = [
        V1VolumeProjection(config_map=V1ConfigMapProjection(name=name, optional=optional))
        for name in config_maps
    ]
    sources.extend(
        V1VolumeProjection(secret=V1SecretProjection(name=name, optional=optional))
        for name in secrets
    )
    return V1Volume(name="projected", projected=V1ProjectedVolumeSource(sources=sources))


def env_from_config_map(name: str, optional: bool | None = None) -> V1EnvFromSource:
    return V1EnvFromSource(config_map_ref=V1ConfigMapEnvSource(name=name, optional=optional))


def env_from_secret(name: str, optional: bool | None = None) -> V1EnvFromSource:
    return V1EnvFromSource(secret_ref=V1SecretEnvSource(name=name, optional=optional))


def env_config_map_key(var: str, name: str, key: str, optional: bool | None = None) -> V1EnvVar:
    return V1EnvVar(
        name=var,
        value_from=V1EnvVarSource(
            config_map_key_ref=V1ConfigMapKeySelector(name=name, key=key, optional=optional)
        ),
    )


def env_secret_key(var: str, name: str, key: str, optional: bool | None = None) -> V1EnvVar:
    return V1EnvVar(
        name=var,
        value_from=V1EnvVarSource(
            secret_key_ref=V1SecretKeySelector(name=name, key=key, optional=optional)
        ),
    )


def container(
    name: str = "app",
    env: list[V1EnvVar] | None = None,
    env_from: list[V1EnvFromSource] | None = None,
) -> V1Container:
    return V1Container(name=name, image="nginx:1.27", env=env, env_from=env_from)


def pod_template(
    volumes: list[V1Volume] | None = None,
    containers: list[V1Container] | None = None,
    init_containers: list[V1Container] | None = None,
    annotations: dict[str, str] | None = None,
) -> V1PodTemplateSpec:
    return V1PodTemplateSpec(
        metadata=V1ObjectMeta(labels={"app": "web"}, annotations=annotations),
        spec=V1PodSpec(
            containers=containers or [container()],
            init_containers=init_containers,
            volumes=volumes,
        ),
    )


def deployment(
    name: str = "web",
    template: V1PodTemplateSpec | None = None,
    annotations: dict[str, str] | None = None,
    uid: str | None = None,
) -> V1Deployment:
    return V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=V1ObjectMeta(
            name=name,
            namespace=NAMESPACE,
            uid=uid or f"uid-{name}",
            annotations=annotations,
        ),
        spec=V1DeploymentSpec(
            selector=V1LabelSelector(match_labels={"app": name}),
            template=template or pod_template(),
        ),
    )


def stateful_set(name: str = "db", template: V1PodTemplateSpec | None = None) -> V1StatefulSet:
    return V1StatefulSet(
        api_version="apps/v1",
        kind="StatefulSet",
        metadata=V1ObjectMeta(name=name, namespace=NAMESPACE, uid=f"uid-{name}"),
        spec=V1StatefulSetSpec(
            selector=V1LabelSelector(match_labels={"app": name}),
            service_name=name,
            template=template or pod_template(),
        ),
    )


def daemon_set(name: str = "agent", template: V1PodTemplateSpec | None = None) -> V1DaemonSet:
    return V1DaemonSet(
        api_version="apps/v1",
        kind="DaemonSet",
        metadata=V1ObjectMeta(name=name, namespace=NAMESPACE, uid=f"uid-{name}"),
        spec=V1DaemonSetSpec(
            selector=V1LabelSelector(match_labels={"app": name}),
            template=template or pod_template(),
        ),
    )


def config_map(
    name: str,
    data: dict[str, str] | None = None,
    binary_data: dict[str, str] | None = None,
    owner_references: list[V1OwnerReference] | None = None,
    finalizers: list[str] | None = None,
) -> V1ConfigMap:
    return V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=V1ObjectMeta(
            name=name,
            namespace=NAMESPACE,
            uid=f"uid-cm-{name}",
            owner_references=owner_references,
            finalizers=finalizers,
        ),
        data=data,
        binary_data=binary_data,
    )


def secret(
    name: str,
    data: dict[str, str] | None = None,
    owner_references: list[V1OwnerReference] | None = None,
    finalizers: list[str] | None = None,
) -> V1Secret:
    return V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=V1ObjectMeta(
            name=name,
            namespace=NAMESPACE,
            uid=f"uid-secret-{name}",
            owner_references=owner_references,
            finalizers=finalizers,
        ),
        data=data,
    )


def edge(name: str = "web", uid: str | None = None, kind: str = "Deployment") -> V1OwnerReference:
    return V1OwnerReference(
        api_version="apps/v1",
        kind=kind,
        name=name,
        uid=uid or f"uid-{name}",
        controller=False,
        block_owner_deletion=True,
    )


def owner_uids(obj: Any) -> list[str]:
    return [ref.uid for ref in obj.metadata.owner_references or []]
