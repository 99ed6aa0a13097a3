"""Render descriptors into the documents the external tools consume."""

from __future__ import annotations

import json
from typing import Any, Iterable

import yaml

from deploy_project.framework.descriptors import ClusterTopology, WorkloadDescriptor

MANAGED_BY = "deploy-project"
DESCRIPTOR_ANNOTATION = "deploy-project.io/descriptor"


def _labels(workload: WorkloadDescriptor) -> dict[str, str]:
    return {"app.kubernetes.io/name": workload.name, "app.kubernetes.io/managed-by": MANAGED_BY}


def descriptor_annotation(workload: WorkloadDescriptor) -> str:
    return json.dumps(workload.to_dict(), sort_keys=True, separators=(",", ":"))


def render_deployment(workload: WorkloadDescriptor) -> dict[str, Any]:
    labels = _labels(workload)
    resources = workload.resources
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": workload.name,
            "namespace": workload.namespace,
            "labels": labels,
            "annotations": {DESCRIPTOR_ANNOTATION: descriptor_annotation(workload)},
        },
        "spec": {
            "replicas": workload.replicas,
            # Old replicas stay up until their replacement is ready.
            "strategy": {"type": "RollingUpdate", "rollingUpdate": {"maxUnavailable": 0, "maxSurge": 1}},
            "selector": {"matchLabels": {"app.kubernetes.io/name": workload.name}},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [
                        {
                            "name": workload.name,
                            "image": str(workload.image),
                            "ports": [{"containerPort": workload.container_port}],
                            "resources": {
                                "requests": {"cpu": resources.cpu_request, "memory": resources.memory_request},
                                "limits": {"cpu": resources.cpu_limit, "memory": resources.memory_limit},
                            },
                        }
                    ]
                },
            },
        },
    }


def render_service(workload: WorkloadDescriptor) -> dict[str, Any]:
    exposure = workload.exposure
    port = exposure.external_port if exposure.load_balanced else workload.container_port
    return {
        "apiVersion": "v1",
        "kind": "Service",
        # Same name for both exposure types so a type change patches the service in place.
        "metadata": {"name": workload.name, "namespace": workload.namespace, "labels": _labels(workload)},
        "spec": {
            "type": "LoadBalancer" if exposure.load_balanced else "ClusterIP",
            "selector": {"app.kubernetes.io/name": workload.name},
            "ports": [{"port": port, "targetPort": workload.container_port, "protocol": "TCP"}],
        },
    }


def render_workload_manifests(workload: WorkloadDescriptor) -> list[dict[str, Any]]:
    return [render_deployment(workload), render_service(workload)]


def dump_manifests(documents: Iterable[dict[str, Any]]) -> str:
    return yaml.safe_dump_all(list(documents), sort_keys=False, default_flow_style=False)


def render_tfvars(topology: ClusterTopology) -> dict[str, Any]:
    """Variables for the cluster module (control plane + one managed node group)."""

    node_group = topology.node_group
    out: dict[str, Any] = {
        "cluster_name": topology.name,
        "cluster_version": topology.control_plane_version,
        "vpc_id": topology.network.vpc_id,
        "subnet_ids": list(topology.network.subnet_ids),
        "node_group": {
            "instance_types": [node_group.instance_class],
            "min_size": node_group.min_size,
            "desired_size": node_group.desired_size,
            "max_size": node_group.max_size,
        },
        "tags": dict(topology.tags),
    }
    if topology.region is not None:
        out["region"] = topology.region
    return out
