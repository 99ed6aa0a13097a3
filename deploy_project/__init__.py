"""Continuous delivery of a containerized workload onto a managed Kubernetes cluster."""

__version__ = "0.1.0"
