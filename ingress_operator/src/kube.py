from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import CoreV1Api, NetworkingV1Api, V1Ingress
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, NetworkingV1Api]:
    """Return CoreV1 (Services) and NetworkingV1 (Ingresses) API clients."""
    return client.CoreV1Api(), client.NetworkingV1Api()


def create_ingress(networking_api: NetworkingV1Api, namespace: str, body: V1Ingress) -> V1Ingress:
    """Create *body* in *namespace*; API failures surface as ``ApiException``."""
    return networking_api.create_namespaced_ingress(namespace=namespace, body=body)


def delete_ingress(networking_api: NetworkingV1Api, namespace: str, name: str) -> None:
    """Delete the named Ingress; a missing Ingress raises ``ApiException(status=404)``."""
    networking_api.delete_namespaced_ingress(name=name, namespace=namespace)
