from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from kubernetes.client import (
    ApiException,
    NetworkingV1Api,
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1Ingress,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1IngressSpec,
    V1ObjectMeta,
    V1OwnerReference,
    V1ServiceBackendPort,
)

from ingress_operator.src.errors import KeyExtractionError, NotFoundError, ReconcileError
from ingress_operator.src.keys import split_key
from ingress_operator.src.kube import create_ingress, delete_ingress
from ingress_operator.src.metrics import METRICS

DEFAULT_TRIGGER_ANNOTATION = "ingress/http"
DEFAULT_INGRESS_CLASS_NAME = "nginx"
DEFAULT_INGRESS_HOST = "ingressx.com"
DEFAULT_BACKEND_PORT = 80
SERVICE_KIND = "Service"
SERVICE_API_VERSION = "v1"


class ObjectCache(Protocol):
    def get(self, namespace: str, name: str) -> Any: ...


class SyncAction(str, Enum):
    NOOP = "noop"
    CREATED = "created"
    DELETED = "deleted"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one successful sync of a key."""

    key: str
    action: SyncAction


def build_ingress(
    service: Any,
    ingress_class_name: str = DEFAULT_INGRESS_CLASS_NAME,
    host: str = DEFAULT_INGRESS_HOST,
    backend_port: int = DEFAULT_BACKEND_PORT,
) -> V1Ingress:
    """Build the Ingress owned by *service*.

    The result is fully determined by the arguments: same name and namespace
    as the Service, a fixed class, and a single ``/`` prefix rule on a fixed
    host routing to the Service on *backend_port*. The controlling owner
    reference lets the cluster garbage collector remove the Ingress when the
    Service is deleted.
    """
    metadata = service.metadata
    owner = V1OwnerReference(
        api_version=SERVICE_API_VERSION,
        kind=SERVICE_KIND,
        name=metadata.name,
        uid=metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )
    return V1Ingress(
        api_version="networking.k8s.io/v1",
        kind="Ingress",
        metadata=V1ObjectMeta(
            name=metadata.name,
            namespace=metadata.namespace,
            owner_references=[owner],
        ),
        spec=V1IngressSpec(
            ingress_class_name=ingress_class_name,
            rules=[
                V1IngressRule(
                    host=host,
                    http=V1HTTPIngressRuleValue(
                        paths=[
                            V1HTTPIngressPath(
                                path="/",
                                path_type="Prefix",
                                backend=V1IngressBackend(
                                    service=V1IngressServiceBackend(
                                        name=metadata.name,
                                        port=V1ServiceBackendPort(number=backend_port),
                                    )
                                ),
                            )
                        ]
                    ),
                )
            ],
        ),
    )


class IngressReconciler:
    """Makes an Ingress exist if and only if its Service carries the trigger annotation.

    ``sync`` only reads from the informer caches and writes through the
    NetworkingV1 API, so it holds no state of its own and can be called
    again for the same key at any time. It either creates a missing Ingress
    or deletes an unwanted one; an existing Ingress is never updated.
    """

    def __init__(
        self,
        networking_api: NetworkingV1Api,
        service_cache: ObjectCache,
        ingress_cache: ObjectCache,
        trigger_annotation: str = DEFAULT_TRIGGER_ANNOTATION,
        ingress_class_name: str = DEFAULT_INGRESS_CLASS_NAME,
        host: str = DEFAULT_INGRESS_HOST,
        backend_port: int = DEFAULT_BACKEND_PORT,
        logger: logging.Logger | None = None,
    ) -> None:
        self.networking_api = networking_api
        self.service_cache = service_cache
        self.ingress_cache = ingress_cache
        self.trigger_annotation = trigger_annotation
        self.ingress_class_name = ingress_class_name
        self.host = host
        self.backend_port = backend_port
        self.logger = logger or logging.getLogger(__name__)

    def _wants_ingress(self, service: Any) -> bool:
        annotations = getattr(service.metadata, "annotations", None) or {}
        return self.trigger_annotation in annotations

    def sync(self, key: str) -> SyncResult:
        """Drive the Ingress for *key* towards the state its Service asks for.

        Raises :class:`ReconcileError` on any failure worth retrying.
        """
        try:
            namespace, name = split_key(key)
        except KeyExtractionError as exc:
            raise ReconcileError(key, "split-key") from exc

        try:
            service = self.service_cache.get(namespace, name)
        except NotFoundError:
            # Owner-reference garbage collection removes the Ingress.
            self.logger.debug("Service %s no longer exists; nothing to do", key)
            return SyncResult(key=key, action=SyncAction.NOOP)
        except Exception as exc:
            raise ReconcileError(key, "get-service", namespace, name) from exc

        desired = self._wants_ingress(service)

        try:
            self.ingress_cache.get(namespace, name)
            ingress_missing = False
        except NotFoundError:
            ingress_missing = True
        except Exception as exc:
            raise ReconcileError(key, "get-ingress", namespace, name) from exc

        if desired and ingress_missing:
            body = build_ingress(
                service,
                ingress_class_name=self.ingress_class_name,
                host=self.host,
                backend_port=self.backend_port,
            )
            try:
                create_ingress(self.networking_api, namespace, body)
            except Exception as exc:
                raise ReconcileError(key, "create-ingress", namespace, name) from exc
            self.logger.info("Ingress create successful for %s in namespace %s", name, namespace)
            return SyncResult(key=key, action=SyncAction.CREATED)

        if not desired and not ingress_missing:
            try:
                delete_ingress(self.networking_api, namespace, name)
            except Exception as exc:
                if not (isinstance(exc, ApiException) and exc.status == 404):
                    raise ReconcileError(key, "delete-ingress", namespace, name) from exc
                self.logger.info(
                    "Ingress %s in namespace %s was already gone", name, namespace
                )
            else:
                self.logger.info(
                    "Ingress delete successful for %s in namespace %s", name, namespace
                )
            return SyncResult(key=key, action=SyncAction.DELETED)

        return SyncResult(key=key, action=SyncAction.NOOP)
