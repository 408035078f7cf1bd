"""Kubernetes client bootstrap."""

import logging
from typing import Optional

from kubernetes import config
from kubernetes.client import ApiClient, CustomObjectsApi, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException

logger = logging.getLogger(__name__)


class ClusterConnection:
    """Connection to the cluster the operator runs against."""

    def __init__(
        self,
        kubeconfig_path: Optional[str] = None,
        context: Optional[str] = None,
    ):
        """
        Initialize cluster connection.

        Args:
            kubeconfig_path: Path to a kubeconfig file; in-cluster config is
                tried first when omitted
            context: Specific kubeconfig context to use

        Raises:
            ValueError: If no usable configuration is found
        """
        self.kubeconfig_path = kubeconfig_path
        self.context = context
        self._api_client: Optional[ApiClient] = None
        self._custom_objects: Optional[CustomObjectsApi] = None
        self._networking_v1: Optional[NetworkingV1Api] = None

        self._initialize_client()

    def _initialize_client(self) -> None:
        try:
            if self.kubeconfig_path:
                config.load_kube_config(
                    config_file=self.kubeconfig_path, context=self.context
                )
            else:
                try:
                    config.load_incluster_config()
                except ConfigException:
                    logger.info("Not running in-cluster, falling back to kubeconfig")
                    config.load_kube_config(context=self.context)

            self._api_client = ApiClient()
            self._custom_objects = CustomObjectsApi(self._api_client)
            self._networking_v1 = NetworkingV1Api(self._api_client)

        except Exception as e:
            raise ValueError(f"Failed to initialize cluster connection: {e}") from e

    @property
    def custom_objects(self) -> CustomObjectsApi:
        """Get CustomObjectsApi instance."""
        if not self._custom_objects:
            raise RuntimeError("Cluster connection not initialized")
        return self._custom_objects

    @property
    def networking_v1(self) -> NetworkingV1Api:
        """Get NetworkingV1Api instance."""
        if not self._networking_v1:
            raise RuntimeError("Cluster connection not initialized")
        return self._networking_v1

    def close(self) -> None:
        if self._api_client:
            self._api_client.close()
            self._api_client = None
        self._custom_objects = None
        self._networking_v1 = None
