#!/usr/bin/env python3
"""
KUBEDASH CLUSTER CONNECTION
---------------------------
Builds the Kubernetes ApiClient shared by discovery and the cluster sink:
in-cluster service account first (the CronJob case), kubeconfig otherwise.

Author: KubeDash Team
Date: 2026-10-19
"""

import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from kubedash.core.errors import DiscoveryError

logger = logging.getLogger("kubedash.kube")


def load_api_client(kubeconfig: Optional[str] = None) -> client.ApiClient:
    if kubeconfig:
        try:
            return config.new_client_from_config(config_file=kubeconfig)
        except (ConfigException, OSError) as e:
            raise DiscoveryError(f"Unable to load kubeconfig {kubeconfig}: {e}")

    try:
        config.load_incluster_config()
        logger.debug("Using in-cluster service account credentials")
    except ConfigException:
        try:
            config.load_kube_config()
            logger.debug("Using default kubeconfig credentials")
        except (ConfigException, OSError) as e:
            raise DiscoveryError(f"No usable cluster credentials: {e}")
    return client.ApiClient()
