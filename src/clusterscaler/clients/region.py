#!/usr/bin/env python3
"""
Region discovery through the instance metadata service
"""

import logging

import requests

from .base import RegionDiscoveryError, RegionResolver

logger = logging.getLogger(__name__)

IDENTITY_DOCUMENT_PATH = "/latest/dynamic/instance-identity/document"


class MetadataRegionResolver(RegionResolver):
    """Reads the region from the instance identity document"""

    def __init__(self, url: str = "http://169.254.169.254", timeout: int = 2):
        self.url = url.rstrip("/")
        self.timeout = timeout

    def describe_region(self) -> str:
        try:
            response = requests.get(f"{self.url}{IDENTITY_DOCUMENT_PATH}", timeout=self.timeout)
            response.raise_for_status()
            region = response.json()["region"]
        except (requests.RequestException, ValueError, KeyError) as e:
            raise RegionDiscoveryError(f"Unable to read region from {self.url}: {e}") from e

        if not region:
            raise RegionDiscoveryError("Metadata service returned an empty region")

        logger.debug(f"Metadata service reports region {region}")
        return region
