"""
Status API for clusterscaler
"""

from .server import APIServer

__all__ = ["APIServer"]
