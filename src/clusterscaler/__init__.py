"""
clusterscaler - worker pool and workload autoscaler for k3s clusters
"""

__version__ = "0.1.0"
