#!/usr/bin/env python3
"""
FastAPI server exposing clusterscaler health and status
"""

import logging
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, HTTPException

from .. import __version__
from ..core.runner import Runner

logger = logging.getLogger(__name__)


class APIServer:
    """FastAPI server for clusterscaler status endpoints"""

    def __init__(self, runner: Runner, settings):
        """
        Initialize API server

        Args:
            runner: Runner whose status is reported
            settings: Settings instance
        """
        self.runner = runner
        self.settings = settings
        self.app = FastAPI(
            title="clusterscaler API",
            description="Status of the cluster and job scaling loop",
            version=__version__
        )
        self._setup_routes()

    def _setup_routes(self):
        """Setup API routes"""

        @self.app.get("/")
        async def root():
            return {
                "service": "clusterscaler",
                "version": __version__,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        @self.app.get("/health")
        async def health_check():
            """Liveness of the scaling loop"""
            status = self.runner.get_status()
            return {
                "status": "healthy" if status["running"] else "stopping",
                "ticks": status["ticks"],
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        @self.app.get("/status")
        async def get_status():
            """Detailed runner and scaling state"""
            try:
                status = self.runner.get_status()
            except Exception as e:
                logger.error(f"Error getting status: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            status["config"] = self.settings.get_config_dict()
            return status

    def run(self, host: str = "0.0.0.0", port: int = 8080):
        """Run the API server"""
        uvicorn.run(self.app, host=host, port=port, log_level="warning")
