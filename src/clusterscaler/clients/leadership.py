#!/usr/bin/env python3
"""
Leader election using a Redis lock
Ensures only one clusterscaler replica performs scaling actions
"""

import logging
import socket
import threading
import time
from typing import Optional

import redis

logger = logging.getLogger(__name__)


class LeaderElection:
    """
    Distributed leader election using Redis

    The lock expires after ttl_seconds unless renewed, so a crashed leader is
    replaced once the ttl passes.
    """

    def __init__(self, redis_client: redis.Redis,
                 lock_name: str = "clusterscaler:leader",
                 ttl_seconds: int = 30,
                 instance_id: Optional[str] = None):
        """
        Initialize leader election

        Args:
            redis_client: Redis client instance (decode_responses=True)
            lock_name: Name of the leader lock
            ttl_seconds: Time-to-live for the leader lock
            instance_id: Identity of this replica
        """
        self.redis = redis_client
        self.lock_name = lock_name
        self.ttl_seconds = ttl_seconds
        self.instance_id = instance_id or f"{socket.gethostname()}-{int(time.time())}"
        self.is_leader = False

        self._heartbeat: Optional[threading.Thread] = None
        self._heartbeat_stop = threading.Event()

    def try_acquire_leadership(self) -> bool:
        """
        Acquire the lock, or renew it when this replica already holds it

        Returns:
            bool: True if this replica is the leader
        """
        try:
            acquired = self.redis.set(
                self.lock_name,
                self.instance_id,
                nx=True,
                ex=self.ttl_seconds
            )

            if acquired:
                if not self.is_leader:
                    logger.info(f"Leadership acquired by {self.instance_id}")
                self.is_leader = True
                return True

            current_leader = self.redis.get(self.lock_name)
            if current_leader == self.instance_id:
                self.redis.expire(self.lock_name, self.ttl_seconds)
                self.is_leader = True
                return True

            if self.is_leader:
                logger.warning(f"Lost leadership to {current_leader}")
            self.is_leader = False
            return False

        except redis.RedisError as e:
            logger.error(f"Error during leader election: {e}")
            self.is_leader = False
            return False

    def renew_leadership(self) -> bool:
        """
        Extend the lock ttl if this replica still owns it

        Returns:
            bool: True if renewal successful, False otherwise
        """
        if not self.is_leader:
            return False

        try:
            current_leader = self.redis.get(self.lock_name)
            if current_leader != self.instance_id:
                logger.warning(f"Lost leadership to {current_leader}")
                self.is_leader = False
                return False

            self.redis.expire(self.lock_name, self.ttl_seconds)
            logger.debug(f"Leadership renewed by {self.instance_id}")
            return True

        except redis.RedisError as e:
            logger.error(f"Error renewing leadership: {e}")
            self.is_leader = False
            return False

    def start_heartbeat(self, interval: Optional[float] = None):
        """
        Renew the lock from a background thread while this replica leads

        Scaling passes may run longer than the ttl (node verification,
        drains); the heartbeat keeps the lock held through them.

        Args:
            interval: Seconds between renewals, a third of the ttl by default
        """
        if self._heartbeat is not None and self._heartbeat.is_alive():
            return

        interval = interval or self.ttl_seconds / 3
        self._heartbeat_stop.clear()
        self._heartbeat = threading.Thread(
            target=self._renew_loop,
            args=(interval,),
            name="leader-heartbeat",
            daemon=True
        )
        self._heartbeat.start()
        logger.info(f"Leadership heartbeat started ({interval:.1f}s interval)")

    def stop_heartbeat(self):
        """Stop renewing the lock"""
        self._heartbeat_stop.set()
        if self._heartbeat is not None:
            self._heartbeat.join(timeout=5)
            self._heartbeat = None

    def _renew_loop(self, interval: float):
        while not self._heartbeat_stop.wait(timeout=interval):
            if self.is_leader:
                self.renew_leadership()

    def release_leadership(self):
        """Release the lock if this replica holds it"""
        try:
            current_leader = self.redis.get(self.lock_name)
            if current_leader == self.instance_id:
                self.redis.delete(self.lock_name)
                logger.info(f"Leadership released by {self.instance_id}")
            self.is_leader = False
        except redis.RedisError as e:
            logger.error(f"Error releasing leadership: {e}")

    def get_current_leader(self) -> Optional[str]:
        """Get the current leader instance ID"""
        try:
            return self.redis.get(self.lock_name)
        except redis.RedisError as e:
            logger.error(f"Error getting current leader: {e}")
            return None
