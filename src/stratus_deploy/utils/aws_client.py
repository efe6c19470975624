"""AWS client management and session handling."""

import threading
from typing import Optional, Dict, Any

import boto3
from botocore.config import Config

from stratus_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class AWSClientManager:
    """Manages a boto3 session and a cache of service clients."""

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = 50,
        session: Optional[boto3.Session] = None
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            max_pool_connections: Maximum number of connections in the connection pool
            session: Pre-built session to use instead of creating one
        """
        self.profile = profile
        self.region = region
        self.max_pool_connections = max_pool_connections
        self._session = session
        self._clients: Dict[str, Any] = {}
        self._account_id: Optional[str] = None
        self._lock = threading.Lock()

        # Configure boto3 with connection pooling and retry strategy
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={
                'mode': 'adaptive',
                'max_attempts': 5
            },
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create boto3 session.

        Returns:
            Configured boto3 session
        """
        if self._session is None:
            kwargs = {}
            if self.profile:
                kwargs['profile_name'] = self.profile
            if self.region:
                kwargs['region_name'] = self.region

            self._session = boto3.Session(**kwargs)
            logger.info(f"Created AWS session - Region: {self._session.region_name}, "
                        f"Profile: {self.profile or 'default'}")

        return self._session

    def get_client(self, service_name: str):
        """Get boto3 client for a service with connection pooling.

        Clients are shared between worker threads; boto3 clients are
        thread-safe once created, creation itself is serialized here.

        Args:
            service_name: AWS service name (e.g., 'ec2', 'rds')

        Returns:
            Boto3 client for the service
        """
        with self._lock:
            client = self._clients.get(service_name)
            if client is None:
                client = self.session.client(service_name, config=self._boto_config)
                self._clients[service_name] = client
                logger.debug(f"Created {service_name} client")
            return client

    def get_account_id(self) -> str:
        """Get the AWS account ID of the active credentials.

        Returns:
            AWS account ID
        """
        if self._account_id is None:
            identity = self.get_client('sts').get_caller_identity()
            self._account_id = identity['Account']
        return self._account_id

    def get_region(self) -> str:
        """Get the AWS region.

        Returns:
            AWS region name
        """
        return self.region or self.session.region_name
