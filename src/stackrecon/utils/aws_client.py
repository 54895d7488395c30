"""boto3 session for the CloudFormation adapter."""

from typing import Any, Dict, Optional

import boto3
from botocore.config import Config

from stackrecon.utils.logging import get_logger

logger = get_logger(__name__)


class AWSClientManager:
    """Lazily builds one boto3 session and caches the clients made from it.

    Credentials come from boto3's default chain (profile, environment,
    instance role). Clients are thread-safe, so one manager serves every
    stack reconciled in parallel.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = 20,
        max_attempts: int = 3
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name, or None for the default chain
            region: AWS region, or None for the profile/environment default
            max_pool_connections: HTTP connections shared by parallel reconciliations
            max_attempts: botocore-level attempts per API call, including the first
        """
        self.profile = profile
        self.region = region
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={'mode': 'standard', 'max_attempts': max_attempts},
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        if self._session is None:
            self._session = boto3.Session(profile_name=self.profile, region_name=self.region)
            logger.info(
                f"Using AWS region {self._session.region_name or 'unset'} "
                f"with profile {self.profile or 'default'}"
            )
        return self._session

    def get_client(self, service_name: str):
        """Return the cached client for ``service_name``, creating it on first use."""
        if service_name not in self._clients:
            self._clients[service_name] = self.session.client(service_name, config=self._boto_config)
            logger.debug(f"Created {service_name} client")
        return self._clients[service_name]
