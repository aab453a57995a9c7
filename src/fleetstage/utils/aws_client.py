"""AWS client management and session handling."""

import boto3
from botocore.config import Config
from typing import Optional, Dict, Any
from dataclasses import dataclass
from fleetstage.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AssumeRoleConfig:
    """Configuration for IAM role assumption."""
    role_arn: str
    session_name: str = 'fleetstage'
    external_id: Optional[str] = None
    duration_seconds: int = 3600


class AWSClientManager:
    """Manages boto3 sessions and cached clients.

    Credentials are resolved by boto3 itself (environment, shared config,
    instance role). Nothing secret passes through this class's callers.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        assume_role_config: Optional[AssumeRoleConfig] = None,
        max_pool_connections: int = 20
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            assume_role_config: Configuration for assuming an IAM role
            max_pool_connections: Maximum number of connections in the connection pool
        """
        self.profile = profile
        self.region = region
        self.assume_role_config = assume_role_config
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}

        # botocore's own retries stay low; fleetstage's RetryStrategy wraps calls
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={
                'mode': 'standard',
                'max_attempts': 3
            },
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create boto3 session, assuming the configured role if any."""
        if self._session is None:
            kwargs = {}
            if self.profile:
                kwargs['profile_name'] = self.profile
            if self.region:
                kwargs['region_name'] = self.region

            session = boto3.Session(**kwargs)
            if self.assume_role_config is not None:
                session = self._assume_role(session, self.assume_role_config)

            self._session = session
            logger.info(f"Created AWS session - Region: {self._session.region_name}, "
                        f"Profile: {self.profile or 'default'}")

        return self._session

    def get_client(self, service_name: str):
        """Get boto3 client for a service with connection pooling.

        Args:
            service_name: AWS service name (e.g., 'ec2')

        Returns:
            Boto3 client for the service
        """
        if service_name not in self._clients:
            self._clients[service_name] = self.session.client(service_name, config=self._boto_config)
            logger.debug(f"Created {service_name} client")
        return self._clients[service_name]

    def _assume_role(self, base: boto3.Session, config: AssumeRoleConfig) -> boto3.Session:
        logger.info(f"Assuming IAM role: {config.role_arn}")

        params = {
            'RoleArn': config.role_arn,
            'RoleSessionName': config.session_name,
            'DurationSeconds': config.duration_seconds
        }
        if config.external_id:
            params['ExternalId'] = config.external_id

        credentials = base.client('sts', config=self._boto_config).assume_role(**params)['Credentials']
        return boto3.Session(
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken'],
            region_name=self.region or base.region_name
        )
