"""Amazon EC2 compute provider."""

from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from fleetstage.config.models import ProviderConfig, ServerResource
from fleetstage.providers.base import AuthStatus, ComputeProvider, ServerInfo, ServerStatus
from fleetstage.utils.aws_client import AWSClientManager, AssumeRoleConfig
from fleetstage.utils.errors import ErrorContext, InvalidSpecError, error_handler
from fleetstage.utils.logging import get_logger
from fleetstage.utils.retry import RetryStrategy

logger = get_logger(__name__)


# EC2 instance state name -> ServerStatus
STATE_MAP = {
    'pending': ServerStatus.STARTING,
    'running': ServerStatus.RUNNING,
    'stopping': ServerStatus.STOPPING,
    'shutting-down': ServerStatus.STOPPING,
    'stopped': ServerStatus.STOPPED,
    'terminated': ServerStatus.NOT_FOUND,
}

LIVE_STATES = ['pending', 'running', 'stopping', 'stopped']

NOT_FOUND_CODES = {'InvalidInstanceID.NotFound', 'InvalidInstanceID.Malformed'}


class EC2Provider(ComputeProvider):
    """Servers as EC2 instances.

    ``plan`` is the instance type, ``disk.archive`` (or ``image_id`` in the
    provider config) the AMI, ``disk.size_gb`` the root volume size and the
    first ssh key the EC2 key pair name. Optional provider config keys:
    ``subnet_id``, ``security_group_ids`` (comma separated), ``root_device``,
    ``instance_type``, ``profile``, ``role_arn``.
    """

    graceful_shutdown_timeout = 180.0

    def __init__(self, config: ProviderConfig, project_name: str, client=None, sts_client=None):
        """Initialize EC2 provider.

        Args:
            config: Provider settings (region, optional profile/role)
            project_name: Project whose instances this provider manages
            client: Pre-built EC2 client, mainly for tests
            sts_client: Pre-built STS client used by the credential check
        """
        super().__init__(config, project_name)
        self._client = client
        self._sts_client = sts_client
        self._manager: Optional[AWSClientManager] = None
        self._retry = RetryStrategy(max_retries=2, base_delay=1.0, max_delay=30.0)

    @property
    def manager(self) -> AWSClientManager:
        if self._manager is None:
            options = self.config.config
            role = AssumeRoleConfig(role_arn=options['role_arn']) if options.get('role_arn') else None
            self._manager = AWSClientManager(
                profile=options.get('profile'),
                region=self.config.region,
                assume_role_config=role,
            )
        return self._manager

    @property
    def client(self):
        if self._client is None:
            self._client = self.manager.get_client('ec2')
        return self._client

    @property
    def sts_client(self):
        if self._sts_client is None:
            self._sts_client = self.manager.get_client('sts')
        return self._sts_client

    def check_auth(self) -> AuthStatus:
        try:
            identity = self._retry.execute_with_retry(self.sts_client.get_caller_identity)
        except (BotoCoreError, ClientError) as e:
            return AuthStatus.failed(str(e))
        return AuthStatus.ok(f"{identity.get('Arn')} ({identity.get('Account')})")

    def _call(self, fn: Callable[..., Any], context: ErrorContext, **kwargs) -> Any:
        try:
            return self._retry.execute_with_retry(fn, **kwargs)
        except Exception as e:
            raise error_handler.handle_exception(e, context) from e

    # ------------------------------------------------------------------

    def _to_info(self, instance: Dict[str, Any]) -> ServerInfo:
        state = instance.get('State', {}).get('Name', 'pending')
        ipv6 = None
        for interface in instance.get('NetworkInterfaces', []):
            for address in interface.get('Ipv6Addresses', []):
                ipv6 = address.get('Ipv6Address')
                break
        return ServerInfo(
            identity=instance['InstanceId'],
            status=STATE_MAP.get(state, ServerStatus.STARTING),
            ipv4=instance.get('PublicIpAddress'),
            ipv6=ipv6,
            metadata={
                'instance_type': instance.get('InstanceType'),
                'private_ip': instance.get('PrivateIpAddress'),
            },
        )

    @staticmethod
    def _instances(response: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [i for r in response.get('Reservations', []) for i in r.get('Instances', [])]

    def lookup(self, server: ServerResource) -> Optional[ServerInfo]:
        filters = [{'Name': f'tag:{k}', 'Values': [v]} for k, v in self.ownership_tags(server).items()]
        filters.append({'Name': 'instance-state-name', 'Values': LIVE_STATES})
        response = self._call(
            self.client.describe_instances,
            self.context('lookup', server=server),
            Filters=filters,
        )
        instances = self._instances(response)
        if len(instances) > 1:
            logger.warning(
                f"{len(instances)} live instances are tagged as {server.name}; using the oldest"
            )
            instances.sort(key=lambda i: str(i.get('LaunchTime', '')))
        return self._to_info(instances[0]) if instances else None

    def describe(self, identity: str) -> Optional[ServerInfo]:
        try:
            response = self._retry.execute_with_retry(
                self.client.describe_instances, InstanceIds=[identity]
            )
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in NOT_FOUND_CODES:
                return None
            raise error_handler.handle_exception(e, self.context('describe', identity)) from e
        except Exception as e:
            raise error_handler.handle_exception(e, self.context('describe', identity)) from e

        instances = self._instances(response)
        if not instances:
            return None
        info = self._to_info(instances[0])
        return None if info.status == ServerStatus.NOT_FOUND else info

    def _create(self, server: ServerResource) -> ServerInfo:
        options = {**self.config.config, **server.config}
        image_id = server.disk.archive or options.get('image_id')
        if not image_id:
            raise InvalidSpecError(
                "no image: set disk.archive or image_id in the provider config",
                context=self.context('create', server=server),
            )
        if server.startup_scripts:
            logger.warning(f"{server.name}: startup scripts are a Sakura Cloud feature; ignored on EC2")

        tags = {'Name': server.name, **server.tags, **self.ownership_tags(server)}
        params: Dict[str, Any] = {
            'ImageId': image_id,
            'InstanceType': server.plan or options.get('instance_type', 't3.small'),
            'MinCount': 1,
            'MaxCount': 1,
            'BlockDeviceMappings': [{
                'DeviceName': options.get('root_device', '/dev/xvda'),
                'Ebs': {
                    'VolumeSize': server.disk.size_gb,
                    'VolumeType': 'gp3',
                    'DeleteOnTermination': True,
                },
            }],
            'TagSpecifications': [{
                'ResourceType': 'instance',
                'Tags': [{'Key': k, 'Value': v} for k, v in tags.items()],
            }],
        }
        if server.ssh_keys:
            params['KeyName'] = server.ssh_keys[0]
        if options.get('subnet_id'):
            params['SubnetId'] = options['subnet_id']
        if options.get('security_group_ids'):
            params['SecurityGroupIds'] = [
                g.strip() for g in options['security_group_ids'].split(',') if g.strip()
            ]

        # Not retried: a retried run_instances could launch a second instance
        try:
            response = self.client.run_instances(**params)
        except Exception as e:
            raise error_handler.handle_exception(e, self.context('create', server=server)) from e

        info = self._to_info(response['Instances'][0])
        logger.info(f"Launched instance {info.identity} for {server.name}")
        return info

    def _power_on(self, identity: str) -> None:
        self._call(self.client.start_instances,
                   self.context('power_on', identity), InstanceIds=[identity])

    def _power_off(self, identity: str, force: bool) -> None:
        self._call(self.client.stop_instances,
                   self.context('power_off', identity), InstanceIds=[identity], Force=force)

    def _destroy(self, identity: str) -> None:
        try:
            self._retry.execute_with_retry(self.client.terminate_instances, InstanceIds=[identity])
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in NOT_FOUND_CODES:
                logger.debug(f"{identity} vanished before terminate")
                return
            raise error_handler.handle_exception(e, self.context('destroy', identity)) from e
        except Exception as e:
            raise error_handler.handle_exception(e, self.context('destroy', identity)) from e
