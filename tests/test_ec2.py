"""Tests for the EC2 compute provider."""

from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from fleetstage.config.models import ProviderConfig, ServerResource
from fleetstage.providers.base import ServerStatus
from fleetstage.providers.ec2 import EC2Provider
from fleetstage.utils.errors import InvalidSpecError, QuotaExceededError


def client_error(code, message="boom", operation="DescribeInstances"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def instance(state="running", instance_id="i-0abc", **extra):
    data = {"InstanceId": instance_id, "State": {"Name": state}, "InstanceType": "t3.small"}
    data.update(extra)
    return data


def reservations(*instances):
    return {"Reservations": [{"Instances": list(instances)}] if instances else []}


@pytest.fixture
def client():
    return Mock()


@pytest.fixture
def provider(client):
    config = ProviderConfig(name="aws", region="eu-west-1", config={"image_id": "ami-123"})
    return EC2Provider(config, "demo", client=client)


@pytest.fixture
def server():
    return ServerResource(name="web", provider="aws", plan="t3.medium", ssh_keys=["deploy"],
                          tags={"team": "core"})


class TestLookup:
    """Tests for finding instances by ownership tags."""

    def test_filters_by_tags_and_live_states(self, provider, client, server):
        """Only live instances tagged for this project and server match."""
        client.describe_instances.return_value = reservations()

        assert provider.lookup(server) is None

        filters = client.describe_instances.call_args.kwargs["Filters"]
        assert {"Name": "tag:fleetflow:project", "Values": ["demo"]} in filters
        assert {"Name": "tag:fleetflow:server", "Values": ["web"]} in filters
        states = next(f for f in filters if f["Name"] == "instance-state-name")["Values"]
        assert "terminated" not in states

    def test_maps_addresses(self, provider, client, server):
        """Public IPv4 and the first IPv6 address are reported."""
        client.describe_instances.return_value = reservations(instance(
            PublicIpAddress="203.0.113.7",
            NetworkInterfaces=[{"Ipv6Addresses": [{"Ipv6Address": "2001:db8::7"}]}],
        ))

        info = provider.lookup(server)

        assert info.identity == "i-0abc"
        assert info.status == ServerStatus.RUNNING
        assert info.ipv4 == "203.0.113.7"
        assert info.ipv6 == "2001:db8::7"


class TestDescribe:
    """Tests for reading one instance."""

    @pytest.mark.parametrize("state,expected", [
        ("pending", ServerStatus.STARTING),
        ("running", ServerStatus.RUNNING),
        ("stopping", ServerStatus.STOPPING),
        ("shutting-down", ServerStatus.STOPPING),
        ("stopped", ServerStatus.STOPPED),
    ])
    def test_state_mapping(self, provider, client, state, expected):
        """EC2 state names map onto the power state enum."""
        client.describe_instances.return_value = reservations(instance(state))

        assert provider.describe("i-0abc").status == expected

    def test_terminated_is_absent(self, provider, client):
        """A terminated instance no longer exists."""
        client.describe_instances.return_value = reservations(instance("terminated"))

        assert provider.describe("i-0abc") is None
        assert provider.read_status("i-0abc") == ServerStatus.NOT_FOUND

    def test_unknown_id_is_absent(self, provider, client):
        """InvalidInstanceID.NotFound is reported as None, not raised."""
        client.describe_instances.side_effect = client_error("InvalidInstanceID.NotFound")

        assert provider.describe("i-gone") is None


class TestCreate:
    """Tests for launching instances."""

    def test_run_instances_parameters(self, provider, client, server):
        """Plan, image, key pair, disk and tags are passed to run_instances."""
        client.describe_instances.return_value = reservations()
        client.run_instances.return_value = {"Instances": [instance("pending", "i-new")]}

        info = provider.create(server)

        assert info.identity == "i-new"
        assert info.status == ServerStatus.STARTING
        params = client.run_instances.call_args.kwargs
        assert params["ImageId"] == "ami-123"
        assert params["InstanceType"] == "t3.medium"
        assert params["KeyName"] == "deploy"
        assert params["BlockDeviceMappings"][0]["Ebs"]["VolumeSize"] == 20
        tags = {t["Key"]: t["Value"] for t in params["TagSpecifications"][0]["Tags"]}
        assert tags["Name"] == "web"
        assert tags["team"] == "core"
        assert tags["fleetflow:server"] == "web"

    def test_existing_instance_is_reused(self, provider, client, server):
        """An instance found by tag is returned instead of launching another."""
        client.describe_instances.return_value = reservations(instance("stopped"))

        info = provider.create(server)

        assert info.status == ServerStatus.STOPPED
        client.run_instances.assert_not_called()

    def test_missing_image(self, client, server):
        """Without an image the request is rejected before any launch."""
        provider = EC2Provider(ProviderConfig(name="aws"), "demo", client=client)
        client.describe_instances.return_value = reservations()

        with pytest.raises(InvalidSpecError, match="no image"):
            provider.create(server)
        client.run_instances.assert_not_called()

    def test_instance_limit_is_quota_error(self, provider, client, server):
        """InstanceLimitExceeded becomes QuotaExceededError keyed by the server."""
        client.describe_instances.return_value = reservations()
        client.run_instances.side_effect = client_error(
            "InstanceLimitExceeded", "You have requested more instances than allowed", "RunInstances"
        )

        with pytest.raises(QuotaExceededError) as excinfo:
            provider.create(server)

        assert excinfo.value.resource_key == "aws:server:web"
        assert "more instances than allowed" in str(excinfo.value)
        assert client.run_instances.call_count == 1


class TestPower:
    """Tests for power transitions and termination."""

    def test_forced_stop(self, provider, client):
        """A forced power off passes Force=True."""
        client.describe_instances.return_value = reservations(instance("running"))

        provider.power_off("i-0abc", force=True)

        client.stop_instances.assert_called_once_with(InstanceIds=["i-0abc"], Force=True)

    def test_power_on_running_is_noop(self, provider, client):
        """Starting a running instance makes no call."""
        client.describe_instances.return_value = reservations(instance("running"))

        provider.power_on("i-0abc")

        client.start_instances.assert_not_called()

    def test_destroy_absent_instance(self, provider, client):
        """Destroying an instance that is already gone succeeds without terminating."""
        client.describe_instances.side_effect = client_error("InvalidInstanceID.NotFound")

        provider.destroy("i-gone")

        client.terminate_instances.assert_not_called()

    def test_destroy_terminates(self, provider, client):
        """A live instance is terminated."""
        client.describe_instances.return_value = reservations(instance("stopped"))

        provider.destroy("i-0abc")

        client.terminate_instances.assert_called_once_with(InstanceIds=["i-0abc"])


class TestCheckAuth:
    """Tests for the STS credential check."""

    def test_caller_identity(self, client):
        sts = Mock()
        sts.get_caller_identity.return_value = {
            "Account": "123456789012", "Arn": "arn:aws:iam::123456789012:user/deploy",
        }
        provider = EC2Provider(ProviderConfig(name="aws"), "demo", client=client, sts_client=sts)

        status = provider.check_auth()

        assert status.authenticated
        assert status.account == "arn:aws:iam::123456789012:user/deploy (123456789012)"
        client.describe_instances.assert_not_called()

    def test_expired_token(self, client):
        """A rejected token is reported, not raised."""
        sts = Mock()
        sts.get_caller_identity.side_effect = client_error(
            "ExpiredToken", "The security token included in the request is expired",
            operation="GetCallerIdentity",
        )
        provider = EC2Provider(ProviderConfig(name="aws"), "demo", client=client, sts_client=sts)

        status = provider.check_auth()

        assert not status.authenticated
        assert "expired" in status.error
        assert sts.get_caller_identity.call_count == 1
