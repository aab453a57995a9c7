"""Tests for the Sakura Cloud provider."""

import json
import subprocess
from unittest.mock import Mock, patch

import pytest

from fleetstage.config.models import DiskSpec, ProviderConfig, ServerResource
from fleetstage.providers.base import ServerStatus
from fleetstage.providers.sakura import SakuraCloudProvider, classify_cli_error, parse_plan
from fleetstage.utils.errors import (
    ErrorContext,
    FleetError,
    InvalidSpecError,
    ProviderUnavailableError,
    QuotaExceededError,
)


def completed(stdout="", returncode=0, stderr=""):
    if not isinstance(stdout, str):
        stdout = json.dumps(stdout)
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


def sakura_server(status="up", server_id=1130001, tags=None):
    return {
        "ID": server_id,
        "Name": "web",
        "InstanceStatus": status,
        "Interfaces": [{"IPAddress": "153.120.0.5"}],
        "Tags": tags if tags is not None else ["fleetflow:demo:web", "fleetflow:project:demo"],
        "CPU": 2,
        "MemoryMB": 4096,
    }


@pytest.fixture
def run():
    with patch("fleetstage.providers.sakura.shutil.which", return_value="/usr/local/bin/usacloud"), \
            patch("fleetstage.providers.sakura.subprocess.run") as mocked:
        yield mocked


@pytest.fixture
def provider():
    return SakuraCloudProvider(ProviderConfig(name="sakura", zone="is1b"), "demo")


@pytest.fixture
def server():
    return ServerResource(name="web", provider="sakura", plan="2core-4gb",
                          disk=DiskSpec(size_gb=40, os="ubuntu"), ssh_keys=["1130000"])


class TestParsePlan:
    """Tests for plan strings."""

    def test_core_and_memory(self):
        assert parse_plan("2core-4gb") == (2, 4)
        assert parse_plan("4CORE-16GB") == (4, 16)

    def test_defaults(self):
        """Missing or unrecognised plans fall back to the smallest server."""
        assert parse_plan(None) == (1, 1)
        assert parse_plan("large") == (1, 1)


class TestClassifyCliError:
    """Tests for mapping usacloud stderr onto error kinds."""

    @pytest.mark.parametrize("stderr,kind", [
        ("Error: resource limit exceeded for server", QuotaExceededError),
        ("Error: 401 Unauthorized", ProviderUnavailableError),
        ("Error: invalid parameter: core", InvalidSpecError),
        ("Error: something else broke", FleetError),
    ])
    def test_kinds(self, stderr, kind):
        error = classify_cli_error(stderr, ErrorContext(resource_key="sakura:server:web"))

        assert type(error) is kind
        assert stderr in str(error)

    def test_empty_stderr(self):
        error = classify_cli_error("", ErrorContext())

        assert error.message == "usacloud exited with an error"


class TestCommands:
    """Tests for the CLI invocations."""

    def test_create_arguments(self, provider, server, run):
        """Zone, plan, disk, keys and ownership tags are passed to server create."""
        run.side_effect = [completed([]), completed([sakura_server("up")])]

        info = provider.create(server)

        assert info.identity == "1130001"
        assert info.ipv4 == "153.120.0.5"
        command = run.call_args.args[0]
        assert command[:3] == ["usacloud", "--zone", "is1b"]
        assert command[3:5] == ["server", "create"]
        assert command[command.index("--core") + 1] == "2"
        assert command[command.index("--memory") + 1] == "4"
        assert command[command.index("--disk-size") + 1] == "40"
        assert command[command.index("--os-type") + 1] == "ubuntu"
        tags = [command[i + 1] for i, arg in enumerate(command) if arg == "--tags"]
        assert "fleetflow:demo:web" in tags

    def test_lookup_by_tag(self, provider, server, run):
        """Only a server carrying this project's tag is matched."""
        run.return_value = completed([
            sakura_server(server_id=1, tags=["fleetflow:other:web"]),
            sakura_server("down", server_id=2),
        ])

        info = provider.lookup(server)

        assert info.identity == "2"
        assert info.status == ServerStatus.STOPPED

    def test_not_found_is_absent(self, provider, run):
        """A 'not found' failure from server read means the server is gone."""
        run.return_value = completed(returncode=1, stderr="Error: server 99 not found")

        assert provider.describe("99") is None
        assert run.call_count == 1

    def test_forced_shutdown(self, provider, run):
        """A forced power off adds --force."""
        run.side_effect = [completed([sakura_server("up")]), completed()]

        provider.power_off("1130001", force=True)

        command = run.call_args.args[0]
        assert command[3:6] == ["server", "shutdown", "1130001"]
        assert command[-1] == "--force"

    def test_cli_timeout(self, provider, run, no_sleep):
        """A hung usacloud is reported as the provider being unavailable."""
        run.side_effect = subprocess.TimeoutExpired(cmd="usacloud", timeout=300)

        with pytest.raises(ProviderUnavailableError, match="timed out"):
            provider.power_on("1130001")


class TestMissingExecutable:
    """Tests for running without usacloud installed."""

    def test_provider_unavailable(self, provider, server, no_sleep):
        with patch("fleetstage.providers.sakura.shutil.which", return_value=None), \
                patch("fleetstage.providers.sakura.subprocess.run") as run:
            with pytest.raises(ProviderUnavailableError, match="not found on PATH"):
                provider.lookup(server)

        run.assert_not_called()


class TestCheckAuth:
    """Tests for usacloud auth-status."""

    def test_account_reported(self, provider, run):
        run.return_value = completed({"Account": {"ID": "113000000001", "Name": "demo-account"}})

        status = provider.check_auth()

        assert status.authenticated
        assert status.account == "demo-account (113000000001)"
        assert run.call_args.args[0][3:] == ["auth-status", "--output-type", "json"]

    def test_rejected_credentials(self, provider, run, no_sleep):
        """A failing auth-status is reported, not raised."""
        run.return_value = completed(returncode=1, stderr="Error: 401 Unauthorized")

        status = provider.check_auth()

        assert not status.authenticated
        assert "401" in status.error


class TestStartupScripts:
    """Tests for attaching startup scripts (notes) at creation."""

    @pytest.fixture
    def scripted(self, server):
        return server.model_copy(update={"startup_scripts": ["fleetflow-docker-setup"]})

    def test_existing_note_is_attached(self, provider, scripted, run):
        run.side_effect = [
            completed([]),
            completed([{"ID": 112233, "Name": "fleetflow-docker-setup"}]),
            completed([sakura_server("up")]),
        ]

        provider.create(scripted)

        commands = [call.args[0] for call in run.call_args_list]
        assert commands[1][3:5] == ["note", "list"]
        assert not any(c[3:5] == ["note", "create"] for c in commands)
        create = commands[-1]
        assert create[create.index("--disk-edit-note-ids") + 1] == "112233"

    def test_builtin_script_created_on_demand(self, provider, scripted, run):
        """A built-in script missing from the account is created as a shell note first."""
        run.side_effect = [
            completed([]),
            completed([]),
            completed({"ID": 445566, "Name": "fleetflow-docker-setup"}),
            completed([sakura_server("up")]),
        ]

        provider.create(scripted)

        note = run.call_args_list[2].args[0]
        assert note[3:5] == ["note", "create"]
        assert note[note.index("--name") + 1] == "fleetflow-docker-setup"
        assert note[note.index("--class") + 1] == "shell"
        assert "get.docker.com" in note[note.index("--content") + 1]
        create = run.call_args.args[0]
        assert create[create.index("--disk-edit-note-ids") + 1] == "445566"

    def test_unknown_script_is_rejected(self, provider, server, run):
        """An unknown script name stops creation before any server is made."""
        unknown = server.model_copy(update={"startup_scripts": ["site-bootstrap"]})
        run.side_effect = [completed([]), completed([])]

        with pytest.raises(InvalidSpecError, match="site-bootstrap"):
            provider.create(unknown)
        assert run.call_count == 2
