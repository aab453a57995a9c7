"""Sakura Cloud compute provider driven through the usacloud CLI.

Authentication is whatever usacloud itself is configured with
(``usacloud config`` or ``SAKURACLOUD_ACCESS_TOKEN``/``SAKURACLOUD_ACCESS_TOKEN_SECRET``).
"""

import json
import re
import shutil
import subprocess
from typing import Any, Dict, List, Optional, Tuple

from fleetstage.config.models import ProviderConfig, ServerResource
from fleetstage.providers.base import AuthStatus, ComputeProvider, ServerInfo, ServerStatus
from fleetstage.providers.startup_scripts import get_builtin_script
from fleetstage.utils.errors import (
    ErrorContext,
    FleetError,
    InvalidSpecError,
    ProviderUnavailableError,
    QuotaExceededError,
)
from fleetstage.utils.logging import get_logger
from fleetstage.utils.retry import RetryStrategy

logger = get_logger(__name__)

DEFAULT_ZONE = "tk1a"

PLAN_PATTERN = re.compile(r"^(\d+)core-(\d+)gb$", re.IGNORECASE)

# usacloud InstanceStatus -> ServerStatus
STATUS_MAP = {
    "up": ServerStatus.RUNNING,
    "down": ServerStatus.STOPPED,
    "cleaning": ServerStatus.STOPPING,
    "shutting-down": ServerStatus.STOPPING,
}


def parse_plan(plan: Optional[str]) -> Tuple[int, int]:
    """Parse a plan such as ``"2core-4gb"`` into (cores, memory GB). Defaults to (1, 1)."""
    if not plan:
        return 1, 1
    match = PLAN_PATTERN.match(plan.strip())
    if not match:
        return 1, 1
    return int(match.group(1)), int(match.group(2))


def classify_cli_error(stderr: str, context: ErrorContext) -> FleetError:
    """Map a usacloud failure onto the error taxonomy."""
    text = stderr.strip() or "usacloud exited with an error"
    lowered = text.lower()
    if "limit" in lowered or "quota" in lowered or "exceed" in lowered:
        return QuotaExceededError(text, context=context)
    if "unauthorized" in lowered or "401" in lowered or "403" in lowered or "timeout" in lowered:
        return ProviderUnavailableError(text, context=context,
                                        suggestions=["Check usacloud credentials: usacloud auth-status"])
    if "invalid" in lowered or "400" in lowered or "not supported" in lowered:
        return InvalidSpecError(text, context=context)
    return FleetError(text, context=context)


class SakuraCloudProvider(ComputeProvider):
    """Servers on Sakura Cloud, one zone per provider config."""

    graceful_shutdown_timeout = 120.0

    def __init__(self, config: ProviderConfig, project_name: str, executable: str = "usacloud",
                 command_timeout: float = 300.0):
        super().__init__(config, project_name)
        self.zone = config.zone or config.config.get("zone") or DEFAULT_ZONE
        self.executable = executable
        self.command_timeout = command_timeout
        self._retry = RetryStrategy(max_retries=2, base_delay=1.0, max_delay=30.0)

    def ownership_tags(self, server: ServerResource) -> Dict[str, str]:
        # Sakura tags are plain strings; keys below are the tag texts
        return {
            f"fleetflow:{self.project_name}:{server.name}": "",
            f"fleetflow:project:{self.project_name}": "",
        }

    def _run(self, args: List[str], context: ErrorContext) -> Any:
        command = [self.executable, "--zone", self.zone, *args]
        logger.debug(f"Running: {' '.join(command)}")

        if shutil.which(self.executable) is None:
            raise ProviderUnavailableError(
                f"{self.executable} not found on PATH",
                context=context,
                suggestions=["Install usacloud: https://docs.usacloud.jp/usacloud/installation/"],
            )

        try:
            completed = subprocess.run(
                command, capture_output=True, text=True, timeout=self.command_timeout, check=False
            )
        except subprocess.TimeoutExpired as e:
            raise ProviderUnavailableError(
                f"usacloud timed out after {self.command_timeout:g}s", context=context, cause=e
            ) from e

        if completed.returncode != 0:
            raise classify_cli_error(completed.stderr, context)

        output = completed.stdout.strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError:
            return output

    def _run_retried(self, args: List[str], context: ErrorContext) -> Any:
        return self._retry.execute_with_retry(self._run, args, context)

    def check_auth(self) -> AuthStatus:
        try:
            data = self._run_retried(["auth-status", "--output-type", "json"],
                                     self.context("check_auth"))
        except FleetError as e:
            return AuthStatus.failed(e.message)
        account = data.get("Account") if isinstance(data, dict) else None
        if not account:
            return AuthStatus.ok()
        return AuthStatus.ok(f"{account.get('Name')} ({account.get('ID')})")

    def _to_info(self, data: Dict[str, Any]) -> ServerInfo:
        ipv4 = next(
            (i.get("IPAddress") for i in data.get("Interfaces") or [] if i.get("IPAddress")),
            None,
        )
        status = STATUS_MAP.get(
            (data.get("InstanceStatus") or "").lower(), ServerStatus.STARTING
        )
        return ServerInfo(
            identity=str(data["ID"]),
            status=status,
            ipv4=ipv4,
            metadata={
                "zone": self.zone,
                "cpu": data.get("CPU"),
                "memory_mb": data.get("MemoryMB"),
            },
        )

    @staticmethod
    def _first(data: Any) -> Optional[Dict[str, Any]]:
        if isinstance(data, list):
            return data[0] if data else None
        return data if isinstance(data, dict) else None

    def lookup(self, server: ServerResource) -> Optional[ServerInfo]:
        servers = self._run_retried(
            ["server", "list", "--output-type", "json"], self.context("lookup", server=server)
        ) or []
        wanted = f"fleetflow:{self.project_name}:{server.name}"
        for data in servers:
            if wanted in (data.get("Tags") or []):
                return self._to_info(data)
        return None

    def describe(self, identity: str) -> Optional[ServerInfo]:
        try:
            data = self._run_retried(
                ["server", "read", identity, "--output-type", "json"],
                self.context("describe", identity),
            )
        except FleetError as e:
            if "not found" in e.message.lower() or "404" in e.message:
                return None
            raise
        data = self._first(data)
        return self._to_info(data) if data else None

    def _note_ids(self, server: ServerResource) -> List[str]:
        """Resolve startup script names to note ids, creating built-in scripts on demand."""
        if not server.startup_scripts:
            return []
        context = self.context("create", server=server)
        notes = self._run_retried(["note", "list", "--output-type", "json"], context) or []
        by_name = {n.get("Name"): str(n["ID"]) for n in notes if isinstance(n, dict) and "ID" in n}

        ids = []
        for name in server.startup_scripts:
            if name not in by_name:
                content = get_builtin_script(name)
                if content is None:
                    raise InvalidSpecError(
                        f"startup script {name} does not exist",
                        context=context,
                        suggestions=["Create the note in Sakura Cloud or use a built-in script name"],
                    )
                created = self._first(self._run(
                    ["note", "create", "--name", name, "--class", "shell",
                     "--content", content, "--output-type", "json", "--yes"],
                    context,
                ))
                if not created:
                    raise FleetError(f"usacloud returned no note for {name}", context=context)
                by_name[name] = str(created["ID"])
                logger.info(f"Created startup script {name} as note {by_name[name]}")
            ids.append(by_name[name])
        return ids

    def _create(self, server: ServerResource) -> ServerInfo:
        core, memory = parse_plan(server.plan)
        args = [
            "server", "create",
            "--name", server.name,
            "--core", str(core),
            "--memory", str(memory),
            "--disk-size", str(server.disk.size_gb),
            "--output-type", "json",
            "--yes",
        ]
        if server.disk.os:
            args += ["--os-type", server.disk.os]
        elif server.disk.archive:
            args += ["--disk-source-archive-id", server.disk.archive]
        for key_id in server.ssh_keys:
            args += ["--disk-edit-ssh-key-id", key_id]
        for note_id in self._note_ids(server):
            args += ["--disk-edit-note-ids", note_id]
        user_tags = [f"{k}={v}" if v else k for k, v in server.tags.items()]
        for tag in [*self.ownership_tags(server), *user_tags]:
            args += ["--tags", tag]

        data = self._first(self._run(args, self.context("create", server=server)))
        if not data:
            raise FleetError("usacloud returned no server", context=self.context("create", server=server))
        info = self._to_info(data)
        logger.info(f"Created Sakura server {info.identity} for {server.name}")
        return info

    def _power_on(self, identity: str) -> None:
        self._run_retried(["server", "boot", identity, "--yes"], self.context("power_on", identity))

    def _power_off(self, identity: str, force: bool) -> None:
        args = ["server", "shutdown", identity, "--yes"]
        if force:
            args.append("--force")
        self._run_retried(args, self.context("power_off", identity))

    def _destroy(self, identity: str) -> None:
        self._run(
            ["server", "delete", identity, "--with-disks", "--force", "--yes"],
            self.context("destroy", identity),
        )
