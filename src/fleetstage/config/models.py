"""Pydantic models for the parsed desired state of a project."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from fleetstage.utils.errors import ErrorContext, InvalidSpecError


class RecordType(str, Enum):
    """DNS record types managed by the engine."""

    A = "A"
    AAAA = "AAAA"
    CNAME = "CNAME"


class ProviderConfig(BaseModel):
    """Settings for one compute or DNS backend."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    region: Optional[str] = None
    zone: Optional[str] = None
    config: Dict[str, str] = Field(default_factory=dict)


class DiskSpec(BaseModel):
    """Boot disk of a server."""

    model_config = ConfigDict(frozen=True)

    size_gb: int = Field(20, ge=1)
    os: Optional[str] = None
    archive: Optional[str] = Field(None, description="Provider image/archive id")


class ServerResource(BaseModel):
    """A desired compute node."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=63, pattern="^[a-z0-9][a-z0-9-]*$")
    provider: str = Field(..., min_length=1)
    plan: Optional[str] = None
    disk: DiskSpec = Field(default_factory=DiskSpec)
    ssh_keys: List[str] = Field(default_factory=list)
    startup_scripts: List[str] = Field(default_factory=list, description="Sakura note names run at first boot")
    dns_aliases: List[str] = Field(default_factory=list)
    deploy_path: Optional[str] = None
    ssh_host: Optional[str] = None
    ssh_user: str = "root"
    ssh_port: int = Field(22, ge=1, le=65535)
    tags: Dict[str, str] = Field(default_factory=dict)
    config: Dict[str, str] = Field(default_factory=dict)

    @field_validator("dns_aliases")
    @classmethod
    def validate_aliases(cls, v: List[str]) -> List[str]:
        """Aliases are bare labels below the zone, listed once."""
        seen = set()
        for alias in v:
            if not alias or "." in alias.strip("."):
                raise ValueError(f"DNS alias must be a single label: {alias!r}")
            if alias in seen:
                raise ValueError(f"Duplicate DNS alias: {alias}")
            seen.add(alias)
        return v

    def resource_key(self) -> str:
        """State Store key: provider:kind:logical-name."""
        return f"{self.provider}:server:{self.name}"


class DnsDeclaration(BaseModel):
    """Primary address record (plus the server's aliases) for one server of a stage."""

    model_config = ConfigDict(frozen=True)

    server: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    zone: str = Field(..., min_length=1, description="Domain the records live under")
    hostname: Optional[str] = Field(None, description="Defaults to '<server>-<stage>'")
    record_type: RecordType = RecordType.A
    ttl: int = Field(1, ge=1, description="1 means provider-automatic")
    proxied: bool = False

    @field_validator("record_type")
    @classmethod
    def validate_record_type(cls, v: RecordType) -> RecordType:
        """Primary records carry an address."""
        if v == RecordType.CNAME:
            raise ValueError("Primary record must be A or AAAA; aliases are CNAMEs")
        return v

    def primary_fqdn(self, stage_name: str) -> str:
        hostname = self.hostname or f"{self.server}-{stage_name}"
        return f"{hostname}.{self.zone}"

    def alias_fqdn(self, alias: str) -> str:
        return f"{alias}.{self.zone}"

    def record_key(self, fqdn: str) -> str:
        return f"{self.provider}:dns:{fqdn}"


class Stage(BaseModel):
    """A named deployment target."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    servers: List[str] = Field(default_factory=list)
    dns: List[DnsDeclaration] = Field(default_factory=list)
    services: List[str] = Field(default_factory=list)

    @property
    def is_remote(self) -> bool:
        """A stage with no servers is local and never touches infrastructure."""
        return bool(self.servers)

    @model_validator(mode="after")
    def validate_stage(self):
        """Server names are unique and DNS only targets this stage's servers."""
        if len(set(self.servers)) != len(self.servers):
            raise ValueError(f"Stage '{self.name}' lists a server more than once")
        for decl in self.dns:
            if decl.server not in self.servers:
                raise ValueError(
                    f"Stage '{self.name}' declares DNS for '{decl.server}', "
                    f"which is not one of its servers"
                )
        return self


class DeploymentRoute(BaseModel):
    """Binds a stage to the server that hosts it."""

    model_config = ConfigDict(frozen=True)

    stage: str
    server: str


class Project(BaseModel):
    """The complete parsed desired state consumed by the engine."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, pattern="^[A-Za-z0-9][A-Za-z0-9_-]*$")
    stages: Dict[str, Stage] = Field(default_factory=dict)
    servers: Dict[str, ServerResource] = Field(default_factory=dict)
    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    routes: List[DeploymentRoute] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def fill_names(cls, data):
        """Allow mapping keys to stand in for the name of stages and servers."""
        if isinstance(data, dict):
            data = dict(data)
            for section in ("stages", "servers", "providers"):
                items = data.get(section)
                if isinstance(items, dict):
                    data[section] = {
                        key: ({"name": key, **value} if isinstance(value, dict) else value)
                        for key, value in items.items()
                    }
        return data

    @model_validator(mode="after")
    def validate_references(self):
        """Every reference between stages, servers and routes resolves."""
        for key, stage in self.stages.items():
            if key != stage.name:
                raise ValueError(f"Stage key '{key}' does not match its name '{stage.name}'")
            for server_name in stage.servers:
                if server_name not in self.servers:
                    raise ValueError(
                        f"Stage '{stage.name}' references unknown server '{server_name}'"
                    )
        for key, server in self.servers.items():
            if key != server.name:
                raise ValueError(f"Server key '{key}' does not match its name '{server.name}'")

        routed = set()
        for route in self.routes:
            if route.stage not in self.stages:
                raise ValueError(f"Route references unknown stage '{route.stage}'")
            if route.server not in self.servers:
                raise ValueError(f"Route references unknown server '{route.server}'")
            if route.server not in self.stages[route.stage].servers:
                raise ValueError(
                    f"Route for stage '{route.stage}' targets '{route.server}', "
                    f"which is not one of its servers"
                )
            if route.stage in routed:
                raise ValueError(f"Stage '{route.stage}' has more than one route")
            routed.add(route.stage)
        return self

    def stage_servers(self, stage: Stage) -> List[ServerResource]:
        """Resolve a stage's server references in declaration order."""
        return [self.servers[name] for name in stage.servers]

    def stages_using_server(self, server_name: str) -> List[str]:
        """Stages that list or are routed to the given server."""
        names = []
        for stage in self.stages.values():
            route = self.route_for(stage.name)
            if server_name in stage.servers or (route is not None and route.server == server_name):
                names.append(stage.name)
        return sorted(names)

    def get_stage(self, name: str) -> Stage:
        """Look up a stage by name.

        Raises:
            InvalidSpecError: If the project has no such stage
        """
        try:
            return self.stages[name]
        except KeyError:
            available = ", ".join(sorted(self.stages)) or "none"
            raise InvalidSpecError(
                f"unknown stage '{name}' (available: {available})",
                context=ErrorContext(stage=name, operation="resolve_stage"),
            ) from None

    def route_for(self, stage_name: str) -> Optional[DeploymentRoute]:
        return next((r for r in self.routes if r.stage == stage_name), None)

    @classmethod
    def from_dict(cls, data: Dict) -> "Project":
        """Build a project from already-parsed configuration data.

        Raises:
            InvalidSpecError: If the data does not describe a valid project
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            details = "; ".join(
                f"{' -> '.join(str(loc) for loc in err['loc']) or 'project'}: {err['msg']}"
                for err in e.errors()
            )
            raise InvalidSpecError(
                f"invalid project configuration: {details}",
                context=ErrorContext(operation="load_project"),
                cause=e,
            ) from e
