"""Cloudflare DNS backend using the v4 REST API."""

import os
from typing import Any, Dict, Optional

import requests

from fleetstage.config.models import ProviderConfig, RecordType
from fleetstage.dns.base import DnsProvider, DnsRecord
from fleetstage.providers.base import AuthStatus
from fleetstage.utils.errors import (
    DnsConvergenceError,
    ErrorContext,
    FleetError,
    ProviderUnavailableError,
)
from fleetstage.utils.logging import get_logger
from fleetstage.utils.retry import RetryStrategy

logger = get_logger(__name__)

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"


class CloudflareDns(DnsProvider):
    """DNS records in Cloudflare zones.

    Credentials come from the environment: ``CLOUDFLARE_API_TOKEN`` (or the
    variable named by ``api_token_env`` in the provider config). The zone id
    is taken from ``zone_id`` in the provider config, then
    ``CLOUDFLARE_ZONE_ID``, and otherwise looked up from the record name.
    """

    def __init__(
        self,
        config: ProviderConfig,
        project_name: str = "",
        session: Optional[requests.Session] = None,
        environ=None,
        timeout: float = 30.0,
    ):
        super().__init__(config, project_name)
        environ = os.environ if environ is None else environ
        token_env = config.config.get("api_token_env", "CLOUDFLARE_API_TOKEN")
        self._token = environ.get(token_env)
        self._token_env = token_env
        self.zone_id = config.config.get("zone_id") or environ.get("CLOUDFLARE_ZONE_ID")
        self.timeout = timeout
        self._zones: Dict[str, str] = {}
        self._session = session
        self._retry = RetryStrategy(max_retries=2, base_delay=1.0, max_delay=30.0)

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            if not self._token:
                raise ProviderUnavailableError(
                    f"{self._token_env} is not set",
                    context=ErrorContext(provider=self.name, operation="authenticate"),
                    suggestions=[f"Export {self._token_env} with a token that can edit DNS"],
                )
            self._session = requests.Session()
            self._session.headers.update({
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            })
        return self._session

    def _context(self, operation: str, name: Optional[str] = None) -> ErrorContext:
        return ErrorContext(
            resource_key=f"{self.name}:dns:{name}" if name else None,
            provider=self.name,
            operation=operation,
        )

    def _request(self, method: str, path: str, context: ErrorContext,
                 retry: bool = True, **kwargs) -> Any:
        def send():
            try:
                response = self.session.request(
                    method, f"{CLOUDFLARE_API_BASE}{path}", timeout=self.timeout, **kwargs
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                raise ProviderUnavailableError(f"Cloudflare API unreachable: {e}",
                                               context=context, cause=e) from e

            if response.status_code in (401, 403):
                raise ProviderUnavailableError(
                    f"Cloudflare API rejected credentials (HTTP {response.status_code})",
                    context=context,
                    suggestions=["Check that the API token has Zone.DNS edit permission"],
                )
            if response.status_code == 429 or response.status_code >= 500:
                raise ProviderUnavailableError(
                    f"Cloudflare API returned HTTP {response.status_code}", context=context
                )

            try:
                body = response.json()
            except ValueError as e:
                raise DnsConvergenceError(
                    f"Cloudflare API returned a non-JSON body (HTTP {response.status_code})",
                    context=context, cause=e,
                ) from e

            if not body.get("success", False):
                errors = body.get("errors") or []
                message = errors[0].get("message") if errors else "Unknown error"
                raise DnsConvergenceError(f"Cloudflare API error: {message}", context=context)
            return body.get("result")

        return self._retry.execute_with_retry(send) if retry else send()

    def check_auth(self) -> AuthStatus:
        try:
            result = self._request("GET", "/user/tokens/verify", self._context("check_auth")) or {}
        except FleetError as e:
            return AuthStatus.failed(e.message)
        if result.get("status") != "active":
            return AuthStatus.failed(f"API token is {result.get('status', 'unknown')}")
        return AuthStatus.ok(f"token {result.get('id')}")

    def _zone_for(self, name: str, context: ErrorContext) -> str:
        if self.zone_id:
            return self.zone_id

        labels = name.rstrip(".").split(".")
        for i in range(len(labels) - 1):
            candidate = ".".join(labels[i:])
            if candidate in self._zones:
                return self._zones[candidate]
            zones = self._request("GET", "/zones", context, params={"name": candidate}) or []
            if zones:
                self._zones[candidate] = zones[0]["id"]
                logger.debug(f"Resolved Cloudflare zone {candidate} -> {zones[0]['id']}")
                return zones[0]["id"]

        raise DnsConvergenceError(
            f"no Cloudflare zone found for {name}",
            context=context,
            suggestions=["Set zone_id in the DNS provider config or CLOUDFLARE_ZONE_ID"],
        )

    @staticmethod
    def _to_record(data: Dict[str, Any], zone_id: str) -> DnsRecord:
        return DnsRecord(
            id=f"{zone_id}/{data['id']}",
            name=data["name"],
            type=RecordType(data["type"]),
            value=data["content"],
            proxied=bool(data.get("proxied", False)),
            ttl=int(data.get("ttl", 1)),
        )

    @staticmethod
    def _split_id(record: DnsRecord):
        zone_id, _, record_id = record.id.partition("/")
        return zone_id, record_id

    def find_record(self, name: str, type: RecordType) -> Optional[DnsRecord]:
        context = self._context("find_record", name)
        zone_id = self._zone_for(name, context)
        result = self._request(
            "GET", f"/zones/{zone_id}/dns_records", context,
            params={"type": type.value, "name": name},
        ) or []
        return self._to_record(result[0], zone_id) if result else None

    def create_record(self, name: str, type: RecordType, value: str,
                      ttl: int = 1, proxied: bool = False) -> DnsRecord:
        context = self._context("create_record", name)
        zone_id = self._zone_for(name, context)
        # Not retried: a repeated POST can leave a duplicate record behind
        result = self._request(
            "POST", f"/zones/{zone_id}/dns_records", context, retry=False,
            json={"type": type.value, "name": name, "content": value,
                  "ttl": ttl, "proxied": proxied},
        )
        return self._to_record(result, zone_id)

    def update_record(self, record: DnsRecord, value: str) -> DnsRecord:
        context = self._context("update_record", record.name)
        zone_id, record_id = self._split_id(record)
        result = self._request(
            "PATCH", f"/zones/{zone_id}/dns_records/{record_id}", context,
            json={"content": value},
        )
        return self._to_record(result, zone_id)

    def delete_record(self, record: DnsRecord) -> None:
        context = self._context("delete_record", record.name)
        zone_id, record_id = self._split_id(record)
        try:
            self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}", context)
        except FleetError as e:
            if "not found" in e.message.lower():
                logger.debug(f"Record {record.name} vanished before delete")
                return
            raise
