"""Network scope resolution: which VPC (and region) the controller runs in."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import requests

from .errors import MetadataError
from .models import CycleContext, NetworkScope

logger = logging.getLogger(__name__)


class NetworkScopeResolver(ABC):
    """Abstract base class for network scope lookups."""

    @abstractmethod
    def current_scope(self, ctx: CycleContext) -> NetworkScope:
        """Return the network scope of the running process.

        Raises MetadataError if it cannot be determined.
        """
        pass


class StaticNetworkScopeResolver(NetworkScopeResolver):
    """Network scope taken from configuration (K53_VPC_ID / AWS_REGION)."""

    def __init__(self, scope_id: str, region: str):
        self._scope_id = scope_id.strip()
        self._region = region.strip()

    def current_scope(self, ctx: CycleContext) -> NetworkScope:
        if not self._scope_id or not self._region:
            raise MetadataError("static network scope requires both a VPC id and a region")
        return NetworkScope(scope_id=self._scope_id, region=self._region)


class InstanceMetadataScopeResolver(NetworkScopeResolver):
    """EC2 instance metadata (IMDSv2) backed resolver.

    The VPC is the one of the primary network interface. If the token endpoint
    is unavailable the lookups are retried without a token (IMDSv1). A
    configured ``vpc_id`` or ``region`` replaces the matching lookup.
    """

    BASE_URL = "http://169.254.169.254/latest"
    TOKEN_TTL_SECONDS = 300

    def __init__(
        self,
        base_url: str = BASE_URL,
        region: str = "",
        timeout_seconds: float = 2.0,
        session: Optional[requests.Session] = None,
        vpc_id: str = "",
    ):
        self._base_url = base_url.rstrip("/")
        self._region = region.strip()
        self._vpc_id = vpc_id.strip()
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def _token(self, ctx: CycleContext) -> str:
        try:
            response = self._session.put(
                f"{self._base_url}/api/token",
                headers={"X-aws-ec2-metadata-token-ttl-seconds": str(self.TOKEN_TTL_SECONDS)},
                timeout=ctx.timeout(self._timeout),
            )
            response.raise_for_status()
            return response.text.strip()
        except requests.exceptions.RequestException as e:
            logger.debug(f"IMDSv2 token unavailable, falling back to IMDSv1: {e}")
            return ""

    def _get(self, path: str, token: str, ctx: CycleContext) -> str:
        ctx.check("bootstrap")
        headers = {"X-aws-ec2-metadata-token": token} if token else {}
        response = self._session.get(
            f"{self._base_url}/meta-data/{path}",
            headers=headers,
            timeout=ctx.timeout(self._timeout),
        )
        response.raise_for_status()
        return response.text.strip()

    def _primary_vpc_id(self, token: str, ctx: CycleContext) -> str:
        mac = self._get("mac", token, ctx)
        if not mac:
            raise MetadataError("instance metadata returned no primary MAC address")
        vpc_id = self._get(f"network/interfaces/macs/{mac}/vpc-id", token, ctx)
        if not vpc_id:
            raise MetadataError(f"instance metadata returned no vpc-id for interface {mac}")
        return vpc_id

    def current_scope(self, ctx: CycleContext) -> NetworkScope:
        token = self._token(ctx)
        try:
            vpc_id = self._vpc_id or self._primary_vpc_id(token, ctx)
            region = self._region or self._get("placement/region", token, ctx)
        except requests.exceptions.RequestException as e:
            raise MetadataError(f"unable to retrieve vpc-id from instance metadata: {e}") from e

        if not region:
            raise MetadataError("instance metadata returned no region")
        logger.debug(f"Resolved network scope {vpc_id} in {region}")
        return NetworkScope(scope_id=vpc_id, region=region)
