"""Thin transport for resource-addressed ARM endpoints.

The client issues GET/PUT against `{base}/providers/{kind}/{name}` paths and
returns the status code, body and version token (ETag). It never retries and
never interprets application-level failures: retry policy lives in the
orchestrator, and failure classification lives in classifier.py.

Transport failures (connection errors, timeouts, malformed 2xx bodies) are
raised as TransportError.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

from .config import DEFAULT_REQUEST_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

ARM_ENDPOINT = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"
USER_AGENT = "sentinel-orchestrator/0.1.0"

# Max pages followed when listing a collection
MAX_LIST_PAGES = 50

# API versions per sub-resource kind
API_VERSIONS: dict[str, str] = {
    "Microsoft.SecurityInsights/settings": "2024-01-01-preview",
    "Microsoft.SecurityInsights/dataConnectors": "2024-03-01",
    "Microsoft.SecurityInsights/alertRules": "2024-03-01",
    "Microsoft.SecurityInsights/onboardingStates": "2024-03-01",
    "Microsoft.Insights/diagnosticSettings": "2021-05-01-preview",
    "Microsoft.Insights/workbooks": "2023-06-01",
    "Microsoft.Authorization/roleAssignments": "2022-04-01",
}


class MatchMode(str, Enum):
    """Conditional-write mode for PUT requests."""

    IF_MATCH = "IfMatch"
    IF_NONE_MATCH = "IfNoneMatch"
    NONE = "None"


class TransportError(Exception):
    """Raised on connection failure, timeout, or malformed response."""

    pass


class ResourceReadError(Exception):
    """Raised when a GET returns a non-2xx status other than 404.

    Carries the raw status and body so callers can classify it.
    """

    def __init__(self, status_code: int, body_text: str) -> None:
        super().__init__(f"GET failed with status {status_code}: {body_text[:500]}")
        self.status_code = status_code
        self.body_text = body_text


@dataclass(frozen=True)
class ResourceRef:
    """Identifies a child resource beneath an ARM resource.

    Attributes:
        base_path: ARM ID of the parent (e.g. a workspace resource ID).
        sub_resource_kind: Provider namespace and type (e.g.
            "Microsoft.SecurityInsights/settings").
        name: Child resource name.
    """

    base_path: str
    sub_resource_kind: str
    name: str

    def __post_init__(self) -> None:
        if not self.base_path.startswith("/"):
            raise ValueError(f"base_path must be an ARM resource ID: {self.base_path}")
        if "/" not in self.sub_resource_kind:
            raise ValueError(f"sub_resource_kind must be namespace/type: {self.sub_resource_kind}")
        if not self.name:
            raise ValueError("name cannot be empty")

    @property
    def collection_path(self) -> str:
        return f"{self.base_path.rstrip('/')}/providers/{self.sub_resource_kind}"

    @property
    def path(self) -> str:
        return f"{self.collection_path}/{self.name}"

    @property
    def api_version(self) -> str:
        return api_version_for(self.sub_resource_kind)

    def __str__(self) -> str:
        return self.path


def api_version_for(sub_resource_kind: str) -> str:
    """Look up the API version used for a sub-resource kind."""
    try:
        return API_VERSIONS[sub_resource_kind]
    except KeyError as e:
        raise ValueError(f"No API version registered for '{sub_resource_kind}'") from e


@dataclass(frozen=True)
class ResourceState:
    """Result of probing a resource."""

    exists: bool
    version_token: str | None = None
    body: dict[str, Any] | None = None


@dataclass(frozen=True)
class WriteResult:
    """Raw result of a PUT. Classification is left to the caller."""

    http_status: int
    body_text: str

    @property
    def success(self) -> bool:
        return 200 <= self.http_status < 300

    def json(self) -> dict[str, Any] | None:
        if not self.body_text:
            return None
        try:
            data = json.loads(self.body_text)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None


def build_pipeline_client(
    credential: TokenCredential,
    endpoint: str = ARM_ENDPOINT,
    scope: str = ARM_SCOPE,
) -> PipelineClient:
    """Build an authenticated azure-core pipeline without a retry policy."""
    return PipelineClient(
        base_url=endpoint,
        policies=[
            HeadersPolicy(),
            UserAgentPolicy(base_user_agent=USER_AGENT),
            BearerTokenCredentialPolicy(credential, scope),
        ],
    )


class RemoteResourceClient:
    """GET/PUT against resource-addressed ARM endpoints.

    Only status code, body text and version token are surfaced. All calls are
    blocking; async callers go through run_blocking().
    """

    def __init__(
        self,
        credential: TokenCredential | None = None,
        *,
        endpoint: str = ARM_ENDPOINT,
        timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        pipeline_client: Any | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            credential: Token credential for ARM. Required unless pipeline_client is given.
            endpoint: ARM endpoint (sovereign clouds differ).
            timeout_seconds: Connection and read timeout for each request.
            pipeline_client: Pre-built client exposing send_request().
        """
        if pipeline_client is None:
            if credential is None:
                raise ValueError("credential is required when no pipeline_client is supplied")
            pipeline_client = build_pipeline_client(credential, endpoint)
        self._endpoint = endpoint.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._pipeline = pipeline_client

    def get(self, ref: ResourceRef) -> ResourceState:
        """Probe a resource.

        Returns:
            ResourceState(exists=False) on 404, otherwise body and version token.

        Raises:
            ResourceReadError: On any other non-2xx status.
            TransportError: On network failure or malformed body.
        """
        response = self._send("GET", ref.path, ref.api_version)
        status = response.status_code

        if status == 404:
            return ResourceState(exists=False)
        if not 200 <= status < 300:
            raise ResourceReadError(status, response.text())

        body = self._parse_json(response, ref.path)
        token = response.headers.get("ETag") or body.get("etag")
        return ResourceState(exists=True, version_token=token, body=body)

    def put(
        self,
        ref: ResourceRef,
        payload: dict[str, Any],
        version_token: str | None = None,
        match_mode: MatchMode = MatchMode.NONE,
    ) -> WriteResult:
        """Write a resource, optionally conditioned on its version token.

        Raises:
            ValueError: If IF_MATCH is requested without a token.
            TransportError: On network failure.
        """
        headers: dict[str, str] = {}
        if match_mode == MatchMode.IF_MATCH:
            if not version_token:
                raise ValueError("IF_MATCH requires a version token")
            headers["If-Match"] = version_token
        elif match_mode == MatchMode.IF_NONE_MATCH:
            headers["If-None-Match"] = "*"

        response = self._send("PUT", ref.path, ref.api_version, headers=headers, body=payload)
        return WriteResult(http_status=response.status_code, body_text=response.text())

    def list(
        self,
        base_path: str,
        sub_resource_kind: str,
        params: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List a child collection, following nextLink pages.

        Raises:
            ResourceReadError: On a non-2xx page.
            TransportError: On network failure or malformed body.
        """
        path = f"{base_path.rstrip('/')}/providers/{sub_resource_kind}"
        api_version = api_version_for(sub_resource_kind)
        items: list[dict[str, Any]] = []

        url: str | None = path
        query_version: str | None = api_version
        extra_params = params
        pages = 0
        while url is not None:
            if pages >= MAX_LIST_PAGES:
                logger.warning(
                    "List truncated at page limit",
                    extra={"path": path, "max_pages": MAX_LIST_PAGES},
                )
                break
            response = self._send("GET", url, query_version, params=extra_params)
            if not 200 <= response.status_code < 300:
                raise ResourceReadError(response.status_code, response.text())
            page = self._parse_json(response, path)
            items.extend(page.get("value") or [])
            pages += 1
            url = page.get("nextLink")
            # nextLink already carries the query string
            query_version = None
            extra_params = None

        return items

    def _send(
        self,
        method: str,
        path_or_url: str,
        api_version: str | None,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        url = path_or_url if path_or_url.startswith("http") else f"{self._endpoint}{path_or_url}"
        query: dict[str, str] = dict(params or {})
        if api_version:
            query["api-version"] = api_version

        request = HttpRequest(
            method,
            url,
            params=query or None,
            headers=headers or None,
            json=body,
        )

        try:
            response = self._pipeline.send_request(
                request,
                connection_timeout=self._timeout_seconds,
                read_timeout=self._timeout_seconds,
            )
        except (ServiceRequestError, ServiceResponseError) as e:
            logger.warning(
                "Transport failure",
                extra={"method": method, "url": url, "error": str(e)},
            )
            raise TransportError(f"{method} {url} failed: {e}") from e

        logger.debug(
            "ARM request complete",
            extra={"method": method, "url": url, "status_code": response.status_code},
        )
        return response

    @staticmethod
    def _parse_json(response: Any, path: str) -> dict[str, Any]:
        text = response.text()
        if not text:
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise TransportError(f"Malformed JSON response from {path}: {e}") from e
        if not isinstance(data, dict):
            raise TransportError(f"Expected a JSON object from {path}")
        return data


async def run_blocking(
    func: Callable[[], T],
    timeout_seconds: float,
    operation_name: str,
) -> T:
    """Run a blocking SDK call in the default executor with a timeout.

    Raises:
        TransportError: If the call exceeds timeout_seconds.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(loop.run_in_executor(None, func), timeout=timeout_seconds)
    except TimeoutError as e:
        logger.error(
            f"{operation_name} timed out",
            extra={"operation": operation_name, "timeout_seconds": timeout_seconds},
        )
        raise TransportError(f"{operation_name} timed out after {timeout_seconds}s") from e
