"""
HTTP client for the trace collection service.

This is the transport the logger hands finished traces to. It does a single
request per call with no retries; failures surface as ``TransportError`` and
the caller decides what to do with them.

Configuration
-------------
(via environment variables or constructor)
- TRACER_URL: Base URL of the collection service (default: http://localhost:8001).
- TRACER_API_KEY: API key, sent as the X-API-KEY header.
- TRACER_USERNAME / TRACER_PASSWORD: HTTP basic credentials, used when no API key is set.
- TRACER_SSO_TOKEN: Bearer token, used when neither of the above is set.
"""

import os
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from dotenv import load_dotenv, find_dotenv

from .errors import TransportError

load_dotenv(find_dotenv(usecwd=True), override=False)

logger = logging.getLogger(__name__)


class Routes:
    traces = "/api/projects/{project}/traces"
    sessions = "/api/projects/{project}/sessions"


class TraceApiClient:
    """Sync and async client for trace ingestion.

    Examples
    --------
    ```python
    client = TraceApiClient(base_url="http://localhost:8001", api_key="project-123")
    client.ingest_traces([trace.to_dict()], project="chatbot", log_stream="prod")
    client.close()
    ```
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sso_token: Optional[str] = None,
        timeout: float = 5.0,
    ):
        """Initialize the client.

        Parameters
        ----------
        base_url: Optional[str]
            Base URL of the collection service. (default: from TRACER_URL env var)
        api_key: Optional[str]
            API key. (default: from TRACER_API_KEY env var)
        username: Optional[str]
            Username for basic auth. (default: from TRACER_USERNAME env var)
        password: Optional[str]
            Password for basic auth. (default: from TRACER_PASSWORD env var)
        sso_token: Optional[str]
            Bearer token. (default: from TRACER_SSO_TOKEN env var)
        timeout: float
            Timeout for requests in seconds (default: 5.0).
        """
        self.base_url = (
            base_url or os.getenv("TRACER_URL", "http://localhost:8001")
        ).rstrip("/")
        self.api_key = api_key or os.getenv("TRACER_API_KEY")
        self.username = username or os.getenv("TRACER_USERNAME")
        self.password = password or os.getenv("TRACER_PASSWORD")
        self.sso_token = sso_token or os.getenv("TRACER_SSO_TOKEN")
        self.timeout = timeout

        if not (self.api_key or (self.username and self.password) or self.sso_token):
            logger.warning(
                "No credentials for the trace collection service provided. Requests will be unauthenticated."
            )

        self._client = httpx.Client(timeout=timeout, auth=self._get_auth())
        self._async_client: Optional[httpx.AsyncClient] = None

    def _get_async_client(self) -> httpx.AsyncClient:
        """Create the async client on first use."""
        if self._async_client is None:
            self._async_client = httpx.AsyncClient(timeout=self.timeout, auth=self._get_auth())
        return self._async_client

    def _get_auth(self) -> Optional[httpx.BasicAuth]:
        if not self.api_key and self.username and self.password:
            return httpx.BasicAuth(self.username, self.password)
        return None

    def _get_headers(self) -> Dict[str, str]:
        """Get auth headers for requests."""
        if self.api_key:
            return {"X-API-KEY": self.api_key}
        if self.sso_token and not (self.username and self.password):
            return {"Authorization": f"Bearer {self.sso_token}"}
        return {}

    @staticmethod
    def _handle_response(response: httpx.Response) -> Any:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"{e.request.method} {e.request.url} failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
            ) from e
        if not response.content:
            return None
        return response.json()

    def request(
        self,
        method: str,
        route: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send one authenticated request and return the decoded JSON body.

        Parameters
        ----------
        method: str
            HTTP method.
        route: str
            Route relative to the base URL.
        json: Optional[Any]
            JSON body.
        params: Optional[Dict[str, Any]]
            Query parameters.

        Raises
        ------
        TransportError
            On connection failures and non-2xx responses.
        """
        try:
            response = self._client.request(
                method,
                f"{self.base_url}{route}",
                json=json,
                params=params,
                headers=self._get_headers(),
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {route} failed: {e}") from e
        return self._handle_response(response)

    async def arequest(
        self,
        method: str,
        route: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Async version of ``request``."""
        try:
            response = await self._get_async_client().request(
                method,
                f"{self.base_url}{route}",
                json=json,
                params=params,
                headers=self._get_headers(),
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {route} failed: {e}") from e
        return self._handle_response(response)

    @staticmethod
    def _ingest_body(
        traces: List[Dict[str, Any]],
        log_stream: Optional[str],
        experiment_id: Optional[str],
        session_id: Optional[str],
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"traces": traces}
        # An experiment target replaces the log stream
        if experiment_id:
            body["experiment_id"] = experiment_id
        else:
            body["log_stream"] = log_stream
        if session_id:
            body["session_id"] = session_id
        return body

    def ingest_traces(
        self,
        traces: List[Dict[str, Any]],
        project: str,
        log_stream: Optional[str] = None,
        experiment_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Any:
        """Upload serialized trace trees to a project's log stream or experiment.

        Parameters
        ----------
        traces: List[Dict[str, Any]]
            Serialized traces, as produced by ``Trace.to_dict()``.
        project: str
            Project name.
        log_stream: Optional[str]
            Log stream name; ignored when ``experiment_id`` is given.
        experiment_id: Optional[str]
            Experiment id.
        session_id: Optional[str]
            Session the traces belong to.
        """
        if not experiment_id and not log_stream:
            raise TransportError("Either a log stream or an experiment id is required to ingest traces.")
        result = self.request(
            "POST",
            Routes.traces.format(project=project),
            json=self._ingest_body(traces, log_stream, experiment_id, session_id),
        )
        logger.info(f"{len(traces)} traces ingested for project {project}.")
        return result

    async def aingest_traces(
        self,
        traces: List[Dict[str, Any]],
        project: str,
        log_stream: Optional[str] = None,
        experiment_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Any:
        """Async version of ``ingest_traces``."""
        if not experiment_id and not log_stream:
            raise TransportError("Either a log stream or an experiment id is required to ingest traces.")
        result = await self.arequest(
            "POST",
            Routes.traces.format(project=project),
            json=self._ingest_body(traces, log_stream, experiment_id, session_id),
        )
        logger.info(f"{len(traces)} traces ingested for project {project}.")
        return result

    def create_session(
        self,
        project: str,
        name: Optional[str] = None,
        previous_session_id: Optional[str] = None,
        external_id: Optional[str] = None,
        log_stream: Optional[str] = None,
        experiment_id: Optional[str] = None,
    ) -> str:
        """Create a session and return its id."""
        body = {
            "name": name,
            "previous_session_id": previous_session_id,
            "external_id": external_id,
            "log_stream": log_stream,
            "experiment_id": experiment_id,
        }
        result = self.request(
            "POST",
            Routes.sessions.format(project=project),
            json={key: value for key, value in body.items() if value is not None},
        )
        if not isinstance(result, dict) or "id" not in result:
            raise TransportError(f"Unexpected response while creating a session: {result!r}")
        return result["id"]

    def close(self) -> None:
        """Close both HTTP clients.

        Inside a running event loop the async client is closed by a scheduled
        task; await ``aclose`` instead to wait for it.
        """
        self._client.close()
        async_client, self._async_client = self._async_client, None
        if async_client is None or async_client.is_closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(async_client.aclose())
        else:
            loop.create_task(async_client.aclose())

    async def aclose(self) -> None:
        """Close both HTTP clients."""
        self._client.close()
        async_client, self._async_client = self._async_client, None
        if async_client is not None:
            await async_client.aclose()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
