import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

import aiohttp
from loguru import logger
from pydantic import BaseModel, ValidationError
from capi_client.errors import CloudControllerError
from capi_client.models import (
    APIError,
    CapiConfig,
    Deployment,
    Job,
    Operation,
    PollPolicy,
    ServiceCredentialBinding,
    ServiceInstance,
)
from capi_client.poller import StatusCallback, poll_until_terminal

ResourceT = TypeVar("ResourceT", bound=BaseModel)


def job_guid_from_location(location: str) -> str:
    """Extracts the job GUID from the Location header of a 202 Accepted response"""
    path = location.split("?", 1)[0].rstrip("/")
    marker = "/v3/jobs/"
    if marker not in path:
        raise ValueError(f"Location does not point at a job: {location}")
    guid = path.rsplit(marker, 1)[1]
    if not guid or "/" in guid:
        raise ValueError(f"Location does not point at a job: {location}")
    return guid


class CapiClient:
    """Typed reads of asynchronous Cloud Foundry V3 resources and waiting on them"""

    def __init__(self, config: CapiConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.base_url = config.api_url.rstrip("/")
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "CapiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": self.config.user_agent}
        if self.config.access_token:
            headers["Authorization"] = f"bearer {self.config.access_token}"
        return headers

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(ssl=self.config.verify_ssl),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _error_from_response(self, response: aiohttp.ClientResponse) -> CloudControllerError:
        try:
            body = await response.json(content_type=None)
            errors = [APIError(**error) for error in body.get("errors", [])]
        except (ValueError, AttributeError, TypeError, ValidationError):
            errors = [APIError(title=response.reason or "", detail=response.reason or "")]
        return CloudControllerError(response.status, errors, str(response.url))

    async def _get(self, path: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        async with self.session.get(
            url,
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
        ) as response:
            if response.status >= 400:
                error = await self._error_from_response(response)
                self.logger.error(f"CF API error: {error}")
                raise error
            return await response.json()

    async def _get_resource(self, path: str, model: Type[ResourceT]) -> ResourceT:
        data = await self._get(path)
        return model.model_validate(data)

    async def get_job(self, guid: str) -> Job:
        return await self._get_resource(f"/v3/jobs/{guid}", Job)

    async def get_service_instance(self, guid: str) -> ServiceInstance:
        return await self._get_resource(f"/v3/service_instances/{guid}", ServiceInstance)

    async def get_service_credential_binding(self, guid: str) -> ServiceCredentialBinding:
        return await self._get_resource(
            f"/v3/service_credential_bindings/{guid}", ServiceCredentialBinding
        )

    async def get_deployment(self, guid: str) -> Deployment:
        return await self._get_resource(f"/v3/deployments/{guid}", Deployment)

    @staticmethod
    def _operation_fetcher(
        getter: Callable[[str], Awaitable[Any]],
    ) -> Callable[[str], Awaitable[Operation]]:
        async def fetch(guid: str) -> Operation:
            resource = await getter(guid)
            return resource.to_operation()

        return fetch

    async def _wait(
        self,
        guid: str,
        getter: Callable[[str], Awaitable[Any]],
        policy: PollPolicy,
        cancel_event: Optional[asyncio.Event],
        on_status_change: Optional[StatusCallback],
    ) -> Operation:
        return await poll_until_terminal(
            guid,
            self._operation_fetcher(getter),
            policy,
            cancel_event=cancel_event,
            on_status_change=on_status_change,
        )

    async def wait_for_job(
        self,
        guid: str,
        policy: Optional[PollPolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_status_change: Optional[StatusCallback] = None,
    ) -> Operation:
        """Waits for a job to become COMPLETE, raising OperationFailedError when it FAILED"""
        return await self._wait(
            guid, self.get_job, policy or PollPolicy.for_jobs(), cancel_event, on_status_change
        )

    async def wait_for_service_instance(
        self,
        guid: str,
        policy: Optional[PollPolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_status_change: Optional[StatusCallback] = None,
    ) -> Operation:
        return await self._wait(
            guid,
            self.get_service_instance,
            policy or PollPolicy.for_last_operation(),
            cancel_event,
            on_status_change,
        )

    async def wait_for_service_credential_binding(
        self,
        guid: str,
        policy: Optional[PollPolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_status_change: Optional[StatusCallback] = None,
    ) -> Operation:
        return await self._wait(
            guid,
            self.get_service_credential_binding,
            policy or PollPolicy.for_bindings(),
            cancel_event,
            on_status_change,
        )

    async def wait_for_deployment(
        self,
        guid: str,
        policy: Optional[PollPolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_status_change: Optional[StatusCallback] = None,
    ) -> Operation:
        """Waits for a deployment to finalize; any reason other than DEPLOYED is a failure"""
        return await self._wait(
            guid,
            self.get_deployment,
            policy or PollPolicy.for_deployments(),
            cancel_event,
            on_status_change,
        )
