"""
Visibility API Client
=====================

aiohttp client for the collaborator HTTP API: concepts, check results,
batch runs and the results export.

Idempotent GETs are retried with exponential backoff on rate limiting,
server errors and connection failures. POSTs and DELETEs are sent once.
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiohttp
import structlog
from pydantic import ValidationError

from ..config import VisibilityConfig
from ..errors import APIError, BatchRunAlreadyActiveError, InsufficientCreditsError
from ..models import BatchPreview, BatchRun, BatchRunTicket, CheckResult, Concept, Provider
from .base import VisibilityAPI

logger = structlog.get_logger(__name__)

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}

EXPORT_CHUNK_SIZE = 64 * 1024


class VisibilityAPIClient(VisibilityAPI):
    """HTTP implementation of every collaborator contract."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        session: Optional[aiohttp.ClientSession] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self.logger = logger.bind(component="VisibilityAPIClient")

    @classmethod
    def from_config(cls, config: VisibilityConfig) -> "VisibilityAPIClient":
        return cls(
            base_url=config.api.base_url,
            api_key=config.api.api_key,
            max_retries=config.api.max_retries,
            retry_delay=config.api.retry_delay,
        )

    @property
    def source_name(self) -> str:
        return "api"

    async def __aenter__(self) -> "VisibilityAPIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
    ) -> tuple[int, Any]:
        """Send one request; returns (status, decoded body) for any status below 500 except 429."""
        session = self._get_session()
        async with session.request(
            method, self._url(path), params=params, json=json, headers=self._headers()
        ) as response:
            payload = await self._decode(response)
            if response.status in RETRYABLE_STATUSES:
                retry_after = response.headers.get("Retry-After")
                raise APIError(
                    response.status,
                    self._error_message(payload, response.reason),
                    payload if isinstance(payload, dict) else None,
                    retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                )
            return response.status, payload

    @staticmethod
    async def _decode(response: aiohttp.ClientResponse) -> Any:
        if response.content_type == "application/json":
            return await response.json()
        text = await response.text()
        return {"error": text} if text else None

    @staticmethod
    def _error_message(payload: Any, default: Optional[str]) -> str:
        if isinstance(payload, dict):
            return payload.get("error") or payload.get("message") or default or "Request failed"
        return default or "Request failed"

    def _raise_for_status(self, status: int, payload: Any) -> None:
        if status < 400:
            return
        raise APIError(
            status,
            self._error_message(payload, None),
            payload if isinstance(payload, dict) else None,
        )

    async def _retry_with_backoff(self, func, *args, **kwargs) -> Any:
        """Execute an async call with exponential backoff retry logic.

        Raises:
            APIError: non-retryable status, or retryable status after all retries
            aiohttp.ClientError: connection failure after all retries
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                return await func(*args, **kwargs)

            except APIError as e:
                last_exception = e
                if e.status not in RETRYABLE_STATUSES:
                    raise

                delay = e.retry_after if e.retry_after is not None else self.retry_delay * (2 ** attempt)
                self.logger.warning(
                    "api_error_retry",
                    status=e.status,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                )

            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                last_exception = e
                delay = self.retry_delay * (2 ** attempt)
                self.logger.warning(
                    "api_connection_error_retry",
                    error=str(e),
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                )

            if attempt + 1 < self.max_retries:
                await asyncio.sleep(delay)

        self.logger.error("api_error_max_retries", error=str(last_exception))
        raise last_exception

    async def _get(self, path: str, params: Optional[dict] = None) -> tuple[int, Any]:
        return await self._retry_with_backoff(self._request, "GET", path, params=params)

    # ------------------------------------------------------------------
    # Concepts and results
    # ------------------------------------------------------------------

    async def list_concepts(self) -> list[Concept]:
        status, payload = await self._get("/keywords")
        self._raise_for_status(status, payload)
        items = payload.get("keywords", []) if isinstance(payload, dict) else payload or []
        return [Concept.model_validate(item) for item in items]

    async def list_results(self, concept_id: str, limit: int = 200) -> list[CheckResult]:
        status, payload = await self._get(
            "/llm-visibility/results",
            params={"keywordId": concept_id, "limit": str(limit)},
        )
        self._raise_for_status(status, payload)
        items = payload.get("results", []) if isinstance(payload, dict) else payload or []

        results = []
        for item in items:
            try:
                results.append(CheckResult.model_validate(item))
            except ValidationError as e:
                # One bad row, such as an unsupported provider, drops only itself
                self.logger.warning(
                    "check_result_skipped",
                    concept_id=concept_id,
                    result_id=item.get("id") if isinstance(item, dict) else None,
                    error=str(e),
                )
        return results

    # ------------------------------------------------------------------
    # Batch runs
    # ------------------------------------------------------------------

    async def start(
        self,
        providers: list[Provider],
        retry_failed_from_run_id: Optional[str] = None,
        group_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> BatchRunTicket:
        body: dict[str, Any] = {"providers": [Provider(p).value for p in providers]}
        if retry_failed_from_run_id:
            body["retryFailedFromRunId"] = retry_failed_from_run_id
        if group_id:
            body["groupId"] = group_id
        if scheduled_for:
            body["scheduledFor"] = scheduled_for.isoformat()

        self.logger.info(
            "starting_batch_run",
            providers=body["providers"],
            retry_of=retry_failed_from_run_id,
            group_id=group_id,
        )

        # Never retried: a lost response must not queue a second run
        status, payload = await self._request("POST", "/llm-visibility/batch-run", json=body)
        payload = payload if isinstance(payload, dict) else {}

        if status == 402:
            raise InsufficientCreditsError(
                required=int(payload.get("required", 0)),
                available=int(payload.get("available", 0)),
            )
        if status == 409:
            raise BatchRunAlreadyActiveError(run_id=payload.get("runId"), status=payload.get("status"))
        self._raise_for_status(status, payload)

        ticket = BatchRunTicket.model_validate(payload)
        self.logger.info("batch_run_started", run_id=ticket.run_id, total_questions=ticket.total_questions)
        return ticket

    async def status(self, run_id: Optional[str] = None) -> Optional[BatchRun]:
        params = {"runId": run_id} if run_id else None
        status, payload = await self._get("/llm-visibility/batch-status", params=params)
        if status == 404 and not run_id:
            return None
        self._raise_for_status(status, payload)
        if not payload:
            return None
        if isinstance(payload, dict) and "run" in payload:
            payload = payload["run"]
            if not payload:
                return None
        return BatchRun.model_validate(payload)

    async def preview(self, providers: list[Provider], group_id: Optional[str] = None) -> BatchPreview:
        params = {"providers": ",".join(Provider(p).value for p in providers)}
        if group_id:
            params["groupId"] = group_id
        status, payload = await self._get("/llm-visibility/batch-run", params=params)
        self._raise_for_status(status, payload)
        return BatchPreview.model_validate(payload)

    async def cancel_scheduled(self, run_id: str) -> int:
        status, payload = await self._request("DELETE", "/llm-visibility/batch-run", params={"runId": run_id})
        self._raise_for_status(status, payload)
        refunded = int((payload or {}).get("creditsRefunded", 0))
        self.logger.info("scheduled_run_cancelled", run_id=run_id, credits_refunded=refunded)
        return refunded

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_results(self, destination: Path) -> Path:
        return await self._retry_with_backoff(self._download_export, Path(destination))

    async def _download_export(self, destination: Path) -> Path:
        session = self._get_session()
        async with session.get(self._url("/llm-visibility/export"), headers=self._headers()) as response:
            if response.status >= 400:
                payload = await self._decode(response)
                retry_after = response.headers.get("Retry-After")
                raise APIError(
                    response.status,
                    self._error_message(payload, response.reason),
                    payload if isinstance(payload, dict) else None,
                    retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                )

            destination.parent.mkdir(parents=True, exist_ok=True)
            written = 0
            with open(destination, "wb") as f:
                async for chunk in response.content.iter_chunked(EXPORT_CHUNK_SIZE):
                    f.write(chunk)
                    written += len(chunk)

        self.logger.info("export_downloaded", path=str(destination), bytes=written)
        return destination
