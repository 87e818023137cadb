"""
solved.ac activity API client.

Every failure leaves this module as a RemoteApiError whose code is already
classified, so the retry and saga layers never inspect HTTP details.
"""
import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from algosync.core.config import API_TIMEOUT_SECONDS, SOLVEDAC_API_URL
from algosync.core.errors import ApiErrorCode, RemoteApiError
from algosync.schemas.solvedac import ProblemInfo, SubmissionList, UserInfo

log = logging.getLogger("solvedac_client")

MAX_HANDLE_LENGTH = 50
MAX_PAGE = 1000

_CODE_BY_STATUS = {
    429: ApiErrorCode.RATE_LIMIT_EXCEEDED,
    503: ApiErrorCode.CONCURRENT_LIMIT_EXCEEDED,
    403: ApiErrorCode.DAILY_QUOTA_EXCEEDED,
    404: ApiErrorCode.NOT_FOUND,
}


class ActivityApiClient(Protocol):
    async def get_user_info(self, handle: str) -> UserInfo: ...

    async def get_submissions(self, handle: str, page: int = 1) -> SubmissionList: ...

    async def get_problem_info(self, problem_id: int) -> ProblemInfo: ...


class SolvedacApiClient:
    def __init__(
        self,
        base_url: str = SOLVEDAC_API_URL,
        timeout: float = API_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get_user_info(self, handle: str) -> UserInfo:
        _validate_handle(handle)
        data = await self._get("/user/show", {"handle": handle})
        log.info(f"Fetched user info for {handle}")
        return UserInfo.model_validate(data)

    async def get_submissions(self, handle: str, page: int = 1) -> SubmissionList:
        _validate_handle(handle)
        if page < 1 or page > MAX_PAGE:
            raise RemoteApiError(ApiErrorCode.INVALID_INPUT, f"Page must be between 1 and {MAX_PAGE}, got {page}")

        data = await self._get("/search/submission", {"query": f"user:{handle}", "page": page})
        if not data:
            return SubmissionList(count=0, items=[])
        submissions = SubmissionList.model_validate(data)
        log.info(f"Fetched {len(submissions.items)} submissions for {handle}, page {page}")
        return submissions

    async def get_problem_info(self, problem_id: int) -> ProblemInfo:
        if problem_id < 1:
            raise RemoteApiError(ApiErrorCode.INVALID_INPUT, f"Invalid problem id: {problem_id}")
        data = await self._get("/problem/show", {"problemId": problem_id})
        return ProblemInfo.model_validate(data)

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise RemoteApiError(ApiErrorCode.OTHER, f"Request to {path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise RemoteApiError(ApiErrorCode.OTHER, f"Request to {path} failed: {e}") from e

        if response.status_code >= 400:
            code = _CODE_BY_STATUS.get(response.status_code, ApiErrorCode.OTHER)
            log.warning(f"solved.ac returned {response.status_code} for {path} ({code.value})")
            raise RemoteApiError(code, f"solved.ac {path} returned HTTP {response.status_code}", response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteApiError(ApiErrorCode.OTHER, f"Malformed JSON from {path}") from e


def _validate_handle(handle: str) -> None:
    if not handle or not handle.strip() or len(handle) > MAX_HANDLE_LENGTH:
        raise RemoteApiError(ApiErrorCode.INVALID_INPUT, f"Invalid solved.ac handle: {handle!r}")
