from __future__ import annotations

import asyncio
import errno
import logging
from typing import Any, Awaitable, Callable

import requests


logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36",
    "Accept": "application/json, text/plain, */*",
    "Accept-Encoding": "gzip, deflate, br",
    "Connection": "keep-alive",
}

SleepFn = Callable[[float], Awaitable[None]]


class HttpError(RuntimeError):
    pass


class HttpStatusError(HttpError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class RequestTimeoutError(HttpError):
    pass


class ConnectionResetFailure(HttpError):
    pass


class NetworkError(HttpError):
    pass


def _exception_chain(exc: BaseException) -> list[BaseException]:
    """The exception plus everything it wraps (causes, contexts, args, urllib3 ``reason``)."""
    chain: list[BaseException] = []
    pending: list[BaseException] = [exc]
    while pending:
        current = pending.pop(0)
        if any(current is seen for seen in chain):
            continue
        chain.append(current)
        nested = [current.__cause__, current.__context__, getattr(current, "reason", None)]
        nested.extend(getattr(current, "args", ()))
        pending.extend(item for item in nested if isinstance(item, BaseException))
    return chain


def _is_connection_reset(exc: BaseException) -> bool:
    for item in _exception_chain(exc):
        if isinstance(item, ConnectionResetError):
            return True
        if isinstance(item, OSError) and item.errno == errno.ECONNRESET:
            return True
    return False


def _error_code(exc: BaseException) -> str:
    for item in _exception_chain(exc):
        if isinstance(item, OSError) and item.errno:
            return errno.errorcode.get(item.errno, str(item.errno))
    return "unknown"


def _body_text(response: requests.Response) -> str:
    try:
        return response.text
    except Exception:  # noqa: BLE001
        return ""


def _parse_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return _body_text(response)


class HttpClient:
    """Retrying JSON fetch on top of ``requests``.

    Each attempt runs in a worker thread so the event loop keeps serving other
    tasks while a request is in flight.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout_sec: float = 900,
        retries: int = 3,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout_sec = timeout_sec
        self.retries = max(retries, 1)
        self.sleep = sleep

    async def fetch_json(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        merged_headers = {**DEFAULT_HEADERS, **(headers or {})}

        for attempt in range(1, self.retries + 1):
            try:
                response = await asyncio.to_thread(
                    self.session.request,
                    method,
                    url,
                    headers=merged_headers,
                    json=json,
                    params=params,
                    timeout=self.timeout_sec,
                )
            except requests.Timeout as exc:
                raise RequestTimeoutError(f"请求超时 ({int(self.timeout_sec * 1000)}ms)") from exc
            except requests.RequestException as exc:
                if _is_connection_reset(exc):
                    if attempt < self.retries:
                        logger.warning(
                            "[重试 %s/%s] 连接重置，等待 %s秒后重试...", attempt, self.retries, attempt * 2
                        )
                        await self.sleep(attempt * 2)
                        continue
                    raise ConnectionResetFailure(
                        f"连接被服务器重置，已重试{self.retries}次。"
                        "可能原因：图片URL域名被阻止（建议使用postimg.cc等图床）"
                    ) from exc
                if attempt < self.retries:
                    logger.warning("[重试 %s/%s] 网络错误: %s", attempt, self.retries, exc)
                    await self.sleep(attempt * 1)
                    continue
                raise NetworkError(f"网络请求失败 ({_error_code(exc)}): {exc}") from exc

            status = response.status_code
            if status >= 500 and attempt < self.retries:
                logger.warning("[重试 %s/%s] 服务器错误 HTTP %s，等待后重试...", attempt, self.retries, status)
                await self.sleep(attempt * 1)
                continue
            if status >= 400:
                raise HttpStatusError(status, _body_text(response))
            return _parse_body(response)

        raise HttpError("请求失败")
