"""Client for the compile service that runs languages the sandbox worker cannot."""
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from .config import Settings, get_settings
from .errors import BackendUnavailableError
from .models import ExecutionResult, Language

logger = logging.getLogger(__name__)

# Slack on top of the execution timeout for compiling and transport
REQUEST_OVERHEAD_S = 15


class RemoteCompileBackend:
    def __init__(
        self,
        base_url: Optional[str] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = (base_url or self.settings.COMPILE_SERVICE_URL).rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, transport=self._transport)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        code: str,
        *,
        language: Language,
        stdin: str = "",
        timeout_ms: Optional[int] = None,
    ) -> ExecutionResult:
        """
        Compile and run code on the compile service.

        Compile and runtime errors come back as failed results. Raises
        BackendUnavailableError when the service cannot answer at all.
        """
        await self.start()
        assert self._client is not None

        timeout_ms = timeout_ms or self.settings.EXEC_TIMEOUT_MS
        payload = {
            "code": code,
            "language": Language(language).value,
            "stdin": stdin,
            "timeout": timeout_ms,
        }

        try:
            resp = await self._client.post(
                "/v1/compile",
                json=payload,
                timeout=timeout_ms / 1000 + REQUEST_OVERHEAD_S,
            )
        except httpx.TimeoutException:
            logger.warning(f"Compile service timed out after {timeout_ms}ms")
            return ExecutionResult.failure(
                "Execution timeout",
                f"Code execution exceeded {timeout_ms}ms timeout",
                timed_out=True,
            )
        except httpx.ConnectError as e:
            logger.error(f"Unable to connect to compile service at {self.base_url}: {e}")
            raise BackendUnavailableError("Unable to connect to the compile service") from e
        except httpx.RequestError as e:
            logger.error(f"Failed to communicate with compile service: {e}")
            raise BackendUnavailableError(f"Failed to communicate with compile service: {e}") from e

        if resp.status_code >= 500:
            logger.error(f"Compile service returned {resp.status_code}")
            raise BackendUnavailableError(f"Compile service returned {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as e:
            raise BackendUnavailableError("Empty or malformed response from compile service") from e

        if resp.status_code >= 400:
            detail = body.get("detail", "Compilation request rejected") if isinstance(body, dict) else "Compilation request rejected"
            return ExecutionResult.failure(str(detail))

        try:
            return ExecutionResult.model_validate(body)
        except ValidationError as e:
            raise BackendUnavailableError("Malformed response from compile service") from e
