"""Async HTTP client for the facilitator wire contract.

Wraps an ``httpx.AsyncClient`` and turns facilitator responses back into
domain objects. Only network-layer trouble is retried (transport errors,
timeouts, 5xx including 503 while the facilitator drains); a 400 or 409 is an
answer, not a fault, and is never retried.

One retry case needs care: if a submit reached the facilitator but the
response was lost, the retry comes back 409. When that happens on a retried
attempt and the original record belongs to the same payer, the client adopts
the original record instead of reporting a rejection.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from x402_flow.domain.exceptions import (
    DuplicateNonceError,
    FacilitatorError,
    FacilitatorUnreachableError,
    MalformedInstrumentError,
    SettlementNotFoundError,
)
from x402_flow.logging_config import get_logger
from x402_flow.schemas.facilitator import (
    DuplicateNonceResponse,
    PaymentInstrumentModel,
    SettlementRecordResponse,
    VerifyResponse,
)

if TYPE_CHECKING:
    from x402_flow.domain.models import PaymentInstrument, SettlementRecord

logger = get_logger(__name__)


class _ServerFault(Exception):
    """A 5xx answer; retried like a transport error."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"facilitator answered {status_code}")
        self.status_code = status_code


_TRANSIENT = (httpx.TransportError, _ServerFault)


class FacilitatorClient:
    """Talks to one facilitator over HTTP."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        submit_timeout: float = 10.0,
        status_timeout: float = 5.0,
        max_attempts: int = 3,
        backoff: float = 0.5,
        backoff_max: float = 4.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url)
        self._submit_timeout = submit_timeout
        self._status_timeout = status_timeout
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff
        self._backoff_max = backoff_max
        self.call_count = 0

    async def __aenter__(self) -> FacilitatorClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, max=self._backoff_max),
            retry=retry_if_exception_type(_TRANSIENT),
            reraise=True,
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _send(self, method: str, path: str, timeout: float, **kwargs: Any) -> httpx.Response:
        self.call_count += 1
        response = await self._client.request(method, self._url(path), timeout=timeout, **kwargs)
        if response.status_code >= 500:
            raise _ServerFault(response.status_code)
        return response

    async def _request(
        self, method: str, path: str, timeout: float, **kwargs: Any
    ) -> httpx.Response:
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._send(method, path, timeout, **kwargs)
        except _TRANSIENT as exc:
            raise self._unreachable(path, exc) from exc
        return response

    def _unreachable(self, path: str, exc: Exception) -> FacilitatorUnreachableError:
        logger.warning("facilitator_client.unreachable", path=path, error=str(exc))
        return FacilitatorUnreachableError(
            f"Facilitator at {self.base_url} unreachable after "
            f"{self._max_attempts} attempt(s): {exc}"
        )

    @staticmethod
    def _body(instrument: PaymentInstrument) -> dict[str, Any]:
        try:
            model = PaymentInstrumentModel.from_domain(instrument)
        except ValidationError as exc:
            raise MalformedInstrumentError(
                f"Instrument does not fit the wire format: {exc.error_count()} invalid field(s)"
            ) from exc
        return model.model_dump(mode="json")

    @staticmethod
    def _record(response: httpx.Response) -> SettlementRecord:
        try:
            return SettlementRecordResponse.model_validate(response.json()).to_domain()
        except (ValueError, ValidationError) as exc:
            raise FacilitatorError(
                f"Facilitator returned an unreadable settlement record ({exc.__class__.__name__})",
                code="BAD_FACILITATOR_RESPONSE",
            ) from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return str(response.json().get("message", response.text))
        except ValueError:
            return response.text

    def _unexpected(self, response: httpx.Response) -> FacilitatorError:
        return FacilitatorError(
            f"Unexpected facilitator response {response.status_code}: "
            f"{self._error_message(response)}",
            code="BAD_FACILITATOR_RESPONSE",
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def health(self) -> dict[str, Any]:
        response = await self._request("GET", "/health", self._status_timeout)
        if response.status_code != 200:
            raise self._unexpected(response)
        return response.json()

    async def submit(self, instrument: PaymentInstrument) -> SettlementRecord:
        """POST the instrument and return the facilitator's record.

        Raises:
            DuplicateNonceError: On 409, unless this was a retried attempt and
                the original record is the same payer's.
            MalformedInstrumentError: On 400, or if the instrument does not
                fit the wire format.
            FacilitatorUnreachableError: When every attempt failed at the
                network layer.
        """
        body = self._body(instrument)
        nonce = instrument.nonce

        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._send(
                        "POST", "/submit", self._submit_timeout, json=body
                    )
                    retried = attempt.retry_state.attempt_number > 1
        except _TRANSIENT as exc:
            raise self._unreachable("/submit", exc) from exc

        if response.status_code == 200:
            return self._record(response)

        if response.status_code == 409:
            duplicate = DuplicateNonceResponse.model_validate(response.json())
            original = duplicate.original.to_domain() if duplicate.original else None
            if (
                retried
                and original is not None
                and original.payer_account == instrument.payer_account
            ):
                logger.info(
                    "facilitator_client.submit.recovered",
                    nonce=nonce,
                    status=str(original.status),
                )
                return original
            raise DuplicateNonceError(nonce, original=original)

        if response.status_code == 400:
            raise MalformedInstrumentError(self._error_message(response))

        raise self._unexpected(response)

    async def status(self, nonce: str) -> SettlementRecord:
        """GET the current record for ``nonce``.

        Raises:
            SettlementNotFoundError: On 404.
        """
        path = f"/status/{quote(nonce, safe='')}"
        response = await self._request("GET", path, self._status_timeout)
        if response.status_code == 200:
            return self._record(response)
        if response.status_code == 404:
            raise SettlementNotFoundError(nonce)
        raise self._unexpected(response)

    async def verify(self, instrument: PaymentInstrument) -> VerifyResponse:
        """Run the facilitator's checks without settling."""
        body = self._body(instrument)
        response = await self._request("POST", "/verify", self._submit_timeout, json=body)
        if response.status_code == 200:
            return VerifyResponse.model_validate(response.json())
        if response.status_code == 400:
            raise MalformedInstrumentError(self._error_message(response))
        raise self._unexpected(response)
