from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Literal, Optional

import requests
from pydantic import BaseModel

from ..core.errors import (
    AccrualCancelledError,
    AccrualError,
    AccrualPayloadError,
    AccrualRateLimitedError,
    AccrualUnavailableError,
)
from ..models import EntryStatus
from .validation import to_minor_units


logger = logging.getLogger(__name__)


class AccrualResponse(BaseModel):
    order: str
    status: Literal["REGISTERED", "PROCESSING", "INVALID", "PROCESSED"]
    accrual: Optional[Decimal] = None


@dataclass(frozen=True)
class AccrualResult:
    order_id: int
    status: EntryStatus
    amount: int


class AccrualClient:
    """HTTP client for the external accrual authority.

    ``resolve`` makes at most ``attempts`` requests per call. A 429 is followed
    by a fixed cool-down, any other failure by ``attempt * backoff_step``
    seconds. When ``resolve`` is given a ``cancel`` event, pauses wait on
    it and the call is abandoned as soon as it is set.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        attempts: int = 5,
        rate_limit_pause: float = 30.0,
        backoff_step: float = 10.0,
        timeout: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.attempts = attempts
        self.rate_limit_pause = rate_limit_pause
        self.backoff_step = backoff_step
        self.timeout = timeout
        self._sleep = sleep

    def order_url(self, order_id: int) -> str:
        return f"{self.base_url}/api/orders/{order_id}"

    def _pause(self, seconds: float, cancel: Optional[threading.Event]) -> None:
        if cancel is None:
            self._sleep(seconds)
        elif cancel.wait(seconds):
            raise AccrualCancelledError("Accrual lookup cancelled")

    def _decode(self, order_id: int, response: requests.Response) -> AccrualResult:
        payload = AccrualResponse.model_validate(response.json())
        if payload.order.strip() != str(order_id):
            raise ValueError(f"response is for order {payload.order!r}")
        amount = to_minor_units(payload.accrual) if payload.accrual is not None else 0
        return AccrualResult(order_id=order_id, status=EntryStatus(payload.status), amount=amount)

    def resolve(
        self, order_id: int, cancel: Optional[threading.Event] = None
    ) -> AccrualResult:
        url = self.order_url(order_id)
        last_error: AccrualError = AccrualUnavailableError(f"No attempt made for order {order_id}")

        for attempt in range(1, self.attempts + 1):
            if cancel is not None and cancel.is_set():
                raise AccrualCancelledError("Accrual lookup cancelled")
            delay = attempt * self.backoff_step
            try:
                response = self.session.get(url, timeout=self.timeout)
            except requests.RequestException as exc:
                last_error = AccrualUnavailableError(f"Request for order {order_id} failed: {exc}")
            else:
                if response.status_code == 200:
                    try:
                        return self._decode(order_id, response)
                    except ValueError as exc:
                        last_error = AccrualPayloadError(
                            f"Undecodable accrual payload for order {order_id}: {exc}"
                        )
                elif response.status_code == 429:
                    last_error = AccrualRateLimitedError(f"Rate limited on order {order_id}")
                    delay = self.rate_limit_pause
                else:
                    last_error = AccrualUnavailableError(
                        f"Accrual authority answered {response.status_code} for order {order_id}"
                    )

            if attempt == self.attempts:
                break
            logger.info(
                "accrual.retry",
                extra={
                    "order_id": order_id,
                    "attempt": attempt,
                    "delay": delay,
                    "error": str(last_error),
                },
            )
            self._pause(delay, cancel)

        raise last_error
