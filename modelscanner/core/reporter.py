"""CallbackReporter — deliver ScanResult snapshots to the caller's callback URL.

Each call POSTs the *entire* current :class:`~modelscanner.core.scan_result.ScanResult`
as JSON.  The callback endpoint is expected to be idempotent: within one
invocation it receives one snapshot per completed task, each a superset of
the previous one.

Delivery is synchronous: a non-2xx response or a network error fails the
invocation with
:class:`~modelscanner.core.errors.TransportError`.  There is no retry at
this level; the Celery task decides whether to re-run the whole invocation.
"""

from __future__ import annotations

import logging

import httpx
from prometheus_client import Counter

from modelscanner.core.cancellation import CancellationToken
from modelscanner.core.errors import TransportError
from modelscanner.core.scan_result import ScanResult

logger = logging.getLogger(__name__)

#: Labels: ``outcome`` ("delivered" | "http_error" | "network_error").
callback_reports_total = Counter(
    "modelscanner_callback_reports_total",
    "Total number of callback report attempts",
    ["outcome"],
)


class CallbackReporter:
    """Posts result snapshots using a shared :class:`httpx.AsyncClient`.

    Args:
        http_client: Long-lived client owned by the worker process.  The
            reporter never closes it.
    """

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http_client = http_client

    async def report(
        self,
        callback_url: str,
        result: ScanResult,
        cancel: CancellationToken,
    ) -> None:
        """Deliver the current snapshot of *result* to *callback_url*.

        Raises:
            TransportError: On a non-2xx response or network failure.
            ProcessingCancelled: If *cancel* fires before delivery completes.
        """
        payload = result.to_payload()
        logger.info("Invoking %s with result %s", callback_url, payload)
        await cancel.run(self._post(callback_url, payload))

    async def _post(self, callback_url: str, payload: dict) -> None:
        try:
            response = await self._http_client.post(callback_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            callback_reports_total.labels(outcome="http_error").inc()
            logger.warning(
                "Callback rejected report (HTTP %d): url=%s",
                exc.response.status_code,
                callback_url,
            )
            raise TransportError("report", exc) from exc
        except httpx.RequestError as exc:
            callback_reports_total.labels(outcome="network_error").inc()
            logger.warning("Callback unreachable: url=%s error=%s", callback_url, exc)
            raise TransportError("report", exc) from exc

        callback_reports_total.labels(outcome="delivered").inc()
