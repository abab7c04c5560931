"""Polling fallback for one outstanding approval request."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

from ..entitlements.models import (
    EntitlementKey,
    EntitlementOrigin,
    FeatureKind,
    PendingApprovalRequest,
)
from ..entitlements.requests import ApprovalRequestStore
from ..entitlements.resolver import NotificationResolver
from ..schemas.notifications import ApprovalStatus, ApprovalStatusResponse, GrantNotification
from .exceptions import AccessBackendError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 10.0

StatusCallback = Callable[[ApprovalStatus], None]


class ApprovalStatusSource(Protocol):
    async def get_approval_status(self, request_id: str) -> ApprovalStatusResponse:
        ...


class ApprovalPoller:
    """Polls ``approval/status`` until a verdict, feeding approvals to the resolver.

    Approved grants go through the same resolver path as push grants, so the
    poller and the live channel can run side by side.
    """

    def __init__(
        self,
        source: ApprovalStatusSource,
        resolver: NotificationResolver,
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        requests: Optional[ApprovalRequestStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._source = source
        self._resolver = resolver
        self._interval = interval_seconds
        self._requests = requests
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    async def watch(
        self,
        request_id: str,
        *,
        feature: Union[FeatureKind, str],
        feature_id: str,
        email: str,
    ) -> AsyncIterator[ApprovalStatus]:
        """Yield each distinct status until a terminal one; cancel by closing the iterator."""

        key = EntitlementKey.of(feature, feature_id, email)
        last_status: Optional[ApprovalStatus] = None
        while True:
            observed_at = self._clock()
            try:
                response = await self._source.get_approval_status(request_id)
            except AccessBackendError as exc:
                logger.warning(
                    "Approval status poll failed",
                    extra={"request_id": request_id, "error": exc.code, "status_code": exc.status_code},
                )
                response = None
            except Exception:
                logger.exception("Unexpected approval status failure", extra={"request_id": request_id})
                response = None

            if response is not None:
                status = response.status
                if status is ApprovalStatus.APPROVED:
                    self._apply_approval(key, response, observed_at)
                if status is not last_status:
                    last_status = status
                    yield status
                if status.is_terminal:
                    if self._requests is not None:
                        self._requests.clear(key)
                    logger.info(
                        "Approval request reached a verdict",
                        extra={"request_id": request_id, "status": status.value},
                    )
                    return

            await self._sleep(self._interval)

    def _apply_approval(self, key: EntitlementKey, response: ApprovalStatusResponse, observed_at: datetime) -> None:
        if response.expiry is None:
            logger.warning(
                "Approved response carried no expiry; waiting for push or reload",
                extra={"feature": key.feature, "feature_id": key.feature_id},
            )
            return
        notification = GrantNotification(
            feature=key.feature,
            feature_ref=key.feature_id,
            email=key.email,
            expiry=response.expiry,
            message=response.message,
        )
        self._resolver.on_notification(notification, origin=EntitlementOrigin.POLL, observed_at=observed_at)

    def start(
        self,
        request: PendingApprovalRequest,
        *,
        on_status: Optional[StatusCallback] = None,
    ) -> "ApprovalWatch":
        """Persist ``request`` as outstanding and poll it on a background task."""

        if self._requests is not None:
            self._requests.save(request)
        stream = self.watch(
            request.request_id,
            feature=request.feature,
            feature_id=request.feature_id,
            email=request.email,
        )
        return ApprovalWatch(request, stream, on_status=on_status)


class ApprovalWatch:
    """Cancellable handle for a running :meth:`ApprovalPoller.watch`."""

    def __init__(
        self,
        request: PendingApprovalRequest,
        stream: AsyncIterator[ApprovalStatus],
        *,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        self.request = request
        self.status: Optional[ApprovalStatus] = None
        self._stream = stream
        self._on_status = on_status
        self._task: asyncio.Task[Optional[ApprovalStatus]] = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> Optional[ApprovalStatus]:
        async for status in self._stream:
            self.status = status
            if self._on_status is not None:
                try:
                    self._on_status(status)
                except Exception:
                    logger.exception(
                        "Approval status callback failed",
                        extra={"request_id": self.request.request_id},
                    )
        return self.status

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        self._task.cancel()

    def add_done_callback(self, callback: Callable[["ApprovalWatch"], None]) -> None:
        self._task.add_done_callback(lambda _task: callback(self))

    async def wait(self) -> Optional[ApprovalStatus]:
        if not self._task.done():
            await asyncio.wait({self._task})
        if self._task.cancelled():
            return self.status
        return self._task.result()
