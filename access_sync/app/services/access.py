"""Consumer-facing facade wiring cache, resolver, channels and preview gating."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

import httpx

from ...config import AccessSyncConfig, load_access_config
from ..entitlements.cache import EntitlementCacheStore
from ..entitlements.catalog import FeatureCatalog
from ..entitlements.models import (
    AccessUpdate,
    ChangeEvent,
    EntitlementRecord,
    ExpiryInput,
    FeatureInstance,
    FeatureKind,
    PendingApprovalRequest,
    feature_value,
)
from ..entitlements.requests import ApprovalRequestStore
from ..entitlements.resolver import NotificationResolver
from ..entitlements.storage import InMemoryStorage, JsonFileStorage, StorageBackend
from ..events.bus import BroadcastBus, match_feature
from ..events.storage_sync import StorageChangeObserver
from ..feature_gates.context import AccessGate, LockStatus
from ..feature_gates.preview import ForceStop, PlaybackGuard, PreviewLockTimer, PreviewSession, PreviewTicker
from .approval_polling import ApprovalPoller, ApprovalWatch, StatusCallback
from .backend_client import AccessBackendClient
from .live_updates import ChannelHandle, LiveUpdateHub, PushTransport, SSEPushTransport

logger = logging.getLogger(__name__)

AccessCallback = Callable[[AccessUpdate], None]


class AccessService:
    """Entry point for content viewers.

    Viewers read through :meth:`is_unlocked` / :meth:`lock_status`, observe
    through :meth:`subscribe`, and mutate only through :meth:`grant` and
    :meth:`revoke`, both of which go through the resolver.
    """

    def __init__(
        self,
        storage: StorageBackend,
        *,
        config: Optional[AccessSyncConfig] = None,
        client: Optional[AccessBackendClient] = None,
        push_transport: Optional[PushTransport] = None,
        bus: Optional[BroadcastBus] = None,
        context_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or load_access_config(env={})
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._client = client
        self.storage = storage
        self.bus = bus or BroadcastBus()
        self.store = EntitlementCacheStore(
            storage,
            self.bus,
            namespace=self.config.storage_namespace,
            context_id=context_id,
            clock=self._clock,
        )
        self.observer = StorageChangeObserver(
            storage,
            self.bus,
            namespace=self.config.storage_namespace,
            context_id=self.store.context_id,
        )
        self.observer.start()
        self.resolver = NotificationResolver(
            self.store,
            status_source=client,
            clock=self._clock,
            revoke_window_seconds=self.config.poll_interval_seconds + self.config.request_timeout_seconds,
        )
        self.gate = AccessGate(self.store, clock=self._clock)
        self.requests = ApprovalRequestStore(storage, namespace=self.config.pending_namespace)

        self.poller: Optional[ApprovalPoller] = None
        if client is not None:
            self.poller = ApprovalPoller(
                client,
                self.resolver,
                interval_seconds=self.config.poll_interval_seconds,
                requests=self.requests,
                clock=self._clock,
                sleep=sleep,
            )
        if push_transport is None and client is not None:
            push_transport = SSEPushTransport(client, retry_ms=self.config.stream_retry_ms, sleep=sleep)
        self.live: Optional[LiveUpdateHub] = (
            LiveUpdateHub(push_transport, self.resolver) if push_transport is not None else None
        )
        self._watches: Dict[str, ApprovalWatch] = {}
        self._storage_task: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_config(
        cls,
        config: Optional[AccessSyncConfig] = None,
        *,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "AccessService":
        config = config or load_access_config()
        storage: StorageBackend
        if config.storage_dir is not None:
            storage = JsonFileStorage(config.storage_dir)
        else:
            storage = InMemoryStorage()
        client = AccessBackendClient.from_config(config, transport=http_transport)
        return cls(storage, config=config, client=client)

    # -- reads -----------------------------------------------------------------

    def is_unlocked(self, feature: Union[FeatureKind, str], feature_id: object, email: str) -> bool:
        return self.gate.is_entitled(feature, feature_id, email)

    def entitlement(
        self,
        feature: Union[FeatureKind, str],
        feature_id: object,
        email: str,
    ) -> Optional[EntitlementRecord]:
        return self.gate.entitlement(feature, feature_id, email)

    def time_left(self, feature: Union[FeatureKind, str], feature_id: object, email: str) -> timedelta:
        return self.gate.time_left(feature, feature_id, email)

    def next_expiry(self, email: Optional[str] = None) -> Optional[datetime]:
        return self.store.next_expiry(email=email)

    def lock_status(
        self,
        feature: Union[FeatureKind, str],
        feature_id: object,
        email: str,
        preview: Optional[PreviewSession] = None,
    ) -> LockStatus:
        timer = preview.timer if preview is not None else None
        return self.gate.lock_status(feature, feature_id, email, timer)

    def subscribe(
        self,
        feature: Union[FeatureKind, str],
        feature_id: Optional[object],
        callback: AccessCallback,
        *,
        email: Optional[str] = None,
    ) -> Callable[[], None]:
        """Call ``callback`` with ``AccessUpdate`` for changes to one instance (or a whole kind)."""

        def _deliver(event: ChangeEvent) -> None:
            callback(AccessUpdate.from_event(event))

        predicate = match_feature(feature, str(feature_id) if feature_id is not None else None, email)
        return self.bus.subscribe(predicate, _deliver)

    # -- writes ----------------------------------------------------------------

    def grant(
        self,
        feature: Union[FeatureKind, str],
        feature_ref: object,
        email: str,
        expiry: ExpiryInput,
        message: Optional[str] = None,
    ) -> bool:
        return self.resolver.grant(feature, feature_ref, email, expiry, message)

    def revoke(self, feature: Union[FeatureKind, str], feature_ref: object, email: str) -> bool:
        return self.resolver.revoke(feature, feature_ref, email)

    # -- catalog ---------------------------------------------------------------

    async def load_catalog(
        self,
        feature: Union[FeatureKind, str],
        instances: Iterable[Union[FeatureInstance, Dict[str, object]]],
        email: Optional[str] = None,
    ) -> Dict[str, Optional[EntitlementRecord]]:
        """Run initial load for ``email``, then register the catalog and replay queued notifications."""

        catalog = FeatureCatalog.of(feature, instances)
        if email:
            await self.resolver.initial_load(catalog, email)
        self.resolver.load_catalog(catalog)
        if not email:
            return {instance.id: None for instance in catalog.instances}
        return {instance.id: self.gate.entitlement(catalog.feature, instance.id, email) for instance in catalog.instances}

    async def refresh(
        self,
        feature: Union[FeatureKind, str],
        email: str,
    ) -> Dict[str, Optional[EntitlementRecord]]:
        catalog = self.resolver.catalog(feature)
        if catalog is None:
            logger.debug("Refresh requested before catalog load", extra={"feature": feature_value(feature)})
            return {}
        await self.resolver.initial_load(catalog, email)
        return {instance.id: self.gate.entitlement(catalog.feature, instance.id, email) for instance in catalog.instances}

    # -- preview ---------------------------------------------------------------

    def start_preview(
        self,
        item_id: object,
        limit_seconds: Optional[int] = None,
        *,
        autostart: bool = True,
    ) -> PreviewSession:
        limit = self.config.preview_seconds if limit_seconds is None else limit_seconds
        timer = PreviewLockTimer(str(item_id), limit)
        ticker = PreviewTicker(timer, sleep=self._sleep)
        if autostart:
            ticker.start()
        return PreviewSession(timer, ticker)

    def playback_guard(
        self,
        session: PreviewSession,
        force_stop: ForceStop,
        *,
        feature: Union[FeatureKind, str],
        feature_id: object,
        email: str,
    ) -> PlaybackGuard:
        return PlaybackGuard(
            session.timer,
            force_stop,
            is_entitled=lambda: self.gate.is_entitled(feature, feature_id, email),
            rewind_seconds=self.config.preview_rewind_seconds,
        )

    # -- live updates and approvals -------------------------------------------

    def open_live_updates(self, email: str) -> Optional[ChannelHandle]:
        if self.live is None:
            logger.info("Live updates unavailable; relying on polling", extra={"email": email})
            return None
        return self.live.open(email)

    async def close_live_updates(self, handle: Optional[ChannelHandle]) -> None:
        if self.live is not None and handle is not None:
            await self.live.close(handle)

    def submit_approval(
        self,
        request_id: str,
        *,
        feature: Union[FeatureKind, str],
        feature_id: object,
        email: str,
        on_status: Optional[StatusCallback] = None,
    ) -> Optional[ApprovalWatch]:
        request = PendingApprovalRequest(
            request_id=request_id,
            feature=feature_value(feature),
            feature_id=str(feature_id),
            email=email,
            submitted_at=self._clock(),
        )
        return self._start_watch(request, on_status)

    def resume_pending_watches(
        self,
        email: str,
        *,
        on_status: Optional[StatusCallback] = None,
    ) -> List[ApprovalWatch]:
        watches: List[ApprovalWatch] = []
        for request in self.requests.for_email(email):
            watch = self._start_watch(request, on_status)
            if watch is not None:
                watches.append(watch)
        return watches

    def _start_watch(
        self,
        request: PendingApprovalRequest,
        on_status: Optional[StatusCallback],
    ) -> Optional[ApprovalWatch]:
        if self.poller is None:
            logger.info("Approval polling unavailable", extra={"request_id": request.request_id})
            return None
        existing = self._watches.get(request.request_id)
        if existing is not None and not existing.done:
            return existing
        watch = self.poller.start(request, on_status=on_status)
        self._watches[request.request_id] = watch
        watch.add_done_callback(self._forget_watch)
        return watch

    def _forget_watch(self, watch: ApprovalWatch) -> None:
        if self._watches.get(watch.request.request_id) is watch:
            del self._watches[watch.request.request_id]

    @property
    def active_watches(self) -> Dict[str, ApprovalWatch]:
        return dict(self._watches)

    def cancel_approval(self, request_id: str) -> None:
        watch = self._watches.pop(request_id, None)
        if watch is not None:
            watch.cancel()

    def start_storage_polling(self) -> bool:
        """Pick up entitlement writes made by other processes sharing a file-backed store."""

        if not isinstance(self.storage, JsonFileStorage):
            return False
        if self._storage_task is None or self._storage_task.done():
            self._storage_task = asyncio.get_running_loop().create_task(
                self.storage.watch_changes(self.config.storage_poll_interval_seconds, sleep=self._sleep)
            )
        return True

    async def aclose(self) -> None:
        self.observer.stop()
        if self._storage_task is not None:
            self._storage_task.cancel()
            await asyncio.gather(self._storage_task, return_exceptions=True)
            self._storage_task = None
        for request_id in list(self._watches):
            self.cancel_approval(request_id)
        if self.live is not None:
            await self.live.aclose()
        if self._client is not None:
            await self._client.close()
