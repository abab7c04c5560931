from __future__ import annotations

from datetime import timedelta
from typing import Callable, List, Optional, Union

import pytest

from access_sync.app.entitlements import (
    ApprovalRequestStore,
    EntitlementCacheStore,
    EntitlementKey,
    EntitlementOrigin,
    FeatureCatalog,
    InMemoryStorage,
    NotificationResolver,
    PendingApprovalRequest,
)
from access_sync.app.entitlements.models import to_epoch_ms
from access_sync.app.events import BroadcastBus
from access_sync.app.schemas.notifications import ApprovalStatus, ApprovalStatusResponse
from access_sync.app.services.approval_polling import ApprovalPoller
from access_sync.app.services.exceptions import AccessBackendError

KEY = EntitlementKey.of("document-subject", "physics", "a@x.com")


class ScriptedApprovalSource:
    """Returns one scripted answer per poll; the last answer repeats."""

    def __init__(self, answers: List[Union[ApprovalStatusResponse, Exception]]) -> None:
        self.answers = list(answers)
        self.request_ids: List[str] = []
        self.before_answer: Optional[Callable[[], None]] = None

    async def get_approval_status(self, request_id: str) -> ApprovalStatusResponse:
        self.request_ids.append(request_id)
        if self.before_answer is not None:
            self.before_answer()
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def store(storage, clock) -> EntitlementCacheStore:
    return EntitlementCacheStore(storage, BroadcastBus(), clock=clock)


@pytest.fixture
def resolver(store, clock) -> NotificationResolver:
    resolver = NotificationResolver(store, clock=clock)
    resolver.load_catalog(FeatureCatalog.of("document-subject", [{"id": "physics", "name": "Physics"}]))
    return resolver


@pytest.fixture
def requests(storage) -> ApprovalRequestStore:
    return ApprovalRequestStore(storage)


def _request() -> PendingApprovalRequest:
    return PendingApprovalRequest(requestId="req-1", feature="document-subject", featureId="physics", email="a@x.com")


async def _collect(poller: ApprovalPoller) -> List[ApprovalStatus]:
    return [
        status
        async for status in poller.watch("req-1", feature="document-subject", feature_id="physics", email="a@x.com")
    ]


@pytest.mark.asyncio
async def test_approval_writes_grant_through_resolver(resolver, store, clock, fast_sleep):
    expiry = clock() + timedelta(hours=3)
    source = ScriptedApprovalSource(
        [
            ApprovalStatusResponse(status="pending"),
            ApprovalStatusResponse(status="pending"),
            ApprovalStatusResponse(status="approved", expiry=expiry, message="Enjoy"),
        ]
    )
    poller = ApprovalPoller(source, resolver, interval_seconds=10, clock=clock, sleep=fast_sleep)

    statuses = await _collect(poller)

    assert statuses == [ApprovalStatus.PENDING, ApprovalStatus.APPROVED]
    assert fast_sleep.calls == [10, 10]
    record = store.get(KEY)
    assert record.expiry == expiry
    assert record.message == "Enjoy"
    assert record.origin == EntitlementOrigin.POLL


@pytest.mark.asyncio
async def test_backend_errors_are_absorbed(resolver, store, clock, fast_sleep):
    source = ScriptedApprovalSource(
        [
            AccessBackendError(code="timeout", message="slow"),
            ApprovalStatusResponse(status="approved", expiry=clock() + timedelta(hours=1)),
        ]
    )
    poller = ApprovalPoller(source, resolver, clock=clock, sleep=fast_sleep)

    assert await _collect(poller) == [ApprovalStatus.APPROVED]
    assert len(source.request_ids) == 2
    assert store.get(KEY) is not None


@pytest.mark.asyncio
async def test_rejection_writes_nothing_and_clears_pending(resolver, store, requests, clock, fast_sleep):
    requests.save(_request())
    source = ScriptedApprovalSource([ApprovalStatusResponse(status="rejected")])
    poller = ApprovalPoller(source, resolver, requests=requests, clock=clock, sleep=fast_sleep)

    assert await _collect(poller) == [ApprovalStatus.REJECTED]
    assert store.get(KEY) is None
    assert requests.get(KEY) is None
    assert fast_sleep.calls == []


@pytest.mark.asyncio
async def test_approved_without_expiry_writes_nothing(resolver, store, clock, fast_sleep):
    source = ScriptedApprovalSource([ApprovalStatusResponse(status="approved")])
    poller = ApprovalPoller(source, resolver, clock=clock, sleep=fast_sleep)

    assert await _collect(poller) == [ApprovalStatus.APPROVED]
    assert store.get(KEY) is None


@pytest.mark.asyncio
async def test_revoke_during_poll_beats_stale_approval(resolver, store, clock, fast_sleep):
    source = ScriptedApprovalSource(
        [ApprovalStatusResponse(status="approved", expiry=clock() + timedelta(hours=1))]
    )

    def revoke_while_in_flight() -> None:
        clock.advance(1)
        resolver.revoke("document-subject", "physics", "a@x.com", origin=EntitlementOrigin.PUSH)

    source.before_answer = revoke_while_in_flight
    poller = ApprovalPoller(source, resolver, clock=clock, sleep=fast_sleep)

    assert await _collect(poller) == [ApprovalStatus.APPROVED]
    assert store.get(KEY) is None


@pytest.mark.asyncio
async def test_started_watch_reports_statuses_and_can_be_awaited(resolver, requests, clock, fast_sleep):
    seen: List[ApprovalStatus] = []
    source = ScriptedApprovalSource(
        [
            ApprovalStatusResponse(status="pending"),
            ApprovalStatusResponse(status="notFound"),
        ]
    )
    poller = ApprovalPoller(source, resolver, requests=requests, clock=clock, sleep=fast_sleep)

    watch = poller.start(_request(), on_status=seen.append)
    assert requests.get(KEY) is not None

    assert await watch.wait() == ApprovalStatus.NOT_FOUND
    assert seen == [ApprovalStatus.PENDING, ApprovalStatus.NOT_FOUND]
    assert watch.done
    assert requests.get(KEY) is None


@pytest.mark.asyncio
async def test_cancelled_watch_keeps_pending_request(resolver, requests, clock, fast_sleep):
    source = ScriptedApprovalSource([ApprovalStatusResponse(status="pending")])
    poller = ApprovalPoller(source, resolver, requests=requests, clock=clock, sleep=fast_sleep)

    watch = poller.start(_request())
    for _ in range(5):
        await fast_sleep(0)
    watch.cancel()

    assert await watch.wait() == ApprovalStatus.PENDING
    assert requests.get(KEY) is not None


def test_pending_requests_are_listed_per_email(requests):
    requests.save(_request())
    requests.save(
        PendingApprovalRequest(requestId="req-2", feature="exam-track", featureId="ielts", email="b@x.com")
    )

    assert [request.request_id for request in requests.for_email("A@X.com")] == ["req-1"]


class DecodingApprovalSource:
    """Builds each response from a raw payload, the way the HTTP client does."""

    def __init__(self, payloads: List[dict]) -> None:
        self.payloads = list(payloads)
        self.calls = 0

    async def get_approval_status(self, request_id: str) -> ApprovalStatusResponse:
        self.calls += 1
        payload = self.payloads.pop(0) if len(self.payloads) > 1 else self.payloads[0]
        return ApprovalStatusResponse.model_validate(payload)


@pytest.mark.asyncio
async def test_out_of_range_expiry_is_retried(resolver, store, clock, fast_sleep):
    source = DecodingApprovalSource(
        [
            {"status": "approved", "expiry": 1e300},
            {"status": "approved", "expiry": to_epoch_ms(clock() + timedelta(hours=1))},
        ]
    )
    poller = ApprovalPoller(source, resolver, interval_seconds=5, clock=clock, sleep=fast_sleep)

    assert await _collect(poller) == [ApprovalStatus.APPROVED]
    assert source.calls == 2
    assert fast_sleep.calls == [5]
    assert store.get(KEY) is not None


@pytest.mark.asyncio
async def test_unexpected_source_errors_are_retried(resolver, store, clock, fast_sleep):
    source = ScriptedApprovalSource(
        [
            RuntimeError("decoder blew up"),
            ApprovalStatusResponse(status="approved", expiry=clock() + timedelta(hours=1)),
        ]
    )
    poller = ApprovalPoller(source, resolver, clock=clock, sleep=fast_sleep)

    assert await _collect(poller) == [ApprovalStatus.APPROVED]
    assert len(source.request_ids) == 2
    assert store.get(KEY) is not None
