"""Call-recording provider (Gong) API client.

Auth is HTTP basic with the access key/secret pair. The provider allows three
requests per second, so every request from one client instance passes through
a single :class:`PacingGate`.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence, TypeVar

import httpx

from ..core.config import settings
from ..core.errors import ConfigurationError, GongAPIError

logger = logging.getLogger(__name__)

REQUESTS_PER_SECOND = 3
MIN_REQUEST_INTERVAL = math.ceil(1000 / REQUESTS_PER_SECOND) / 1000
PAGE_SIZE = 100
BATCH_SIZE = 100

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Participant:
    id: str = ""
    name: str | None = None
    email: str | None = None
    speaker_id: str | None = None
    affiliation: str = "unknown"


@dataclass(frozen=True, slots=True)
class CrossReferences:
    """CRM links the provider attached to a call; often missing upstream."""

    opportunity_ids: tuple[str, ...] = ()
    account_ids: tuple[str, ...] = ()
    contact_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CallRecord:
    id: str
    title: str = "Untitled Call"
    scheduled: datetime | None = None
    started: datetime | None = None
    duration: int = 0
    direction: str = "unknown"
    participants: tuple[Participant, ...] = ()
    url: str | None = None
    cross_references: CrossReferences | None = None
    topics: tuple[str, ...] = ()
    sentiment: str | None = None

    @property
    def occurred_at(self) -> datetime | None:
        return self.started or self.scheduled


@dataclass(frozen=True, slots=True)
class Sentence:
    start: int
    end: int
    text: str


@dataclass(frozen=True, slots=True)
class TranscriptSegment:
    speaker_id: str
    sentences: tuple[Sentence, ...] = ()
    topic: str | None = None


@dataclass(frozen=True, slots=True)
class Transcript:
    call_id: str
    segments: tuple[TranscriptSegment, ...] = ()

    def text(self, limit: int = 1500) -> str:
        """Flatten sentences into one string of at most ``limit`` characters."""

        parts: list[str] = []
        length = 0
        for segment in self.segments:
            for sentence in segment.sentences:
                parts.append(sentence.text)
                length += len(sentence.text) + 1
                if length > limit:
                    break
            if length > limit:
                break
        return " ".join(parts).strip()[:limit]


@dataclass(frozen=True, slots=True)
class EmailActivityRecord:
    id: str
    subject: str = "No Subject"
    sender: str = ""
    recipients: tuple[str, ...] = ()
    sent_at: datetime | None = None
    opened: bool = False
    clicked: bool = False
    replied: bool = False
    account_id: str | None = None


@dataclass(slots=True)
class CallFilter:
    from_datetime: datetime | None = None
    to_datetime: datetime | None = None

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.from_datetime:
            params["fromDateTime"] = _format_ts(self.from_datetime)
        if self.to_datetime:
            params["toDateTime"] = _format_ts(self.to_datetime)
        return params


class PacingGate:
    """Enforce a minimum interval between outbound requests.

    The last-request timestamp is read and written under one lock, so concurrent
    callers sharing the gate still respect the ceiling.
    """

    def __init__(
        self,
        interval: float = MIN_REQUEST_INTERVAL,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._interval = interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_request: float | None = None

    async def wait(self) -> None:
        async with self._lock:
            if self._last_request is not None:
                elapsed = self._clock() - self._last_request
                if elapsed < self._interval:
                    await self._sleep(self._interval - elapsed)
            self._last_request = self._clock()


class GongClient:
    """Rate-limited client for calls, transcripts, and Engage email activity."""

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        *,
        base_url: str = "https://api.gong.io/v2",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        gate: PacingGate | None = None,
    ) -> None:
        self._gate = gate or PacingGate()
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=httpx.BasicAuth(access_key, secret_key),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "GongClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self._gate.wait()
        try:
            response = await self._client.request(method, path, params=params, json=body)
        except httpx.HTTPError as exc:
            raise GongAPIError(None, str(exc) or exc.__class__.__name__) from exc
        if not response.is_success:
            raise GongAPIError(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as exc:
            raise GongAPIError(response.status_code, f"invalid JSON body: {exc}") from exc
        return data if isinstance(data, dict) else {}

    async def test_connection(self) -> tuple[bool, str]:
        """Check credentials by listing the last day of calls."""

        now = datetime.now(timezone.utc)
        filters = CallFilter(from_datetime=now - timedelta(days=1), to_datetime=now)
        try:
            data = await self._request("GET", "/calls", params=filters.to_params())
        except GongAPIError as exc:
            return False, f"Gong connection failed: {exc}"
        total = (data.get("records") or {}).get("totalRecords", 0)
        return True, f"Connected to Gong. Found {total} recent calls."

    async def fetch_page(
        self,
        filters: CallFilter,
        cursor: str | None = None,
    ) -> tuple[list[CallRecord], str | None]:
        """Return one page of calls and the cursor for the next page, if any."""

        params = filters.to_params()
        if cursor:
            params["cursor"] = cursor
        data = await self._request("GET", "/calls", params=params)
        calls = [map_call(raw) for raw in data.get("calls") or []]
        next_cursor = (data.get("records") or {}).get("cursor") or data.get("cursor")
        return calls, next_cursor or None

    async def fetch_calls(self, filters: CallFilter, *, max_calls: int = 1000) -> list[CallRecord]:
        """Follow cursor pagination until exhausted or ``max_calls`` are collected."""

        collected: list[CallRecord] = []
        cursor: str | None = None
        while len(collected) < max_calls:
            page, cursor = await self.fetch_page(filters, cursor)
            collected.extend(page)
            if not page or not cursor:
                break
            # Short page means end of results even if the provider still sent a cursor.
            if len(page) < PAGE_SIZE:
                break
        return collected[:max_calls]

    async def fetch_batch(
        self,
        path: str,
        ids: Iterable[str],
        build_body: Callable[[list[str]], dict[str, Any]],
        parse: Callable[[dict[str, Any]], Iterable[tuple[str, T]]],
    ) -> dict[str, T]:
        """POST ids in chunks of :data:`BATCH_SIZE`; failed chunks are skipped."""

        unique_ids = list(dict.fromkeys(call_id for call_id in ids if call_id))
        result: dict[str, T] = {}
        for start in range(0, len(unique_ids), BATCH_SIZE):
            chunk = unique_ids[start:start + BATCH_SIZE]
            try:
                data = await self._request("POST", path, body=build_body(chunk))
            except GongAPIError as exc:
                logger.error("Gong batch %s failed for %s ids: %s", path, len(chunk), exc)
                continue
            for key, value in parse(data):
                result[key] = value
        return result

    async def fetch_extensive(self, call_ids: Sequence[str]) -> dict[str, CallRecord]:
        """Return calls with participant, topic, and CRM context detail."""

        def build_body(chunk: list[str]) -> dict[str, Any]:
            return {
                "filter": {"callIds": chunk},
                "contentSelector": {
                    "context": "Extended",
                    "exposedFields": {
                        "collaboration": {"publicComments": True},
                        "content": {"topics": True},
                        "interaction": {"parties": True},
                    },
                },
            }

        def parse(data: dict[str, Any]) -> Iterable[tuple[str, CallRecord]]:
            for raw in data.get("calls") or []:
                call = map_call(raw)
                yield call.id, call

        return await self.fetch_batch("/calls/extensive", call_ids, build_body, parse)

    async def fetch_transcripts(self, call_ids: Sequence[str]) -> dict[str, Transcript]:
        """Return transcripts keyed by call id."""

        def build_body(chunk: list[str]) -> dict[str, Any]:
            return {"filter": {"callIds": chunk}}

        def parse(data: dict[str, Any]) -> Iterable[tuple[str, Transcript]]:
            for raw in data.get("callTranscripts") or []:
                transcript = map_transcript(raw)
                yield transcript.call_id, transcript

        return await self.fetch_batch("/calls/transcript", call_ids, build_body, parse)

    async def fetch_email_activity(self, filters: CallFilter) -> list[EmailActivityRecord]:
        """Return Engage email activity in the filter window."""

        data = await self._request("GET", "/engage/emails", params=filters.to_params())
        return [map_email(raw) for raw in data.get("emails") or []]


def create_client(*, transport: httpx.AsyncBaseTransport | None = None) -> GongClient:
    """Build a client from configured credentials."""

    if not settings.gong_access_key.strip() or not settings.gong_secret_key.strip():
        raise ConfigurationError("Gong credentials are not configured")
    return GongClient(
        settings.gong_access_key,
        settings.gong_secret_key,
        base_url=settings.gong_base_url,
        timeout=settings.gong_timeout_seconds,
        transport=transport,
    )


def map_call(raw: Mapping[str, Any]) -> CallRecord:
    """Map a raw provider call (list or extensive shape) to a :class:`CallRecord`."""

    meta = raw.get("metaData") or raw
    content = raw.get("content") or {}
    parties = raw.get("parties") or meta.get("parties") or []
    media = meta.get("media") or {}

    return CallRecord(
        id=str(meta.get("id") or raw.get("id") or ""),
        title=meta.get("title") or raw.get("title") or "Untitled Call",
        scheduled=parse_timestamp(meta.get("scheduled")),
        started=parse_timestamp(meta.get("started") or meta.get("scheduled")),
        duration=int(meta.get("duration") or 0),
        direction=meta.get("direction") or "unknown",
        participants=tuple(_map_participant(party) for party in parties),
        url=meta.get("url") or media.get("audioUrl"),
        cross_references=_map_cross_references(raw, meta),
        topics=tuple(
            topic.get("name", "") if isinstance(topic, Mapping) else str(topic)
            for topic in (content.get("topics") or raw.get("topics") or [])
        ),
        sentiment=content.get("sentiment") or raw.get("sentiment"),
    )


def _map_participant(raw: Mapping[str, Any]) -> Participant:
    affiliation = str(raw.get("affiliation") or "unknown").lower()
    if affiliation not in ("internal", "external"):
        affiliation = "unknown"
    return Participant(
        id=str(raw.get("id") or ""),
        name=raw.get("name"),
        email=raw.get("emailAddress") or raw.get("email"),
        speaker_id=raw.get("speakerId"),
        affiliation=affiliation,
    )


def _map_cross_references(raw: Mapping[str, Any], meta: Mapping[str, Any]) -> CrossReferences | None:
    associations = meta.get("crmAssociations") or raw.get("crmAssociations")
    if isinstance(associations, Mapping):
        return CrossReferences(
            opportunity_ids=tuple(associations.get("opportunityIds") or ()),
            account_ids=tuple(associations.get("accountIds") or ()),
            contact_ids=tuple(associations.get("contactIds") or ()),
        )

    opportunity_ids: list[str] = []
    account_ids: list[str] = []
    contact_ids: list[str] = []
    for context in raw.get("context") or []:
        for obj in context.get("objects") or []:
            object_type = obj.get("objectType")
            object_id = obj.get("objectId")
            if not object_id:
                continue
            if object_type == "Opportunity":
                opportunity_ids.append(object_id)
            elif object_type == "Account":
                account_ids.append(object_id)
            elif object_type in ("Contact", "Lead"):
                contact_ids.append(object_id)
    if not (opportunity_ids or account_ids or contact_ids):
        return None
    return CrossReferences(tuple(opportunity_ids), tuple(account_ids), tuple(contact_ids))


def map_transcript(raw: Mapping[str, Any]) -> Transcript:
    segments = tuple(
        TranscriptSegment(
            speaker_id=str(segment.get("speakerId") or ""),
            topic=segment.get("topic"),
            sentences=tuple(
                Sentence(
                    start=int(sentence.get("start") or 0),
                    end=int(sentence.get("end") or 0),
                    text=sentence.get("text") or "",
                )
                for sentence in segment.get("sentences") or []
            ),
        )
        for segment in raw.get("transcript") or []
    )
    return Transcript(call_id=str(raw.get("callId") or ""), segments=segments)


def map_email(raw: Mapping[str, Any]) -> EmailActivityRecord:
    associations = raw.get("crmAssociations") or {}
    return EmailActivityRecord(
        id=str(raw.get("id") or ""),
        subject=raw.get("subject") or "No Subject",
        sender=raw.get("from") or "",
        recipients=tuple(raw.get("to") or ()),
        sent_at=parse_timestamp(raw.get("sentAt")),
        opened=bool(raw.get("opened")),
        clicked=bool(raw.get("clicked")),
        replied=bool(raw.get("replied")),
        account_id=associations.get("accountId"),
    )


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 provider timestamp into an aware UTC datetime."""

    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
