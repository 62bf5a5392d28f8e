"""YouTube Data API client for uploads playlists.

A source id is a channel's uploads playlist (`UU...`), derived from the
channel id (`UC...`). Listing a playlist page costs one quota unit, as does
one `videos.list` lookup of up to 50 uploads; category titles are fetched
once per process for one more unit. Resolving a channel URL scrapes the
public channel page and costs nothing.
"""

import re
from datetime import datetime

import httpx
from pydantic import ValidationError

from uploadwatch.common.errors import QuotaExhausted, SourceNotResolvable, TransientError
from uploadwatch.common.logging import logger
from uploadwatch.common.schemas import LIVE, NONSENSE, UPCOMING, UPLOADED, VOD, Item, ItemExtras, ItemsPage

YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com"}
CHANNEL_ID_RE = re.compile(r"UC[\w-]{22}")
PAGE_CHANNEL_ID_PATTERNS = [
    re.compile(r'<link rel="canonical" href="https://www\.youtube\.com/channel/(UC[\w-]{22})"'),
    re.compile(r'"externalId":"(UC[\w-]{22})"'),
    re.compile(r'<meta itemprop="(?:identifier|channelId)" content="(UC[\w-]{22})"'),
]
DURATION_RE = re.compile(r"P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?)?")
# Keyed by the stable YouTube category ids; titles come from the API.
CATEGORY_EMOJIS = {
    "1": "🎬",
    "2": "🚗",
    "10": "🎵",
    "15": "🐾",
    "17": "⚽",
    "19": "✈️",
    "20": "🎮",
    "22": "👥",
    "23": "😂",
    "24": "🎭",
    "25": "📰",
    "26": "🛠️",
    "27": "📚",
    "28": "🔬",
    "29": "🤝",
}


def uploads_playlist_id(channel_id: str) -> str:
    """Every channel's uploads playlist id swaps the `UC` prefix for `UU`."""

    return "UU" + channel_id[2:]


def parse_playlist_item(raw: dict) -> Item | None:
    """Map one `playlistItems` resource to an Item; private/deleted uploads yield None."""

    details = raw.get("contentDetails", {})
    snippet = raw.get("snippet", {})
    video_id = details.get("videoId") or snippet.get("resourceId", {}).get("videoId")
    published_at = details.get("videoPublishedAt")
    if not video_id or not published_at:
        return None
    return Item(
        item_id=video_id,
        published_at=published_at.replace("Z", "+00:00"),
        title=snippet.get("title", ""),
        channel_title=snippet.get("videoOwnerChannelTitle") or snippet.get("channelTitle", ""),
    )


def parse_duration(value: str) -> int | None:
    """Seconds in an ISO 8601 duration such as `PT1H2M3S`."""

    match = DURATION_RE.fullmatch(value or "")
    if match is None or not any(match.groups()):
        return None
    days, hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return ((days * 24 + hours) * 60 + minutes) * 60 + seconds


def format_duration(seconds: int) -> str:
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def discord_timestamp(value: str) -> str:
    """Relative Discord timestamp markup for an RFC 3339 time."""

    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return f"<t:{int(moment.timestamp())}:R>"


def live_status(raw: dict) -> str:
    """Classify a `videos` resource by its broadcast fields."""

    content = raw.get("snippet", {}).get("liveBroadcastContent", "none")
    details = raw.get("liveStreamingDetails")
    if content == "upcoming":
        return UPCOMING if details and details.get("scheduledStartTime") else NONSENSE
    if content == "live":
        return LIVE if details and details.get("actualStartTime") else NONSENSE
    if content == "none":
        if details is None:
            return UPLOADED
        return VOD if details.get("actualEndTime") else NONSENSE
    return NONSENSE


def parse_video_extras(raw: dict, categories: dict[str, str], shorts_max_seconds: int = 180) -> ItemExtras:
    """Map one `videos` resource to the details used for filtering and formatting."""

    snippet = raw.get("snippet", {})
    details = raw.get("liveStreamingDetails") or {}
    status = live_status(raw)
    duration = parse_duration(raw.get("contentDetails", {}).get("duration", ""))
    category_id = snippet.get("categoryId", "")

    time_string = ""
    if status == UPCOMING:
        time_string = discord_timestamp(details["scheduledStartTime"]) + " "
    elif status == LIVE:
        time_string = discord_timestamp(details["actualStartTime"]) + " "
    elif status in (UPLOADED, VOD) and duration:
        time_string = f"({format_duration(duration)}) "

    return ItemExtras(
        item_id=raw["id"],
        live_status=status,
        is_short=status == UPLOADED and duration is not None and 0 < duration <= shorts_max_seconds,
        is_scheduled=bool(details.get("scheduledStartTime")),
        category_id=category_id,
        category_title=categories.get(category_id, ""),
        category_emoji=CATEGORY_EMOJIS.get(category_id, ""),
        time_string=time_string,
    )


class YouTubeClient:
    """Async data-source client backed by `httpx.AsyncClient`."""

    page_cost = 1
    resolve_cost = 0
    extras_batch_size = 50

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://www.googleapis.com/youtube/v3",
        page_size: int = 50,
        region_code: str = "US",
        language: str = "en_US",
        shorts_max_seconds: int = 180,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.page_size = page_size
        self.region_code = region_code
        self.language = language
        self.shorts_max_seconds = shorts_max_seconds
        self.http = httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True)
        self._categories: dict[str, str] | None = None

    @property
    def extras_cost(self) -> int:
        """Units for one `get_item_extras` call; the first also loads category titles."""

        return 1 if self._categories is not None else 2

    async def _get_json(self, resource: str, params: dict) -> dict:
        try:
            resp = await self.http.get(f"{self.api_url}/{resource}", params={**params, "key": self.api_key})
        except httpx.HTTPError as exc:
            raise TransientError(f"{resource} transport error: {exc}") from exc

        if resp.status_code == 403 and "quotaExceeded" in resp.text:
            raise QuotaExhausted("youtube reported quotaExceeded")
        if resp.status_code >= 400:
            raise TransientError(f"{resource} returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransientError(f"{resource} returned a malformed body: {exc}") from exc
        if not isinstance(body, dict):
            raise TransientError(f"{resource} returned {type(body).__name__}, expected an object")
        return body

    async def list_items_page(self, source_id: str, cursor: str | None) -> ItemsPage:
        params = {
            "part": "snippet,contentDetails",
            "playlistId": source_id,
            "maxResults": self.page_size,
        }
        if cursor:
            params["pageToken"] = cursor
        body = await self._get_json("playlistItems", params)

        items = []
        for raw in body.get("items", []):
            try:
                item = parse_playlist_item(raw)
            except (ValidationError, AttributeError) as exc:
                logger.warning("playlist_item_malformed source_id=%s raw_id=%s error=%s", source_id, raw.get("id"), exc)
                continue
            if item is None:
                logger.debug("playlist_item_skipped source_id=%s raw_id=%s", source_id, raw.get("id"))
                continue
            items.append(item)
        return ItemsPage(items=items, next_cursor=body.get("nextPageToken"), cost_units=self.page_cost)

    async def _category_titles(self) -> dict[str, str]:
        if self._categories is None:
            body = await self._get_json(
                "videoCategories",
                {"part": "snippet", "regionCode": self.region_code, "hl": self.language},
            )
            self._categories = {
                raw["id"]: raw.get("snippet", {}).get("title", "") for raw in body.get("items", []) if "id" in raw
            }
        return self._categories

    async def get_item_extras(self, item_ids: list[str]) -> dict[str, ItemExtras]:
        """Broadcast state, duration and category for up to `extras_batch_size` uploads.

        Uploads the API no longer returns (deleted, made private) are absent.
        """

        categories = await self._category_titles()
        body = await self._get_json(
            "videos",
            {"part": "snippet,contentDetails,liveStreamingDetails", "id": ",".join(item_ids)},
        )
        extras = {}
        for raw in body.get("items", []):
            try:
                parsed = parse_video_extras(raw, categories, self.shorts_max_seconds)
            except (KeyError, ValueError, AttributeError) as exc:
                logger.warning("video_extras_malformed raw_id=%s error=%s", raw.get("id"), exc)
                continue
            extras[parsed.item_id] = parsed
        return extras

    async def resolve_source(self, url: str) -> str:
        """Map a channel URL (`/channel/UC..`, `/@handle`, `/c/name`) to its uploads playlist."""

        try:
            parsed = httpx.URL(url.strip())
        except (httpx.InvalidURL, TypeError) as exc:
            raise SourceNotResolvable(url, "invalid URL") from exc
        if parsed.scheme not in ("http", "https") or parsed.host not in YOUTUBE_HOSTS:
            raise SourceNotResolvable(url, "not a YouTube channel URL")

        segments = [s for s in parsed.path.split("/") if s]
        if len(segments) >= 2 and segments[0] == "channel" and CHANNEL_ID_RE.fullmatch(segments[1]):
            return uploads_playlist_id(segments[1])
        if not segments:
            raise SourceNotResolvable(url, "URL has no channel path")

        try:
            resp = await self.http.get(f"https://{parsed.host}{parsed.path}")
        except httpx.HTTPError as exc:
            raise SourceNotResolvable(url, f"HTTP error: {exc}") from exc
        if resp.status_code != 200:
            raise SourceNotResolvable(url, f"HTTP request returned bad status code: {resp.status_code}")
        for pattern in PAGE_CHANNEL_ID_PATTERNS:
            match = pattern.search(resp.text)
            if match:
                return uploads_playlist_id(match.group(1))
        raise SourceNotResolvable(url, "could not find a channel id on the page")

    async def aclose(self) -> None:
        await self.http.aclose()
