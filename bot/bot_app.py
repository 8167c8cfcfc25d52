from __future__ import annotations
import os, asyncio, json, yaml
import base64
import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from pathlib import Path
from threading import Lock
from typing import Optional, Dict, List, Tuple, Callable, Mapping, Sequence, Union, Protocol, Any

import aiohttp
import spotipy
from spotipy.exceptions import SpotifyException
from spotipy.oauth2 import SpotifyClientCredentials
from ytmusicapi import YTMusic

logger = logging.getLogger(__name__)

# ---- Env ----
LINE_API_BASE = os.getenv('LINE_API_BASE', 'https://api.line.me')
LINE_CHANNEL_ACCESS_TOKEN = os.getenv('LINE_CHANNEL_ACCESS_TOKEN', '')
LINE_CHANNEL_SECRET = os.getenv('LINE_CHANNEL_SECRET', '')
MESSAGES_PATH = Path(os.getenv("BOT_MESSAGES_PATH", "/bot/messages.yml"))

SPOTIFY_CLIENT_ID = os.getenv('SPOTIFY_CLIENT_ID', '')
SPOTIFY_CLIENT_SECRET = os.getenv('SPOTIFY_CLIENT_SECRET', '')
YTMUSIC_AUTH_FILE = os.getenv('YTMUSIC_AUTH_FILE')
SEARCH_PROVIDER = os.getenv('SEARCH_PROVIDER', 'spotify')
SEARCH_LIMIT = int(os.getenv('SEARCH_LIMIT', '5'))
SEARCH_MATCH_THRESHOLD = float(os.getenv('SEARCH_MATCH_THRESHOLD', '0.5'))
SEARCH_TIMEOUT_SECONDS = float(os.getenv('SEARCH_TIMEOUT_SECONDS', '10'))
CONFIRMATION_TTL_SECONDS = float(os.getenv('CONFIRMATION_TTL_SECONDS', '600'))

PLACEHOLDER_ARTWORK = 'https://via.placeholder.com/150'
ARTIST_SEPARATOR = ', '
ALTERNATIVES_LIMIT = 3

# LINE buttons template limits
CARD_TITLE_LIMIT = 40
CARD_TEXT_LIMIT = 60
ACTION_LABEL_LIMIT = 20
ALT_TEXT_LIMIT = 400

DEFAULT_MESSAGES = {
    'confirm_body': 'Artist: {artist}',
    'played_today_note': '(This song has been requested today)',
    'confirm_label': 'Yes, add to queue',
    'confirm_display': 'Adding "{title}"...',
    'reject_label': 'No, search again',
    'alt_text': 'Is this the correct song? {title}',
    'not_found': 'Sorry, I couldn\'t find "{query}".',
    'ambiguous': 'I found a few songs for "{query}":\n{options}\nPlease send a more specific song name.',
    'search_failed': 'An error occurred while searching. Please try again.',
    'provider_unavailable': 'Sorry, I\'m having temporary trouble with the music search. Please try again in a moment.',
    'expired': 'This confirmation has expired.',
    'duplicate': '"{title}" is already in the queue.',
    'added': '"{title}" by {artist} has been added to the queue!',
    'rejected': 'Got it. Please enter a new song name.',
    'unknown_requester': 'Guest',
}

NEGATIVE_PHRASES = frozenset({'no', 'no, search again'})


# ---- Errors ----
class LineApiError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class ResolutionError(RuntimeError):
    """Raised when the search provider could not answer a query."""


class ProviderAuthError(ResolutionError):
    """The provider rejected our credentials; usually clears after renewal."""


# ---- LINE client ----
def verify_signature(secret: str, body: bytes, provided: str) -> bool:
    """Check the ``X-Line-Signature`` header against the raw request body.

    LINE signs the body with HMAC-SHA256 keyed by the channel secret and sends
    the base64 encoded digest.
    """

    digest = hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, provided or "")


class LineClient:
    def __init__(self, base_url: str, access_token: str, *, timeout: float = 10.0):
        self.base = base_url.rstrip('/')
        self.headers = {'Authorization': f'Bearer {access_token}', 'Content-Type': 'application/json'}
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, payload: Optional[dict] = None):
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        data = json.dumps(payload, ensure_ascii=False).encode('utf-8') if payload else None
        async with self.session.request(method, url, headers=self.headers, data=data) as r:
            content_type = r.headers.get('content-type', '')
            is_json = content_type.startswith('application/json')
            if r.status >= 400:
                detail: object = ''
                if is_json:
                    try:
                        body = await r.json()
                    except Exception:
                        body = None
                    if isinstance(body, dict) and 'message' in body:
                        detail = body['message']
                    else:
                        detail = body or ''
                if not detail:
                    try:
                        detail = await r.text()
                    except Exception:
                        detail = ''
                raise LineApiError(r.status, detail or f"{method} {path} failed")
            if is_json:
                return await r.json()
            return await r.text()

    async def reply(self, reply_token: str, messages: List[dict]):
        return await self._req('POST', "/v2/bot/message/reply", {
            'replyToken': reply_token,
            'messages': messages,
        })

    async def get_profile(self, user_id: str) -> Dict[str, object]:
        return await self._req('GET', f"/v2/bot/profile/{user_id}")


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return cfg


# ---- Tracks ----
@dataclass(frozen=True)
class TrackCandidate:
    title: str
    artist: str
    artwork_url: str = PLACEHOLDER_ARTWORK


def _join_artists(names: Sequence[str]) -> str:
    return ARTIST_SEPARATOR.join(n for n in names if n)


class SpotifyProvider:
    """Track search against the Spotify catalog.

    The client-credentials manager caches the app token and renews it when it
    is about to expire, so callers never handle credentials per query.
    """

    def __init__(self, client_id: str, client_secret: str, *, client: Optional[spotipy.Spotify] = None):
        self._client_id = client_id
        self._client_secret = client_secret
        self._client = client
        self._lock = Lock()

    def _get_client(self) -> spotipy.Spotify:
        if self._client is not None:
            return self._client
        with self._lock:
            if self._client is not None:
                return self._client
            if not self._client_id or not self._client_secret:
                raise ResolutionError("Spotify credentials are not configured")
            auth = SpotifyClientCredentials(client_id=self._client_id, client_secret=self._client_secret)
            self._client = spotipy.Spotify(auth_manager=auth, requests_timeout=SEARCH_TIMEOUT_SECONDS)
        return self._client

    def search(self, query: str, limit: int) -> List[TrackCandidate]:
        try:
            result = self._get_client().search(q=query, limit=limit, type='track')
        except SpotifyException as exc:
            if exc.http_status == 401:
                raise ProviderAuthError("Spotify rejected the access token") from exc
            raise ResolutionError(f"Spotify search failed: {exc.msg}") from exc
        items = ((result or {}).get('tracks') or {}).get('items') or []
        candidates: List[TrackCandidate] = []
        for item in items:
            title = item.get('name')
            if not title:
                continue
            artist = _join_artists([a.get('name') or '' for a in item.get('artists') or []])
            images = (item.get('album') or {}).get('images') or []
            artwork = images[0].get('url') if images else None
            candidates.append(TrackCandidate(title=title, artist=artist, artwork_url=artwork or PLACEHOLDER_ARTWORK))
        return candidates


class YTMusicProvider:
    def __init__(self, auth_file: Optional[str] = None, *, client: Optional[YTMusic] = None):
        self._auth_file = auth_file
        self._client = client
        self._lock = Lock()

    def _get_client(self) -> YTMusic:
        if self._client is not None:
            return self._client
        with self._lock:
            if self._client is not None:
                return self._client
            try:
                self._client = YTMusic(self._auth_file) if self._auth_file else YTMusic()
            except Exception as exc:
                logger.exception("Failed to initialize YTMusic client")
                raise ResolutionError("YTMusic client initialization failed") from exc
        return self._client

    def search(self, query: str, limit: int) -> List[TrackCandidate]:
        raw_results = self._get_client().search(query, filter='songs', limit=limit)
        candidates: List[TrackCandidate] = []
        for item in raw_results or []:
            candidate = _candidate_from_ytmusic(item)
            if candidate:
                candidates.append(candidate)
            if len(candidates) >= limit:
                break
        return candidates


def _candidate_from_ytmusic(item: Mapping[str, Any]) -> Optional[TrackCandidate]:
    if not isinstance(item, Mapping):
        return None
    title = item.get("title")
    if not isinstance(title, str) or not title:
        return None
    names: List[str] = []
    for artist in item.get("artists", []) or []:
        if isinstance(artist, Mapping) and isinstance(artist.get("name"), str):
            names.append(artist["name"])
    artwork = PLACEHOLDER_ARTWORK
    # thumbnails are ordered smallest first
    for thumb in reversed(item.get("thumbnails") or []):
        if isinstance(thumb, Mapping) and isinstance(thumb.get("url"), str):
            artwork = thumb["url"]
            break
    return TrackCandidate(title=title, artist=_join_artists(names), artwork_url=artwork)


def build_provider(name: str):
    key = (name or '').strip().lower()
    if key == 'spotify':
        return SpotifyProvider(SPOTIFY_CLIENT_ID, SPOTIFY_CLIENT_SECRET)
    if key in ('ytmusic', 'youtube_music'):
        return YTMusicProvider(YTMUSIC_AUTH_FILE)
    raise ValueError(f"unknown search provider: {name!r}")


def similarity(query: str, candidate: TrackCandidate) -> float:
    q = query.strip().lower()
    title = candidate.title.lower()
    artist = candidate.artist.lower()
    return max(
        SequenceMatcher(a=q, b=title).ratio(),
        SequenceMatcher(a=q, b=f"{title} {artist}").ratio(),
        SequenceMatcher(a=q, b=f"{artist} {title}").ratio(),
    )


@dataclass
class Resolution:
    kind: str  # "none" | "accepted" | "ambiguous"
    candidate: Optional[TrackCandidate] = None
    alternatives: List[TrackCandidate] = field(default_factory=list)


class TrackResolver:
    def __init__(
        self,
        provider,
        *,
        limit: int = SEARCH_LIMIT,
        threshold: float = SEARCH_MATCH_THRESHOLD,
        timeout: float = SEARCH_TIMEOUT_SECONDS,
    ):
        self.provider = provider
        self.limit = max(1, int(limit))
        self.threshold = threshold
        self.timeout = timeout

    async def resolve(self, query: str) -> List[TrackCandidate]:
        try:
            found = await asyncio.wait_for(
                asyncio.to_thread(self.provider.search, query, self.limit),
                timeout=self.timeout,
            )
        except ResolutionError:
            raise
        except asyncio.TimeoutError as exc:
            raise ResolutionError(f"search timed out after {self.timeout}s") from exc
        except Exception as exc:
            raise ResolutionError(f"search failed: {exc}") from exc
        return list(found or [])

    def pick(self, query: str, candidates: Sequence[TrackCandidate]) -> Resolution:
        if not candidates:
            return Resolution("none")
        if len(candidates) == 1:
            return Resolution("accepted", candidate=candidates[0])
        scored = sorted(
            ((similarity(query, c), i, c) for i, c in enumerate(candidates)),
            key=lambda row: (-row[0], row[1]),
        )
        best_score, _, best = scored[0]
        if best_score >= self.threshold:
            return Resolution("accepted", candidate=best)
        return Resolution("ambiguous", alternatives=[c for _, _, c in scored[:ALTERNATIVES_LIMIT]])


# ---- Confirmations ----
class ConfirmationRegistry:
    """One outstanding confirmation token per identity.

    Issuing a new token replaces the previous one, so only the latest card a
    user received can be confirmed. Tokens older than ``ttl_seconds`` redeem as
    expired; a TTL of zero or less disables expiry.
    """

    def __init__(self, ttl_seconds: float = CONFIRMATION_TTL_SECONDS, *, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._slots: Dict[str, Tuple[str, float]] = {}

    def issue(self, identity: str) -> str:
        now = self._clock()
        self._sweep(now)
        token = uuid.uuid4().hex
        self._slots[identity] = (token, now)
        return token

    def _sweep(self, now: float) -> None:
        if self.ttl_seconds <= 0:
            return
        expired = [key for key, (_, issued_at) in self._slots.items() if now - issued_at > self.ttl_seconds]
        for key in expired:
            del self._slots[key]

    def redeem(self, identity: str, presented: Optional[str]) -> bool:
        slot = self._slots.get(identity)
        if slot is None:
            return False
        token, issued_at = slot
        if self.ttl_seconds > 0 and self._clock() - issued_at > self.ttl_seconds:
            self._slots.pop(identity, None)
            return False
        if not presented or not hmac.compare_digest(token, presented):
            return False
        del self._slots[identity]
        return True

    def clear(self, identity: str) -> None:
        self._slots.pop(identity, None)

    def __len__(self) -> int:
        return len(self._slots)


# ---- Replies ----
@dataclass(frozen=True)
class TextReply:
    text: str


@dataclass(frozen=True)
class ConfirmationCard:
    title: str
    artist: str
    artwork_url: str
    body: str
    confirm_data: str
    confirm_label: str
    confirm_display_text: str
    reject_label: str
    alt_text: str


ReplyAction = Union[TextReply, ConfirmationCard]


def _clip(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 1] + "…"


def render_line_message(action: ReplyAction) -> dict:
    if isinstance(action, TextReply):
        return {'type': 'text', 'text': action.text}
    return {
        'type': 'template',
        'altText': _clip(action.alt_text, ALT_TEXT_LIMIT),
        'template': {
            'type': 'buttons',
            'thumbnailImageUrl': action.artwork_url,
            'imageAspectRatio': 'square',
            'imageSize': 'cover',
            'title': _clip(action.title, CARD_TITLE_LIMIT),
            'text': _clip(action.body, CARD_TEXT_LIMIT),
            'actions': [
                {
                    'type': 'postback',
                    'label': _clip(action.confirm_label, ACTION_LABEL_LIMIT),
                    'data': action.confirm_data,
                    'displayText': action.confirm_display_text,
                },
                {
                    'type': 'message',
                    'label': _clip(action.reject_label, ACTION_LABEL_LIMIT),
                    'text': action.reject_label,
                },
            ],
        },
    }


def encode_postback(candidate: TrackCandidate, token: str, played_today: bool) -> str:
    return json.dumps(
        {
            't': candidate.title,
            'a': candidate.artist,
            'i': candidate.artwork_url,
            'p': 1 if played_today else 0,
            'c': token,
        },
        ensure_ascii=False,
        separators=(',', ':'),
    )


def decode_postback(data: str) -> Tuple[TrackCandidate, str, bool]:
    """Parse postback data produced by :func:`encode_postback`.

    Raises ``ValueError`` for anything we did not produce.
    """

    payload = json.loads(data)
    if not isinstance(payload, dict):
        raise ValueError("postback payload must be an object")
    title, artist, token = payload.get('t'), payload.get('a'), payload.get('c')
    if not isinstance(title, str) or not isinstance(artist, str) or not isinstance(token, str):
        raise ValueError("postback payload is missing track fields")
    artwork = payload.get('i') if isinstance(payload.get('i'), str) else PLACEHOLDER_ARTWORK
    candidate = TrackCandidate(title=title, artist=artist, artwork_url=artwork or PLACEHOLDER_ARTWORK)
    return candidate, token, bool(payload.get('p'))


# ---- Bot ----
class SongQueue(Protocol):
    def has_been_played_today(self, title: str, artist: str) -> bool: ...

    async def add(self, candidate: TrackCandidate, *, requested_by: str, played_today: bool): ...


class RequestBot:
    """Turns LINE webhook events into queue requests.

    A text message searches for a track and answers with a confirmation card;
    the card's postback carries the candidate and the confirmation token back
    to us, and only a live token for the same user gets the track queued.
    """

    def __init__(
        self,
        queue: SongQueue,
        resolver: TrackResolver,
        *,
        registry: Optional[ConfirmationRegistry] = None,
        line: Optional[LineClient] = None,
        messages: Optional[Dict[str, str]] = None,
    ):
        self.queue = queue
        self.resolver = resolver
        self.registry = registry or ConfirmationRegistry()
        self.line = line
        self.messages = messages or load_messages(MESSAGES_PATH)
        self.negative_phrases = set(NEGATIVE_PHRASES)
        self.negative_phrases.add(self.messages['reject_label'].strip().lower())

    def _msg(self, key: str, **values: object) -> str:
        return self.messages[key].format(**values)

    async def handle(self, event: Mapping[str, Any]) -> Optional[ReplyAction]:
        identity = (event.get('source') or {}).get('userId')
        if not identity:
            logger.debug("ignoring %s event without a user id", event.get('type'))
            return None
        event_type = event.get('type')
        if event_type == 'postback':
            data = (event.get('postback') or {}).get('data') or ''
            return await self._handle_confirmation(identity, data)
        if event_type == 'message':
            message = event.get('message') or {}
            if message.get('type') != 'text':
                return None
            return await self._handle_text(identity, message.get('text') or '')
        return None

    async def _handle_text(self, identity: str, text: str) -> Optional[ReplyAction]:
        query = text.strip()
        if not query:
            return None

        if query.lower() in self.negative_phrases:
            self.registry.clear(identity)
            return TextReply(self._msg('rejected'))

        try:
            candidates = await self.resolver.resolve(query)
        except ProviderAuthError:
            logger.warning("search provider rejected credentials for query %r", query)
            return TextReply(self._msg('provider_unavailable'))
        except ResolutionError:
            logger.exception("search failed for query %r", query)
            return TextReply(self._msg('search_failed'))

        resolution = self.resolver.pick(query, candidates)
        if resolution.kind == 'none':
            return TextReply(self._msg('not_found', query=query))
        if resolution.kind == 'ambiguous':
            options = "\n".join(
                f"{i}. {c.title} - {c.artist}" for i, c in enumerate(resolution.alternatives, start=1)
            )
            return TextReply(self._msg('ambiguous', query=query, options=options))

        candidate = resolution.candidate
        played_today = self.queue.has_been_played_today(candidate.title, candidate.artist)
        token = self.registry.issue(identity)
        return self._confirmation_card(candidate, token, played_today)

    def _confirmation_card(self, candidate: TrackCandidate, token: str, played_today: bool) -> ConfirmationCard:
        body = self._msg('confirm_body', artist=candidate.artist)
        if played_today:
            body += "\n" + self._msg('played_today_note')
        return ConfirmationCard(
            title=candidate.title,
            artist=candidate.artist,
            artwork_url=candidate.artwork_url,
            body=body,
            confirm_data=encode_postback(candidate, token, played_today),
            confirm_label=self._msg('confirm_label'),
            confirm_display_text=self._msg('confirm_display', title=candidate.title),
            reject_label=self._msg('reject_label'),
            alt_text=self._msg('alt_text', title=candidate.title),
        )

    async def _handle_confirmation(self, identity: str, data: str) -> Optional[ReplyAction]:
        try:
            candidate, token, played_today = decode_postback(data)
        except ValueError:
            logger.warning("ignoring malformed postback from %s", identity)
            return None

        if not self.registry.redeem(identity, token):
            logger.info("confirmation from %s expired", identity)
            return TextReply(self._msg('expired'))

        requester = await self._display_name(identity)
        entry = await self.queue.add(candidate, requested_by=requester, played_today=played_today)
        if entry is None:
            return TextReply(self._msg('duplicate', title=candidate.title, artist=candidate.artist))
        return TextReply(self._msg('added', title=candidate.title, artist=candidate.artist))

    async def _display_name(self, identity: str) -> str:
        fallback = self._msg('unknown_requester')
        if self.line is None:
            return fallback
        try:
            profile = await self.line.get_profile(identity)
        except Exception:
            logger.warning("profile lookup failed for %s", identity, exc_info=True)
            return fallback
        name = profile.get('displayName') if isinstance(profile, dict) else None
        return name or fallback
