from __future__ import annotations
import asyncio
import contextlib
import json
import logging
import os
import re
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone, time as dt_time
from pathlib import Path as FilePath
from threading import Lock
from typing import Optional, List, Any, Dict, Mapping, Iterable, Literal, Callable, Set, Tuple
from zoneinfo import ZoneInfo

from fastapi import (
    FastAPI,
    HTTPException,
    Depends,
    Header,
    Query,
    Request as FastAPIRequest,
    WebSocket,
)
from fastapi import WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError
from sqlalchemy import create_engine, Column, Integer, String, Text, DateTime, Boolean, select, delete, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sse_starlette.sse import EventSourceResponse

from bot.bot_app import (
    CONFIRMATION_TTL_SECONDS,
    LINE_API_BASE,
    LINE_CHANNEL_ACCESS_TOKEN,
    LINE_CHANNEL_SECRET,
    SEARCH_PROVIDER,
    ARTIST_SEPARATOR,
    ConfirmationRegistry,
    LineClient,
    RequestBot,
    TrackCandidate,
    TrackResolver,
    build_provider,
    render_line_message,
    verify_signature,
)

# =====================================
# Config
# =====================================
# Token for moderator endpoints and display clients that may mutate the queue.
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")

# "sql", "json" or "memory"
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "sql")
DB_URL = os.getenv("DATABASE_URL", "sqlite:////data/db.sqlite")
STORE_PATH = os.getenv("STORE_PATH", "/data/songs.json")

# Day boundary for the "played today" window.
BOT_TIMEZONE = os.getenv("BOT_TIMEZONE", "UTC")

# Longest a played transition waits for its history write before moving on.
PERSISTENCE_TIMEOUT_SECONDS = float(os.getenv("PERSISTENCE_TIMEOUT_SECONDS", "5"))

STATS_TOP_DEFAULT = 20

API_VERSION = "0.2.0"

logger = logging.getLogger(__name__)


class StoreUnavailableError(RuntimeError):
    """The configured persistence backend cannot be used."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =====================================
# Domain records
# =====================================
@dataclass(frozen=True)
class QueueEntry:
    id: str
    title: str
    artist: str
    artwork_url: str
    played_today: bool
    requested_by: str
    requested_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["requested_at"] = self.requested_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QueueEntry":
        return cls(
            id=str(data["id"]),
            title=data["title"],
            artist=data["artist"],
            artwork_url=data.get("artwork_url") or "",
            played_today=bool(data.get("played_today")),
            requested_by=data.get("requested_by") or "",
            requested_at=_as_utc(datetime.fromisoformat(data["requested_at"])),
        )


@dataclass(frozen=True)
class PlayRecord:
    title: str
    artist: str
    requested_by: str
    played_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["played_at"] = self.played_at.isoformat()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlayRecord":
        return cls(
            title=data["title"],
            artist=data["artist"],
            requested_by=data.get("requested_by") or "",
            played_at=_as_utc(datetime.fromisoformat(data["played_at"])),
        )


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes coming back from storage are UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _as_naive_utc(value: datetime) -> datetime:
    return _as_utc(value).replace(tzinfo=None)


def _naive_utcnow() -> datetime:
    return _as_naive_utc(_utcnow())


# =====================================
# Persistence
# =====================================
class SongStore:
    """Persistence boundary for the pending queue and the play history.

    Methods are synchronous; the queue manager runs them in a worker thread.
    The in-memory queue stays authoritative for a running process, the store
    only has to let a restart pick up where the last process stopped.
    """

    name = "abstract"

    def ping(self) -> None:
        """Raise ``StoreUnavailableError`` when the backend is unusable."""

    def list_pending(self) -> List[QueueEntry]:
        raise NotImplementedError

    def insert_pending(self, entry: QueueEntry) -> None:
        raise NotImplementedError

    def delete_pending(self, entry_id: str) -> None:
        raise NotImplementedError

    def list_history(self) -> List[PlayRecord]:
        raise NotImplementedError

    def append_history(self, record: PlayRecord) -> None:
        raise NotImplementedError

    def query_played_since(self, since: datetime) -> Set[Tuple[str, str]]:
        since = _as_utc(since)
        return {(r.title, r.artist) for r in self.list_history() if r.played_at >= since}

    def archive(self, entry: QueueEntry, record: PlayRecord) -> None:
        """Move a played entry to the history.

        Backends without transactions write the history first, so a failure
        between the two writes leaves a history row and a stale pending row
        rather than a lost play.
        """
        self.append_history(record)
        self.delete_pending(entry.id)


class MemoryStore(SongStore):
    name = "memory"

    def __init__(self) -> None:
        self._pending: List[QueueEntry] = []
        self._history: List[PlayRecord] = []
        self._lock = Lock()

    def list_pending(self) -> List[QueueEntry]:
        with self._lock:
            return list(self._pending)

    def insert_pending(self, entry: QueueEntry) -> None:
        with self._lock:
            self._pending = [e for e in self._pending if e.id != entry.id]
            self._pending.append(entry)

    def delete_pending(self, entry_id: str) -> None:
        with self._lock:
            self._pending = [e for e in self._pending if e.id != entry_id]

    def list_history(self) -> List[PlayRecord]:
        with self._lock:
            return list(self._history)

    def append_history(self, record: PlayRecord) -> None:
        with self._lock:
            self._history.append(record)


class JsonFileStore(SongStore):
    """Single JSON document on disk holding both the queue and the history."""

    name = "json"

    def __init__(self, path: str | FilePath) -> None:
        self.path = FilePath(path)
        self._lock = Lock()

    def ping(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock:
                if not self.path.exists():
                    self._save({"pending": [], "history": []})
                else:
                    self._load()
        except (OSError, ValueError) as exc:
            raise StoreUnavailableError(f"cannot use store file {self.path}: {exc}") from exc

    def _load(self) -> Dict[str, List[Dict[str, Any]]]:
        if not self.path.exists():
            return {"pending": [], "history": []}
        data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        return {
            "pending": list(data.get("pending") or []),
            "history": list(data.get("history") or []),
        }

    def _save(self, data: Mapping[str, Any]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)

    def list_pending(self) -> List[QueueEntry]:
        with self._lock:
            rows = self._load()["pending"]
        out: List[QueueEntry] = []
        for row in rows:
            try:
                out.append(QueueEntry.from_dict(row))
            except (KeyError, TypeError, ValueError):
                logger.warning("skipping unreadable pending row in %s", self.path)
        return out

    def insert_pending(self, entry: QueueEntry) -> None:
        with self._lock:
            data = self._load()
            data["pending"] = [row for row in data["pending"] if row.get("id") != entry.id]
            data["pending"].append(entry.to_dict())
            self._save(data)

    def delete_pending(self, entry_id: str) -> None:
        with self._lock:
            data = self._load()
            data["pending"] = [row for row in data["pending"] if row.get("id") != entry_id]
            self._save(data)

    def list_history(self) -> List[PlayRecord]:
        with self._lock:
            rows = self._load()["history"]
        out: List[PlayRecord] = []
        for row in rows:
            try:
                out.append(PlayRecord.from_dict(row))
            except (KeyError, TypeError, ValueError):
                logger.warning("skipping unreadable history row in %s", self.path)
        return out

    def append_history(self, record: PlayRecord) -> None:
        with self._lock:
            data = self._load()
            data["history"].append(record.to_dict())
            self._save(data)

    def archive(self, entry: QueueEntry, record: PlayRecord) -> None:
        with self._lock:
            data = self._load()
            data["history"].append(record.to_dict())
            data["pending"] = [row for row in data["pending"] if row.get("id") != entry.id]
            self._save(data)


Base = declarative_base()


class PendingSong(Base):
    __tablename__ = "pending_songs"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String, unique=True, nullable=False)
    title = Column(String, nullable=False)
    artist = Column(String, nullable=False)
    artwork_url = Column(Text)
    played_today = Column(Boolean, nullable=False, default=False)
    requested_by = Column(String, nullable=False, default="")
    requested_at = Column(DateTime, nullable=False, default=_naive_utcnow)


class PlayedSong(Base):
    __tablename__ = "play_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    artist = Column(String, nullable=False)
    requested_by = Column(String, nullable=False, default="")
    played_at = Column(DateTime, nullable=False, default=_naive_utcnow, index=True)


class SqlStore(SongStore):
    name = "sql"

    def __init__(self, db_url: str) -> None:
        kwargs: Dict[str, Any] = {}
        if db_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if db_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(db_url, **kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)

    def ping(self) -> None:
        try:
            Base.metadata.create_all(bind=self.engine)
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as exc:
            raise StoreUnavailableError(f"database unreachable: {exc}") from exc

    @staticmethod
    def _entry(row: PendingSong) -> QueueEntry:
        return QueueEntry(
            id=row.entry_id,
            title=row.title,
            artist=row.artist,
            artwork_url=row.artwork_url or "",
            played_today=bool(row.played_today),
            requested_by=row.requested_by or "",
            requested_at=_as_utc(row.requested_at),
        )

    @staticmethod
    def _record(row: PlayedSong) -> PlayRecord:
        return PlayRecord(
            title=row.title,
            artist=row.artist,
            requested_by=row.requested_by or "",
            played_at=_as_utc(row.played_at),
        )

    @staticmethod
    def _played_row(record: PlayRecord) -> PlayedSong:
        return PlayedSong(
            title=record.title,
            artist=record.artist,
            requested_by=record.requested_by,
            played_at=_as_naive_utc(record.played_at),
        )

    def list_pending(self) -> List[QueueEntry]:
        with self.SessionLocal() as db:
            rows = db.scalars(select(PendingSong).order_by(PendingSong.pk.asc())).all()
            return [self._entry(row) for row in rows]

    def insert_pending(self, entry: QueueEntry) -> None:
        with self.SessionLocal() as db:
            db.execute(delete(PendingSong).where(PendingSong.entry_id == entry.id))
            db.add(
                PendingSong(
                    entry_id=entry.id,
                    title=entry.title,
                    artist=entry.artist,
                    artwork_url=entry.artwork_url,
                    played_today=entry.played_today,
                    requested_by=entry.requested_by,
                    requested_at=_as_naive_utc(entry.requested_at),
                )
            )
            db.commit()

    def delete_pending(self, entry_id: str) -> None:
        with self.SessionLocal() as db:
            db.execute(delete(PendingSong).where(PendingSong.entry_id == entry_id))
            db.commit()

    def list_history(self) -> List[PlayRecord]:
        with self.SessionLocal() as db:
            rows = db.scalars(select(PlayedSong).order_by(PlayedSong.id.asc())).all()
            return [self._record(row) for row in rows]

    def append_history(self, record: PlayRecord) -> None:
        with self.SessionLocal() as db:
            db.add(self._played_row(record))
            db.commit()

    def query_played_since(self, since: datetime) -> Set[Tuple[str, str]]:
        with self.SessionLocal() as db:
            rows = db.execute(
                select(PlayedSong.title, PlayedSong.artist)
                .where(PlayedSong.played_at >= _as_naive_utc(since))
                .distinct()
            ).all()
            return {(row[0], row[1]) for row in rows}

    def archive(self, entry: QueueEntry, record: PlayRecord) -> None:
        # history row and pending delete commit together
        with self.SessionLocal() as db:
            db.add(self._played_row(record))
            db.execute(delete(PendingSong).where(PendingSong.entry_id == entry.id))
            db.commit()


def build_store(backend: str) -> SongStore:
    key = (backend or "").strip().lower()
    if key == "sql":
        return SqlStore(DB_URL)
    if key == "json":
        return JsonFileStore(STORE_PATH)
    if key == "memory":
        return MemoryStore()
    raise StoreUnavailableError(f"unknown STORAGE_BACKEND {backend!r}")


# =====================================
# Played-today window
# =====================================
class PlayedTodaySet:
    """(title, artist) pairs played since the last local midnight.

    A cache of the history filtered to the current local day. It clears
    itself when it notices the day changed, so a late reset timer cannot
    leak yesterday's plays into today.
    """

    def __init__(self, tz: ZoneInfo, *, now_factory: Callable[[], datetime] = _utcnow) -> None:
        self.tz = tz
        self._now_factory = now_factory
        self._pairs: Set[Tuple[str, str]] = set()
        self._day = self.now().date()

    def now(self) -> datetime:
        return self._now_factory().astimezone(self.tz)

    def utcnow(self) -> datetime:
        return _as_utc(self._now_factory())

    def today_start(self) -> datetime:
        return datetime.combine(self.now().date(), dt_time.min, tzinfo=self.tz)

    def next_midnight(self) -> datetime:
        return datetime.combine(self.now().date() + timedelta(days=1), dt_time.min, tzinfo=self.tz)

    def _roll(self) -> None:
        today = self.now().date()
        if today != self._day:
            self._pairs.clear()
            self._day = today

    def add(self, title: str, artist: str, played_at: Optional[datetime] = None) -> None:
        self._roll()
        if played_at is not None and played_at < self.today_start():
            return
        self._pairs.add((title, artist))

    def contains(self, title: str, artist: str) -> bool:
        self._roll()
        return (title, artist) in self._pairs

    def reset(self) -> None:
        self._pairs.clear()
        self._day = self.now().date()

    def rebuild(self, pairs: Iterable[Tuple[str, str]]) -> None:
        self.reset()
        self._pairs.update(pairs)

    def __len__(self) -> int:
        self._roll()
        return len(self._pairs)


class DailyResetScheduler:
    """Clears the played-today window at every local midnight."""

    def __init__(
        self,
        played_today: PlayedTodaySet,
        *,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.played_today = played_today
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None

    def seconds_until_midnight(self) -> float:
        # in UTC: same-zone subtraction ignores offset changes
        delta = _as_utc(self.played_today.next_midnight()) - self.played_today.utcnow()
        return max(delta.total_seconds(), 0.0)

    async def run_once(self) -> None:
        target = _as_utc(self.played_today.next_midnight())
        delay = self.seconds_until_midnight()
        logger.info("played-today reset scheduled in %.0fs", delay)
        await self._sleep(delay)
        # sleep can return early; never reset before the target
        while self.played_today.utcnow() < target:
            await self._sleep(max((target - self.played_today.utcnow()).total_seconds(), 0.5))
        self.played_today.reset()
        logger.info("played-today list reset")

    async def _run(self) -> None:
        while True:
            await self.run_once()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if not task:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    @property
    def running(self) -> bool:
        return bool(self._task and not self._task.done())


# =====================================
# Broadcast
# =====================================
class QueueBroker:
    __slots__ = ("listeners",)

    def __init__(self) -> None:
        self.listeners: set[asyncio.Queue[str]] = set()

    def subscribe(self) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=100)
        self.listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        self.listeners.discard(queue)

    def publish(self, message: str) -> None:
        for queue in list(self.listeners):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                # messages are full snapshots; only the newest matters
                while not queue.empty():
                    queue.get_nowait()
                queue.put_nowait(message)
                logger.warning("display client fell behind, skipped to the latest queue snapshot")

    def has_listeners(self) -> bool:
        return bool(self.listeners)


def queue_message(entries: Iterable[QueueEntry]) -> str:
    return json.dumps(
        {"type": "update_queue", "queue": [entry.to_dict() for entry in entries]},
        ensure_ascii=False,
    )


# =====================================
# Queue manager
# =====================================
class QueueManager:
    """Owns the pending queue and every transition applied to it.

    Mutations are serialized by one lock. Durability writes go to the store in
    submission order on a worker thread; their failures are logged and never
    undo the in-memory change.
    """

    def __init__(
        self,
        store: SongStore,
        *,
        played_today: PlayedTodaySet,
        broker: QueueBroker,
        now_factory: Callable[[], datetime] = _utcnow,
        write_timeout: float = PERSISTENCE_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.played_today = played_today
        self.broker = broker
        self.write_timeout = write_timeout
        self._now = now_factory
        self._entries: List[QueueEntry] = []
        self._lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._pending_writes: set[asyncio.Task[bool]] = set()

    @property
    def entries(self) -> List[QueueEntry]:
        return list(self._entries)

    def snapshot_message(self) -> str:
        return queue_message(self._entries)

    def find(self, entry_id: str) -> Optional[QueueEntry]:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def is_queued(self, title: str, artist: str) -> bool:
        return any(e.title == title and e.artist == artist for e in self._entries)

    def has_been_played_today(self, title: str, artist: str) -> bool:
        return self.played_today.contains(title, artist)

    async def load(self) -> None:
        """Restore the queue and the played-today window from the store."""
        pending = await asyncio.to_thread(self.store.list_pending)
        played = await asyncio.to_thread(self.store.query_played_since, self.played_today.today_start())
        async with self._lock:
            seen: set[str] = set()
            entries: List[QueueEntry] = []
            for entry in pending:
                if entry.id in seen:
                    continue
                seen.add(entry.id)
                entries.append(entry)
            self._entries = entries
            self.played_today.rebuild(played)
        logger.info("restored %d queued songs and %d played today", len(self._entries), len(played))

    async def add(self, candidate: TrackCandidate, *, requested_by: str, played_today: bool) -> Optional[QueueEntry]:
        """Append a confirmed candidate, or return None if it is already queued."""
        async with self._lock:
            # checked again here: the caller may have suspended since its own check
            if self.is_queued(candidate.title, candidate.artist):
                logger.info("duplicate request for %s - %s", candidate.title, candidate.artist)
                return None
            entry = QueueEntry(
                id=str(uuid.uuid4()),
                title=candidate.title,
                artist=candidate.artist,
                artwork_url=candidate.artwork_url,
                played_today=played_today,
                requested_by=requested_by,
                requested_at=self._now(),
            )
            self._entries.append(entry)
            self._submit(self.store.insert_pending, entry, action="insert")
            self._broadcast()
        logger.info("Added to queue: %s by %s", entry.title, entry.requested_by)
        return entry

    async def remove(self, entry_id: str) -> bool:
        async with self._lock:
            if self.find(entry_id) is None:
                logger.debug("remove ignored, %s is not queued", entry_id)
                return False
            self._entries = [e for e in self._entries if e.id != entry_id]
            self._submit(self.store.delete_pending, entry_id, action="delete")
            self._broadcast()
        logger.info("Removed song with ID: %s", entry_id)
        return True

    async def mark_played(self, entry_id: str) -> bool:
        async with self._lock:
            entry = self.find(entry_id)
            if entry is None:
                logger.debug("played ignored, %s is not queued", entry_id)
                return False
            record = PlayRecord(
                title=entry.title,
                artist=entry.artist,
                requested_by=entry.requested_by,
                played_at=self._now(),
            )
            # history is written before the song leaves the queue, unless the store stalls
            archived = self._submit(self.store.archive, entry, record, action="archive")
            try:
                await asyncio.wait_for(asyncio.shield(archived), self.write_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "archive of %s still pending after %.1fs, continuing without it",
                    entry.id,
                    self.write_timeout,
                )
            self.played_today.add(entry.title, entry.artist, record.played_at)
            self._entries = [e for e in self._entries if e.id != entry_id]
            self._broadcast()
        logger.info("Logged played song: %s", entry.title)
        return True

    def _broadcast(self) -> None:
        self.broker.publish(self.snapshot_message())

    def _submit(self, fn: Callable[..., Any], *args: Any, action: str) -> asyncio.Task[bool]:
        task = asyncio.create_task(self._write(fn, *args, action=action))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        return task

    async def _write(self, fn: Callable[..., Any], *args: Any, action: str) -> bool:
        async with self._write_lock:
            try:
                await asyncio.to_thread(fn, *args)
                return True
            except Exception:
                logger.exception("persistence %s failed on %s store", action, self.store.name)
                return False

    async def drain(self) -> None:
        """Wait for every durability write submitted so far."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)


# =====================================
# Stats
# =====================================
def compute_stats(records: Iterable[PlayRecord], top: int = STATS_TOP_DEFAULT) -> Dict[str, List[Dict[str, Any]]]:
    """Top songs and artists by play count; ties keep history order."""
    songs: Counter[str] = Counter()
    artists: Counter[str] = Counter()
    for record in records:
        songs[f"{record.title} - {record.artist}"] += 1
        for name in record.artist.split(ARTIST_SEPARATOR):
            name = name.strip()
            if name:
                artists[name] += 1

    def _format(counts: Counter[str]) -> List[Dict[str, Any]]:
        return [{"name": name, "count": count} for name, count in counts.most_common(top)]

    return {"songs": _format(songs), "artists": _format(artists)}


# =====================================
# Application state
# =====================================
played_today = PlayedTodaySet(ZoneInfo(BOT_TIMEZONE))
queue_manager = QueueManager(build_store(STORAGE_BACKEND), played_today=played_today, broker=QueueBroker())
daily_reset = DailyResetScheduler(played_today)
line_client = LineClient(LINE_API_BASE, LINE_CHANNEL_ACCESS_TOKEN)
request_bot = RequestBot(
    queue_manager,
    TrackResolver(build_provider(SEARCH_PROVIDER)),
    registry=ConfirmationRegistry(CONFIRMATION_TTL_SECONDS),
    line=line_client,
)


# =====================================
# Schemas
# =====================================
class QueueEntryOut(BaseModel):
    id: str
    title: str
    artist: str
    artwork_url: str
    played_today: bool
    requested_by: str
    requested_at: datetime


class StatItemOut(BaseModel):
    name: str
    count: int


class StatsOut(BaseModel):
    songs: List[StatItemOut]
    artists: List[StatItemOut]


class SuccessOut(BaseModel):
    success: bool


class WebhookAckOut(BaseModel):
    handled: int


class DisplayCommand(BaseModel):
    action: Literal["delete", "mark_played"]
    id: str


# =====================================
# FastAPI app and deps
# =====================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    store = queue_manager.store
    try:
        await asyncio.to_thread(store.ping)
    except StoreUnavailableError:
        logger.critical("%s store is unreachable, refusing to start", store.name)
        raise
    await queue_manager.load()
    daily_reset.start()
    try:
        yield
    finally:
        await daily_reset.stop()
        await queue_manager.drain()
        await line_client.close()


app = FastAPI(title="LINE Song Request Backend", version=API_VERSION, lifespan=lifespan)

DEFAULT_CORS_ALLOW_ORIGIN_REGEX = r"https?://.*"


def _parse_cors_origins(raw: str) -> list[str]:
    """Split a comma and/or whitespace separated origin list, dropping trailing slashes."""

    if not raw:
        return []
    origins: list[str] = []
    for part in re.split(r"[\s,]+", raw):
        origin = part.strip().rstrip("/")
        if origin:
            origins.append(origin)
    return origins


def _cors_settings_from_env(env: Mapping[str, str]) -> tuple[list[str], Optional[str]]:
    allow_origins: list[str] = []
    regex_fragments: list[str] = []
    for origin in _parse_cors_origins(env.get("CORS_ALLOW_ORIGINS", "")):
        if "*" in origin:
            # a wildcard matches one host label run, never the path
            regex_fragments.append(re.escape(origin).replace(r"\*", r"[^/]+"))
        else:
            allow_origins.append(origin)

    configured_regex = env.get("CORS_ALLOW_ORIGIN_REGEX", "")
    if configured_regex:
        regex_fragments.append(configured_regex)
    elif not allow_origins and not regex_fragments:
        regex_fragments.append(DEFAULT_CORS_ALLOW_ORIGIN_REGEX)

    allow_origin_regex = None
    if regex_fragments:
        allow_origin_regex = f"^(?:{'|'.join(regex_fragments)})$"
    return allow_origins, allow_origin_regex


allow_origins, allow_origin_regex = _cors_settings_from_env(os.environ)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_token(x_admin_token: str = Header(None)):
    if x_admin_token and x_admin_token == ADMIN_TOKEN:
        return
    raise HTTPException(status_code=401, detail="invalid admin token")


# =====================================
# Routes: System
# =====================================
@app.get("/system/meta")
def system_meta():
    return {"version": API_VERSION, "storage": queue_manager.store.name}


@app.get("/system/health")
async def health():
    try:
        await asyncio.to_thread(queue_manager.store.ping)
        return {"status": "ok"}
    except StoreUnavailableError as e:
        raise HTTPException(500, detail=str(e))


# =====================================
# Routes: LINE webhook
# =====================================
async def _dispatch_event(event: Mapping[str, Any]) -> bool:
    """Handle one webhook event; failures stay inside this event."""
    try:
        action = await request_bot.handle(event)
        if action is None:
            return False
        reply_token = event.get("replyToken")
        if not reply_token:
            logger.warning("no reply token on %s event", event.get("type"))
            return False
        await line_client.reply(reply_token, [render_line_message(action)])
        return True
    except Exception:
        logger.exception("failed to handle LINE %s event", event.get("type"))
        return False


@app.post("/webhook", response_model=WebhookAckOut)
async def line_webhook(request: FastAPIRequest, x_line_signature: Optional[str] = Header(None)):
    if not LINE_CHANNEL_SECRET:
        raise HTTPException(status_code=503, detail="line channel secret not configured")
    body = await request.body()
    if not verify_signature(LINE_CHANNEL_SECRET, body, x_line_signature or ""):
        raise HTTPException(status_code=401, detail="invalid signature")
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid payload")
    events = payload.get("events") if isinstance(payload, dict) else None
    if not isinstance(events, list):
        events = []
    results = await asyncio.gather(*(_dispatch_event(e) for e in events if isinstance(e, dict)))
    return {"handled": sum(1 for handled in results if handled)}


# =====================================
# Routes: Queue
# =====================================
@app.get("/queue", response_model=List[QueueEntryOut])
def get_queue():
    return [entry.to_dict() for entry in queue_manager.entries]


@app.delete("/queue/{entry_id}", response_model=SuccessOut, dependencies=[Depends(require_token)])
async def remove_entry(entry_id: str):
    return {"success": await queue_manager.remove(entry_id)}


@app.post("/queue/{entry_id}/played", response_model=SuccessOut, dependencies=[Depends(require_token)])
async def mark_entry_played(entry_id: str):
    return {"success": await queue_manager.mark_played(entry_id)}


@app.get("/queue/stream")
async def stream_queue():
    """Read-only SSE mirror of the display channel."""
    manager = queue_manager
    q = manager.broker.subscribe()

    async def gen():
        try:
            yield {"event": "update_queue", "data": manager.snapshot_message()}
            while True:
                msg = await q.get()
                yield {"event": "update_queue", "data": msg}
        finally:
            manager.broker.unsubscribe(q)

    return EventSourceResponse(
        gen(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


async def _apply_display_command(raw: str, *, authorized: bool) -> None:
    try:
        command = DisplayCommand.model_validate_json(raw)
    except ValidationError:
        logger.warning("ignoring malformed display message")
        return
    if not authorized:
        logger.warning("ignoring %s from a display client without the admin token", command.action)
        return
    if command.action == "delete":
        await queue_manager.remove(command.id)
    else:
        await queue_manager.mark_played(command.id)


@app.websocket("/display/ws")
async def display_socket(websocket: WebSocket, token: Optional[str] = None) -> None:
    manager = queue_manager
    authorized = bool(token) and token == ADMIN_TOKEN
    queue = manager.broker.subscribe()
    await websocket.accept()
    logger.info("A display client connected.")
    send_task: Optional[asyncio.Task[str]] = None
    receive_task: Optional[asyncio.Task[str]] = None
    try:
        await websocket.send_text(manager.snapshot_message())
        send_task = asyncio.create_task(queue.get())
        receive_task = asyncio.create_task(websocket.receive_text())
        while True:
            done, _ = await asyncio.wait(
                {send_task, receive_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if receive_task in done:
                try:
                    raw = receive_task.result()
                except WebSocketDisconnect:
                    break
                await _apply_display_command(raw, authorized=authorized)
                receive_task = asyncio.create_task(websocket.receive_text())
            if send_task in done:
                await websocket.send_text(send_task.result())
                send_task = asyncio.create_task(queue.get())
    except WebSocketDisconnect:
        pass
    finally:
        for task in (send_task, receive_task):
            if task:
                task.cancel()
        with contextlib.suppress(Exception):
            await asyncio.gather(*(t for t in (send_task, receive_task) if t), return_exceptions=True)
        manager.broker.unsubscribe(queue)
        logger.info("A display client disconnected.")


# =====================================
# Routes: Stats
# =====================================
@app.get("/api/stats", response_model=StatsOut)
async def stats(top: int = Query(STATS_TOP_DEFAULT, ge=1, le=100)):
    records = await asyncio.to_thread(queue_manager.store.list_history)
    return compute_stats(records, top)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "3000")))
