"""
Article and crawl-log storage.

IArticleRepository is everything the pipeline, the detector CLI and the
onboarding flow need from durable storage. The external URL of an article
is its identity: upsert_article_if_absent creates a record at most once per
URL and reports whether it did.
"""
import json
import sqlite3
import logging
import datetime
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Generator, Iterable, List, Optional, Set

from CompetitorWatch.Models import ArticleRecord, CrawlLogRecord, Source


logger = logging.getLogger(__name__)


class IArticleRepository(ABC):

    @abstractmethod
    def existing_urls(self, candidate_urls: Iterable[str]) -> Set[str]:
        """The subset of candidate_urls that already has an article, read as one snapshot."""
        pass

    @abstractmethod
    def upsert_article_if_absent(self, record: ArticleRecord) -> bool:
        """Creates the article unless its URL is known. True when a record was created."""
        pass

    @abstractmethod
    def append_crawl_log(self, record: CrawlLogRecord):
        pass

    @abstractmethod
    def list_sources(self, active_only: bool = True, source_ids: Optional[Iterable[int]] = None) -> List[Source]:
        pass

    @abstractmethod
    def add_source(self, source: Source) -> Source:
        """Stores a new source and returns it with its assigned id."""
        pass

    @abstractmethod
    def list_articles(self, source_id: Optional[int] = None) -> List[ArticleRecord]:
        pass

    @abstractmethod
    def latest_crawl_log(self, source_id: int) -> Optional[CrawlLogRecord]:
        pass

    def close(self):
        pass


# ----------------------------------------------------------------------------------------------------------------------

class InMemoryRepository(IArticleRepository):
    """Dict-backed repository for tests and dry runs."""

    def __init__(self, sources: Optional[Iterable[Source]] = None):
        self._lock = threading.Lock()
        self.articles: Dict[str, ArticleRecord] = {}
        self.crawl_logs: List[CrawlLogRecord] = []
        self.sources: Dict[int, Source] = {}
        for source in sources or []:
            self.add_source(source)

    def existing_urls(self, candidate_urls: Iterable[str]) -> Set[str]:
        with self._lock:
            return {url for url in candidate_urls if url in self.articles}

    def upsert_article_if_absent(self, record: ArticleRecord) -> bool:
        with self._lock:
            if record.external_url in self.articles:
                return False
            self.articles[record.external_url] = record.model_copy()
            return True

    def append_crawl_log(self, record: CrawlLogRecord):
        with self._lock:
            self.crawl_logs.append(record)

    def list_sources(self, active_only: bool = True, source_ids: Optional[Iterable[int]] = None) -> List[Source]:
        wanted = set(source_ids) if source_ids is not None else None
        return [s for s in sorted(self.sources.values(), key=lambda s: s.id)
                if (not active_only or s.is_active) and (wanted is None or s.id in wanted)]

    def add_source(self, source: Source) -> Source:
        with self._lock:
            source_id = source.id or (max(self.sources, default=0) + 1)
            stored = source.model_copy(update={'id': source_id})
            self.sources[source_id] = stored
            return stored

    def list_articles(self, source_id: Optional[int] = None) -> List[ArticleRecord]:
        return [a for a in self.articles.values() if source_id is None or a.source_id == source_id]

    def latest_crawl_log(self, source_id: int) -> Optional[CrawlLogRecord]:
        logs = [log for log in self.crawl_logs if log.source_id == source_id]
        # Later appends win ties
        return max(reversed(logs), key=lambda log: log.started_at) if logs else None


# ----------------------------------------------------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    parser_type TEXT NOT NULL,
    parser_config TEXT,  -- JSON document
    is_active INTEGER DEFAULT 1,
    genre TEXT
);

CREATE TABLE IF NOT EXISTS articles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL,
    external_url TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    published_at TEXT,
    image_url TEXT,
    raw_content TEXT,
    summary TEXT,
    category TEXT DEFAULT 'news',
    created_at TEXT NOT NULL,
    FOREIGN KEY (source_id) REFERENCES sources(id)
);
CREATE INDEX IF NOT EXISTS idx_articles_source ON articles(source_id);

CREATE TABLE IF NOT EXISTS crawl_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL,
    status TEXT NOT NULL,
    articles_found INTEGER DEFAULT 0,
    new_articles INTEGER DEFAULT 0,
    error_message TEXT,
    started_at TEXT NOT NULL,
    finished_at TEXT NOT NULL,
    duration_ms INTEGER DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_crawl_logs_source ON crawl_logs(source_id, started_at);
"""


def _serialize_datetime(dt: Optional[datetime.datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime.datetime]:
    return datetime.datetime.fromisoformat(s) if s else None


class SqliteRepository(IArticleRepository):
    """
    SQLite storage. The UNIQUE constraint on articles.external_url together with
    INSERT OR IGNORE makes article creation idempotent even for duplicate URLs
    inside one batch.
    """

    def __init__(self, db_path: str = ':memory:'):
        """
        Args:
            db_path: Path to the SQLite database file, or ":memory:".
        """
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None
        self._initialize_schema()

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            # The progress stream runs crawls on a worker thread, access is serialized by self._lock
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
        return self._connection

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        with self._lock:
            conn = self._get_connection()
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _initialize_schema(self):
        with self.transaction() as cursor:
            cursor.executescript(SCHEMA_SQL)

    def close(self):
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    # --- Articles ---

    def existing_urls(self, candidate_urls: Iterable[str]) -> Set[str]:
        urls = list(dict.fromkeys(candidate_urls))
        found: Set[str] = set()
        with self.transaction() as cursor:
            # Stay well below SQLITE_MAX_VARIABLE_NUMBER
            for start in range(0, len(urls), 500):
                chunk = urls[start:start + 500]
                placeholders = ', '.join('?' for _ in chunk)
                cursor.execute(f"SELECT external_url FROM articles WHERE external_url IN ({placeholders})", chunk)
                found.update(row['external_url'] for row in cursor.fetchall())
        return found

    def upsert_article_if_absent(self, record: ArticleRecord) -> bool:
        with self.transaction() as cursor:
            cursor.execute(
                """INSERT OR IGNORE INTO articles
                   (source_id, external_url, title, published_at, image_url, raw_content, summary, category, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (record.source_id, record.external_url, record.title, _serialize_datetime(record.published_at),
                 record.image_url, record.raw_content, record.summary, record.category,
                 datetime.datetime.now(datetime.timezone.utc).isoformat()))
            return cursor.rowcount == 1

    def list_articles(self, source_id: Optional[int] = None) -> List[ArticleRecord]:
        with self.transaction() as cursor:
            if source_id is None:
                cursor.execute("SELECT * FROM articles ORDER BY id")
            else:
                cursor.execute("SELECT * FROM articles WHERE source_id = ? ORDER BY id", (source_id,))
            rows = cursor.fetchall()
        return [ArticleRecord(source_id=row['source_id'],
                              external_url=row['external_url'],
                              title=row['title'],
                              published_at=_deserialize_datetime(row['published_at']),
                              image_url=row['image_url'],
                              raw_content=row['raw_content'] or '',
                              summary=row['summary'] or '',
                              category=row['category'] or 'news') for row in rows]

    # --- Crawl logs ---

    def append_crawl_log(self, record: CrawlLogRecord):
        with self.transaction() as cursor:
            cursor.execute(
                """INSERT INTO crawl_logs
                   (source_id, status, articles_found, new_articles, error_message, started_at, finished_at, duration_ms)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (record.source_id, record.status, record.articles_found, record.new_articles, record.error_message,
                 _serialize_datetime(record.started_at), _serialize_datetime(record.finished_at), record.duration_ms))

    def latest_crawl_log(self, source_id: int) -> Optional[CrawlLogRecord]:
        with self.transaction() as cursor:
            cursor.execute("SELECT * FROM crawl_logs WHERE source_id = ? ORDER BY started_at DESC, id DESC LIMIT 1",
                           (source_id,))
            row = cursor.fetchone()
        if row is None:
            return None
        return CrawlLogRecord(source_id=row['source_id'],
                              status=row['status'],
                              articles_found=row['articles_found'],
                              new_articles=row['new_articles'],
                              error_message=row['error_message'],
                              started_at=_deserialize_datetime(row['started_at']),
                              finished_at=_deserialize_datetime(row['finished_at']),
                              duration_ms=row['duration_ms'])

    # --- Sources ---

    def add_source(self, source: Source) -> Source:
        with self.transaction() as cursor:
            cursor.execute(
                "INSERT INTO sources (name, url, parser_type, parser_config, is_active, genre) VALUES (?, ?, ?, ?, ?, ?)",
                (source.name, source.url, source.parser_type, json.dumps(source.parser_config, ensure_ascii=False),
                 int(source.is_active), source.genre))
            source_id = cursor.lastrowid
        logger.info(f"Added source #{source_id} '{source.name}' ({source.parser_type})")
        return source.model_copy(update={'id': source_id})

    def list_sources(self, active_only: bool = True, source_ids: Optional[Iterable[int]] = None) -> List[Source]:
        query = "SELECT * FROM sources"
        clauses, params = [], []
        if active_only:
            clauses.append("is_active = 1")
        if source_ids is not None:
            ids = list(source_ids)
            if not ids:
                return []
            clauses.append(f"id IN ({', '.join('?' for _ in ids)})")
            params.extend(ids)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"

        with self.transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [Source(id=row['id'],
                       name=row['name'],
                       url=row['url'],
                       parser_type=row['parser_type'],
                       parser_config=json.loads(row['parser_config']) if row['parser_config'] else {},
                       is_active=bool(row['is_active']),
                       genre=row['genre']) for row in rows]
