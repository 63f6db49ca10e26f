import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from .config import DB_PATH, PROFILE_SCHEMA_VERSION, SIGNAL_RETENTION_DAYS

logger = logging.getLogger(__name__)

CHUNK_SIZE = 900  # Stay under SQLite's bound-parameter limit


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    One connection per thread, periodic SELECT 1 health checks, cleanup of
    connections owned by threads that have exited, and per-thread tracking
    of nested get_db() depth so only the outermost context commits.
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _health_check(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _drop(self, thread_id: int) -> None:
        conn = self._connections.pop(thread_id, None)
        self._last_health_check.pop(thread_id, None)
        self._transaction_depth.pop(thread_id, None)
        if conn is not None:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection for thread {thread_id}: {e}")

    def _maybe_cleanup(self, force: bool = False):
        """Close connections whose owning thread has exited."""
        now = time.time()
        if not force and now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections) - alive_threads
        for thread_id in dead_threads:
            self._drop(thread_id)

        if dead_threads:
            logger.info(f"Connection pool cleanup: removed {len(dead_threads)} dead connections, {len(self._connections)} remaining")

    def get_connection(self) -> sqlite3.Connection:
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._maybe_cleanup()
            conn = self._connections.get(thread_id)

            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._health_check(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    self._drop(thread_id)
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._maybe_cleanup(force=True)
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections). "
                            f"Possible connection leak or too many threads."
                        )
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")

            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        with self._lock:
            for thread_id in list(self._connections):
                self._drop(thread_id)
            logger.info("Connection pool closed")


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS movies (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                year INTEGER,
                genres TEXT,        -- JSON list, lower-cased
                directors TEXT,     -- JSON list
                rating REAL,        -- 0-10
                popularity REAL DEFAULT 0,
                plot TEXT,
                cast_members TEXT   -- JSON list
            );

            CREATE TABLE IF NOT EXISTS movie_genres (movie_id TEXT, genre TEXT, PRIMARY KEY (movie_id, genre));
            CREATE TABLE IF NOT EXISTS movie_directors (movie_id TEXT, director TEXT, PRIMARY KEY (movie_id, director));

            CREATE TABLE IF NOT EXISTS ratings (
                user_id TEXT,
                movie_id TEXT,
                rating REAL,
                rated_at TEXT,
                PRIMARY KEY (user_id, movie_id)
            );

            CREATE TABLE IF NOT EXISTS watchlist (
                user_id TEXT,
                movie_id TEXT,
                added_at TEXT,
                PRIMARY KEY (user_id, movie_id)
            );

            CREATE TABLE IF NOT EXISTS behavioral_profiles (
                user_id TEXT PRIMARY KEY,
                profile_data TEXT,  -- JSON blob
                updated_at TEXT,
                schema_version INTEGER DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS behavior_signals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                movie_id TEXT NOT NULL,
                action TEXT NOT NULL,
                value REAL,
                context TEXT,       -- JSON object
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_movie_rating ON movies(rating);
            CREATE INDEX IF NOT EXISTS idx_movie_year ON movies(year);
            CREATE INDEX IF NOT EXISTS idx_mg_genre ON movie_genres(genre);
            CREATE INDEX IF NOT EXISTS idx_md_director ON movie_directors(director);
            CREATE INDEX IF NOT EXISTS idx_ratings_user ON ratings(user_id);
            CREATE INDEX IF NOT EXISTS idx_watchlist_user ON watchlist(user_id);
            CREATE INDEX IF NOT EXISTS idx_signals_user_time ON behavior_signals(user_id, created_at);
        """)


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts
    share the outer transaction.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def load_json(val):
    """Safely load a JSON list from a db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return []


def _movie_row_to_dict(row: sqlite3.Row) -> dict:
    return {
        'id': row['id'],
        'title': row['title'],
        'year': row['year'],
        'genres': load_json(row['genres']),
        'directors': load_json(row['directors']),
        'rating': row['rating'],
        'popularity': row['popularity'],
        'plot': row['plot'] or "",
        'cast': load_json(row['cast_members']),
    }


def upsert_movies(movies: list[dict]) -> int:
    """
    Insert or replace movie rows and keep the genre/director tables in sync.

    Each dict must already be normalized (see CandidateMovie.to_dict()).
    """
    if not movies:
        return 0

    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO movies
            (id, title, year, genres, directors, rating, popularity, plot, cast_members)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [(
            m['id'], m['title'], m.get('year'),
            json.dumps(list(m.get('genres', []))), json.dumps(list(m.get('directors', []))),
            m.get('rating'), m.get('popularity', 0.0), m.get('plot', ""),
            json.dumps(list(m.get('cast', []))),
        ) for m in movies])

        ids = [m['id'] for m in movies]
        for i in range(0, len(ids), CHUNK_SIZE):
            chunk = ids[i:i + CHUNK_SIZE]
            placeholders = ','.join('?' * len(chunk))
            conn.execute(f"DELETE FROM movie_genres WHERE movie_id IN ({placeholders})", chunk)
            conn.execute(f"DELETE FROM movie_directors WHERE movie_id IN ({placeholders})", chunk)

        conn.executemany(
            "INSERT OR IGNORE INTO movie_genres (movie_id, genre) VALUES (?, ?)",
            [(m['id'], g) for m in movies for g in m.get('genres', [])],
        )
        conn.executemany(
            "INSERT OR IGNORE INTO movie_directors (movie_id, director) VALUES (?, ?)",
            [(m['id'], d) for m in movies for d in m.get('directors', [])],
        )
    return len(movies)


def load_movie(movie_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM movies WHERE id = ?", (movie_id,)).fetchone()
        return _movie_row_to_dict(row) if row else None


def load_movies(movie_ids: list[str]) -> dict[str, dict]:
    """Batch-load movies keyed by id; unknown ids are simply absent."""
    found: dict[str, dict] = {}
    with get_db(read_only=True) as conn:
        for i in range(0, len(movie_ids), CHUNK_SIZE):
            chunk = movie_ids[i:i + CHUNK_SIZE]
            placeholders = ','.join('?' * len(chunk))
            for row in conn.execute(f"SELECT * FROM movies WHERE id IN ({placeholders})", chunk):
                found[row['id']] = _movie_row_to_dict(row)
    return found


def load_all_movies() -> list[dict]:
    with get_db(read_only=True) as conn:
        return [_movie_row_to_dict(row) for row in conn.execute("SELECT * FROM movies ORDER BY id")]


def load_movies_by_genres(genres: list[str], limit: int, exclude: set[str] | None = None) -> list[dict]:
    """Movies sharing at least one genre, best rated first."""
    if not genres or limit <= 0:
        return []
    exclude = exclude or set()
    lowered = sorted({g.lower() for g in genres})
    placeholders = ','.join('?' * len(lowered))

    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT m.* FROM movies m
            WHERE m.id IN (SELECT movie_id FROM movie_genres WHERE genre IN ({placeholders}))
            ORDER BY m.rating IS NULL, m.rating DESC, m.popularity DESC, m.id
            LIMIT ?
        """, (*lowered, limit + len(exclude))).fetchall()

    movies = [_movie_row_to_dict(r) for r in rows if r['id'] not in exclude]
    return movies[:limit]


def load_top_rated(limit: int, exclude: set[str] | None = None) -> list[dict]:
    if limit <= 0:
        return []
    exclude = exclude or set()
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT * FROM movies
            WHERE rating IS NOT NULL
            ORDER BY rating DESC, popularity DESC, id
            LIMIT ?
        """, (limit + len(exclude),)).fetchall()

    movies = [_movie_row_to_dict(r) for r in rows if r['id'] not in exclude]
    return movies[:limit]


def save_rating(user_id: str, movie_id: str, rating: float) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO ratings (user_id, movie_id, rating, rated_at)
            VALUES (?, ?, ?, ?)
        """, (user_id, movie_id, rating, datetime.now().isoformat()))


def add_to_watchlist(user_id: str, movie_id: str) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR IGNORE INTO watchlist (user_id, movie_id, added_at) VALUES (?, ?, ?)
        """, (user_id, movie_id, datetime.now().isoformat()))


def load_user_ratings(user_id: str) -> dict[str, float]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT movie_id, rating FROM ratings WHERE user_id = ?", (user_id,))
        return {row['movie_id']: row['rating'] for row in rows}


def load_watchlist(user_id: str) -> list[str]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT movie_id FROM watchlist WHERE user_id = ? ORDER BY added_at, movie_id", (user_id,)
        )
        return [row['movie_id'] for row in rows]


def load_behavioral_profile(user_id: str) -> dict | None:
    """Return the stored profile blob, or None if absent or written by an older schema."""
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT profile_data, schema_version FROM behavioral_profiles WHERE user_id = ?
        """, (user_id,)).fetchone()

    if not row:
        return None
    if row['schema_version'] != PROFILE_SCHEMA_VERSION:
        logger.debug(f"Ignoring profile for {user_id} - schema version {row['schema_version']} != {PROFILE_SCHEMA_VERSION}")
        return None
    return json.loads(row['profile_data'])


def save_behavioral_profile(user_id: str, profile_data: dict) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO behavioral_profiles (user_id, profile_data, updated_at, schema_version)
            VALUES (?, ?, ?, ?)
        """, (user_id, json.dumps(profile_data), datetime.now().isoformat(), PROFILE_SCHEMA_VERSION))


def append_behavior_signal(signal: dict) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT INTO behavior_signals (user_id, movie_id, action, value, context, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            signal['user_id'], signal['movie_id'], signal['action'], signal.get('value'),
            json.dumps(signal.get('context') or {}), signal['timestamp'],
        ))


def load_behavior_signals(user_id: str, since: datetime | None = None, limit: int = 100) -> list[dict]:
    """Most recent signals for a user, newest first."""
    query = "SELECT user_id, movie_id, action, value, context, created_at FROM behavior_signals WHERE user_id = ?"
    params: list = [user_id]
    if since is not None:
        query += " AND created_at >= ?"
        params.append(since.isoformat())
    query += " ORDER BY created_at DESC, id DESC LIMIT ?"
    params.append(limit)

    with get_db(read_only=True) as conn:
        return [{
            'user_id': row['user_id'],
            'movie_id': row['movie_id'],
            'action': row['action'],
            'value': row['value'],
            'context': json.loads(row['context']) if row['context'] else {},
            'timestamp': row['created_at'],
        } for row in conn.execute(query, params)]


def purge_old_signals(retention_days: int = SIGNAL_RETENTION_DAYS) -> int:
    """Delete audit-log signals older than the retention window."""
    cutoff = (datetime.now() - timedelta(days=retention_days)).isoformat()
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM behavior_signals WHERE created_at < ?", (cutoff,))
        return cursor.rowcount


def delete_user_data(user_id: str) -> None:
    """Remove a user's learned profile and signal history."""
    with get_db() as conn:
        conn.execute("DELETE FROM behavioral_profiles WHERE user_id = ?", (user_id,))
        conn.execute("DELETE FROM behavior_signals WHERE user_id = ?", (user_id,))


def get_stats() -> dict[str, int]:
    with get_db(read_only=True) as conn:
        return {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in ("movies", "ratings", "watchlist", "behavioral_profiles", "behavior_signals")
        }
