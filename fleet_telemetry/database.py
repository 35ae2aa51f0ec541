import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from .config import DB_CONNECTION_TIMEOUT, DB_MAX_RETRIES, DB_RETRY_BASE_DELAY, DB_RETRY_MAX_DELAY
from .db_utils import open_connection, retry_on_db_lock
from .models import (DeathDetails, Event, HistoryRow, PersistentCounters, details_from_dict,
                     details_to_dict)

log = logging.getLogger("FleetTelemetry.Database")

COUNTERS_ROW_ID = 'global'


def init_db(db_path: str):
    log.info("Connecting to database and checking schema...")
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        cursor = conn.cursor()

        cursor.execute('PRAGMA journal_mode;')
        mode = cursor.fetchone()
        if mode and mode[0].lower() == 'wal':
            log.info("Database journal mode is set to WAL.")
        else:
            log.warning(f"Failed to set database journal mode to WAL. Current mode: {mode[0] if mode else 'unknown'}")

        # --- Primary event log ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp INTEGER NOT NULL,
                type TEXT NOT NULL,
                character TEXT NOT NULL,
                message TEXT NOT NULL,
                details TEXT,
                source_time INTEGER,
                expires_at INTEGER NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events (timestamp);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_type_timestamp ON events (type, timestamp);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_events_expires ON events (expires_at);')
        # Backfilled deaths are keyed on the secondary log's own timestamp
        cursor.execute('''
            CREATE UNIQUE INDEX IF NOT EXISTS idx_events_source_time
            ON events (type, source_time) WHERE source_time IS NOT NULL
        ''')

        # --- Gold / XP history ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS metric_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                metric TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                value INTEGER NOT NULL,
                bank_gold INTEGER,
                delta INTEGER NOT NULL,
                expires_at INTEGER NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_history_metric_time ON metric_history (metric, timestamp);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_history_expires ON metric_history (expires_at);')

        # --- Persistent counters (single row) ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS dashboard_stats (
                id TEXT PRIMARY KEY,
                kills INTEGER DEFAULT 0,
                deaths INTEGER DEFAULT 0,
                items_looted INTEGER DEFAULT 0,
                last_updated INTEGER
            )
        ''')

        # --- Collections owned by the game client; read-only here ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS deaths (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                time INTEGER NOT NULL,
                map TEXT,
                x REAL,
                y REAL,
                cause TEXT
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS entities (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                hp INTEGER,
                max_hp INTEGER,
                level INTEGER,
                map TEXT,
                x REAL,
                y REAL,
                server_region TEXT,
                server_identifier TEXT,
                last_seen INTEGER
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS respawns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                server_region TEXT,
                server_identifier TEXT,
                estimated_respawn INTEGER
            )
        ''')
    log.info("Database schema is valid and ready.")


def _row_to_event(row: sqlite3.Row) -> Event:
    raw_details = json.loads(row['details']) if row['details'] else {}
    try:
        details = details_from_dict(row['type'], raw_details)
    except (AttributeError, TypeError, ValueError):
        # Keep the row readable; an unparseable shape stays a plain dict
        log.debug(f"Stored {row['type']} details not in typed shape: {raw_details!r}")
        details = raw_details if isinstance(raw_details, dict) else {}
    return Event(
        timestamp=row['timestamp'],
        type=row['type'],
        character=row['character'],
        message=row['message'],
        details=details,
    )


# --- Events ---

@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_insert_event(db_path: str, event: Event, expires_at: int) -> int:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        cursor = conn.execute(
            'INSERT INTO events (timestamp, type, character, message, details, expires_at) VALUES (?, ?, ?, ?, ?, ?)',
            (event.timestamp, event.type, event.character, event.message,
             json.dumps(details_to_dict(event.details)), expires_at))
        return cursor.lastrowid


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_query_events(
    db_path: str,
    types: Optional[Iterable[str]] = None,
    exclude_types: Optional[Iterable[str]] = None,
    start: Optional[int] = None,
    end: Optional[int] = None,
    offset: int = 0,
    limit: Optional[int] = None,
    descending: bool = True,
    now: Optional[int] = None,
) -> List[Event]:
    """
    Query the event log.

    Args:
        types: Only return events of these types
        exclude_types: Never return events of these types
        start, end: Inclusive timestamp bounds (epoch ms)
        offset, limit: Cursor paging; limit None returns everything
        descending: Newest first when True, insertion order otherwise
        now: When given, rows past their expiry are treated as gone

    Returns:
        List of events
    """
    clauses, params = [], []
    if types is not None:
        types = list(types)
        if not types:
            return []
        clauses.append(f"type IN ({','.join('?' for _ in types)})")
        params.extend(types)
    if exclude_types:
        exclude_types = list(exclude_types)
        clauses.append(f"type NOT IN ({','.join('?' for _ in exclude_types)})")
        params.extend(exclude_types)
    if start is not None:
        clauses.append("timestamp >= ?")
        params.append(start)
    if end is not None:
        clauses.append("timestamp <= ?")
        params.append(end)
    if now is not None:
        clauses.append("expires_at > ?")
        params.append(now)

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    order = "DESC" if descending else "ASC"
    query = f"SELECT * FROM events {where} ORDER BY timestamp {order}, id {order} LIMIT ? OFFSET ?"
    params.extend([limit if limit is not None else -1, offset])

    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_count_events(db_path: str, event_type: str) -> int:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        return conn.execute("SELECT COUNT(*) FROM events WHERE type = ?", (event_type,)).fetchone()[0]


# --- History ---

@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_insert_history(db_path: str, row: HistoryRow, expires_at: int) -> int:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        cursor = conn.execute(
            'INSERT INTO metric_history (metric, timestamp, value, bank_gold, delta, expires_at) VALUES (?, ?, ?, ?, ?, ?)',
            (row.metric, row.timestamp, row.value, row.bank_gold, row.delta, expires_at))
        return cursor.lastrowid


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_query_history(db_path: str, metric: str, offset: int = 0, limit: int = 100,
                           now: Optional[int] = None) -> List[HistoryRow]:
    """Newest-first page of history rows for one metric. Correlated events are attached by the caller."""
    query = "SELECT * FROM metric_history WHERE metric = ?"
    params: List[Any] = [metric]
    if now is not None:
        query += " AND expires_at > ?"
        params.append(now)
    query += " ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        return [
            HistoryRow(metric=row['metric'], timestamp=row['timestamp'], value=row['value'],
                       delta=row['delta'], bank_gold=row['bank_gold'])
            for row in conn.execute(query, params).fetchall()
        ]


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_sum_positive_deltas(db_path: str, metric: str, since: int) -> int:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        total = conn.execute(
            "SELECT SUM(delta) FROM metric_history WHERE metric = ? AND timestamp >= ? AND delta > 0",
            (metric, since)).fetchone()[0]
    return total or 0


# --- Persistent counters ---

@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_load_counters(db_path: str) -> Optional[PersistentCounters]:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        row = conn.execute("SELECT * FROM dashboard_stats WHERE id = ?", (COUNTERS_ROW_ID,)).fetchone()
    if row is None:
        return None
    return PersistentCounters(kills=row['kills'], deaths=row['deaths'], items_looted=row['items_looted'],
                              last_updated=row['last_updated'] or 0)


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_save_counters(db_path: str, counters: PersistentCounters):
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        conn.execute("""
            INSERT INTO dashboard_stats (id, kills, deaths, items_looted, last_updated)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                kills=excluded.kills, deaths=excluded.deaths,
                items_looted=excluded.items_looted, last_updated=excluded.last_updated
        """, (COUNTERS_ROW_ID, counters.kills, counters.deaths, counters.items_looted, counters.last_updated))


# --- Secondary death log ---

@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_count_secondary_deaths(db_path: str) -> int:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        return conn.execute("SELECT COUNT(*) FROM deaths").fetchone()[0]


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_get_secondary_deaths(db_path: str) -> List[Dict[str, Any]]:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        rows = conn.execute("SELECT name, time, map, x, y, cause FROM deaths ORDER BY time ASC").fetchall()
    return [dict(row) for row in rows]


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_backfill_deaths(db_path: str, records: List[Dict[str, Any]], expires_at: int) -> int:
    """
    Insert secondary death records missing from the event log as synthesized death events.

    Records whose `time` matches a death already in the event log, either as a
    live death's timestamp or a backfilled death's source time, are skipped, so
    running this repeatedly never duplicates entries.

    Returns:
        Number of events inserted
    """
    if not records:
        return 0

    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        existing = {
            row[0] for row in conn.execute(
                "SELECT timestamp FROM events WHERE type = 'death' "
                "UNION SELECT source_time FROM events WHERE type = 'death' AND source_time IS NOT NULL").fetchall()
        }
        inserted = 0
        for record in records:
            source_time = record['time']
            if source_time in existing:
                continue
            details = DeathDetails(cause=record.get('cause'), map=record.get('map'), x=record.get('x'),
                                   y=record.get('y'), source_time=source_time)
            message = f"Died to {record['cause']}" if record.get('cause') else "Died"
            cursor = conn.execute(
                '''INSERT OR IGNORE INTO events (timestamp, type, character, message, details, source_time, expires_at)
                   VALUES (?, 'death', ?, ?, ?, ?, ?)''',
                (source_time, record['name'], message, json.dumps(details.to_dict()), source_time, expires_at))
            inserted += cursor.rowcount
            existing.add(source_time)
    if inserted:
        log.info(f"Backfilled {inserted} death event(s) from the secondary death log.")
    return inserted


# --- Read-only external collections ---

@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_get_special_monsters(db_path: str, limit: int = 20) -> List[Dict[str, Any]]:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        rows = conn.execute("SELECT * FROM entities ORDER BY last_seen DESC LIMIT ?", (limit,)).fetchall()
    return [
        {
            'type': row['type'],
            'hp': row['hp'],
            'maxHp': row['max_hp'] if row['max_hp'] is not None else row['hp'],
            'level': row['level'],
            'map': row['map'],
            'x': round(row['x'] or 0),
            'y': round(row['y'] or 0),
            'server': f"{row['server_region'] or ''}{row['server_identifier'] or ''}",
            'lastSeen': row['last_seen'],
        }
        for row in rows
    ]


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_get_respawns(db_path: str, now: int, limit: int = 20) -> List[Dict[str, Any]]:
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        rows = conn.execute("SELECT * FROM respawns ORDER BY estimated_respawn ASC LIMIT ?", (limit,)).fetchall()
    return [
        {
            'type': row['type'],
            'server': f"{row['server_region'] or ''}{row['server_identifier'] or ''}",
            'estimatedRespawn': row['estimated_respawn'],
            'timeUntil': max(0, (row['estimated_respawn'] or 0) - now),
        }
        for row in rows
    ]


# --- TTL expiry ---

def blocking_db_prune(db_path: str, now: int) -> Dict[str, int]:
    """Delete every event and history row whose expiry time has passed."""
    pruned = {}
    with open_connection(db_path, timeout=DB_CONNECTION_TIMEOUT) as conn:
        for table in ('events', 'metric_history'):
            cursor = conn.execute(f"DELETE FROM {table} WHERE expires_at <= ?", (now,))
            pruned[table] = cursor.rowcount
            if cursor.rowcount > 0:
                log.info(f"[DB_PRUNER] Pruned {cursor.rowcount} expired row(s) from '{table}'.")
    return pruned
