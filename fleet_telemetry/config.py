import os

# --- Configuration ---
# The database file path.
# This is a relative path by default, so it will be created in the current
# working directory. It can be overridden with the FLEET_TELEMETRY_DB_PATH
# environment variable.
DATABASE_FILE = os.getenv('FLEET_TELEMETRY_DB_PATH', 'fleet_telemetry.db')

SERVER_HOST = os.getenv('FLEET_TELEMETRY_HOST', '0.0.0.0')
SERVER_PORT = int(os.getenv('FLEET_TELEMETRY_PORT', '8765'))
WEBSOCKET_PATH = '/ws'
WEBSOCKET_HEARTBEAT_SECONDS = 10

# --- Task Cadence ---
SNAPSHOT_INTERVAL_SECONDS = 10  # Gold/XP sampling + history tick
BROADCAST_INTERVAL_SECONDS = 1  # Incremental "update" push to observers
HEARTBEAT_LOG_INTERVAL_SECONDS = 30
DB_PRUNE_INTERVAL_MINUTES = 60  # How often expired rows are deleted
STORE_CONNECT_RETRY_SECONDS = 5  # Delay between store connection / reconciliation attempts

# --- Rate Windows ---
RATE_WINDOW_MS = 3_600_000  # Samples older than this are pruned
GOLD_RATE_MIN_HOUR_FRACTION = 0.01  # ~36 seconds of samples
XP_RATE_MIN_HOUR_FRACTION = 0.08  # ~5 minutes of samples
XP_DELTA_REJECT_THRESHOLD = 1_000_000  # Larger jumps are reconnect/recalculation artifacts

# --- Event Correlation ---
CORRELATION_BEFORE_MS = 5000
LIVE_CORRELATION_AFTER_MS = 1000  # goldEntry/xpEntry pushed as the delta happens
HISTORY_CORRELATION_AFTER_MS = 5000  # history rows fetched on demand
GOLD_EVENT_TYPES = ('sell', 'buy', 'kill', 'loot', 'banking', 'trade', 'upgrade')
XP_EVENT_TYPES = ('kill', 'levelup')

# --- Cached Aggregates ---
XP_AGGREGATE_CACHE_SECONDS = 30
XP_AGGREGATE_WINDOW_MS = 3_600_000

# --- Data Retention ---
DB_EVENTS_RETENTION_DAYS = 7
DB_HISTORY_RETENTION_DAYS = 30

# --- Paging ---
DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 500
FULL_EVENTS_LIMIT = 50
FULL_ERRORS_LIMIT = 50
FULL_HISTORY_LIMIT = 100
EXTERNAL_LIST_LIMIT = 20  # Special monsters / respawns per request

# --- Ingestion ---
COUNTER_FLUSH_EVERY_EVENTS = 10  # Flush persistent counters when kills+deaths+items hits a multiple
LEVELUP_COOLDOWN_MS = 10_000
ENTITY_TYPE_CACHE_SIZE = 100

# --- Database Concurrency Configuration ---
DB_THREAD_POOL_SIZE = 4
DB_CONNECTION_TIMEOUT = 30.0  # seconds
DB_MAX_RETRIES = 3  # Number of retry attempts for locked database
DB_RETRY_BASE_DELAY = 0.5  # Base delay between retries (seconds)
DB_RETRY_MAX_DELAY = 5.0  # Maximum delay between retries (seconds)
