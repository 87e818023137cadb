import os

# Database Configuration
# Uses default credentials for local Docker Compose setup
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/algosync_db")

# Application Metadata
PROJECT_NAME = "AlgoSync Initial Data Sync Service"
VERSION = "1.0.0"

# Remote activity API (solved.ac)
SOLVEDAC_API_URL = os.getenv("SOLVEDAC_API_URL", "https://solved.ac/api/v3")
API_TIMEOUT_SECONDS = float(os.getenv("API_TIMEOUT_SECONDS", 10))

# Batch planning
DEFAULT_SYNC_PERIOD_MONTHS = int(os.getenv("DEFAULT_SYNC_PERIOD_MONTHS", 6))
DEFAULT_BATCH_SIZE = int(os.getenv("DEFAULT_BATCH_SIZE", 100))
AVERAGE_ITEMS_PER_MONTH = int(os.getenv("AVERAGE_ITEMS_PER_MONTH", 75)) # Empirical submissions per month

# Retry policy for remote fetches
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", 3))
RETRY_BASE_DELAY_MS = int(os.getenv("RETRY_BASE_DELAY_MS", 1000))
RETRY_MAX_DELAY_MS = int(os.getenv("RETRY_MAX_DELAY_MS", 60000))
RETRY_BACKOFF_MULTIPLIER = float(os.getenv("RETRY_BACKOFF_MULTIPLIER", 2.0))

# Saga thresholds
PARTIAL_ACCEPT_THRESHOLD = float(os.getenv("PARTIAL_ACCEPT_THRESHOLD", 0.7)) # Success rate needed to keep partial data
RESUME_FAILURE_RATIO = float(os.getenv("RESUME_FAILURE_RATIO", 0.5)) # Failed share of batches above which resume is refused
MAX_RESUME_ATTEMPTS = int(os.getenv("MAX_RESUME_ATTEMPTS", 3))
MAX_CONCURRENT_BATCHES = int(os.getenv("MAX_CONCURRENT_BATCHES", 0)) # 0 = one task per batch, no cap
SAGA_TIMEOUT_SECONDS = float(os.getenv("SAGA_TIMEOUT_SECONDS", 0)) # 0 = wait for every batch

# Outbox Sweeper Configuration
POLLING_INTERVAL = int(os.getenv("POLLING_INTERVAL", 1)) # Sweeper checks for due events every N seconds
OUTBOX_MAX_RETRIES = int(os.getenv("OUTBOX_MAX_RETRIES", 5)) # Max relay retries for an event
OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", 50)) # How many events to fetch per poll
OUTBOX_RETENTION_DAYS = int(os.getenv("OUTBOX_RETENTION_DAYS", 7))
