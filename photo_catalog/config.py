import os
from dotenv import load_dotenv

load_dotenv()

DB_URL = os.getenv("DB_URL", "sqlite:///./catalog.db")
DB_CONNECT_ARGS = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Async bridge pools
CATALOG_WORKERS = max(1, int(os.getenv("CATALOG_WORKERS", "8")))
STORAGE_WORKERS = max(1, int(os.getenv("STORAGE_WORKERS", "4")))
FANOUT_LIMIT = max(1, int(os.getenv("FANOUT_LIMIT", "16")))

# Upload validation
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE_BYTES", str(50 * 1024 * 1024)))
ALLOWED_CONTENT_TYPES = frozenset(
    value.strip().lower()
    for value in os.getenv(
        "ALLOWED_CONTENT_TYPES", "image/jpeg,image/jpg,image/png,image/gif,image/webp"
    ).split(",")
    if value.strip()
)

# Presigned grant lifetimes
WRITE_GRANT_TTL_MINUTES = max(15, min(60, int(os.getenv("WRITE_GRANT_TTL_MINUTES", "15"))))
READ_GRANT_TTL_MINUTES = max(1, min(24 * 60, int(os.getenv("READ_GRANT_TTL_MINUTES", "60"))))

# Listing
DEFAULT_PAGE_SIZE = max(1, int(os.getenv("DEFAULT_PAGE_SIZE", "20")))
MAX_PAGE_SIZE = max(DEFAULT_PAGE_SIZE, int(os.getenv("MAX_PAGE_SIZE", "100")))
MAX_BATCH_TAG_FILES = max(1, int(os.getenv("MAX_BATCH_TAG_FILES", "100")))

# Object storage
S3_BUCKET = os.getenv("S3_BUCKET", "photo-catalog")
S3_REGION = os.getenv("S3_REGION", "us-east-1")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "")
AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID", "")
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY", "")

# Identity
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production-0123456789abcdef")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_ISSUER = os.getenv("JWT_ISSUER", "")

# Rate limiting
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "600"))
REDIS_URL = os.getenv("REDIS_URL", "")

# Stale upload sweeper
ENABLE_CLEANER = os.getenv("ENABLE_CLEANER", "true").lower() in {"true", "1", "yes"}
STALE_UPLOAD_HOURS = int(os.getenv("STALE_UPLOAD_HOURS", "24"))
