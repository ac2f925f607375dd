import os

from dotenv import load_dotenv

load_dotenv()

class Settings:
    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- Telnyx (SMS) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_PUBLIC_KEY = os.environ.get("TELNYX_PUBLIC_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER")
    SMS_SEND_TIMEOUT_SECONDS = float(os.environ.get("SMS_SEND_TIMEOUT_SECONDS", "10"))
    SMS_SEND_ATTEMPTS = int(os.environ.get("SMS_SEND_ATTEMPTS", "3"))
    SMS_BACKOFF_MAX_SECONDS = float(os.environ.get("SMS_BACKOFF_MAX_SECONDS", "8"))
    DEFAULT_SMS_QUOTA = int(os.environ.get("DEFAULT_SMS_QUOTA", "500"))
    SMS_QUOTA_PERIOD_DAYS = int(os.environ.get("SMS_QUOTA_PERIOD_DAYS", "30"))

    # --- Dispatcher ---
    DISPATCH_INTERVAL_SECONDS = int(os.environ.get("DISPATCH_INTERVAL_SECONDS", "60"))
    DISPATCH_SLACK_SECONDS = int(os.environ.get("DISPATCH_SLACK_SECONDS", "60"))
    DISPATCH_BATCH_SIZE = int(os.environ.get("DISPATCH_BATCH_SIZE", "100"))
    CLAIM_LEASE_SECONDS = int(os.environ.get("CLAIM_LEASE_SECONDS", "300"))
    RECONCILE_INTERVAL_SECONDS = int(os.environ.get("RECONCILE_INTERVAL_SECONDS", "600"))

    # --- Inbound correlation ---
    RESPONSE_WINDOW_MINUTES = int(os.environ.get("RESPONSE_WINDOW_MINUTES", "30"))
    MAX_INBOUND_BODY_CHARS = int(os.environ.get("MAX_INBOUND_BODY_CHARS", "1000"))
    MAX_INBOUND_MEDIA = int(os.environ.get("MAX_INBOUND_MEDIA", "10"))
    # "reject" (strict) or "accept" (lenient) for ambiguous confirmation replies
    CONFIRMATION_DEFAULT = os.environ.get("CONFIRMATION_DEFAULT", "reject")

    # --- Sync ---
    SYNC_POLL_INTERVAL_SECONDS = float(os.environ.get("SYNC_POLL_INTERVAL_SECONDS", "1.0"))
    SYNC_GAP_GRACE_SECONDS = float(os.environ.get("SYNC_GAP_GRACE_SECONDS", "5.0"))
    SYNC_SESSION_BUFFER = int(os.environ.get("SYNC_SESSION_BUFFER", "500"))
    SYNC_SEND_TIMEOUT_SECONDS = float(os.environ.get("SYNC_SEND_TIMEOUT_SECONDS", "2.0"))
    SYNC_FETCH_LIMIT = int(os.environ.get("SYNC_FETCH_LIMIT", "500"))

    # --- Lifecycle ---
    DELETE_BATCH_SIZE = int(os.environ.get("DELETE_BATCH_SIZE", "200"))
    FEED_RETENTION_DAYS = int(os.environ.get("FEED_RETENTION_DAYS", "90"))
    CHANGE_LOG_RETENTION_DAYS = int(os.environ.get("CHANGE_LOG_RETENTION_DAYS", "14"))

    # --- Default Timezone ---
    DEFAULT_TIMEZONE = os.environ.get("DEFAULT_TIMEZONE", "America/Los_Angeles")


settings = Settings()
