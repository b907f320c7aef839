# sitetelemetry/config.py
# Pipeline tunables. Everything can be overridden from the environment / .env.
import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Quality derivation
FUTURE_SKEW_MINUTES = int(os.getenv("TELEMETRY_FUTURE_SKEW_MINUTES", "5"))
STALE_AFTER_HOURS = int(os.getenv("TELEMETRY_STALE_AFTER_HOURS", "24"))

# Anomaly detection
BASELINE_HOURS = int(os.getenv("ANOMALY_BASELINE_HOURS", "24"))
BASELINE_SAMPLE_CAP = int(os.getenv("ANOMALY_BASELINE_SAMPLE_CAP", "5000"))
MIN_BASELINE_SAMPLES = int(os.getenv("ANOMALY_MIN_SAMPLES", "10"))
ZSCORE_THRESHOLD = float(os.getenv("ANOMALY_ZSCORE_THRESHOLD", "2.5"))
DRIFT_PERCENT_THRESHOLD = float(os.getenv("ANOMALY_DRIFT_PERCENT", "15"))
VARIABILITY_CV_THRESHOLD = float(os.getenv("ANOMALY_CV_THRESHOLD", "0.2"))
DEFAULT_ANALYSIS_WINDOW = timedelta(minutes=int(os.getenv("ANOMALY_WINDOW_MINUTES", "60")))
MAX_TOP_RECOMMENDATIONS = int(os.getenv("ANOMALY_MAX_RECOMMENDATIONS", "5"))

# Ingestion error listing bounds
ERROR_LIMIT_MIN = 1
ERROR_LIMIT_MAX = int(os.getenv("INGESTION_ERROR_LIMIT_MAX", "200"))

# API
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
# create tables on startup (local sqlite / dev only)
CREATE_TABLES = os.getenv("CREATE_TABLES", "false").lower() in ("1", "true", "yes")
# readings buffered per websocket subscriber before new ones are dropped
LIVE_QUEUE_SIZE = int(os.getenv("LIVE_QUEUE_SIZE", "1000"))
