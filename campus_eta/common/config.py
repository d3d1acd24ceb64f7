import os
from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

ML_API_URL = os.getenv("ML_API_URL", "http://localhost:8000")
BACKEND_API_URL = os.getenv("BACKEND_API_URL", "http://localhost:5000/api")
ML_BACKEND_MODE = os.getenv("ML_BACKEND_MODE", "http")

QUICK_TIMEOUT_S = float(os.getenv("QUICK_TIMEOUT_S", "2.0"))
DETAILED_TIMEOUT_S = float(os.getenv("DETAILED_TIMEOUT_S", "8.0"))
DETAILED_RETRIES = int(os.getenv("DETAILED_RETRIES", "1"))
MIN_ML_CONFIDENCE = float(os.getenv("MIN_ML_CONFIDENCE", "0.0"))

QUICK_TTL_S = float(os.getenv("QUICK_TTL_S", "30"))
BATCH_TTL_S = float(os.getenv("BATCH_TTL_S", "60"))

KAFKA_BOOTSTRAP_SERVERS = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
LIVE_TOPIC_PREFIX = os.getenv("LIVE_TOPIC_PREFIX", "predictions")
LIVE_MAX_BACKOFF_S = float(os.getenv("LIVE_MAX_BACKOFF_S", "30"))

DEMAND_SPIKE_WARNING_S = float(os.getenv("DEMAND_SPIKE_WARNING_S", "300"))
LOAD_INVALIDATE_UTILIZATION = float(os.getenv("LOAD_INVALIDATE_UTILIZATION", "0.95"))

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
ACCURACY_LOG_ENABLED = os.getenv("ACCURACY_LOG_ENABLED", "true").lower() in ("1", "true", "yes")
