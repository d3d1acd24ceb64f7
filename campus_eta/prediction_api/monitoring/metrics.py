from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# PROMETHEUS METRICS
# =============================================================================

# Counters
PREDICTIONS_SERVED = Counter(
    'prediction_api_predictions_served_total',
    'Total predictions returned to callers',
    ['kind', 'source']
)

FALLBACKS = Counter(
    'prediction_api_fallbacks_total',
    'Total predictions replaced by the local fallback',
    ['kind', 'reason']
)

CACHE_LOOKUPS = Counter(
    'prediction_api_cache_lookups_total',
    'Total prediction cache lookups',
    ['result']
)

SUPERSEDED_REQUESTS = Counter(
    'prediction_api_superseded_requests_total',
    'Total in-flight requests superseded by a newer request for the same key',
    ['kind']
)

BACKEND_ERRORS = Counter(
    'prediction_api_backend_errors_total',
    'Total backend request failures',
    ['operation', 'error_type']
)

LIVE_EVENTS = Counter(
    'prediction_api_live_events_total',
    'Total live channel events processed',
    ['type', 'status']
)

ACCURACY_REPORTS = Counter(
    'prediction_api_accuracy_reports_total',
    'Total accuracy reports ingested',
    ['classification']
)

# Gauges
CACHE_ENTRIES = Gauge(
    'prediction_api_cache_entries',
    'Number of entries currently held by the prediction cache'
)

LIVE_SUBSCRIPTIONS = Gauge(
    'prediction_api_live_subscriptions',
    'Number of vendors subscribed on the live channel'
)

# Histograms
BACKEND_LATENCY = Histogram(
    'prediction_api_backend_latency_seconds',
    'Latency of backend prediction requests',
    ['operation'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 4.0, 8.0]
)

ACCURACY_ERROR = Histogram(
    'prediction_api_accuracy_error_minutes',
    'Absolute error between predicted and actual ready time',
    buckets=[0.5, 1, 2, 3, 5, 8, 13, 21]
)
