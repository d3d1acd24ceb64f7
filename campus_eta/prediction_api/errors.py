class PredictionEngineError(Exception):
    """Base class for prediction engine errors."""
    pass


class NetworkError(PredictionEngineError):
    """Raised when a backend is unreachable, times out or answers non-2xx."""
    pass


class MalformedResponseError(NetworkError):
    """Raised when a backend answers with an unparseable or out-of-range payload."""
    pass


class CancellationError(PredictionEngineError):
    """Raised inside a request that was superseded by a newer one for the same key."""
    pass


class SubscriptionError(PredictionEngineError):
    """Raised when the live update channel cannot connect or subscribe."""
    pass


class InvalidOrderError(PredictionEngineError):
    """Raised when an order cannot be predicted, not even by the fallback."""
    pass


class UnknownPredictionError(PredictionEngineError):
    """Raised when an accuracy report references a prediction never issued."""
    pass


class MalformedEventError(PredictionEngineError):
    """Raised when a live channel message cannot be decoded."""
    pass
