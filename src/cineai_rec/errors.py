"""Error taxonomy for the recommendation engine."""


class EngineError(Exception):
    code = "engine_error"
    status = 500

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.code)
        if code:
            self.code = code


class InvalidRequestError(EngineError):
    code = "invalid_request"
    status = 400


class InvalidWeightsError(InvalidRequestError):
    code = "invalid_weights"


class CatalogUnavailableError(EngineError):
    code = "catalog_unavailable"
    status = 503


class ProfileStoreError(EngineError):
    code = "profile_store_unavailable"
    status = 503


class EmbeddingProviderError(EngineError):
    code = "embedding_provider_error"
    status = 502


class CircuitOpenError(EngineError):
    code = "circuit_open"
    status = 503
