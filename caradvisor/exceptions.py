"""Application-specific exceptions.

Every failure a request can hit is one of the classes below. Each carries the
machine-readable ``code`` and HTTP ``status`` that the error handler registered
in :mod:`caradvisor.factory` renders as ``{"error": code, "message": ...}``.
"""

from __future__ import annotations


class CarAdvisorError(Exception):
    """Base class for errors that map onto an HTTP response."""

    code = "Server error"
    status = 500
    message = "Sunucu hatası, lütfen daha sonra tekrar deneyin."

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Serialize the error into a JSON-friendly dictionary."""

        return {"error": self.code, "message": self.message}


class ValidationError(CarAdvisorError):
    """Raised when input validation fails.

    Parameters
    ----------
    message:
        Human-readable error message.
    field:
        Optional name of the field/parameter that failed validation.
    code:
        Optional machine-readable error code (defaults to ``invalid_params``).
    """

    code = "invalid_params"
    status = 400
    message = "Geçersiz istek parametreleri."

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.field = field

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field is not None:
            data["field"] = self.field
        return data


class UnknownProductError(ValidationError):
    code = "unknown_product"
    message = "Bilinmeyen ürün."


class RateLimitedError(CarAdvisorError):
    code = "too_many_requests"
    status = 429
    message = "Çok fazla istek gönderdiniz, lütfen biraz sonra tekrar deneyin."

    def __init__(self, retry_after: int = 0) -> None:
        super().__init__()
        self.retry_after = retry_after


class UnauthorizedError(CarAdvisorError):
    code = "unauthorized"
    status = 401
    message = "Oturum açmanız gerekiyor."


class InvalidCredentialError(UnauthorizedError):
    code = "invalid_token"
    message = "Oturum bilgisi geçersiz veya süresi dolmuş."


class IdentityNotConfiguredError(CarAdvisorError):
    """The token trust root was never loaded; requests must fail closed."""

    code = "firestore_not_initialized"
    message = "Kimlik doğrulama servisi hazır değil."


class StoreNotInitializedError(CarAdvisorError):
    code = "firestore_not_initialized"
    message = "Kredi deposu hazır değil."


class QuotaExhaustedError(CarAdvisorError):
    code = "limit_exceeded"
    status = 403
    message = "Öneri hakkınız bitti. Devam etmek için kredi satın alabilirsiniz."


class UpstreamGenerationError(CarAdvisorError):
    """The language-model call failed, timed out or returned nothing."""

    code = "Server error"
    message = "Öneri servisine ulaşılamadı, lütfen daha sonra tekrar deneyin."

    def __init__(self, reason: str = "CALL_FAILED") -> None:
        super().__init__()
        self.reason = reason


class MalformedGenerationOutputError(CarAdvisorError):
    code = "Invalid JSON from OpenAI"
    message = "Öneri servisi geçersiz bir cevap döndürdü. Krediniz iade edildi."


class LedgerUnavailableError(CarAdvisorError):
    """A ledger transaction failed and was rolled back."""

    code = "Server error"

    def __init__(self, operation: str = "") -> None:
        super().__init__()
        self.operation = operation


class PurchaseProcessingError(CarAdvisorError):
    """Server-side failure while crediting a purchase."""

    code = "server_error"
    message = "Satın alma işlenemedi, lütfen daha sonra tekrar deneyin."
