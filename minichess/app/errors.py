"""
=============================================================================
MINICHESS - Taxonomía de Errores
=============================================================================
Cuatro categorías:
- PRECONDITION: el llamador puede corregir y reenviar
- AUTHORIZATION: entrada potencialmente adversaria, nunca se reintenta
- CONSISTENCY: desincronización entre reglas de ajedrez y ledger
- EXTERNAL: falla de un colaborador externo (rail de valor, persistencia)

Ningún error deja el ledger en un estado intermedio.
=============================================================================
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categoría de error expuesta al llamador."""
    PRECONDITION = "PRECONDITION"
    AUTHORIZATION = "AUTHORIZATION"
    CONSISTENCY = "CONSISTENCY"
    EXTERNAL = "EXTERNAL"


class EscrowError(Exception):
    """Error base del núcleo de escrow."""

    code = "ESCROW_ERROR"
    category = ErrorCategory.PRECONDITION
    http_status = 400

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "category": self.category.value,
            "detail": self.message,
        }
        if self.details:
            payload["context"] = {k: str(v) for k, v in self.details.items()}
        return payload


# =============================================================================
# CATEGORÍAS
# =============================================================================

class PreconditionError(EscrowError):
    category = ErrorCategory.PRECONDITION


class AuthorizationError(EscrowError):
    category = ErrorCategory.AUTHORIZATION
    http_status = 403


class ConsistencyError(EscrowError):
    category = ErrorCategory.CONSISTENCY
    http_status = 409


class ExternalServiceError(EscrowError):
    category = ErrorCategory.EXTERNAL
    http_status = 502


# =============================================================================
# PRECONDICIONES
# =============================================================================

class InvalidDeposit(PreconditionError):
    code = "INVALID_DEPOSIT"


class GameNotFound(PreconditionError):
    code = "GAME_NOT_FOUND"
    http_status = 404


class GameNotJoinable(PreconditionError):
    code = "GAME_NOT_JOINABLE"
    http_status = 409


class SelfJoinForbidden(PreconditionError):
    code = "SELF_JOIN_FORBIDDEN"


class GameNotActive(PreconditionError):
    code = "GAME_NOT_ACTIVE"
    http_status = 409


class NotAPlayer(PreconditionError):
    code = "NOT_A_PLAYER"
    http_status = 403


class InvalidWinner(PreconditionError):
    code = "INVALID_WINNER"


class NonCapturableType(PreconditionError):
    code = "NON_CAPTURABLE_TYPE"


class GameNotTimedOut(PreconditionError):
    code = "GAME_NOT_TIMED_OUT"
    http_status = 409


class NotCancellable(PreconditionError):
    code = "NOT_CANCELLABLE"
    http_status = 409


class NotCreator(PreconditionError):
    code = "NOT_CREATOR"
    http_status = 403


class GracePeriodActive(PreconditionError):
    code = "GRACE_PERIOD_ACTIVE"
    http_status = 409


class IllegalMove(PreconditionError):
    code = "ILLEGAL_MOVE"


# =============================================================================
# AUTORIZACIÓN
# =============================================================================

class InvalidSignature(AuthorizationError):
    code = "INVALID_SIGNATURE"


class PlayerNotAuthorized(AuthorizationError):
    code = "PLAYER_NOT_AUTHORIZED"


class CaptureReplayed(AuthorizationError):
    code = "CAPTURE_REPLAYED"
    http_status = 409


class CaptureLimitExceeded(AuthorizationError):
    code = "CAPTURE_LIMIT_EXCEEDED"


class RelayRejected(AuthorizationError):
    code = "RELAY_REJECTED"


# =============================================================================
# CONSISTENCIA
# =============================================================================

class InsufficientBalance(ConsistencyError):
    code = "INSUFFICIENT_BALANCE"


# =============================================================================
# COLABORADORES EXTERNOS
# =============================================================================

class ValueTransferFailed(ExternalServiceError):
    code = "VALUE_TRANSFER_FAILED"


class PersistenceFailed(ExternalServiceError):
    code = "PERSISTENCE_FAILED"


class SponsorshipExhausted(ExternalServiceError):
    code = "SPONSORSHIP_EXHAUSTED"
    http_status = 402


def error_payload(exc: Optional[BaseException]) -> Dict[str, Any]:
    """Serializa cualquier excepción para respuestas y eventos."""
    if isinstance(exc, EscrowError):
        return exc.to_dict()
    return {
        "error": "INTERNAL_ERROR",
        "category": ErrorCategory.EXTERNAL.value,
        "detail": str(exc) if exc else "",
    }
