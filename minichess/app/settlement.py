"""
=============================================================================
MINICHESS - Motor de Liquidación de Capturas
=============================================================================
Función de transición que, dada una captura validada, mueve valor entre los
dos balances según la tabla fija de valores por pieza.

Tabla (unidades por pieza capturada):
    Peón 0.05 | Caballo 0.15 | Alfil 0.15 | Torre 0.25 | Dama 0.50
    Rey: no capturable (el fin de partida va por la liquidación)

Material capturable por bando: 8×0.05 + 2×0.15 + 2×0.15 + 2×0.25 + 0.50
= 2.00 ≤ 2.50 de escrow. La conservación sale de la construcción de la
tabla, no de una verificación aparte.
=============================================================================
"""

import time
from decimal import Decimal
from enum import IntEnum
from typing import Optional, Tuple

from .config import EscrowConfig
from .errors import (
    GameNotActive,
    InsufficientBalance,
    InvalidWinner,
    NonCapturableType,
    NotAPlayer,
)
from .ledger import ZERO, Clock, EndReason, Game, GameStatus


class PieceType(IntEnum):
    """Tipos de pieza (misma numeración que python-chess)."""
    PAWN = 1
    KNIGHT = 2
    BISHOP = 3
    ROOK = 4
    QUEEN = 5
    KING = 6


def parse_piece_type(raw) -> PieceType:
    """Acepta número o nombre ("pawn", "QUEEN")."""
    if isinstance(raw, PieceType):
        return raw
    if isinstance(raw, str) and not raw.isdigit():
        try:
            return PieceType[raw.strip().upper()]
        except KeyError:
            raise NonCapturableType(f"Tipo de pieza desconocido: {raw}")
    try:
        return PieceType(int(raw))
    except (TypeError, ValueError):
        raise NonCapturableType(f"Tipo de pieza desconocido: {raw}")


class CaptureSettlementEngine:
    """Único mutador de balances vivos durante la partida."""

    def __init__(self, config: Optional[EscrowConfig] = None, clock: Clock = time.time):
        self.config = config or EscrowConfig()
        self.clock = clock

    def piece_value(self, piece_type) -> Decimal:
        piece = parse_piece_type(piece_type)
        if piece == PieceType.KING:
            raise NonCapturableType(
                "El rey no se captura: el fin de partida se liquida con endGame",
                piece_type=piece.name,
            )
        value = self.config.piece_values.get(int(piece))
        if value is None:
            raise NonCapturableType(f"Pieza sin valor configurado: {piece.name}")
        return value

    def check_capture(self, game: Game, captor: str, piece_type) -> Decimal:
        """Valida una captura sin mutar. Retorna el monto a transferir."""
        if game.status != GameStatus.ACTIVE:
            raise GameNotActive(
                f"La partida {game.id} no está activa ({game.status.name})",
                game_id=game.id,
            )
        if not game.is_player(captor):
            raise NotAPlayer(f"{captor} no juega la partida {game.id}", game_id=game.id)

        value = self.piece_value(piece_type)
        opponent = game.opponent_of(captor)
        if game.balance_of(opponent) < value:
            # Desincronización entre reglas y ledger: nunca se recorta
            raise InsufficientBalance(
                f"Balance de {opponent} insuficiente para transferir {value}",
                game_id=game.id,
                balance=game.balance_of(opponent),
                value=value,
            )
        return value

    def apply_capture(self, game: Game, captor: str, piece_type) -> Decimal:
        """Transfiere el valor de la pieza del rival al captor."""
        value = self.check_capture(game, captor, piece_type)
        opponent = game.opponent_of(captor)

        game.set_balance(opponent, game.balance_of(opponent) - value)
        game.set_balance(captor, game.balance_of(captor) + value)
        game.last_move_at = self.clock()
        return value

    # =========================================================================
    # LIQUIDACIÓN FINAL
    # =========================================================================

    def check_settlement(self, game: Game, winner: str):
        if game.status != GameStatus.ACTIVE:
            raise GameNotActive(
                f"La partida {game.id} no está activa ({game.status.name})",
                game_id=game.id,
            )
        if not game.is_player(winner):
            raise InvalidWinner(f"{winner} no juega la partida {game.id}", game_id=game.id)

    def settle(
        self,
        game: Game,
        winner: str,
        reason: EndReason = EndReason.CHECKMATE
    ) -> Tuple[Decimal, Decimal]:
        """
        Cierra la partida: FINISHED, ganador, y paga los balances actuales.
        Los balances quedan en cero para que ninguna captura tardía actúe
        sobre valores obsoletos.
        """
        self.check_settlement(game, winner)

        payout_a, payout_b = game.balance_a, game.balance_b
        game.status = GameStatus.FINISHED
        game.winner = winner
        game.end_reason = reason
        game.balance_a = ZERO
        game.balance_b = ZERO
        return payout_a, payout_b
