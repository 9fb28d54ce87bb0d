"""
=============================================================================
MINICHESS - Política de Sesión y Timeouts
=============================================================================
Guardas temporales de las transiciones:
- claimTimeout: el rival no movió en MOVE_TIMEOUT → el reclamante gana
- cancelGame: nadie se unió en CREATION_GRACE_PERIOD → reembolso al creador

El periodo de gracia existe para dar tiempo a un rival legítimo antes de
que el creador pueda abortar.
=============================================================================
"""

import time
from decimal import Decimal
from typing import Optional

from .config import EscrowConfig
from .errors import (
    GameNotActive,
    GameNotTimedOut,
    GracePeriodActive,
    NotAPlayer,
    NotCancellable,
    NotCreator,
)
from .ledger import ZERO, Clock, Game, GameStatus


class SessionTimeoutPolicy:
    """Evalúa las ventanas de tiempo contra un reloj no decreciente."""

    def __init__(self, config: Optional[EscrowConfig] = None, clock: Clock = time.time):
        self.config = config or EscrowConfig()
        self.clock = clock

    def seconds_until_timeout(self, game: Game) -> float:
        deadline = game.last_move_at + self.config.move_timeout
        return max(0.0, deadline - self.clock())

    def seconds_until_cancellable(self, game: Game) -> float:
        deadline = game.created_at + self.config.creation_grace_period
        return max(0.0, deadline - self.clock())

    def check_timeout(self, game: Game, claimant: str):
        if game.status != GameStatus.ACTIVE:
            raise GameNotActive(
                f"La partida {game.id} no está activa ({game.status.name})",
                game_id=game.id,
            )
        if not game.is_player(claimant):
            raise NotAPlayer(f"{claimant} no juega la partida {game.id}", game_id=game.id)
        if self.clock() < game.last_move_at + self.config.move_timeout:
            raise GameNotTimedOut(
                "El rival aún está dentro de su tiempo de movimiento",
                game_id=game.id,
                seconds_remaining=round(self.seconds_until_timeout(game), 3),
            )

    def check_cancel(self, game: Game, requester: str):
        if game.status != GameStatus.WAITING:
            raise NotCancellable(
                f"La partida {game.id} no se puede cancelar ({game.status.name})",
                game_id=game.id,
            )
        if requester != game.player_a:
            raise NotCreator("Solo el creador puede cancelar", game_id=game.id)
        if self.clock() < game.created_at + self.config.creation_grace_period:
            raise GracePeriodActive(
                "Periodo de gracia activo: esperando rival",
                game_id=game.id,
                seconds_remaining=round(self.seconds_until_cancellable(game), 3),
            )

    def cancel(self, game: Game, requester: str) -> Decimal:
        """CANCELLED + reembolso íntegro de escrow_a (que queda en cero)."""
        self.check_cancel(game, requester)

        refund = game.escrow_a
        game.status = GameStatus.CANCELLED
        game.escrow_a = ZERO
        game.balance_a = ZERO
        return refund
