"""
=============================================================================
MINICHESS - Ledger de Escrow y Registro de Partidas
=============================================================================
Cada partida guarda dos jugadores, sus depósitos, sus balances vivos y el
estado de la máquina de estados:

    WAITING --join--> ACTIVE --endGame/claimTimeout--> FINISHED
    WAITING --cancel (tras periodo de gracia)--> CANCELLED

FINISHED y CANCELLED son terminales. Invariante mientras ACTIVE:
    balance_a + balance_b == escrow_a + escrow_b
=============================================================================
"""

import copy
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum, IntEnum
from typing import Callable, Dict, List, Optional, Set

from .config import EscrowConfig
from .errors import (
    GameNotFound,
    GameNotJoinable,
    InvalidDeposit,
    SelfJoinForbidden,
)


Clock = Callable[[], float]

ZERO = Decimal("0")


def as_amount(value) -> Decimal:
    """Normaliza montos (str, int, float, Decimal) a Decimal exacto."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def normalize_identity(identity: Optional[str]) -> Optional[str]:
    """Forma canónica de una identidad: hex en minúsculas, sin espacios."""
    if identity is None:
        return None
    return str(identity).strip().lower()


class GameStatus(IntEnum):
    """Estados de la partida (mismo orden numérico que el contrato)."""
    WAITING = 0
    ACTIVE = 1
    FINISHED = 2
    CANCELLED = 3

    @property
    def is_terminal(self) -> bool:
        return self in (GameStatus.FINISHED, GameStatus.CANCELLED)


class EndReason(str, Enum):
    """Motivo informativo del cierre. No altera el pago."""
    CHECKMATE = "CHECKMATE"
    DRAW = "DRAW"
    RESIGNATION = "RESIGNATION"
    TIMEOUT = "TIMEOUT"


@dataclass
class Game:
    """Registro de escrow de una partida."""
    id: int
    player_a: str
    escrow_a: Decimal
    balance_a: Decimal
    created_at: float
    last_move_at: float

    player_b: Optional[str] = None
    escrow_b: Decimal = ZERO
    balance_b: Decimal = ZERO

    status: GameStatus = GameStatus.WAITING
    winner: Optional[str] = None
    end_reason: Optional[EndReason] = None

    authorized_players: Set[str] = field(default_factory=set)

    def is_player(self, identity: Optional[str]) -> bool:
        if identity is None:
            return False
        return identity == self.player_a or (
            self.player_b is not None and identity == self.player_b
        )

    def opponent_of(self, identity: str) -> str:
        """Retorna el rival de un jugador registrado."""
        if identity == self.player_a and self.player_b is not None:
            return self.player_b
        if self.player_b is not None and identity == self.player_b:
            return self.player_a
        raise ValueError(f"{identity} no es jugador de la partida {self.id}")

    def balance_of(self, identity: str) -> Decimal:
        return self.balance_a if identity == self.player_a else self.balance_b

    def escrow_of(self, identity: str) -> Decimal:
        return self.escrow_a if identity == self.player_a else self.escrow_b

    def set_balance(self, identity: str, amount: Decimal):
        if identity == self.player_a:
            self.balance_a = amount
        else:
            self.balance_b = amount

    @property
    def total_escrow(self) -> Decimal:
        return self.escrow_a + self.escrow_b

    @property
    def total_balance(self) -> Decimal:
        return self.balance_a + self.balance_b

    def is_conserved(self) -> bool:
        """Verifica la ecuación de conservación de fondos."""
        return self.total_balance == self.total_escrow

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "player_a": self.player_a,
            "player_b": self.player_b,
            "escrow_a": str(self.escrow_a),
            "escrow_b": str(self.escrow_b),
            "balance_a": str(self.balance_a),
            "balance_b": str(self.balance_b),
            "status": self.status.name,
            "winner": self.winner,
            "end_reason": self.end_reason.value if self.end_reason else None,
            "created_at": self.created_at,
            "last_move_at": self.last_move_at,
            "authorized_players": sorted(self.authorized_players),
        }


# =============================================================================
# REGISTRO DE PARTIDAS
# =============================================================================

class GameRegistry:
    """
    Mapea ids enteros a registros de escrow.
    Los ids son secuenciales desde 1 y nunca se reutilizan.
    """

    def __init__(self, config: Optional[EscrowConfig] = None, clock: Clock = time.time):
        self.config = config or EscrowConfig()
        self.clock = clock
        self.games: Dict[int, Game] = {}
        self._next_id = 1

    def peek_next_id(self) -> int:
        """Id que recibirá la próxima partida creada."""
        return self._next_id

    def _require_deposit(self, deposit_amount: Decimal):
        try:
            amount = as_amount(deposit_amount)
        except InvalidOperation:
            raise InvalidDeposit(f"Monto de depósito ilegible: {deposit_amount!r}")
        if not amount.is_finite():
            raise InvalidDeposit(f"Monto de depósito no finito: {deposit_amount!r}")
        if amount != self.config.escrow_amount:
            raise InvalidDeposit(
                f"Depósito {deposit_amount} distinto del escrow requerido {self.config.escrow_amount}",
                expected=self.config.escrow_amount,
                received=deposit_amount,
            )

    def create_game(self, creator: str, deposit_amount: Decimal) -> int:
        """Crea una partida en WAITING con el depósito del creador."""
        self._require_deposit(deposit_amount)

        now = self.clock()
        game_id = self._next_id
        deposit = as_amount(deposit_amount)
        self.games[game_id] = Game(
            id=game_id,
            player_a=normalize_identity(creator),
            escrow_a=deposit,
            balance_a=deposit,
            created_at=now,
            last_move_at=now,
        )
        self._next_id += 1
        return game_id

    def check_join(self, game_id: int, joiner: str, deposit_amount: Decimal) -> Game:
        """Valida un ingreso sin mutar nada."""
        game = self.require(game_id)
        joiner = normalize_identity(joiner)
        if game.status != GameStatus.WAITING or game.player_b is not None:
            raise GameNotJoinable(
                f"La partida {game_id} no acepta jugadores ({game.status.name})",
                game_id=game_id,
            )
        if joiner == game.player_a:
            raise SelfJoinForbidden("El creador no puede unirse a su propia partida", game_id=game_id)
        self._require_deposit(deposit_amount)
        return game

    def join_game(self, game_id: int, joiner: str, deposit_amount: Decimal):
        """Segundo jugador deposita y la partida pasa a ACTIVE."""
        game = self.check_join(game_id, joiner, deposit_amount)

        deposit = as_amount(deposit_amount)
        game.player_b = normalize_identity(joiner)
        game.escrow_b = deposit
        game.balance_b = deposit
        game.status = GameStatus.ACTIVE
        game.last_move_at = self.clock()

    def require(self, game_id: int) -> Game:
        """Registro vivo (solo para mutadores internos)."""
        game = self.games.get(game_id)
        if game is None:
            raise GameNotFound(f"Partida {game_id} no encontrada", game_id=game_id)
        return game

    def get_game(self, game_id: int) -> Game:
        """Snapshot de solo lectura."""
        return copy.deepcopy(self.require(game_id))

    def list_games(self, status: Optional[GameStatus] = None) -> List[Game]:
        return [
            copy.deepcopy(game)
            for game in self.games.values()
            if status is None or game.status == status
        ]

    def restore(self, game: Game):
        """Reinstala un registro (carga desde BD o rollback)."""
        self.games[game.id] = game
        self._next_id = max(self._next_id, game.id + 1)

    def discard(self, game_id: int):
        """Elimina una partida recién creada cuyo alta fue revertida."""
        self.games.pop(game_id, None)
        if game_id == self._next_id - 1:
            self._next_id = game_id
