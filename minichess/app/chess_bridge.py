"""
=============================================================================
MINICHESS - Puente con el Motor de Reglas (python-chess)
=============================================================================
El escrow no valida legalidad de jugadas: confía en el motor de reglas.
Este módulo traduce jugadas de python-chess a las señales que consume el
núcleo (tipo de pieza capturada, resultado terminal) y mantiene el log de
movimientos por partida, que es efímero.

Convención de colores: el creador (player_a) juega con blancas.
=============================================================================
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import chess

from .errors import GameNotActive, IllegalMove, NotAPlayer
from .ledger import Clock, EndReason, Game, GameStatus, normalize_identity
from .settlement import PieceType


def capture_piece_type(board: chess.Board, move: chess.Move) -> Optional[PieceType]:
    """Tipo de pieza que captura `move` (antes de jugarla). En passant es peón."""
    if not board.is_capture(move):
        return None
    if board.is_en_passant(move):
        return PieceType.PAWN
    return PieceType(board.piece_type_at(move.to_square))


def terminal_result(board: chess.Board) -> Optional[Tuple[Optional[bool], EndReason]]:
    """
    (color_ganador, motivo) si la partida terminó, None si sigue.
    En tablas el color es None.
    """
    outcome = board.outcome(claim_draw=True)
    if outcome is None:
        return None
    if outcome.termination == chess.Termination.CHECKMATE:
        return outcome.winner, EndReason.CHECKMATE
    return None, EndReason.DRAW


@dataclass
class MoveRecord:
    """Jugada registrada (mismo formato que expone la API de movimientos)."""
    from_square: str
    to_square: str
    player: str
    timestamp: float
    move_number: int
    promotion: Optional[str] = None
    uci: str = ""
    san: str = ""
    captured: Optional[PieceType] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "from": self.from_square,
            "to": self.to_square,
            "promotion": self.promotion,
            "player": self.player,
            "timestamp": self.timestamp,
            "move_number": self.move_number,
            "uci": self.uci,
            "san": self.san,
            "captured_piece_type": int(self.captured) if self.captured else None,
        }


@dataclass
class MoveResult:
    """Resultado de una jugada: qué debe firmar/reclamar el cliente."""
    move: MoveRecord
    fen: str
    capture: Optional[PieceType] = None
    terminal: Optional[EndReason] = None
    winner: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "move": self.move.to_dict(),
            "fen": self.fen,
            "capture_piece_type": int(self.capture) if self.capture else None,
            "terminal": self.terminal.value if self.terminal else None,
            "winner": self.winner,
        }


@dataclass
class _GameMoves:
    board: chess.Board = field(default_factory=chess.Board)
    moves: List[MoveRecord] = field(default_factory=list)


class MoveLog:
    """Log de jugadas en memoria, una partida de python-chess por game id."""

    def __init__(self, clock: Clock = time.time):
        self.clock = clock
        self._games: Dict[int, _GameMoves] = {}

    def _entry(self, game_id: int) -> _GameMoves:
        entry = self._games.get(game_id)
        if entry is None:
            entry = _GameMoves()
            self._games[game_id] = entry
        return entry

    def moves(self, game_id: int) -> List[MoveRecord]:
        entry = self._games.get(game_id)
        return list(entry.moves) if entry else []

    def fen(self, game_id: int) -> str:
        return self._entry(game_id).board.fen()

    def push(
        self,
        game: Game,
        from_square: str,
        to_square: str,
        player: str,
        promotion: Optional[str] = None
    ) -> MoveResult:
        """Valida turno y legalidad, juega la jugada y reporta captura/final."""
        player = normalize_identity(player)
        if game.status != GameStatus.ACTIVE:
            raise GameNotActive(f"La partida {game.id} no está activa ({game.status.name})", game_id=game.id)
        if not game.is_player(player) or game.player_b is None:
            raise NotAPlayer(f"{player} no juega la partida {game.id}", game_id=game.id)

        entry = self._entry(game.id)
        board = entry.board
        expected = game.player_a if board.turn == chess.WHITE else game.player_b
        if player != expected:
            raise IllegalMove("No es el turno de este jugador", game_id=game.id, player=player)

        uci = f"{from_square}{to_square}{promotion or ''}".lower()
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            raise IllegalMove(f"Jugada mal formada: {uci}", game_id=game.id)
        if move not in board.legal_moves:
            raise IllegalMove(f"Jugada ilegal: {uci}", game_id=game.id, fen=board.fen())

        captured = capture_piece_type(board, move)
        san = board.san(move)
        board.push(move)

        record = MoveRecord(
            from_square=from_square.lower(),
            to_square=to_square.lower(),
            promotion=promotion,
            player=player,
            timestamp=self.clock(),
            move_number=len(entry.moves) + 1,
            uci=uci,
            san=san,
            captured=captured,
        )
        entry.moves.append(record)

        result = MoveResult(move=record, fen=board.fen(), capture=captured)
        finished = terminal_result(board)
        if finished is not None:
            color, reason = finished
            result.terminal = reason
            if color is not None:
                result.winner = game.player_a if color == chess.WHITE else game.player_b
        return result

    def clear(self, game_id: int) -> int:
        """Borra el log de una partida. Retorna cuántas jugadas había."""
        entry = self._games.pop(game_id, None)
        return len(entry.moves) if entry else 0
