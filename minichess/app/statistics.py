"""
=============================================================================
MINICHESS - Agregador de Estadísticas
=============================================================================
Contadores por jugador, escritos únicamente en la liquidación (fin de
partida o timeout), nunca durante el juego. Todos los contadores son
monótonos no decrecientes y el historial es append-only.
=============================================================================
"""

import copy
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from .ledger import ZERO, Game


LEADERBOARD_CRITERIA = ("win_rate", "games_won", "net_profit", "games_played")


@dataclass
class PlayerStatistics:
    """Estadísticas acumuladas de un jugador."""
    player: str
    games_played: int = 0
    games_won: int = 0
    games_lost: int = 0
    total_earned: Decimal = ZERO
    total_lost: Decimal = ZERO
    game_history: List[int] = field(default_factory=list)  # Más reciente al final

    @property
    def win_rate(self) -> int:
        """Porcentaje entero de victorias (0 sin partidas)."""
        if self.games_played == 0:
            return 0
        return self.games_won * 100 // self.games_played

    @property
    def net_profit(self) -> Decimal:
        return self.total_earned - self.total_lost

    def to_dict(self) -> Dict[str, object]:
        return {
            "player": self.player,
            "games_played": self.games_played,
            "games_won": self.games_won,
            "games_lost": self.games_lost,
            "total_earned": str(self.total_earned),
            "total_lost": str(self.total_lost),
            "win_rate": self.win_rate,
            "net_profit": str(self.net_profit),
        }


class StatisticsAggregator:
    """Registro perezoso de estadísticas por identidad."""

    def __init__(self):
        self.players: Dict[str, PlayerStatistics] = {}

    def _entry(self, player: str) -> PlayerStatistics:
        stats = self.players.get(player)
        if stats is None:
            stats = PlayerStatistics(player=player)
            self.players[player] = stats
        return stats

    def record_settlement(self, game: Game, payout_a: Decimal, payout_b: Decimal):
        """
        Actualiza ganador y perdedor de una partida liquidada.

        Ganador: +1 jugada, +1 ganada, excedente sobre su escrow → total_earned
        Perdedor: +1 jugada, +1 perdida, déficit bajo su escrow → total_lost
        """
        winner = game.winner
        loser = game.opponent_of(winner)
        payouts = {game.player_a: payout_a, game.player_b: payout_b}

        winner_stats = self._entry(winner)
        winner_stats.games_played += 1
        winner_stats.games_won += 1
        surplus = payouts[winner] - game.escrow_of(winner)
        if surplus > 0:
            winner_stats.total_earned += surplus
        winner_stats.game_history.append(game.id)

        loser_stats = self._entry(loser)
        loser_stats.games_played += 1
        loser_stats.games_lost += 1
        deficit = game.escrow_of(loser) - payouts[loser]
        if deficit > 0:
            loser_stats.total_lost += deficit
        loser_stats.game_history.append(game.id)

    # =========================================================================
    # LECTURAS
    # =========================================================================

    def get_player_stats(self, player: str) -> PlayerStatistics:
        stats = self.players.get(player)
        if stats is None:
            return PlayerStatistics(player=player)
        return copy.deepcopy(stats)

    def get_player_game_history(self, player: str, limit: int = 10, offset: int = 0) -> List[int]:
        """Ids de partidas, más reciente primero, paginados."""
        if limit < 0 or offset < 0:
            raise ValueError("limit y offset deben ser no negativos")
        stats = self.players.get(player)
        if stats is None:
            return []
        newest_first = list(reversed(stats.game_history))
        return newest_first[offset:offset + limit]

    def get_player_game_count(self, player: str) -> int:
        stats = self.players.get(player)
        return len(stats.game_history) if stats else 0

    def leaderboard(self, sort_by: str = "win_rate", limit: Optional[int] = None) -> List[Dict[str, object]]:
        """Ranking de jugadores con al menos una partida."""
        if sort_by not in LEADERBOARD_CRITERIA:
            raise ValueError(f"Criterio inválido: {sort_by}")

        active = [s for s in self.players.values() if s.games_played > 0]
        active.sort(key=lambda s: (-getattr(s, sort_by), s.player))
        if limit is not None:
            active = active[:limit]

        ranking = []
        for rank, stats in enumerate(active, start=1):
            entry = stats.to_dict()
            entry["rank"] = rank
            ranking.append(entry)
        return ranking

    def restore(self, stats: PlayerStatistics):
        self.players[stats.player] = stats

    def forget(self, player: str):
        """Quita una entrada creada dentro de una transición revertida."""
        self.players.pop(player, None)
