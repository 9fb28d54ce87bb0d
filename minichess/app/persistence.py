"""
=============================================================================
MINICHESS - Repositorio de Persistencia
=============================================================================
Escritura directa (write-through) del estado del escrow tras cada
transición confirmada, y carga completa al arrancar el servicio.
=============================================================================
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Set

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ..models import (
    AuthorizedPlayerRecord,
    Base,
    GameHistoryRecord,
    GameRecord,
    PlayerStatsRecord,
    ProcessedCaptureRecord,
)
from .errors import PersistenceFailed
from .ledger import EndReason, Game, GameStatus
from .statistics import PlayerStatistics


class EscrowRepository:
    """Traduce entre los registros del núcleo y las tablas SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create_schema(self):
        """Crea las tablas si no existen."""
        engine = self.session_factory.kw["bind"]
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    # =========================================================================
    # ESCRITURA
    # =========================================================================

    async def store_transition(
        self,
        game: Game,
        processed_ids: Set[str],
        stats_list: Iterable[PlayerStatistics] = ()
    ):
        """
        Guarda en una sola transacción todo lo que tocó una transición:
        partida, autorizaciones, capturas procesadas y estadísticas.
        Si algo falla no queda nada escrito.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self._write_game(session, game, processed_ids)
                    await self._write_stats(session, stats_list)
        except SQLAlchemyError as e:
            raise PersistenceFailed(f"No se pudo guardar la partida {game.id}: {e}", game_id=game.id)

    async def store_game(self, game: Game, processed_ids: Set[str]):
        """Guarda partida, autorizaciones y capturas procesadas."""
        await self.store_transition(game, processed_ids)

    async def store_stats(self, stats_list: Iterable[PlayerStatistics]):
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await self._write_stats(session, stats_list)
        except SQLAlchemyError as e:
            raise PersistenceFailed(f"No se pudieron guardar estadísticas: {e}")

    async def _write_game(self, session: AsyncSession, game: Game, processed_ids: Set[str]):
        record = await session.get(GameRecord, game.id)
        if record is None:
            record = GameRecord(id=game.id)
            session.add(record)
        record.player_a = game.player_a
        record.player_b = game.player_b
        record.escrow_a = game.escrow_a
        record.escrow_b = game.escrow_b
        record.balance_a = game.balance_a
        record.balance_b = game.balance_b
        record.status = int(game.status)
        record.winner = game.winner
        record.end_reason = game.end_reason.value if game.end_reason else None
        record.created_at = game.created_at
        record.last_move_at = game.last_move_at

        # Conjuntos pequeños (≤ 2 jugadores, ≤ 30 capturas): se reescriben
        await session.flush()
        await session.execute(
            delete(AuthorizedPlayerRecord).where(AuthorizedPlayerRecord.game_id == game.id)
        )
        await session.execute(
            delete(ProcessedCaptureRecord).where(ProcessedCaptureRecord.game_id == game.id)
        )
        session.add_all(
            AuthorizedPlayerRecord(game_id=game.id, player=player)
            for player in sorted(game.authorized_players)
        )
        session.add_all(
            ProcessedCaptureRecord(game_id=game.id, capture_id=capture_id)
            for capture_id in sorted(processed_ids)
        )

    async def _write_stats(self, session: AsyncSession, stats_list: Iterable[PlayerStatistics]):
        for stats in stats_list:
            record = await session.get(PlayerStatsRecord, stats.player)
            if record is None:
                record = PlayerStatsRecord(player=stats.player)
                session.add(record)
            record.games_played = stats.games_played
            record.games_won = stats.games_won
            record.games_lost = stats.games_lost
            record.total_earned = stats.total_earned
            record.total_lost = stats.total_lost

            # Append-only: solo se insertan posiciones nuevas
            result = await session.execute(
                select(GameHistoryRecord.position).where(GameHistoryRecord.player == stats.player)
            )
            stored = len(result.scalars().all())
            session.add_all(
                GameHistoryRecord(player=stats.player, position=position, game_id=game_id)
                for position, game_id in enumerate(stats.game_history)
                if position >= stored
            )

    # =========================================================================
    # LECTURA
    # =========================================================================

    async def load_games(self) -> List[Game]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(GameRecord)
                .options(selectinload(GameRecord.authorizations))
                .order_by(GameRecord.id)
            )
            games = []
            for record in result.scalars().all():
                games.append(Game(
                    id=record.id,
                    player_a=record.player_a,
                    player_b=record.player_b,
                    escrow_a=Decimal(record.escrow_a),
                    escrow_b=Decimal(record.escrow_b),
                    balance_a=Decimal(record.balance_a),
                    balance_b=Decimal(record.balance_b),
                    status=GameStatus(record.status),
                    winner=record.winner,
                    end_reason=EndReason(record.end_reason) if record.end_reason else None,
                    created_at=record.created_at,
                    last_move_at=record.last_move_at,
                    authorized_players={a.player for a in record.authorizations},
                ))
            return games

    async def load_processed(self) -> Dict[int, Set[str]]:
        async with self.session_factory() as session:
            result = await session.execute(select(ProcessedCaptureRecord))
            processed: Dict[int, Set[str]] = {}
            for record in result.scalars().all():
                processed.setdefault(record.game_id, set()).add(record.capture_id)
            return processed

    async def load_stats(self) -> List[PlayerStatistics]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PlayerStatsRecord).options(selectinload(PlayerStatsRecord.history))
            )
            return [
                PlayerStatistics(
                    player=record.player,
                    games_played=record.games_played,
                    games_won=record.games_won,
                    games_lost=record.games_lost,
                    total_earned=Decimal(record.total_earned),
                    total_lost=Decimal(record.total_lost),
                    game_history=[h.game_id for h in record.history],
                )
                for record in result.scalars().all()
            ]
