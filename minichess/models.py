"""
=============================================================================
MINICHESS - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Estado que debe sobrevivir entre invocaciones:
- Registro de partidas y su ledger de escrow
- Autorizaciones de sesión por partida
- Capturas procesadas (prevención de replay)
- Estadísticas por jugador e historial de partidas

Todo lo demás (logs de movimientos, caches de UI, bookkeeping del relay)
es efímero y reconstruible.
=============================================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# Precisión: Numeric(18, 8) igual que el resto de montos del sistema
AMOUNT = Numeric(18, 8)


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


# =============================================================================
# TABLA: GAMES (Ledger de Escrow por Partida)
# =============================================================================

class GameRecord(Base):
    """
    Partida con sus dos depósitos y balances vivos.
    status: 0=WAITING, 1=ACTIVE, 2=FINISHED, 3=CANCELLED
    """
    __tablename__ = "games"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)

    player_a: Mapped[str] = mapped_column(String(130), nullable=False)
    player_b: Mapped[Optional[str]] = mapped_column(String(130), nullable=True)

    # ==========================================================================
    # ESCROW Y BALANCES
    # ==========================================================================
    escrow_a: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    escrow_b: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"), nullable=False)
    balance_a: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    balance_b: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"), nullable=False)

    status: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    winner: Mapped[Optional[str]] = mapped_column(String(130), nullable=True)
    end_reason: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Timestamps del reloj del núcleo (epoch)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    last_move_at: Mapped[float] = mapped_column(Float, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )

    # Relaciones
    authorizations: Mapped[List["AuthorizedPlayerRecord"]] = relationship(
        back_populates="game",
        cascade="all, delete-orphan"
    )
    processed_captures: Mapped[List["ProcessedCaptureRecord"]] = relationship(
        back_populates="game",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_games_status", "status"),
        Index("idx_games_player_a", "player_a"),
        Index("idx_games_player_b", "player_b"),
        CheckConstraint("status >= 0 AND status <= 3", name="check_game_status_range"),
        CheckConstraint("balance_a >= 0 AND balance_b >= 0", name="check_positive_balances"),
        CheckConstraint("escrow_a >= 0 AND escrow_b >= 0", name="check_positive_escrow"),
    )


# =============================================================================
# TABLA: GAME_AUTHORIZATIONS (Sesiones Autorizadas)
# =============================================================================

class AuthorizedPlayerRecord(Base):
    """Jugador que firmó AUTHORIZE_SESSION para una partida."""
    __tablename__ = "game_authorizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    game_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("games.id", ondelete="CASCADE"),
        nullable=False
    )
    player: Mapped[str] = mapped_column(String(130), nullable=False)

    game: Mapped["GameRecord"] = relationship(back_populates="authorizations")

    __table_args__ = (
        UniqueConstraint("game_id", "player", name="unique_game_authorization"),
    )


# =============================================================================
# TABLA: PROCESSED_CAPTURES (Prevención de Replay)
# =============================================================================

class ProcessedCaptureRecord(Base):
    """Capture id ya aplicado. La restricción única impide el doble cobro."""
    __tablename__ = "processed_captures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    game_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("games.id", ondelete="CASCADE"),
        nullable=False
    )
    capture_id: Mapped[str] = mapped_column(String(128), nullable=False)

    game: Mapped["GameRecord"] = relationship(back_populates="processed_captures")

    __table_args__ = (
        UniqueConstraint("game_id", "capture_id", name="unique_processed_capture"),
        Index("idx_processed_game", "game_id"),
    )


# =============================================================================
# TABLA: PLAYER_STATS (Estadísticas Acumuladas)
# =============================================================================

class PlayerStatsRecord(Base):
    """Contadores monótonos por identidad."""
    __tablename__ = "player_stats"

    player: Mapped[str] = mapped_column(String(130), primary_key=True)

    games_played: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    games_won: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    games_lost: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_earned: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"), nullable=False)
    total_lost: Mapped[Decimal] = mapped_column(AMOUNT, default=Decimal("0"), nullable=False)

    history: Mapped[List["GameHistoryRecord"]] = relationship(
        back_populates="stats",
        cascade="all, delete-orphan",
        order_by="GameHistoryRecord.position"
    )

    __table_args__ = (
        CheckConstraint("games_won + games_lost <= games_played", name="check_results_le_played"),
        CheckConstraint("total_earned >= 0 AND total_lost >= 0", name="check_positive_totals"),
    )


class GameHistoryRecord(Base):
    """Historial append-only: position 0 es la partida más antigua."""
    __tablename__ = "player_game_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    player: Mapped[str] = mapped_column(
        String(130),
        ForeignKey("player_stats.player", ondelete="CASCADE"),
        nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    game_id: Mapped[int] = mapped_column(Integer, nullable=False)

    stats: Mapped["PlayerStatsRecord"] = relationship(back_populates="history")

    __table_args__ = (
        UniqueConstraint("player", "position", name="unique_history_position"),
        Index("idx_history_player", "player"),
    )


# =============================================================================
# ENGINE Y SESIONES
# =============================================================================

def create_session_factory(database_url: str, echo: bool = False) -> async_sessionmaker:
    """Crea la fábrica de sesiones async para la URL dada."""
    engine = create_async_engine(database_url, echo=echo)
    return async_sessionmaker(engine, expire_on_commit=False)
